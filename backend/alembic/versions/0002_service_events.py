"""service events

Revision ID: 0002_service_events
Revises: 0001_init
Create Date: 2026-10-17 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_service_events"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "service_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("case_number", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("alert_token_id", sa.BigInteger(), nullable=True),
        sa.Column("recipient_address", sa.String(), nullable=True),
        sa.Column("actor_address", sa.String(), nullable=True),
        sa.Column("transaction_hash", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_service_events_case_number", "service_events", ["case_number"])
    op.create_index("ix_service_events_alert_token_id", "service_events", ["alert_token_id"])
    op.create_index("ix_service_events_recipient_address", "service_events", ["recipient_address"])


def downgrade() -> None:
    op.drop_index("ix_service_events_recipient_address", table_name="service_events")
    op.drop_index("ix_service_events_alert_token_id", table_name="service_events")
    op.drop_index("ix_service_events_case_number", table_name="service_events")
    op.drop_table("service_events")
