"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "cases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("case_number", sa.String(), nullable=False),
        sa.Column("server_address", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="preparing"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("case_number", "server_address", name="uq_cases_number_server"),
    )
    op.create_index("ix_cases_case_number", "cases", ["case_number"])
    op.create_index("ix_cases_server_address", "cases", ["server_address"])

    op.create_table(
        "case_service_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("case_id", sa.Integer(), nullable=True),
        sa.Column("case_number", sa.String(), nullable=False),
        sa.Column("server_address", sa.String(), nullable=False),
        sa.Column("alert_token_id", sa.BigInteger(), nullable=True),
        sa.Column("document_token_id", sa.BigInteger(), nullable=True),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("token_pairs", sa.JSON(), nullable=True),
        sa.Column("page_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("served_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_hash", sa.String(), nullable=True),
        sa.Column("ipfs_hash", sa.String(), nullable=True),
        sa.Column("encryption_key", sa.Text(), nullable=True),
        sa.Column("accepted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default="issuance"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["case_id"], ["cases.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("case_number", "server_address", name="uq_service_records_case_server"),
        sa.UniqueConstraint("alert_token_id", name="uq_service_records_alert_token"),
        sa.CheckConstraint("json_typeof(recipients::json) = 'array'", name="ck_service_records_recipients_array"),
    )
    op.create_index("ix_case_service_records_case_number", "case_service_records", ["case_number"])
    op.create_index("ix_case_service_records_server_address", "case_service_records", ["server_address"])
    op.create_index("ix_case_service_records_document_token_id", "case_service_records", ["document_token_id"])

    op.create_table(
        "process_servers",
        sa.Column("wallet_address", sa.String(), primary_key=True, nullable=False),
        sa.Column("agency_name", sa.String(), nullable=False),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("license_number", sa.String(), nullable=True),
        sa.Column("jurisdictions", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("server_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "prepared_submissions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("case_number", sa.String(), nullable=False),
        sa.Column("server_address", sa.String(), nullable=False),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("function_signature", sa.String(), nullable=False),
        sa.Column("parameter_hex", sa.Text(), nullable=False),
        sa.Column("call_value", sa.BigInteger(), nullable=False),
        sa.Column("fee_limit", sa.BigInteger(), nullable=False),
        sa.Column("ipfs_hash", sa.String(), nullable=True),
        sa.Column("encryption_key", sa.Text(), nullable=True),
        sa.Column("metadata_uri", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="prepared"),
        sa.Column("tx_id", sa.String(), nullable=True),
        sa.Column("signed_transaction", sa.JSON(), nullable=True),
        sa.Column("expiration_ms", sa.BigInteger(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_prepared_submissions_case_number", "prepared_submissions", ["case_number"])
    op.create_index("ix_prepared_submissions_tx_id", "prepared_submissions", ["tx_id"])


def downgrade() -> None:
    op.drop_table("prepared_submissions")
    op.drop_table("process_servers")
    op.drop_table("case_service_records")
    op.drop_table("cases")
