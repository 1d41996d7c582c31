"""SQLAlchemy models for notice cases, service records and process servers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for declarative SQLAlchemy models."""


class Case(Base):
    """A legal case as owned by one process server."""

    __tablename__ = "cases"
    __table_args__ = (UniqueConstraint("case_number", "server_address", name="uq_cases_number_server"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_number: Mapped[str] = mapped_column(String, nullable=False, index=True)
    server_address: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="preparing")
    metadata_info: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    service_records: Mapped[list["CaseServiceRecord"]] = relationship(back_populates="case")


class CaseServiceRecord(Base):
    """Off-chain record of one served notice (an Alert/Document token pair)."""

    __tablename__ = "case_service_records"
    __table_args__ = (UniqueConstraint("case_number", "server_address", name="uq_service_records_case_server"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("cases.id", ondelete="SET NULL"),
        nullable=True,
    )
    case_number: Mapped[str] = mapped_column(String, nullable=False, index=True)
    server_address: Mapped[str] = mapped_column(String, nullable=False, index=True)
    alert_token_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, unique=True)
    document_token_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    recipients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    token_pairs: Mapped[list | None] = mapped_column(JSON, nullable=True)
    page_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    served_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    ipfs_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    encryption_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default="issuance")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    case: Mapped["Case | None"] = relationship(back_populates="service_records")


class ProcessServer(Base):
    __tablename__ = "process_servers"

    wallet_address: Mapped[str] = mapped_column(String, primary_key=True)
    agency_name: Mapped[str] = mapped_column(String, nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    license_number: Mapped[str | None] = mapped_column(String, nullable=True)
    jurisdictions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    server_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class PreparedSubmission(Base):
    """Encoded serve call persisted before signing so it can be retried as-is."""

    __tablename__ = "prepared_submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_number: Mapped[str] = mapped_column(String, nullable=False, index=True)
    server_address: Mapped[str] = mapped_column(String, nullable=False)
    recipients: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    function_signature: Mapped[str] = mapped_column(String, nullable=False)
    parameter_hex: Mapped[str] = mapped_column(Text, nullable=False)
    call_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ipfs_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    encryption_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_uri: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="prepared")
    tx_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    signed_transaction: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    expiration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class ServiceEvent(Base):
    """Append-only audit trail of what happened to a served notice."""

    __tablename__ = "service_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_number: Mapped[str] = mapped_column(String, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    alert_token_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    recipient_address: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    actor_address: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
