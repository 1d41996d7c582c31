"""Pydantic schemas for notices, service records and process servers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from blockserved.core.ledger import is_valid_address


def _check_addresses(values: list[str]) -> list[str]:
    for address in values:
        if not is_valid_address(address):
            raise ValueError(f"Invalid TRON address: {address}")
    return values


class ServiceRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    case_number: str
    server_address: str
    alert_token_id: int | None = None
    document_token_id: int | None = None
    recipients: list[str] = []
    token_pairs: list[dict] | None = None
    page_count: int = 1
    served_at: datetime | None = None
    transaction_hash: str | None = None
    ipfs_hash: str | None = None
    encryption_key: str | None = None
    accepted: bool = False
    accepted_at: datetime | None = None
    source: str


class ServiceCompleteRequest(BaseModel):
    server_address: str
    recipients: list[str] = Field(min_length=1)
    transaction_hash: str | None = None
    alert_token_id: int | None = Field(default=None, ge=0)
    document_token_id: int | None = Field(default=None, ge=0)
    ipfs_hash: str | None = None
    encryption_key: str | None = None
    page_count: int | None = Field(default=None, ge=1)
    served_at: datetime | None = None
    accepted: bool = False
    accepted_at: datetime | None = None

    @field_validator("server_address")
    @classmethod
    def _server_address(cls, value: str) -> str:
        return _check_addresses([value])[0]

    @field_validator("recipients")
    @classmethod
    def _recipients(cls, value: list[str]) -> list[str]:
        return _check_addresses(value)


class MintedNoticeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    alert_token_id: int
    document_token_id: int | None = None
    recipient: str
    tx_id: str


class FeeQuoteResponse(BaseModel):
    service_fee: int
    creation_fee: int
    sponsorship_fee: int
    exempt: bool
    sponsored: bool
    is_default: bool
    total: int


class IssuanceResponse(BaseModel):
    ok: bool
    reason: str | None = None
    tx_ids: list[str] = []
    notices: list[MintedNoticeResponse] = []
    fee: FeeQuoteResponse | None = None
    submission_id: int | None = None
    record_ids: list[int] = []
    ipfs_hash: str | None = None
    record_write_failed: bool = False
    detail: Any = None


class ReconcileRequest(BaseModel):
    start: int = Field(default=1, ge=1)
    end: int | None = Field(default=None, ge=1)
    mode: Literal["ownership", "events"] = "ownership"


class ProcessServerCreate(BaseModel):
    wallet_address: str
    agency_name: str = Field(min_length=1)
    contact_email: str | None = None
    phone: str | None = None
    license_number: str | None = None
    jurisdictions: list[str] = []
    server_id: int | None = None

    @field_validator("wallet_address")
    @classmethod
    def _wallet(cls, value: str) -> str:
        return _check_addresses([value])[0]


class ProcessServerStatusUpdate(BaseModel):
    status: Literal["pending", "approved", "active", "suspended"]


class ProcessServerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    wallet_address: str
    agency_name: str
    contact_email: str | None = None
    phone: str | None = None
    license_number: str | None = None
    jurisdictions: list[str] | None = None
    status: str
    server_id: int | None = None
    created_at: datetime | None = None


class ServiceEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    case_number: str
    event_type: str
    alert_token_id: int | None = None
    recipient_address: str | None = None
    actor_address: str | None = None
    transaction_hash: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict | None = None
    created_at: datetime | None = None


class ActivityRequest(BaseModel):
    case_number: str = Field(min_length=1)
    recipient_address: str
    activity_type: Literal["view", "view_alert", "view_document", "download", "decrypt", "sign_attempt"]
    alert_token_id: int | None = Field(default=None, ge=0)
    details: dict[str, Any] = {}

    @field_validator("recipient_address")
    @classmethod
    def _recipient(cls, value: str) -> str:
        return _check_addresses([value])[0]


class AcceptRequest(BaseModel):
    recipient_address: str
    transaction_hash: str | None = None

    @field_validator("recipient_address")
    @classmethod
    def _recipient(cls, value: str) -> str:
        return _check_addresses([value])[0]


class CaseStatsResponse(BaseModel):
    case_number: str
    total_recipients: int
    viewed: int
    accepted: int
    events: int
    last_activity_at: datetime | None = None


class TokenJourneyResponse(BaseModel):
    token_id: int
    alert_token_id: int | None = None
    record: ServiceRecordResponse
    events: list[ServiceEventResponse] = []
