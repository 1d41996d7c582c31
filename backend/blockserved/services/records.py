"""Off-chain record store: cases, service records and process servers.

Every write validates its inputs before touching the session, so a malformed
recipients value never reaches the table. Methods flush but do not commit;
callers decide the transaction boundary and use :meth:`RecordStore.commit`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import String, cast, or_, select
from sqlalchemy.orm import Session

from blockserved.core.ledger import is_valid_address
from blockserved.db.models import Case, CaseServiceRecord, ProcessServer, ServiceEvent

logger = logging.getLogger(__name__)

CASE_STATUSES = ("preparing", "served", "signed")
RECORD_SOURCES = ("issuance", "service_update", "reconciliation")
SERVER_STATUSES = ("pending", "approved", "active", "suspended")
SERVING_STATUSES = ("approved", "active")
WORKFLOW_EVENTS = ("served", "retry", "reconciled")
RECIPIENT_EVENTS = ("view", "view_alert", "view_document", "download", "decrypt", "sign_attempt", "accept")
EVENT_TYPES = WORKFLOW_EVENTS + RECIPIENT_EVENTS
VIEW_EVENTS = ("view", "view_alert", "view_document", "download", "decrypt")


def validate_recipients(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        raise ValueError("recipients must be a list of addresses")
    recipients: list[str] = []
    for address in value:
        if not is_valid_address(address):
            raise ValueError(f"Invalid recipient address: {address!r}")
        if address not in recipients:
            recipients.append(address)
    if not recipients:
        raise ValueError("recipients must not be empty")
    return recipients


def _validate_pairs(pairs: Iterable[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    if pairs is None:
        return None
    cleaned = []
    for pair in pairs:
        if not is_valid_address(pair.get("recipient")):
            raise ValueError(f"Invalid recipient in token pair: {pair!r}")
        cleaned.append(
            {
                "alert_token_id": int(pair["alert_token_id"]),
                "document_token_id": (
                    int(pair["document_token_id"]) if pair.get("document_token_id") is not None else None
                ),
                "recipient": pair["recipient"],
            }
        )
    return cleaned


def record_pairs(record: CaseServiceRecord | None) -> list[dict[str, Any]]:
    """Token pairs held by ``record``, falling back to the first-pair columns."""
    if record is None:
        return []
    if record.token_pairs:
        return [dict(pair) for pair in record.token_pairs]
    if record.alert_token_id is not None and record.recipients:
        return [
            {
                "alert_token_id": record.alert_token_id,
                "document_token_id": record.document_token_id,
                "recipient": record.recipients[0],
            }
        ]
    return []


def merge_token_pairs(existing: list[dict[str, Any]], new: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Union by alert id, ordered by alert id; a newer pair replaces an older one."""
    merged = {int(pair["alert_token_id"]): dict(pair) for pair in existing}
    for pair in new:
        merged[int(pair["alert_token_id"])] = dict(pair)
    return [merged[alert_id] for alert_id in sorted(merged)]


def pair_recipients(pairs: Iterable[dict[str, Any]]) -> list[str]:
    recipients: list[str] = []
    for pair in pairs:
        if pair["recipient"] not in recipients:
            recipients.append(pair["recipient"])
    return recipients


def alert_id_for(record: CaseServiceRecord, token_id: int) -> int | None:
    for pair in record_pairs(record):
        if token_id in (pair.get("alert_token_id"), pair.get("document_token_id")):
            return pair["alert_token_id"]
    return None


def _pair_tokens(record: CaseServiceRecord) -> set[int]:
    ids = {record.alert_token_id, record.document_token_id}
    for pair in record.token_pairs or []:
        ids.add(pair.get("alert_token_id"))
        ids.add(pair.get("document_token_id"))
    ids.discard(None)
    return ids


class RecordStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------
    def upsert_case(
        self,
        case_number: str,
        server_address: str,
        *,
        status: str = "preparing",
        metadata: dict[str, Any] | None = None,
    ) -> Case:
        if status not in CASE_STATUSES:
            raise ValueError(f"Unknown case status: {status}")
        case = self.db.scalar(
            select(Case).where(Case.case_number == case_number, Case.server_address == server_address)
        )
        if case is None:
            case = Case(case_number=case_number, server_address=server_address, status=status)
            self.db.add(case)
        else:
            case.status = status
        if metadata:
            case.metadata_info = {**(case.metadata_info or {}), **metadata}
        self.db.flush()
        return case

    def get_case(self, case_number: str, server_address: str) -> Case | None:
        return self.db.scalar(
            select(Case).where(Case.case_number == case_number, Case.server_address == server_address)
        )

    # ------------------------------------------------------------------
    # Service records
    # ------------------------------------------------------------------
    def upsert_service_record(
        self,
        case_number: str,
        server_address: str,
        *,
        recipients: Any,
        alert_token_id: int | None = None,
        document_token_id: int | None = None,
        token_pairs: Iterable[dict[str, Any]] | None = None,
        transaction_hash: str | None = None,
        ipfs_hash: str | None = None,
        encryption_key: str | None = None,
        page_count: int | None = None,
        served_at: datetime | None = None,
        source: str = "issuance",
        case_id: int | None = None,
    ) -> CaseServiceRecord:
        """Insert or update the single record for (case_number, server_address)."""
        case_number = (case_number or "").strip()
        if not case_number:
            raise ValueError("case_number is required")
        if source not in RECORD_SOURCES:
            raise ValueError(f"Unknown record source: {source}")
        recipients = validate_recipients(recipients)
        pairs = _validate_pairs(token_pairs)

        record = self.db.scalar(
            select(CaseServiceRecord).where(
                CaseServiceRecord.case_number == case_number,
                CaseServiceRecord.server_address == server_address,
            )
        )
        if record is None:
            record = CaseServiceRecord(case_number=case_number, server_address=server_address, source=source)
            self.db.add(record)
        record.recipients = recipients
        if pairs is not None:
            record.token_pairs = pairs
        if alert_token_id is not None:
            record.alert_token_id = int(alert_token_id)
        if document_token_id is not None:
            record.document_token_id = int(document_token_id)
        if transaction_hash is not None:
            record.transaction_hash = transaction_hash
        if ipfs_hash is not None:
            record.ipfs_hash = ipfs_hash
        if encryption_key is not None:
            record.encryption_key = encryption_key
        if page_count is not None:
            record.page_count = max(1, int(page_count))
        if case_id is not None:
            record.case_id = case_id
        record.served_at = served_at or record.served_at or datetime.now(timezone.utc)
        self.db.flush()
        logger.info(
            "service_record_upsert case=%s server=%s alert=%s document=%s source=%s",
            case_number,
            server_address,
            record.alert_token_id,
            record.document_token_id,
            source,
        )
        return record

    def set_recipients(self, record: CaseServiceRecord, recipients: Any) -> CaseServiceRecord:
        record.recipients = validate_recipients(recipients)
        self.db.flush()
        return record

    def find_by_case_number(self, case_number: str, server_address: str | None = None) -> list[CaseServiceRecord]:
        stmt = select(CaseServiceRecord).where(CaseServiceRecord.case_number == case_number)
        if server_address:
            stmt = stmt.where(CaseServiceRecord.server_address == server_address)
        return list(self.db.execute(stmt.order_by(CaseServiceRecord.id)).scalars().all())

    def find_by_recipient(self, address: str) -> list[CaseServiceRecord]:
        # JSON text pre-filter, exact membership check in Python.
        stmt = (
            select(CaseServiceRecord)
            .where(cast(CaseServiceRecord.recipients, String).contains(address))
            .order_by(CaseServiceRecord.served_at.desc(), CaseServiceRecord.id.desc())
        )
        rows = self.db.execute(stmt).scalars().all()
        return [row for row in rows if address in (row.recipients or [])]

    def find_by_server(self, server_address: str) -> list[CaseServiceRecord]:
        stmt = (
            select(CaseServiceRecord)
            .where(CaseServiceRecord.server_address == server_address)
            .order_by(CaseServiceRecord.served_at.desc(), CaseServiceRecord.id.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def find_by_token_id(self, token_id: int) -> CaseServiceRecord | None:
        record = self.db.scalar(
            select(CaseServiceRecord).where(
                or_(
                    CaseServiceRecord.alert_token_id == token_id,
                    CaseServiceRecord.document_token_id == token_id,
                )
            )
        )
        if record is not None:
            return record
        stmt = select(CaseServiceRecord).where(
            cast(CaseServiceRecord.token_pairs, String).contains(str(token_id))
        )
        for row in self.db.execute(stmt).scalars().all():
            if token_id in _pair_tokens(row):
                return row
        return None

    def existing_alert_ids(self, alert_ids: Iterable[int]) -> set[int]:
        wanted = {int(i) for i in alert_ids}
        if not wanted:
            return set()
        found = set(
            self.db.execute(
                select(CaseServiceRecord.alert_token_id).where(CaseServiceRecord.alert_token_id.in_(wanted))
            )
            .scalars()
            .all()
        )
        missing = wanted - found
        if missing:
            stmt = select(CaseServiceRecord).where(CaseServiceRecord.token_pairs.is_not(None))
            for row in self.db.execute(stmt).scalars().all():
                for pair in row.token_pairs or []:
                    if pair.get("alert_token_id") in missing:
                        found.add(pair["alert_token_id"])
        return found

    def mark_accepted(self, record: CaseServiceRecord, accepted_at: datetime | None = None) -> CaseServiceRecord:
        record.accepted = True
        record.accepted_at = accepted_at or datetime.now(timezone.utc)
        self.db.flush()
        return record

    def accept_notice(
        self,
        token_id: int,
        recipient: str,
        *,
        transaction_hash: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> CaseServiceRecord | None:
        """Record a recipient's acceptance of the notice holding ``token_id``.

        The record is flagged accepted once every recipient on it has accepted.
        Returns None for an unknown token; raises ValueError when ``recipient``
        was not served that token.
        """
        record = self.find_by_token_id(token_id)
        if record is None:
            return None
        alert_id = alert_id_for(record, token_id)
        if record.token_pairs:
            pair = next((p for p in record.token_pairs if p["alert_token_id"] == alert_id), None)
            served = pair is not None and pair["recipient"] == recipient
        else:
            # Records written without pairs share one token pair across recipients.
            served = recipient in (record.recipients or [])
        if not served:
            raise ValueError(f"{recipient} was not served token {token_id}")

        self.log_event(
            record.case_number,
            "accept",
            alert_token_id=alert_id,
            recipient=recipient,
            actor=recipient,
            transaction_hash=transaction_hash,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"token_id": token_id},
        )
        alert_ids = [p["alert_token_id"] for p in record_pairs(record)]
        accepted_by = set(
            self.db.execute(
                select(ServiceEvent.recipient_address).where(
                    ServiceEvent.event_type == "accept",
                    ServiceEvent.alert_token_id.in_(alert_ids),
                )
            )
            .scalars()
            .all()
        )
        if not record.accepted and set(record.recipients or []) <= accepted_by:
            self.mark_accepted(record)
        logger.info("notice_accepted case=%s alert=%s recipient=%s", record.case_number, alert_id, recipient)
        return record

    # ------------------------------------------------------------------
    # Service events
    # ------------------------------------------------------------------
    def log_event(
        self,
        case_number: str,
        event_type: str,
        *,
        alert_token_id: int | None = None,
        recipient: str | None = None,
        actor: str | None = None,
        transaction_hash: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        if not (case_number or "").strip():
            raise ValueError("case_number is required")
        if recipient is not None and not is_valid_address(recipient):
            raise ValueError(f"Invalid recipient address: {recipient!r}")
        event = ServiceEvent(
            case_number=case_number.strip(),
            event_type=event_type,
            alert_token_id=alert_token_id,
            recipient_address=recipient,
            actor_address=actor,
            transaction_hash=transaction_hash,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        self.db.add(event)
        self.db.flush()
        return event

    def events_for_case(self, case_number: str) -> list[ServiceEvent]:
        stmt = (
            select(ServiceEvent)
            .where(ServiceEvent.case_number == case_number)
            .order_by(ServiceEvent.created_at, ServiceEvent.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def events_for_alert(self, alert_token_id: int) -> list[ServiceEvent]:
        stmt = (
            select(ServiceEvent)
            .where(ServiceEvent.alert_token_id == alert_token_id)
            .order_by(ServiceEvent.created_at, ServiceEvent.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def events_for_recipient(self, address: str, limit: int = 100) -> list[ServiceEvent]:
        stmt = (
            select(ServiceEvent)
            .where(ServiceEvent.recipient_address == address)
            .order_by(ServiceEvent.created_at.desc(), ServiceEvent.id.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def case_stats(self, case_number: str) -> dict[str, Any]:
        recipients = pair_recipients(
            {"recipient": r} for record in self.find_by_case_number(case_number) for r in record.recipients or []
        )
        events = self.events_for_case(case_number)
        viewed = {e.recipient_address for e in events if e.event_type in VIEW_EVENTS}
        accepted = {e.recipient_address for e in events if e.event_type == "accept"}
        return {
            "case_number": case_number,
            "total_recipients": len(recipients),
            "viewed": len(viewed & set(recipients)),
            "accepted": len(accepted & set(recipients)),
            "events": len(events),
            "last_activity_at": events[-1].created_at if events else None,
        }

    # ------------------------------------------------------------------
    # Process servers
    # ------------------------------------------------------------------
    def register_server(
        self,
        wallet_address: str,
        agency_name: str,
        *,
        contact_email: str | None = None,
        phone: str | None = None,
        license_number: str | None = None,
        jurisdictions: list[str] | None = None,
        status: str = "pending",
        server_id: int | None = None,
    ) -> ProcessServer:
        if not is_valid_address(wallet_address):
            raise ValueError(f"Invalid wallet address: {wallet_address!r}")
        if not (agency_name or "").strip():
            raise ValueError("agency_name is required")
        if status not in SERVER_STATUSES:
            raise ValueError(f"Unknown server status: {status}")
        server = self.db.get(ProcessServer, wallet_address)
        if server is None:
            server = ProcessServer(wallet_address=wallet_address, agency_name=agency_name.strip(), status=status)
            self.db.add(server)
        else:
            server.agency_name = agency_name.strip()
        server.contact_email = contact_email
        server.phone = phone
        server.license_number = license_number
        server.jurisdictions = list(jurisdictions or [])
        if server_id is not None:
            server.server_id = server_id
        self.db.flush()
        return server

    def get_server(self, wallet_address: str) -> ProcessServer | None:
        return self.db.get(ProcessServer, wallet_address)

    def set_server_status(self, wallet_address: str, status: str) -> ProcessServer | None:
        if status not in SERVER_STATUSES:
            raise ValueError(f"Unknown server status: {status}")
        server = self.db.get(ProcessServer, wallet_address)
        if server is None:
            return None
        server.status = status
        self.db.flush()
        return server

    def list_servers(self, status: str | None = None) -> list[ProcessServer]:
        stmt = select(ProcessServer).order_by(ProcessServer.created_at, ProcessServer.wallet_address)
        if status:
            stmt = stmt.where(ProcessServer.status == status)
        return list(self.db.execute(stmt).scalars().all())

    def is_serving_server(self, wallet_address: str) -> bool:
        server = self.db.get(ProcessServer, wallet_address)
        return server is not None and server.status in SERVING_STATUSES
