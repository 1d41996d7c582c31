"""Repair off-chain service records from authoritative chain state.

Two scan modes:

``ownership``
    Walks token ids ``start..min(end, totalSupply)`` and reads ``ownerOf`` for
    each. Alert ids follow the pinned contract's pairing rule (odd ids, with
    the Document token at ``alert_id + 1``).
``events``
    Pages the contract's confirmed mint ``Transfer`` events and pairs mints
    per transaction in emission order, the same way issuance reads receipts.

Missing alerts get a synthesized record; rows whose recipients disagree with
the chain are updated in place. Running the job twice inserts nothing new.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from itertools import groupby
from typing import Callable, Iterable, Iterator

from sqlalchemy.exc import SQLAlchemyError

from blockserved.core.chain_constants import ALERT_TOKEN_PARITY, DOCUMENT_TOKEN_OFFSET, RECOVERED_CASE_PREFIX
from blockserved.core.context import NoticeContext
from blockserved.core.ledger import LedgerError
from blockserved.core.notice_contract import MintedNotice, pair_mints
from blockserved.db.models import CaseServiceRecord
from blockserved.services.records import RecordStore

logger = logging.getLogger(__name__)

RECONCILE_MODES = ("ownership", "events")


@dataclass
class ReconciliationReport:
    mode: str = "ownership"
    scanned: int = 0
    inserted: list[int] = field(default_factory=list)
    updated: list[int] = field(default_factory=list)
    unchanged: int = 0
    skipped: list[int] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "mode": self.mode,
            "scanned": self.scanned,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def recovered_case_number(alert_token_id: int) -> str:
    return f"{RECOVERED_CASE_PREFIX}{alert_token_id:06d}"


def is_alert_token(token_id: int) -> bool:
    return token_id % 2 == ALERT_TOKEN_PARITY


def _owned_notices(
    context: NoticeContext,
    report: ReconciliationReport,
    start: int,
    end: int,
    pause: Callable[[], None],
) -> Iterator[MintedNotice]:
    first = start if is_alert_token(start) else start + 1
    for alert_id in range(first, end + 1, 2):
        report.scanned += 1
        try:
            owner = context.contract.owner_of(alert_id)
        except (LedgerError, ValueError) as exc:
            detail = getattr(exc, "detail", None) or str(exc)
            logger.warning("reconcile_owner_read_failed token_id=%s detail=%s", alert_id, detail)
            report.skipped.append(alert_id)
            report.errors.append({"token_id": alert_id, "error": str(exc), "detail": detail})
            pause()
            continue
        pause()
        if context.contract.is_contract_address(owner):
            continue
        yield MintedNotice(
            alert_token_id=alert_id,
            document_token_id=alert_id + DOCUMENT_TOKEN_OFFSET,
            recipient=owner,
            tx_id="",
        )


def _event_notices(context: NoticeContext, report: ReconciliationReport, start: int, end: int | None) -> Iterator[MintedNotice]:
    events = context.contract.mint_events()
    for _tx_id, group in groupby(events, key=lambda e: e.tx_id):
        for notice in pair_mints(list(group)):
            report.scanned += 1
            if notice.alert_token_id < start or (end is not None and notice.alert_token_id > end):
                continue
            if context.contract.is_contract_address(notice.recipient):
                continue
            yield notice


def _find_alert_record(store: RecordStore, alert_token_id: int) -> CaseServiceRecord | None:
    record = store.find_by_token_id(alert_token_id)
    if record is None:
        return None
    if record.alert_token_id == alert_token_id:
        return record
    for pair in record.token_pairs or []:
        if pair.get("alert_token_id") == alert_token_id:
            return record
    return None


def _apply(store: RecordStore, notice: MintedNotice, server_address: str, report: ReconciliationReport) -> None:
    record = _find_alert_record(store, notice.alert_token_id)
    if record is None:
        record = store.upsert_service_record(
            recovered_case_number(notice.alert_token_id),
            server_address,
            recipients=[notice.recipient],
            alert_token_id=notice.alert_token_id,
            document_token_id=notice.document_token_id,
            transaction_hash=notice.tx_id or None,
            source="reconciliation",
        )
        _log_reconciled(store, record.case_number, notice, "inserted", [])
        report.inserted.append(notice.alert_token_id)
        return

    previous = list(record.recipients or [])
    pairs = record.token_pairs or []
    if len(pairs) > 1:
        fixed = [
            {**pair, "recipient": notice.recipient} if pair.get("alert_token_id") == notice.alert_token_id else dict(pair)
            for pair in pairs
        ]
        if fixed == pairs:
            report.unchanged += 1
            return
        record.token_pairs = fixed
        store.set_recipients(record, [p["recipient"] for p in fixed])
    else:
        if previous == [notice.recipient]:
            report.unchanged += 1
            return
        if pairs:
            record.token_pairs = [{**pairs[0], "recipient": notice.recipient}]
        store.set_recipients(record, [notice.recipient])
    _log_reconciled(store, record.case_number, notice, "updated", previous)
    logger.info("reconcile_recipient_updated alert=%s recipient=%s record=%s", notice.alert_token_id, notice.recipient, record.id)
    report.updated.append(notice.alert_token_id)


def _log_reconciled(
    store: RecordStore,
    case_number: str,
    notice: MintedNotice,
    action: str,
    previous: list[str],
) -> None:
    store.log_event(
        case_number,
        "reconciled",
        alert_token_id=notice.alert_token_id,
        recipient=notice.recipient,
        transaction_hash=notice.tx_id or None,
        details={"action": action, "previous_recipients": previous},
    )


def _batched(items: Iterable[MintedNotice], size: int) -> Iterator[list[MintedNotice]]:
    batch: list[MintedNotice] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def reconcile(
    context: NoticeContext,
    store: RecordStore,
    start: int = 1,
    end: int | None = None,
    *,
    mode: str = "ownership",
    batch_size: int | None = None,
    server_address: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconciliationReport:
    """Scan chain state and insert or correct service records.

    Writes are committed once per batch; a batch that fails to commit is rolled
    back and listed in ``report.errors`` while the scan moves on.
    """
    if mode not in RECONCILE_MODES:
        raise ValueError(f"Unknown reconcile mode: {mode}")
    if start < 1:
        raise ValueError("start must be >= 1")
    report = ReconciliationReport(mode=mode)
    batch_size = batch_size or context.settings.reconcile_batch_size
    server = server_address or context.sender or context.contract.address
    delay = context.settings.reconcile_rate_limit

    def pause() -> None:
        if delay > 0:
            sleep(delay)

    started = time.perf_counter()
    if mode == "ownership":
        try:
            supply = context.contract.total_supply()
        except LedgerError as exc:
            logger.error("reconcile_total_supply_failed detail=%s", exc.detail)
            report.errors.append({"token_id": None, "error": str(exc), "detail": exc.detail})
            return report
        last = supply if end is None else min(end, supply)
        logger.info("reconcile_start mode=ownership start=%s end=%s total_supply=%s", start, last, supply)
        notices = _owned_notices(context, report, start, last, pause)
    else:
        logger.info("reconcile_start mode=events start=%s end=%s", start, end)
        notices = _event_notices(context, report, start, end)

    try:
        for batch in _batched(notices, batch_size):
            try:
                for notice in batch:
                    _apply(store, notice, server, report)
                store.commit()
            except (SQLAlchemyError, ValueError) as exc:
                store.db.rollback()
                ids = [n.alert_token_id for n in batch]
                logger.error("reconcile_batch_failed alerts=%s reason=%s", ids, exc)
                report.inserted = [i for i in report.inserted if i not in ids]
                report.updated = [i for i in report.updated if i not in ids]
                report.errors.append({"token_ids": ids, "error": str(exc)})
    except LedgerError as exc:
        logger.error("reconcile_event_scan_failed detail=%s", exc.detail)
        report.errors.append({"token_id": None, "error": str(exc), "detail": exc.detail})

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "reconcile_done mode=%s scanned=%s inserted=%s updated=%s unchanged=%s skipped=%s latency_ms=%s",
        mode,
        report.scanned,
        len(report.inserted),
        len(report.updated),
        report.unchanged,
        len(report.skipped),
        elapsed_ms,
    )
    return report
