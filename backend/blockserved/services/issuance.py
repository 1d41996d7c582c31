"""Notice issuance: encrypt, pin, price, mint and record.

Every stage runs strictly after the previous one. The encoded contract call is
persisted before signing and the transaction id before broadcasting, so a
failed or interrupted attempt can be resumed through :func:`retry_submission`
without re-encrypting, re-uploading or minting a second time.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import pdfplumber
from sqlalchemy.exc import SQLAlchemyError

from blockserved.core.context import NoticeContext
from blockserved.core.ledger import LedgerError, is_valid_address
from blockserved.core.notice_contract import BatchNotice, MintedNotice, NoticeContract
from blockserved.db.models import PreparedSubmission
from blockserved.services.encryption import EncryptionError, encrypt_document
from blockserved.services.energy import EnergyCheck, EnergyRentalError, burn_cost_trx, ensure_energy, estimate_energy
from blockserved.services.fees import FeeQuote, quote
from blockserved.services.notice_metadata import build_alert_metadata, metadata_uri
from blockserved.services.records import RecordStore, merge_token_pairs, pair_recipients, record_pairs
from blockserved.services.storage import StorageError

logger = logging.getLogger(__name__)


class IssuanceValidationError(ValueError):
    pass


class SubmissionReverted(LedgerError):
    pass


class ConfirmationTimeout(LedgerError):
    pass


@dataclass
class NoticeRequest:
    case_number: str
    recipients: list[str]
    document: bytes
    filename: str = "document.pdf"
    content_type: str = "application/pdf"
    notice_type: str = "Legal Notice"
    issuing_agency: str = ""
    case_details: str = ""
    legal_rights: str = ""
    sponsor_fees: bool = False
    page_count: int | None = None


@dataclass
class IssuanceResult:
    ok: bool
    reason: str | None = None
    tx_ids: list[str] = field(default_factory=list)
    notices: list[MintedNotice] = field(default_factory=list)
    fee: FeeQuote | None = None
    submission_id: int | None = None
    record_ids: list[int] = field(default_factory=list)
    ipfs_hash: str | None = None
    record_write_failed: bool = False
    energy: EnergyCheck | None = None
    detail: Any = None

    @classmethod
    def failure(cls, reason: str, detail: Any = None, **kwargs) -> "IssuanceResult":
        return cls(ok=False, reason=reason, detail=detail, **kwargs)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_request(store: RecordStore, sender: str | None, request: NoticeRequest) -> NoticeRequest:
    if not sender:
        raise IssuanceValidationError("No signing wallet configured")
    case_number = (request.case_number or "").strip()
    if not case_number:
        raise IssuanceValidationError("Case number is required")
    if not request.recipients:
        raise IssuanceValidationError("At least one recipient is required")
    for recipient in request.recipients:
        if not is_valid_address(recipient):
            raise IssuanceValidationError(f"Invalid recipient address: {recipient!r}")
    if len(set(request.recipients)) != len(request.recipients):
        raise IssuanceValidationError("Duplicate recipient addresses")
    if not request.document:
        raise IssuanceValidationError("Document is empty")
    if not store.is_serving_server(sender):
        raise IssuanceValidationError(f"Process server {sender} is not registered or not approved")
    request.case_number = case_number
    return request


def count_pages(document: bytes) -> int:
    if not document.startswith(b"%PDF"):
        return 1
    try:
        with pdfplumber.open(io.BytesIO(document)) as pdf:
            return max(1, len(pdf.pages))
    except Exception as exc:
        logger.warning("page_count_failed reason=%s", exc)
        return 1


# ---------------------------------------------------------------------------
# Submission lifecycle
# ---------------------------------------------------------------------------
def _reverted(info: dict[str, Any]) -> bool:
    receipt = info.get("receipt") or {}
    return info.get("result") == "FAILED" or receipt.get("result") not in (None, "SUCCESS")


def _sign_and_store(context: NoticeContext, store: RecordStore, submission: PreparedSubmission) -> None:
    transaction = context.contract.build_call(
        submission.server_address,
        submission.function_signature,
        submission.parameter_hex,
        call_value=submission.call_value,
        fee_limit=submission.fee_limit,
    )
    signed = context.client.sign(transaction)
    submission.tx_id = signed["txID"]
    submission.signed_transaction = signed
    submission.expiration_ms = int((signed.get("raw_data") or {}).get("expiration") or 0) or None
    submission.status = "submitted"
    submission.attempts = (submission.attempts or 0) + 1
    submission.last_error = None
    store.commit()
    logger.info("submission_signed id=%s tx_id=%s attempt=%s", submission.id, submission.tx_id, submission.attempts)


def _broadcast_and_confirm(context: NoticeContext, store: RecordStore, submission: PreparedSubmission) -> dict:
    started = time.perf_counter()
    context.client.broadcast(submission.signed_transaction)
    info = context.client.wait_for_confirmation(
        submission.tx_id,
        timeout=context.settings.confirmation_timeout,
        poll_interval=context.settings.poll_interval,
    )
    if info is None:
        submission.last_error = "confirmation timeout"
        store.commit()
        raise ConfirmationTimeout("Transaction not confirmed before timeout", detail=submission.tx_id)
    if _reverted(info):
        submission.status = "failed"
        submission.last_error = str(info.get("resMessage") or (info.get("receipt") or {}).get("result"))
        store.commit()
        raise SubmissionReverted("Transaction reverted", detail={"tx_id": submission.tx_id, "info": info})
    submission.status = "confirmed"
    store.commit()
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info("submission_confirmed id=%s tx_id=%s latency_ms=%s", submission.id, submission.tx_id, elapsed_ms)
    return info


def _record_failure(store: RecordStore, submission: PreparedSubmission, exc: LedgerError) -> None:
    submission.last_error = f"{exc}: {exc.detail}" if exc.detail else str(exc)
    if not submission.tx_id or isinstance(exc, SubmissionReverted):
        submission.status = "failed"
    store.commit()


def _lookup_landed(context: NoticeContext, submission: PreparedSubmission) -> dict[str, Any] | None:
    """Chain info for the submission's transaction once it is in a block, else None."""
    try:
        info = context.client.get_transaction_info(submission.tx_id)
    except LedgerError as exc:
        logger.warning("landed_lookup_failed id=%s tx_id=%s error=%s", submission.id, submission.tx_id, exc)
        return None
    if info and info.get("blockNumber"):
        return info
    return None


def _prepare(
    store: RecordStore,
    request: NoticeRequest,
    sender: str,
    notices: list[BatchNotice],
    *,
    fee: FeeQuote,
    fee_limit: int,
    ipfs_hash: str,
    passphrase: str,
    uri: str,
) -> PreparedSubmission:
    if len(notices) == 1:
        signature, parameter = NoticeContract.encode_serve_notice(notices[0])
    else:
        signature, parameter = NoticeContract.encode_serve_notice_batch(notices)
    submission = PreparedSubmission(
        case_number=request.case_number,
        server_address=sender,
        recipients=[n.recipient for n in notices],
        function_signature=signature,
        parameter_hex=parameter,
        call_value=fee.total * len(notices),
        fee_limit=fee_limit,
        ipfs_hash=ipfs_hash,
        encryption_key=passphrase,
        metadata_uri=uri,
        payload={
            "page_count": request.page_count,
            "notice_type": request.notice_type,
            "issuing_agency": request.issuing_agency,
            "sponsor_fees": request.sponsor_fees,
            "fee": fee.as_dict(),
        },
        status="prepared",
        attempts=0,
    )
    store.db.add(submission)
    store.commit()
    return submission


def _run_submission(context: NoticeContext, store: RecordStore, submission: PreparedSubmission) -> list[MintedNotice]:
    _sign_and_store(context, store, submission)
    info = _broadcast_and_confirm(context, store, submission)
    return context.contract.minted_notices(info)


# ---------------------------------------------------------------------------
# Off-chain side effect
# ---------------------------------------------------------------------------
def _write_records(
    store: RecordStore,
    submission: PreparedSubmission,
    notices: list[MintedNotice],
    event_type: str = "served",
) -> list[int]:
    payload = submission.payload or {}
    new_pairs = [
        {
            "alert_token_id": n.alert_token_id,
            "document_token_id": n.document_token_id,
            "recipient": n.recipient,
        }
        for n in notices
    ]
    existing_case = store.get_case(submission.case_number, submission.server_address)
    existing = store.find_by_case_number(submission.case_number, submission.server_address)
    record_before = existing[0] if existing else None
    # A retried per-recipient submission adds to the pairs already recorded for the case.
    pairs = merge_token_pairs(record_pairs(record_before), new_pairs)
    transactions = set((existing_case.metadata_info or {}).get("transactions") or []) if existing_case else set()
    transactions.update(n.tx_id for n in notices)
    case = store.upsert_case(
        submission.case_number,
        submission.server_address,
        status="served",
        metadata={
            "notice_type": payload.get("notice_type"),
            "issuing_agency": payload.get("issuing_agency"),
            "transactions": sorted(transactions),
        },
    )
    first = pairs[0]
    record = store.upsert_service_record(
        submission.case_number,
        submission.server_address,
        recipients=pair_recipients(pairs),
        alert_token_id=first["alert_token_id"],
        document_token_id=first["document_token_id"],
        token_pairs=pairs,
        transaction_hash=(record_before.transaction_hash if record_before else None) or notices[0].tx_id,
        ipfs_hash=submission.ipfs_hash,
        encryption_key=submission.encryption_key,
        page_count=payload.get("page_count") or 1,
        source="issuance",
        case_id=case.id,
    )
    for notice in notices:
        store.log_event(
            submission.case_number,
            event_type,
            alert_token_id=notice.alert_token_id,
            recipient=notice.recipient,
            actor=submission.server_address,
            transaction_hash=notice.tx_id,
            details={"document_token_id": notice.document_token_id},
        )
    store.commit()
    return [record.id]


def _finish(
    store: RecordStore,
    submission: PreparedSubmission,
    notices: list[MintedNotice],
    result: IssuanceResult,
    event_type: str = "served",
) -> IssuanceResult:
    result.notices = notices
    result.tx_ids = sorted({n.tx_id for n in notices}) or ([submission.tx_id] if submission.tx_id else [])
    if not notices:
        result.ok = False
        result.reason = "no_mint_events"
        result.detail = {"tx_id": submission.tx_id}
        logger.error("issuance_no_mints case=%s tx_id=%s", submission.case_number, submission.tx_id)
        return result
    try:
        result.record_ids = _write_records(store, submission, notices, event_type)
    except (SQLAlchemyError, ValueError) as exc:
        store.db.rollback()
        result.record_write_failed = True
        logger.error(
            "record_write_failed case=%s tx_ids=%s alerts=%s reason=%s",
            submission.case_number,
            result.tx_ids,
            [n.alert_token_id for n in notices],
            exc,
        )
    result.ok = True
    return result


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------
def issue_notice(
    context: NoticeContext,
    store: RecordStore,
    request: NoticeRequest,
    *,
    allow_burn: bool = False,
) -> IssuanceResult:
    """Serve ``request`` to every recipient.

    One recipient uses ``serveNotice``. Several use ``serveNoticeBatch`` and
    fall back to one ``serveNotice`` per recipient when the batch call is
    rejected or reverts.
    """
    sender = context.sender
    try:
        validate_request(store, sender, request)
    except IssuanceValidationError as exc:
        logger.info("issuance_rejected case=%s reason=%s", request.case_number, exc)
        return IssuanceResult.failure("validation_error", str(exc))

    logger.info("issuance_start case=%s recipients=%s sender=%s", request.case_number, len(request.recipients), sender)
    if request.page_count is None:
        request.page_count = count_pages(request.document)

    try:
        encrypted = encrypt_document(request.document)
    except EncryptionError as exc:
        return IssuanceResult.failure("encryption_failed", str(exc))

    tags = {
        "caseNumber": request.case_number,
        "serverAddress": sender,
        "type": "legal_document",
        "encrypted": "true",
    }
    try:
        ipfs_hash = context.storage.upload_bytes(
            f"{request.case_number}.enc",
            encrypted.ciphertext,
            tags=tags,
        )
    except StorageError as exc:
        return IssuanceResult.failure("upload_failed", str(exc))

    fee = quote(context.contract, sender, request.sponsor_fees, retry_delay=context.settings.fee_retry_delay)
    result = IssuanceResult(ok=False, fee=fee, ipfs_hash=ipfs_hash)

    notices: list[BatchNotice] = []
    try:
        for recipient in request.recipients:
            metadata = build_alert_metadata(
                request.case_number,
                recipient,
                ipfs_hash,
                notice_type=request.notice_type,
                issuing_agency=request.issuing_agency,
            )
            uri = metadata_uri(
                metadata,
                mode=context.settings.metadata_mode,
                storage=context.storage,
                tags={**tags, "type": "metadata"},
            )
            notices.append(
                BatchNotice(
                    recipient=recipient,
                    encrypted_ipfs=ipfs_hash,
                    encryption_key=encrypted.passphrase,
                    issuing_agency=request.issuing_agency,
                    notice_type=request.notice_type,
                    case_number=request.case_number,
                    case_details=request.case_details,
                    legal_rights=request.legal_rights,
                    sponsor_fees=bool(request.sponsor_fees),
                    metadata_uri=uri,
                )
            )
    except StorageError as exc:
        result.reason, result.detail = "upload_failed", str(exc)
        return result

    required = estimate_energy(len(notices), len(encrypted.ciphertext))
    try:
        energy = ensure_energy(context.client, sender, required, context.energy_market)
    except EnergyRentalError as exc:
        if not allow_burn:
            result.reason, result.detail = "energy_rental_failed", str(exc)
            return result
        energy = EnergyCheck(required=required, available=0)
    result.energy = energy
    if not energy.sufficient and not allow_burn:
        result.reason = "insufficient_energy"
        result.detail = {
            "required": energy.required,
            "available": energy.available,
            "estimated_burn_trx": burn_cost_trx(energy.deficit),
        }
        logger.warning("issuance_insufficient_energy case=%s detail=%s", request.case_number, result.detail)
        return result

    fee_limit = context.settings.single_fee_limit if len(notices) == 1 else context.settings.batch_fee_limit
    submission = _prepare(
        store,
        request,
        sender,
        notices,
        fee=fee,
        fee_limit=fee_limit,
        ipfs_hash=ipfs_hash,
        passphrase=encrypted.passphrase,
        uri=notices[0].metadata_uri,
    )
    result.submission_id = submission.id

    try:
        minted = _run_submission(context, store, submission)
    except ConfirmationTimeout as exc:
        _record_failure(store, submission, exc)
        result.reason, result.detail = "confirmation_timeout", exc.detail
        result.tx_ids = [submission.tx_id]
        return result
    except LedgerError as exc:
        _record_failure(store, submission, exc)
        info = None
        if submission.tx_id and not isinstance(exc, SubmissionReverted):
            info = _lookup_landed(context, submission)
            if info and not _reverted(info):
                logger.warning(
                    "batch_landed_despite_error case=%s tx_id=%s error=%s",
                    request.case_number,
                    submission.tx_id,
                    exc,
                )
                submission.status = "confirmed"
                submission.last_error = None
                store.commit()
                return _finish(store, submission, context.contract.minted_notices(info), result)
        dead = not submission.tx_id or isinstance(exc, SubmissionReverted) or bool(info and _reverted(info))
        if len(notices) == 1 or not dead:
            # Outcome unknown: keep the submission retryable rather than risk a second mint.
            result.reason, result.detail = "ledger_error", exc.detail or str(exc)
            result.tx_ids = [submission.tx_id] if submission.tx_id else []
            return result
        submission.status = "failed"
        submission.payload = {**(submission.payload or {}), "superseded": True}
        store.commit()
        logger.warning(
            "batch_rejected case=%s recipients=%s detail=%s falling back to sequential",
            request.case_number,
            len(notices),
            exc.detail,
        )
        return _issue_sequentially(context, store, request, sender, notices, fee, ipfs_hash, encrypted.passphrase, result)

    logger.info("issuance_done case=%s tx_id=%s pairs=%s", request.case_number, submission.tx_id, len(minted))
    return _finish(store, submission, minted, result)


def _issue_sequentially(
    context: NoticeContext,
    store: RecordStore,
    request: NoticeRequest,
    sender: str,
    notices: list[BatchNotice],
    fee: FeeQuote,
    ipfs_hash: str,
    passphrase: str,
    result: IssuanceResult,
) -> IssuanceResult:
    minted: list[MintedNotice] = []
    last: PreparedSubmission | None = None
    failures: list[dict[str, Any]] = []
    for notice in notices:
        submission = _prepare(
            store,
            request,
            sender,
            [notice],
            fee=fee,
            fee_limit=context.settings.single_fee_limit,
            ipfs_hash=ipfs_hash,
            passphrase=passphrase,
            uri=notice.metadata_uri,
        )
        last = submission
        try:
            minted.extend(_run_submission(context, store, submission))
        except LedgerError as exc:
            _record_failure(store, submission, exc)
            failures.append({"recipient": notice.recipient, "submission_id": submission.id, "error": str(exc)})
            logger.error("sequential_serve_failed case=%s recipient=%s error=%s", request.case_number, notice.recipient, exc)

    result.submission_id = last.id if last else result.submission_id
    if failures:
        result.detail = {"failed": failures}
    if not minted:
        result.reason = "ledger_error"
        return result
    result = _finish(store, last, minted, result)
    if failures:
        result.reason = "partial_failure"
    return result


def retry_submission(context: NoticeContext, store: RecordStore, submission_id: int) -> IssuanceResult:
    """Resume a prepared submission without minting twice.

    The stored transaction id is checked on chain first: a confirmed success
    only finishes the record write, an unexpired unknown transaction is
    rebroadcast as-is, and a reverted or expired one is re-signed from the
    same encoded parameters.
    """
    submission = store.db.get(PreparedSubmission, submission_id)
    if submission is None:
        return IssuanceResult.failure("not_found", f"Submission {submission_id} not found")
    if (submission.payload or {}).get("superseded"):
        return IssuanceResult.failure("superseded", "Batch was replaced by per-recipient submissions", submission_id=submission.id)
    fee_info = (submission.payload or {}).get("fee") or {}
    result = IssuanceResult(ok=False, submission_id=submission.id, ipfs_hash=submission.ipfs_hash)
    if fee_info:
        result.fee = FeeQuote(
            service_fee=fee_info.get("service_fee", 0),
            creation_fee=fee_info.get("creation_fee", 0),
            sponsorship_fee=fee_info.get("sponsorship_fee", 0),
            exempt=bool(fee_info.get("exempt")),
            sponsored=bool(fee_info.get("sponsored")),
            is_default=bool(fee_info.get("is_default")),
        )

    try:
        info = context.client.get_transaction_info(submission.tx_id) if submission.tx_id else None
        if info and not _reverted(info):
            logger.info("retry_already_confirmed id=%s tx_id=%s", submission.id, submission.tx_id)
            submission.status = "confirmed"
            store.commit()
            minted = context.contract.minted_notices(info)
        else:
            expired = bool(submission.expiration_ms) and submission.expiration_ms <= int(time.time() * 1000)
            if submission.signed_transaction and not info and not expired:
                logger.info("retry_rebroadcast id=%s tx_id=%s", submission.id, submission.tx_id)
                submission.attempts = (submission.attempts or 0) + 1
                store.commit()
                info = _broadcast_and_confirm(context, store, submission)
                minted = context.contract.minted_notices(info)
            else:
                logger.info(
                    "retry_resign id=%s previous_tx=%s reverted=%s expired=%s",
                    submission.id,
                    submission.tx_id,
                    bool(info),
                    expired,
                )
                minted = _run_submission(context, store, submission)
    except LedgerError as exc:
        _record_failure(store, submission, exc)
        result.tx_ids = [submission.tx_id] if submission.tx_id else []
        result.reason = "confirmation_timeout" if isinstance(exc, ConfirmationTimeout) else "ledger_error"
        result.detail = exc.detail or str(exc)
        return result

    return _finish(store, submission, minted, result, "retry")
