"""Notice issuance, retry and reconciliation endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from blockserved.core.context import NoticeContext, get_context
from blockserved.db.session import get_db
from blockserved.schemas.notices import IssuanceResponse, ReconcileRequest
from blockserved.services import issuance
from blockserved.services.records import RecordStore
from blockserved.tasks import reconcile_notices as reconcile_notices_task

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notices"])

_FAILURE_STATUS = {
    "validation_error": 400,
    "not_found": 404,
    "superseded": 409,
    "insufficient_energy": 409,
    "encryption_failed": 500,
    "upload_failed": 502,
    "energy_rental_failed": 502,
    "ledger_error": 502,
    "no_mint_events": 502,
    "confirmation_timeout": 504,
}


def _to_response(result: issuance.IssuanceResult) -> IssuanceResponse:
    payload = IssuanceResponse.model_validate(
        {
            "ok": result.ok,
            "reason": result.reason,
            "tx_ids": result.tx_ids,
            "notices": [vars(n) for n in result.notices],
            "fee": result.fee.as_dict() if result.fee else None,
            "submission_id": result.submission_id,
            "record_ids": result.record_ids,
            "ipfs_hash": result.ipfs_hash,
            "record_write_failed": result.record_write_failed,
            "detail": result.detail,
        }
    )
    if not result.ok:
        raise HTTPException(
            status_code=_FAILURE_STATUS.get(result.reason or "", 500),
            detail=payload.model_dump(),
        )
    return payload


async def _issue(
    context: NoticeContext,
    db: Session,
    recipients: list[str],
    case_number: str,
    document: UploadFile,
    notice_type: str,
    issuing_agency: str,
    case_details: str,
    legal_rights: str,
    sponsor_fees: bool,
    allow_burn: bool,
) -> IssuanceResponse:
    content = await document.read()
    request = issuance.NoticeRequest(
        case_number=case_number,
        recipients=recipients,
        document=content,
        filename=document.filename or "document.pdf",
        content_type=document.content_type or "application/pdf",
        notice_type=notice_type,
        issuing_agency=issuing_agency,
        case_details=case_details,
        legal_rights=legal_rights,
        sponsor_fees=sponsor_fees,
    )
    result = await run_in_threadpool(issuance.issue_notice, context, RecordStore(db), request, allow_burn=allow_burn)
    return _to_response(result)


@router.post("/", response_model=IssuanceResponse, status_code=status.HTTP_201_CREATED)
async def issue_notice(
    recipient: str = Form(...),
    case_number: str = Form(...),
    document: UploadFile = File(...),
    notice_type: str = Form("Legal Notice"),
    issuing_agency: str = Form(""),
    case_details: str = Form(""),
    legal_rights: str = Form(""),
    sponsor_fees: bool = Form(False),
    allow_burn: bool = Form(False),
    context: NoticeContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> IssuanceResponse:
    return await _issue(
        context, db, [recipient], case_number, document,
        notice_type, issuing_agency, case_details, legal_rights, sponsor_fees, allow_burn,
    )


@router.post("/batch", response_model=IssuanceResponse, status_code=status.HTTP_201_CREATED)
async def issue_notice_batch(
    recipients: list[str] = Form(...),
    case_number: str = Form(...),
    document: UploadFile = File(...),
    notice_type: str = Form("Legal Notice"),
    issuing_agency: str = Form(""),
    case_details: str = Form(""),
    legal_rights: str = Form(""),
    sponsor_fees: bool = Form(False),
    allow_burn: bool = Form(False),
    context: NoticeContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> IssuanceResponse:
    return await _issue(
        context, db, recipients, case_number, document,
        notice_type, issuing_agency, case_details, legal_rights, sponsor_fees, allow_burn,
    )


@router.post("/submissions/{submission_id}/retry", response_model=IssuanceResponse)
def retry_submission(
    submission_id: int,
    context: NoticeContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> IssuanceResponse:
    result = issuance.retry_submission(context, RecordStore(db), submission_id)
    return _to_response(result)


@router.post("/reconcile", status_code=status.HTTP_202_ACCEPTED)
def reconcile(payload: ReconcileRequest):
    if payload.end is not None and payload.end < payload.start:
        raise HTTPException(status_code=400, detail="end must be >= start")
    try:
        task = reconcile_notices_task.delay(payload.start, payload.end, payload.mode)
    except Exception as exc:
        logger.error("reconcile_enqueue_failed reason=%s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return {"status": "queued", "task_id": task.id}
