"""Case and service record endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from blockserved.core.ledger import is_valid_address
from blockserved.db.session import get_db
from blockserved.schemas.notices import (
    AcceptRequest,
    ActivityRequest,
    CaseStatsResponse,
    ServiceCompleteRequest,
    ServiceEventResponse,
    ServiceRecordResponse,
    TokenJourneyResponse,
)
from blockserved.services.records import RecordStore, alert_id_for

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cases"])


def _require_address(address: str) -> str:
    if not is_valid_address(address):
        raise HTTPException(status_code=400, detail=f"Invalid TRON address: {address}")
    return address


@router.get("/recipient/{address}", response_model=list[ServiceRecordResponse])
def list_by_recipient(address: str, db: Session = Depends(get_db)) -> list[ServiceRecordResponse]:
    records = RecordStore(db).find_by_recipient(_require_address(address))
    return [ServiceRecordResponse.model_validate(r) for r in records]


@router.get("/server/{address}", response_model=list[ServiceRecordResponse])
def list_by_server(address: str, db: Session = Depends(get_db)) -> list[ServiceRecordResponse]:
    records = RecordStore(db).find_by_server(_require_address(address))
    return [ServiceRecordResponse.model_validate(r) for r in records]


@router.get("/token/{token_id}", response_model=ServiceRecordResponse)
def get_by_token(token_id: int, db: Session = Depends(get_db)) -> ServiceRecordResponse:
    record = RecordStore(db).find_by_token_id(token_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No service record for token")
    return ServiceRecordResponse.model_validate(record)


def _client_info(request: Request) -> tuple[str | None, str | None]:
    host = request.client.host if request.client else None
    return host, request.headers.get("user-agent")


@router.post("/activity", response_model=ServiceEventResponse, status_code=201)
def log_activity(payload: ActivityRequest, request: Request, db: Session = Depends(get_db)) -> ServiceEventResponse:
    store = RecordStore(db)
    ip_address, user_agent = _client_info(request)
    try:
        event = store.log_event(
            payload.case_number,
            payload.activity_type,
            alert_token_id=payload.alert_token_id,
            recipient=payload.recipient_address,
            actor=payload.recipient_address,
            ip_address=ip_address,
            user_agent=user_agent,
            details=payload.details,
        )
        store.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))
    return ServiceEventResponse.model_validate(event)


@router.get("/recipient/{address}/activity", response_model=list[ServiceEventResponse])
def recipient_activity(address: str, limit: int = 100, db: Session = Depends(get_db)) -> list[ServiceEventResponse]:
    events = RecordStore(db).events_for_recipient(_require_address(address), limit=max(1, min(limit, 500)))
    return [ServiceEventResponse.model_validate(e) for e in events]


@router.get("/token/{token_id}/journey", response_model=TokenJourneyResponse)
def token_journey(token_id: int, db: Session = Depends(get_db)) -> TokenJourneyResponse:
    store = RecordStore(db)
    record = store.find_by_token_id(token_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No service record for token")
    alert_id = alert_id_for(record, token_id)
    events = store.events_for_alert(alert_id) if alert_id is not None else []
    return TokenJourneyResponse(
        token_id=token_id,
        alert_token_id=alert_id,
        record=ServiceRecordResponse.model_validate(record),
        events=[ServiceEventResponse.model_validate(e) for e in events],
    )


@router.post("/token/{token_id}/accept", response_model=ServiceRecordResponse)
def accept_notice(
    token_id: int,
    payload: AcceptRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ServiceRecordResponse:
    store = RecordStore(db)
    ip_address, user_agent = _client_info(request)
    try:
        record = store.accept_notice(
            token_id,
            payload.recipient_address,
            transaction_hash=payload.transaction_hash,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if record is None:
            raise HTTPException(status_code=404, detail="No service record for token")
        store.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=403, detail=str(exc))
    db.refresh(record)
    return ServiceRecordResponse.model_validate(record)

@router.get("/{case_number}", response_model=list[ServiceRecordResponse])
def get_case_records(case_number: str, server_address: str | None = None, db: Session = Depends(get_db)):
    records = RecordStore(db).find_by_case_number(case_number, server_address)
    if not records:
        raise HTTPException(status_code=404, detail="Case not found")
    return [ServiceRecordResponse.model_validate(r) for r in records]


@router.put("/{case_number}/service-complete", response_model=ServiceRecordResponse)
def service_complete(
    case_number: str,
    payload: ServiceCompleteRequest,
    db: Session = Depends(get_db),
) -> ServiceRecordResponse:
    store = RecordStore(db)
    try:
        case = store.upsert_case(case_number, payload.server_address, status="served")
        record = store.upsert_service_record(
            case_number,
            payload.server_address,
            recipients=payload.recipients,
            alert_token_id=payload.alert_token_id,
            document_token_id=payload.document_token_id,
            transaction_hash=payload.transaction_hash,
            ipfs_hash=payload.ipfs_hash,
            encryption_key=payload.encryption_key,
            page_count=payload.page_count,
            served_at=payload.served_at,
            source="service_update",
            case_id=case.id,
        )
        if payload.accepted:
            store.mark_accepted(record, payload.accepted_at)
        store.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="Token id already recorded for another case") from exc
    logger.info("service_complete case=%s server=%s alert=%s", case_number, payload.server_address, record.alert_token_id)
    db.refresh(record)
    return ServiceRecordResponse.model_validate(record)


@router.get("/{case_number}/activity", response_model=list[ServiceEventResponse])
def case_activity(case_number: str, db: Session = Depends(get_db)) -> list[ServiceEventResponse]:
    return [ServiceEventResponse.model_validate(e) for e in RecordStore(db).events_for_case(case_number)]


@router.get("/{case_number}/stats", response_model=CaseStatsResponse)
def case_stats(case_number: str, db: Session = Depends(get_db)) -> CaseStatsResponse:
    store = RecordStore(db)
    if not store.find_by_case_number(case_number):
        raise HTTPException(status_code=404, detail="Case not found")
    return CaseStatsResponse(**store.case_stats(case_number))
