"""Process server registration and approval."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from blockserved.db.session import get_db
from blockserved.schemas.notices import ProcessServerCreate, ProcessServerResponse, ProcessServerStatusUpdate
from blockserved.services.records import RecordStore

router = APIRouter(tags=["process-servers"])


@router.post("/", response_model=ProcessServerResponse, status_code=201)
def register_server(payload: ProcessServerCreate, db: Session = Depends(get_db)) -> ProcessServerResponse:
    store = RecordStore(db)
    if store.get_server(payload.wallet_address) is not None:
        raise HTTPException(status_code=400, detail=f"Process server {payload.wallet_address} already registered")
    try:
        server = store.register_server(
            payload.wallet_address,
            payload.agency_name,
            contact_email=payload.contact_email,
            phone=payload.phone,
            license_number=payload.license_number,
            jurisdictions=payload.jurisdictions,
            server_id=payload.server_id,
        )
        store.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))
    db.refresh(server)
    return ProcessServerResponse.model_validate(server)


@router.get("/", response_model=list[ProcessServerResponse])
def list_servers(status: str | None = None, db: Session = Depends(get_db)) -> list[ProcessServerResponse]:
    return [ProcessServerResponse.model_validate(s) for s in RecordStore(db).list_servers(status)]


@router.get("/{wallet_address}", response_model=ProcessServerResponse)
def get_server(wallet_address: str, db: Session = Depends(get_db)) -> ProcessServerResponse:
    server = RecordStore(db).get_server(wallet_address)
    if server is None:
        raise HTTPException(status_code=404, detail="Process server not found")
    return ProcessServerResponse.model_validate(server)


@router.put("/{wallet_address}/status", response_model=ProcessServerResponse)
def set_server_status(
    wallet_address: str,
    payload: ProcessServerStatusUpdate,
    db: Session = Depends(get_db),
) -> ProcessServerResponse:
    store = RecordStore(db)
    server = store.set_server_status(wallet_address, payload.status)
    if server is None:
        raise HTTPException(status_code=404, detail="Process server not found")
    store.commit()
    db.refresh(server)
    return ProcessServerResponse.model_validate(server)
