"""
QuickBooks API Endpoints

Provides endpoints for:
- OAuth flow (connect/callback) and connection listing
- Sync jobs: start, process, status, list, cancel, verify
- CDC trigger and the progress stream
- Reconciliation actions on invoices
"""
import json
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session, sessionmaker

from qbsync.config import AppConfig
from qbsync.core.database import get_db, get_session_factory
from qbsync.core.exceptions import QuickBooksSyncError
from qbsync.schemas.reconciliation import (
    BulkUpdateRequest, BulkUpdateResponse, CreateInvoiceRequest, CreateInvoiceResponse,
)
from qbsync.schemas.sync import (
    CDCRequest, CDCResponse, QuickBooksConnectionResponse, SyncCancelRequest, SyncJobResponse,
    SyncProcessRequest, SyncProcessResponse, SyncStartRequest, SyncStartResponse,
    SyncStatusResponse, VerifyResponse,
)
from qbsync.services.cdc_service import CDCService
from qbsync.services.checkpoint_service import CheckpointService
from qbsync.services.quickbooks_importer import QuickBooksImporter
from qbsync.services.quickbooks_oauth_service import QuickBooksOAuthService
from qbsync.services.reconciliation_service import ReconciliationService
from qbsync.services.sync_event_service import SyncEventService
from qbsync.services.sync_job_service import SyncJobService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/quickbooks", tags=["quickbooks"])

# Initialize services
config = AppConfig()
oauth_service = QuickBooksOAuthService(config.quickbooks)
checkpoint_service = CheckpointService(config.sync)
event_service = SyncEventService(config.sync)
importer = QuickBooksImporter(config.quickbooks)
cdc_service = CDCService(config, oauth_service, checkpoint_service)
sync_job_service = SyncJobService(config, oauth_service, importer, cdc_service, checkpoint_service, event_service)
reconciliation_service = ReconciliationService(config, oauth_service)


def _http_error(e: QuickBooksSyncError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


# OAuth

@router.get("/connect")
def connect_quickbooks(state: Optional[str] = Query(None)):
    """
    Initiate QuickBooks OAuth flow

    Returns authorization URL for user to visit
    """
    auth_url = oauth_service.get_authorization_url(state=state)
    return {
        "authorization_url": auth_url,
        "message": "Please visit the authorization URL to connect your QuickBooks account",
    }


@router.get("/callback")
def quickbooks_callback(
    code: str = Query(...),
    realmId: str = Query(...),
    state: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """
    Handle QuickBooks OAuth callback

    This endpoint is called by QuickBooks after user authorizes the app
    """
    try:
        connection = oauth_service.exchange_code_for_tokens(db, code, realmId)
    except QuickBooksSyncError as e:
        logger.error(f"OAuth callback failed for realm_id {realmId}: {e.message}")
        raise _http_error(e)

    return {
        "message": "QuickBooks connected",
        "realm_id": connection.realm_id,
        "connection_id": str(connection.id),
    }


@router.get("/connections", response_model=List[QuickBooksConnectionResponse])
def list_connections(db: Session = Depends(get_db)):
    """
    List active QuickBooks connections
    """
    return oauth_service.list_active_connections(db)


# Sync jobs

@router.post("/sync/start", response_model=SyncStartResponse)
def start_sync(request: SyncStartRequest, db: Session = Depends(get_db)):
    """
    Create a sync job; entity jobs are picked up by /sync/process
    """
    try:
        job = sync_job_service.start(
            db,
            request.realm_id,
            sync_type=request.sync_type,
            start_date=request.start_date,
            end_date=request.end_date,
            entities=request.entities,
        )
    except QuickBooksSyncError as e:
        raise _http_error(e)

    return SyncStartResponse(
        job_id=job.id,
        status=job.status,
        total_entities=job.total_entities,
        entities=list(job.entities_to_sync),
    )


@router.post("/sync/process", response_model=SyncProcessResponse)
def process_sync(request: Optional[SyncProcessRequest] = None, db: Session = Depends(get_db)):
    """
    Drain pending entity jobs for up to the time budget

    Safe to call repeatedly and concurrently (e.g. from a scheduler).
    """
    time_budget = request.time_budget if request else None
    return sync_job_service.process(db, time_budget=time_budget)


@router.get("/sync/status/{job_id}", response_model=SyncStatusResponse)
def get_sync_status(job_id: UUID, db: Session = Depends(get_db)):
    try:
        return sync_job_service.status(db, job_id)
    except QuickBooksSyncError as e:
        raise _http_error(e)


@router.get("/sync/jobs", response_model=List[SyncJobResponse])
def list_sync_jobs(
    realm_id: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return sync_job_service.list_jobs(db, realm_id=realm_id, limit=limit)


@router.post("/sync/cancel", response_model=SyncJobResponse)
def cancel_sync(request: SyncCancelRequest, db: Session = Depends(get_db)):
    try:
        return sync_job_service.cancel(db, request.job_id)
    except QuickBooksSyncError as e:
        raise _http_error(e)


@router.get("/sync/verify", response_model=VerifyResponse)
def verify_sync(realm_id: str = Query(...), db: Session = Depends(get_db)):
    """
    Compare QuickBooks record counts with local counts per entity type
    """
    try:
        return sync_job_service.verify(db, realm_id)
    except QuickBooksSyncError as e:
        raise _http_error(e)


@router.post("/sync/cdc", response_model=CDCResponse)
def run_cdc(request: CDCRequest, db: Session = Depends(get_db)):
    """
    Run one CDC cycle from the realm's checkpoint
    """
    try:
        return cdc_service.run(db, request.realm_id)
    except QuickBooksSyncError as e:
        raise _http_error(e)


@router.get("/sync/stream/{job_id}")
def stream_sync_progress(job_id: UUID, session_factory: sessionmaker = Depends(get_session_factory)):
    """
    Server-sent events for one sync job: connected, progress..., complete|error, done
    """
    def event_source():
        for message in event_service.stream(session_factory, job_id):
            yield f"data: {json.dumps(message, default=str)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


# Reconciliation

@router.post("/invoices/create", response_model=CreateInvoiceResponse)
def create_invoice(request: CreateInvoiceRequest, db: Session = Depends(get_db)):
    """
    Create a QuickBooks invoice for a reconciliation record with status 'no_qb_invoice'
    """
    try:
        return reconciliation_service.create_invoice(db, request.reconciliation_id)
    except QuickBooksSyncError as e:
        raise _http_error(e)


@router.patch("/invoices/bulk-update", response_model=BulkUpdateResponse)
def bulk_update_invoices(request: BulkUpdateRequest, db: Session = Depends(get_db)):
    """
    Update one or more QuickBooks invoices so they add up to the lease amount
    """
    try:
        return reconciliation_service.bulk_update_invoices(
            db, request.reconciliation_id, request.invoice_ids, request.lt_amount
        )
    except QuickBooksSyncError as e:
        raise _http_error(e)
