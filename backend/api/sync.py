"""Sync API endpoints: trigger a sync and inspect job history and health."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from api.helpers import get_connection_or_404, get_tenant_id
from database import get_db, get_session_local
from schemas.sync import (
    ConnectionHealthResponse,
    SyncJobResponse,
    SyncRequest,
    SyncSummaryResponse,
)
from services.exceptions import ConnectionNotFoundError, ConnectionNotSyncableError
from services.job_recorder import JobRecorder
from services.sync_orchestrator import SyncOptions, SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connections", tags=["sync"])

# Dependency injection for testing
_sync_orchestrator_override: Optional[SyncOrchestrator] = None
_default_orchestrator: Optional[SyncOrchestrator] = None


def get_sync_orchestrator() -> SyncOrchestrator:
    """Get the process-wide SyncOrchestrator, allowing for test overrides."""
    global _default_orchestrator
    if _sync_orchestrator_override is not None:
        return _sync_orchestrator_override
    if _default_orchestrator is None:
        _default_orchestrator = SyncOrchestrator(session_factory=get_session_local())
    return _default_orchestrator


def set_sync_orchestrator_override(orchestrator: Optional[SyncOrchestrator]) -> None:
    """Set a SyncOrchestrator override for testing."""
    global _sync_orchestrator_override
    _sync_orchestrator_override = orchestrator


def get_job_recorder() -> JobRecorder:
    return JobRecorder()


@router.post("/{connection_id}/sync", response_model=SyncSummaryResponse)
def trigger_sync(
    connection_id: str,
    request: SyncRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Run a sync for one connection and return its summary.

    Pipeline failures are reported in the summary (status ``failed``), not
    as HTTP errors.

    Raises:
        HTTPException:
            - 404 Not Found: Connection does not exist for this tenant
            - 409 Conflict: Sync already in progress, or reconnect required
    """
    request = request or SyncRequest()
    options = SyncOptions(
        sync_accounts=request.sync_accounts,
        sync_transactions=request.sync_transactions,
        date_range_start=request.date_range_start,
        date_range_end=request.date_range_end,
        account_native_ids=request.account_ids,
    )
    try:
        summary = orchestrator.run_sync(tenant_id, connection_id, options, trigger="manual")
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except ConnectionNotSyncableError as e:
        raise HTTPException(
            status_code=409,
            detail=f"Connection is {e.status}; reconnect required",
        )

    if summary.already_in_progress:
        raise HTTPException(
            status_code=409,
            detail="Sync already in progress. Please wait for the current sync to complete.",
        )
    return summary


@router.get("/{connection_id}/jobs", response_model=list[SyncJobResponse])
def list_jobs(
    connection_id: str,
    limit: int = Query(20, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    recorder: JobRecorder = Depends(get_job_recorder),
):
    """List a connection's sync jobs, most recent first."""
    get_connection_or_404(db, tenant_id, connection_id)
    return recorder.list_jobs(db, tenant_id, connection_id, limit=limit)


@router.get("/{connection_id}/jobs/{job_id}", response_model=SyncJobResponse)
def get_job(
    connection_id: str,
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    recorder: JobRecorder = Depends(get_job_recorder),
):
    job = recorder.get_job(db, tenant_id, connection_id, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return job


@router.get("/{connection_id}/health", response_model=ConnectionHealthResponse)
def get_connection_health(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    recorder: JobRecorder = Depends(get_job_recorder),
):
    """Return the connection's health score and latest job."""
    try:
        health = recorder.get_connection_health(db, tenant_id, connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    return ConnectionHealthResponse.model_validate(health)
