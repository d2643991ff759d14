"""Provider usage endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.helpers import get_tenant_id
from api.sync import get_sync_orchestrator
from database import get_db
from schemas.usage import ProviderUsageResponse
from services.sync_orchestrator import SyncOrchestrator

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("", response_model=list[ProviderUsageResponse])
def get_provider_usage(
    days: int = Query(7, ge=1, le=90),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Return the tenant's provider API calls and fetched records per day."""
    return orchestrator.job_recorder.provider_usage(db, tenant_id=tenant_id, days=days)
