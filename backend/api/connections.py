"""Connection lifecycle API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from api.helpers import get_connection_or_404, get_tenant_id
from api.sync import get_sync_orchestrator
from database import get_db
from integrations.exceptions import ProviderError
from schemas.connection import (
    AuthorizationAccepted,
    AuthorizationCallback,
    AuthorizationUrlResponse,
    ConnectionCreate,
    ConnectionResponse,
    ConnectionScheduleUpdate,
)
from services.connection_service import ConnectionService
from services.exceptions import ConnectionNotFoundError, ConnectionNotSyncableError
from services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connections", tags=["connections"])


def get_connection_service(
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> ConnectionService:
    """Share the orchestrator's registry and vault with the connection service."""
    return ConnectionService(
        provider_registry=orchestrator.registry, vault=orchestrator.vault
    )


@router.post("", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
def create_connection(
    body: ConnectionCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    service: ConnectionService = Depends(get_connection_service),
):
    """Create a connection in ``pending`` status, awaiting authorization."""
    try:
        return service.create_connection(db, tenant_id, body.provider_name, body.display_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("", response_model=list[ConnectionResponse])
def list_connections(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    service: ConnectionService = Depends(get_connection_service),
):
    return service.list_connections(db, tenant_id)


@router.get("/{connection_id}", response_model=ConnectionResponse)
def get_connection(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return get_connection_or_404(db, tenant_id, connection_id)


@router.delete("/{connection_id}", response_model=ConnectionResponse)
def revoke_connection(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    service: ConnectionService = Depends(get_connection_service),
):
    """Revoke a connection and destroy its tokens; imported data is kept."""
    try:
        return service.revoke_connection(db, tenant_id, connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")


@router.patch("/{connection_id}/schedule", response_model=ConnectionResponse)
def update_schedule(
    connection_id: str,
    body: ConnectionScheduleUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    service: ConnectionService = Depends(get_connection_service),
):
    """Change how often the scheduler syncs this connection."""
    try:
        return service.update_schedule(
            db,
            tenant_id,
            connection_id,
            sync_schedule=body.sync_schedule,
            sync_enabled=body.sync_enabled,
            sync_priority=body.sync_priority,
        )
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{connection_id}/authorize-url", response_model=AuthorizationUrlResponse)
def get_authorization_url(
    connection_id: str,
    state: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    service: ConnectionService = Depends(get_connection_service),
):
    """Return the provider URL the user visits to grant access.

    ``state`` defaults to the connection id so the redirect handler can
    route the returned code back to this connection.
    """
    try:
        url, state = service.get_authorization_url(db, tenant_id, connection_id, state=state)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        logger.warning("Authorization URL failed for %s: %s", connection_id, e)
        raise HTTPException(status_code=502, detail=f"Provider error: {e}")
    return AuthorizationUrlResponse(url=url, state=state)


@router.post(
    "/{connection_id}/authorization",
    response_model=AuthorizationAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
def complete_authorization(
    connection_id: str,
    body: AuthorizationCallback,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Exchange the authorization code and queue the first sync.

    Raises:
        HTTPException:
            - 404 Not Found: Connection does not exist for this tenant
            - 409 Conflict: Connection was revoked
            - 502 Bad Gateway: Provider rejected the exchange
    """
    try:
        orchestrator.complete_authorization(tenant_id, connection_id, body.code)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    except ConnectionNotSyncableError as e:
        raise HTTPException(status_code=409, detail=f"Connection is {e.status}")
    except ProviderError as e:
        logger.warning("Authorization failed for connection %s: %s", connection_id, e)
        raise HTTPException(status_code=502, detail=f"Provider error: {e}")
    return AuthorizationAccepted(connection_id=connection_id, status="active")
