"""Shared API helpers for route handlers.

Tenant identity arrives in the ``X-Tenant-ID`` header; authenticating the
caller happens in front of this service.  Every lookup goes through the
tenant so a foreign connection id is indistinguishable from a missing one.
"""

from typing import Annotated

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from models import Connection


def get_tenant_id(
    x_tenant_id: Annotated[str, Header(alias="X-Tenant-ID", min_length=1)],
) -> str:
    """Dependency returning the caller's tenant id."""
    return x_tenant_id


def get_connection_or_404(db: Session, tenant_id: str, connection_id: str) -> Connection:
    """Fetch a tenant's connection or raise 404.

    Args:
        db: Database session.
        tenant_id: Tenant from the request header.
        connection_id: Connection primary key.

    Raises:
        HTTPException: 404 if the connection doesn't exist for this tenant.
    """
    connection = (
        db.query(Connection)
        .filter(Connection.tenant_id == tenant_id, Connection.id == connection_id)
        .first()
    )
    if not connection:
        raise HTTPException(status_code=404, detail="Connection not found")
    return connection
