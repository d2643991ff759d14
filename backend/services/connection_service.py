"""Connection service - lifecycle of tenant links to banking providers."""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from integrations.provider_registry import ProviderRegistry, get_provider_registry
from models import Connection
from models.connection import SYNC_SCHEDULE_MINUTES
from models.utils import utcnow
from services.credential_vault import CredentialVault
from services.exceptions import ConnectionNotFoundError

logger = logging.getLogger(__name__)


class ConnectionService:
    """Connection lifecycle and scheduling settings."""

    def __init__(
        self,
        provider_registry: Optional[ProviderRegistry] = None,
        vault: Optional[CredentialVault] = None,
        clock=utcnow,
    ):
        self._registry = provider_registry
        self._vault = vault
        self._clock = clock

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = get_provider_registry()
        return self._registry

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = CredentialVault(self.registry, clock=self._clock)
        return self._vault

    def create_connection(
        self,
        db: Session,
        tenant_id: str,
        provider_name: str,
        display_name: str | None = None,
    ) -> Connection:
        """Create a ``pending`` connection awaiting authorization.

        Raises:
            ValueError: If the provider is not configured.
        """
        # Raises ValueError for unknown/unconfigured providers
        self.registry.get_provider(provider_name)
        connection = Connection(
            tenant_id=tenant_id,
            provider_name=provider_name,
            display_name=display_name,
            status="pending",
        )
        db.add(connection)
        db.commit()
        db.refresh(connection)
        logger.info(
            "Created %s connection %s for tenant %s",
            provider_name,
            connection.id,
            tenant_id,
        )
        return connection

    def list_connections(self, db: Session, tenant_id: str) -> list[Connection]:
        return (
            db.query(Connection)
            .filter_by(tenant_id=tenant_id)
            .order_by(Connection.created_at)
            .all()
        )

    def get_connection(self, db: Session, tenant_id: str, connection_id: str) -> Connection:
        connection = (
            db.query(Connection)
            .filter_by(tenant_id=tenant_id, id=connection_id)
            .first()
        )
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def get_authorization_url(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        state: str | None = None,
    ) -> tuple[str, str]:
        """Build the provider authorization URL.

        Returns:
            ``(url, state)``; state defaults to the connection id.

        Raises:
            ConnectionNotFoundError: No such connection for this tenant.
            ValueError: If the provider is not configured.
            ProviderError: If the provider could not issue a URL.
        """
        connection = self.get_connection(db, tenant_id, connection_id)
        state = state or connection.id
        adapter = self.registry.get_provider(connection.provider_name)
        return adapter.get_authorization_url(state=state), state

    def revoke_connection(
        self, db: Session, tenant_id: str, connection_id: str
    ) -> Connection:
        """Revoke a connection and destroy its stored tokens.

        Imported accounts and transactions are kept.  A revoked
        connection is never synced again.
        """
        connection = self.get_connection(db, tenant_id, connection_id)
        self.vault.revoke(db, tenant_id, connection_id)
        connection.status = "revoked"
        connection.revoked_at = self._clock()
        db.commit()
        db.refresh(connection)
        logger.info("Revoked connection %s", connection_id)
        return connection

    def update_schedule(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        sync_schedule: str | None = None,
        sync_enabled: bool | None = None,
        sync_priority: int | None = None,
    ) -> Connection:
        """Change how the scheduler treats a connection.

        Arguments left as None keep their current value.

        Raises:
            ConnectionNotFoundError: No such connection for this tenant.
            ValueError: If ``sync_schedule`` is not a known schedule.
        """
        if sync_schedule is not None and sync_schedule not in SYNC_SCHEDULE_MINUTES:
            raise ValueError(
                f"Unknown sync schedule {sync_schedule!r}; "
                f"expected one of {', '.join(SYNC_SCHEDULE_MINUTES)}"
            )
        connection = self.get_connection(db, tenant_id, connection_id)
        if sync_schedule is not None:
            connection.sync_schedule = sync_schedule
        if sync_enabled is not None:
            connection.sync_enabled = sync_enabled
        if sync_priority is not None:
            connection.sync_priority = sync_priority
        db.commit()
        db.refresh(connection)
        logger.info(
            "Connection %s schedule: %s, enabled=%s, priority=%d",
            connection_id,
            connection.sync_schedule,
            connection.sync_enabled,
            connection.sync_priority,
        )
        return connection
