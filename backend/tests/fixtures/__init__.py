"""Test fixtures and sample data."""
import pytest
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet
from sqlalchemy.orm import Session

from integrations.provider_protocol import TokenSet
from models import Connection
from services.credential_vault import CredentialVault

TENANT_ID = "tenant-1"
OTHER_TENANT_ID = "tenant-2"


def create_connection(
    db: Session,
    tenant_id: str = TENANT_ID,
    provider_name: str = "mock",
    status: str = "active",
    **kwargs,
) -> Connection:
    """Insert a connection and commit it."""
    connection = Connection(
        tenant_id=tenant_id,
        provider_name=provider_name,
        display_name=kwargs.pop("display_name", "Test Bank"),
        status=status,
        **kwargs,
    )
    db.add(connection)
    db.commit()
    return connection


def seed_tokens(
    db: Session,
    vault: CredentialVault,
    connection: Connection,
    access_token: str = "access-0",
    refresh_token: str | None = "refresh-0",
    expires_at: datetime | None = None,
) -> None:
    """Store a token set for ``connection`` (valid for a year by default)."""
    if expires_at is None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=365)
    vault.store_tokens(
        db,
        connection.tenant_id,
        connection.id,
        TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        ),
    )
    db.commit()


@pytest.fixture
def fernet():
    """A fresh Fernet key per test."""
    return Fernet(Fernet.generate_key())


@pytest.fixture
def connection(db):
    """An active connection for the default tenant."""
    return create_connection(db)
