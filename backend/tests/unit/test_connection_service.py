"""Tests for the connection lifecycle service."""

import pytest

from models import Connection, CredentialRecord
from services.connection_service import ConnectionService
from services.exceptions import ConnectionNotFoundError
from tests.fixtures import OTHER_TENANT_ID, TENANT_ID, create_connection, seed_tokens


@pytest.fixture
def service(registry, vault, clock):
    return ConnectionService(provider_registry=registry, vault=vault, clock=clock)


def test_create_connection_is_pending(db, service):
    connection = service.create_connection(db, TENANT_ID, "mock", "Savings")

    assert connection.status == "pending"
    assert connection.display_name == "Savings"
    assert db.query(Connection).count() == 1


def test_create_with_unknown_provider(db, service):
    with pytest.raises(ValueError):
        service.create_connection(db, TENANT_ID, "nobank")
    assert db.query(Connection).count() == 0


def test_list_is_tenant_scoped(db, service):
    mine = create_connection(db)
    create_connection(db, tenant_id=OTHER_TENANT_ID)

    assert [c.id for c in service.list_connections(db, TENANT_ID)] == [mine.id]


def test_get_foreign_connection(db, service, connection):
    with pytest.raises(ConnectionNotFoundError):
        service.get_connection(db, OTHER_TENANT_ID, connection.id)


def test_authorization_url_state(db, service, connection):
    url, state = service.get_authorization_url(db, TENANT_ID, connection.id)
    assert state == connection.id
    assert url.endswith(f"state={connection.id}")

    _, custom = service.get_authorization_url(db, TENANT_ID, connection.id, state="abc")
    assert custom == "abc"


def test_revoke(db, service, vault, connection, clock):
    seed_tokens(db, vault, connection)

    revoked = service.revoke_connection(db, TENANT_ID, connection.id)

    assert revoked.status == "revoked"
    assert revoked.revoked_at is not None
    assert db.query(CredentialRecord).count() == 0
    assert db.query(Connection).count() == 1


class TestUpdateSchedule:
    def test_updates_given_fields_only(self, db, service, connection):
        updated = service.update_schedule(db, TENANT_ID, connection.id, sync_schedule="hourly")

        assert updated.sync_schedule == "hourly"
        assert updated.sync_enabled is True
        assert updated.sync_priority == 0

        updated = service.update_schedule(
            db, TENANT_ID, connection.id, sync_enabled=False, sync_priority=3
        )

        assert updated.sync_schedule == "hourly"
        assert updated.sync_enabled is False
        assert updated.sync_priority == 3

    def test_unknown_schedule(self, db, service, connection):
        with pytest.raises(ValueError, match="Unknown sync schedule"):
            service.update_schedule(db, TENANT_ID, connection.id, sync_schedule="fortnightly")

    def test_foreign_connection(self, db, service, connection):
        with pytest.raises(ConnectionNotFoundError):
            service.update_schedule(db, OTHER_TENANT_ID, connection.id, sync_schedule="daily")
