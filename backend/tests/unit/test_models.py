"""Unit tests for SQLAlchemy models."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from models import (
    Account,
    CredentialRecord,
    StagedTransaction,
    SyncJob,
    Transaction,
)
from models.utils import as_utc, to_money
from tests.fixtures import TENANT_ID, create_connection

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _account(connection, native_id="A1"):
    return Account(
        tenant_id=TENANT_ID,
        connection_id=connection.id,
        native_id=native_id,
        name="Checking",
    )


def test_connection_defaults(db):
    connection = create_connection(db, status="pending")

    assert connection.health_score == 100
    assert connection.consecutive_failures == 0
    assert connection.is_syncable is False
    connection.status = "active"
    assert connection.is_syncable is True


def test_connection_schedule_defaults(db):
    connection = create_connection(db)

    assert connection.sync_schedule == "12hours"
    assert connection.sync_enabled is True
    assert connection.sync_priority == 0
    assert connection.sync_interval == timedelta(hours=12)
    assert connection.next_sync_at is None


class TestConnectionIsDue:
    def test_never_synced_is_due(self, db):
        assert create_connection(db).is_due(T0) is True

    def test_due_once_interval_has_passed(self, db):
        connection = create_connection(
            db, sync_schedule="hourly", last_sync_at=T0 - timedelta(minutes=59)
        )

        assert connection.is_due(T0) is False
        assert connection.is_due(T0 + timedelta(minutes=1)) is True
        assert as_utc(connection.next_sync_at) == T0 + timedelta(minutes=1)

    def test_manual_and_disabled_never_due(self, db):
        manual = create_connection(db, sync_schedule="manual")
        disabled = create_connection(db, sync_enabled=False)

        for connection in (manual, disabled):
            assert connection.sync_interval is None
            assert connection.is_due(T0, timedelta(minutes=1)) is False

    def test_interval_override(self, db):
        connection = create_connection(db, last_sync_at=T0 - timedelta(minutes=30))

        assert connection.is_due(T0) is False
        assert connection.is_due(T0, timedelta(minutes=15)) is True

    def test_error_connection_never_due(self, db):
        connection = create_connection(db, status="error")

        assert connection.is_due(T0) is False
        assert connection.next_sync_at is None


def test_account_unique_per_connection(db, connection):
    db.add(_account(connection))
    db.commit()

    db.add(_account(connection))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_same_native_id_on_other_connection_allowed(db, connection):
    other = create_connection(db)
    db.add_all([_account(connection), _account(other)])
    db.commit()

    assert db.query(Account).count() == 2


def test_transaction_unique_per_connection(db, connection):
    account = _account(connection)
    db.add(account)
    db.flush()
    for _ in range(2):
        db.add(
            Transaction(
                tenant_id=TENANT_ID,
                connection_id=connection.id,
                account_id=account.id,
                native_id="T1",
                amount=Decimal("-1.00"),
            )
        )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_only_one_running_job_per_connection(db, connection):
    db.add(SyncJob(tenant_id=TENANT_ID, connection_id=connection.id, status="completed"))
    db.add(SyncJob(tenant_id=TENANT_ID, connection_id=connection.id, status="running"))
    db.commit()

    db.add(SyncJob(tenant_id=TENANT_ID, connection_id=connection.id, status="running"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_job_terminal_statuses():
    assert SyncJob(status="partial").is_terminal
    assert not SyncJob(status="running").is_terminal


class TestStagedIsPending:
    def _staged(self, **kwargs):
        return StagedTransaction(
            native_id="T1",
            account_native_id="A1",
            amount=Decimal("1"),
            booked_date=date(2024, 5, 1),
            **kwargs,
        )

    def test_never_reconciled(self):
        assert self._staged(changed_at=T0).is_pending

    def test_reconciled_after_change(self):
        assert not self._staged(changed_at=T0, reconciled_at=T0 + timedelta(seconds=1)).is_pending

    def test_changed_after_reconcile_mixed_naive(self):
        staged = self._staged(
            changed_at=T0 + timedelta(hours=1),
            reconciled_at=T0.replace(tzinfo=None),
        )
        assert staged.is_pending


def test_credential_repr_hides_tokens():
    record = CredentialRecord(
        connection_id="c1", access_token_encrypted="gAAAA-secret", tenant_id=TENANT_ID
    )

    assert "secret" not in repr(record)
    assert "c1" in repr(record)


def test_as_utc():
    assert as_utc(None) is None
    assert as_utc(datetime(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    plus_two = timezone(timedelta(hours=2))
    assert as_utc(datetime(2024, 1, 1, 2, tzinfo=plus_two)) == datetime(
        2024, 1, 1, tzinfo=timezone.utc
    )


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, None),
        (Decimal("-25.123456"), Decimal("-25.1235")),
        (Decimal("0.00005"), Decimal("0.0001")),
        (Decimal("12"), Decimal("12.0000")),
    ],
)
def test_to_money_rounds_to_column_scale(value, expected):
    assert to_money(value) == expected
