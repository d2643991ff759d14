"""Tests for the staging store: change classification and removal inference."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from integrations.provider_protocol import FetchWindow, TransactionBatch
from models import StagedAccount, StagedTransaction
from services.staging_service import StagingService
from tests.fixtures import TENANT_ID
from tests.fixtures.mocks import make_account, make_transaction


@pytest.fixture
def staging(clock):
    return StagingService(clock=clock)


@pytest.fixture
def window(clock):
    return FetchWindow(start=clock.now - timedelta(days=30), end=clock.now)


def _stage_txns(db, staging, connection, clock, window, transactions, **batch_kwargs):
    started = clock.now
    count = staging.stage_transactions(
        db,
        TENANT_ID,
        connection.id,
        TransactionBatch(transactions=transactions, **batch_kwargs),
        window,
        started,
    )
    db.commit()
    return count


def _mark_reconciled(db, clock):
    for model in (StagedAccount, StagedTransaction):
        for row in db.query(model).all():
            row.reconciled_at = clock.now
    db.commit()


def _txn(db, native_id) -> StagedTransaction:
    return db.query(StagedTransaction).filter_by(native_id=native_id).one()


class TestStageAccounts:
    def test_new_accounts_are_added(self, db, staging, connection, clock):
        count = staging.stage_accounts(
            db, TENANT_ID, connection.id, [make_account("A1"), make_account("A2")], clock.now
        )
        db.commit()

        assert count == 2
        rows = db.query(StagedAccount).all()
        assert {r.change_status for r in rows} == {"added"}
        assert all(r.raw_payload is not None for r in rows)

    def test_balance_change_is_modified(self, db, staging, connection, clock):
        staging.stage_accounts(db, TENANT_ID, connection.id, [make_account("A1")], clock.now)
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        staging.stage_accounts(
            db, TENANT_ID, connection.id, [make_account("A1", balance="750.00")], clock.now
        )
        db.commit()

        row = db.query(StagedAccount).one()
        assert row.change_status == "modified"
        assert row.balance == Decimal("750.00")
        assert row.revision == 2
        assert row.is_pending

    def test_redelivered_high_precision_balance_is_unchanged(
        self, db, staging, connection, clock
    ):
        for _ in range(3):
            staging.stage_accounts(
                db, TENANT_ID, connection.id, [make_account("A1", balance="1000.987654")], clock.now
            )
            db.commit()
            _mark_reconciled(db, clock)
            db.expire_all()
            clock.advance(hours=1)

        row = db.query(StagedAccount).one()
        assert row.revision == 1
        assert row.change_status == "unchanged"
        assert row.balance == Decimal("1000.9877")

    def test_missing_account_is_removed(self, db, staging, connection, clock):
        staging.stage_accounts(
            db, TENANT_ID, connection.id, [make_account("A1"), make_account("A2")], clock.now
        )
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        staging.stage_accounts(db, TENANT_ID, connection.id, [make_account("A1")], clock.now)
        db.commit()

        removed = db.query(StagedAccount).filter_by(native_id="A2").one()
        assert removed.change_status == "removed"
        assert removed.removed_at is not None
        assert db.query(StagedAccount).filter_by(native_id="A1").one().change_status == "unchanged"

    def test_empty_account_list_removes_nothing(self, db, staging, connection, clock):
        staging.stage_accounts(db, TENANT_ID, connection.id, [make_account("A1")], clock.now)
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        staging.stage_accounts(db, TENANT_ID, connection.id, [], clock.now)
        db.commit()

        assert db.query(StagedAccount).one().removed_at is None


class TestStageTransactions:
    def test_added_then_unchanged(self, db, staging, connection, clock, window):
        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])

        row = _txn(db, "T1")
        assert row.change_status == "unchanged"
        assert row.revision == 1
        assert not row.is_pending

    def test_redelivered_sub_cent_amount_is_unchanged(
        self, db, staging, connection, clock, window
    ):
        raw = {"id": "T1", "amount": {"unscaledValue": "-25123456", "scale": "6"}}
        for _ in range(4):
            _stage_txns(
                db, staging, connection, clock, window,
                [make_transaction("T1", amount="-25.123456", raw_payload=raw)],
            )
            _mark_reconciled(db, clock)
            # Compare against what storage hands back, not the session's copy
            db.expire_all()
            clock.advance(hours=1)

        row = _txn(db, "T1")
        assert row.revision == 1
        assert row.change_status == "unchanged"
        assert row.previous_payload is None
        assert row.amount == Decimal("-25.1235")
        assert row.raw_payload == raw

    def test_sub_cent_change_below_column_scale_is_unchanged(
        self, db, staging, connection, clock, window
    ):
        _stage_txns(
            db, staging, connection, clock, window, [make_transaction("T1", amount="-25.12341")]
        )
        _mark_reconciled(db, clock)
        db.expire_all()
        clock.advance(hours=1)

        _stage_txns(
            db, staging, connection, clock, window, [make_transaction("T1", amount="-25.12344")]
        )

        assert _txn(db, "T1").change_status == "unchanged"

    def test_description_change_is_modified(self, db, staging, connection, clock, window):
        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(
            db,
            staging,
            connection,
            clock,
            window,
            [make_transaction("T1", description="Corrected text", raw_payload={"v": 2})],
        )

        row = _txn(db, "T1")
        assert row.change_status == "modified"
        assert row.previous_payload == {"id": "T1"}
        assert row.raw_payload == {"v": 2}

    def test_whitespace_only_description_change_is_unchanged(
        self, db, staging, connection, clock, window
    ):
        _stage_txns(
            db, staging, connection, clock, window, [make_transaction("T1", description="Coffee Shop")]
        )
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(
            db, staging, connection, clock, window, [make_transaction("T1", description="COFFEE  SHOP")]
        )

        assert _txn(db, "T1").change_status == "unchanged"

    def test_unreconciled_addition_stays_added(self, db, staging, connection, clock, window):
        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])
        clock.advance(hours=1)

        _stage_txns(
            db, staging, connection, clock, window, [make_transaction("T1", amount="-30.00")]
        )

        row = _txn(db, "T1")
        assert row.change_status == "added"
        assert row.amount == Decimal("-30.00")

    def test_duplicates_in_batch_collapse_to_last(self, db, staging, connection, clock, window):
        count = _stage_txns(
            db,
            staging,
            connection,
            clock,
            window,
            [make_transaction("T1", amount="-1.00"), make_transaction("T1", amount="-2.00")],
        )

        assert count == 1
        assert _txn(db, "T1").amount == Decimal("-2.00")

    def test_absent_inside_window_is_removed(self, db, staging, connection, clock, window):
        _stage_txns(
            db, staging, connection, clock, window, [make_transaction("T1"), make_transaction("T2")]
        )
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])

        assert _txn(db, "T2").change_status == "removed"
        assert _txn(db, "T1").change_status == "unchanged"

    def test_absent_outside_window_is_kept(self, db, staging, connection, clock, window):
        old = make_transaction("OLD", booked_date=date(2023, 1, 15))
        wide = FetchWindow(start=datetime(2023, 1, 1, tzinfo=timezone.utc), end=clock.now)
        _stage_txns(db, staging, connection, clock, wide, [old, make_transaction("T1")])
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])

        assert _txn(db, "OLD").removed_at is None

    def test_absent_on_account_out_of_scope_is_kept(self, db, staging, connection, clock, window):
        _stage_txns(
            db,
            staging,
            connection,
            clock,
            window,
            [make_transaction("T1"), make_transaction("T9", account_native_id="A9")],
        )
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        scoped = FetchWindow(start=window.start, end=window.end, account_native_ids=["A1"])
        _stage_txns(db, staging, connection, clock, scoped, [make_transaction("T1")])

        assert _txn(db, "T9").removed_at is None

    def test_delta_batch_never_infers_removal(self, db, staging, connection, clock, window):
        _stage_txns(
            db, staging, connection, clock, window, [make_transaction("T1"), make_transaction("T2")]
        )
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(
            db, staging, connection, clock, window, [], is_complete_window=False
        )

        assert db.query(StagedTransaction).filter(
            StagedTransaction.removed_at.isnot(None)
        ).count() == 0

    def test_explicit_removal_applies_outside_window(self, db, staging, connection, clock, window):
        old = make_transaction("OLD", booked_date=date(2020, 1, 1))
        _stage_txns(db, staging, connection, clock, window, [old], is_complete_window=False)
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(
            db,
            staging,
            connection,
            clock,
            window,
            [],
            removed_native_ids=["OLD", "NEVER-SEEN"],
            is_complete_window=False,
        )

        assert _txn(db, "OLD").change_status == "removed"
        assert db.query(StagedTransaction).count() == 1

    def test_reappearance_after_removal_is_modified(self, db, staging, connection, clock, window):
        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])
        _mark_reconciled(db, clock)
        clock.advance(hours=1)
        _stage_txns(db, staging, connection, clock, window, [])
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])

        row = _txn(db, "T1")
        assert row.change_status == "modified"
        assert row.removed_at is None

    def test_rows_are_never_deleted(self, db, staging, connection, clock, window):
        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])
        clock.advance(hours=1)
        _stage_txns(db, staging, connection, clock, window, [])

        assert db.query(StagedTransaction).count() == 1


class TestPendingDiff:
    def test_groups_pending_rows(self, db, staging, connection, clock, window):
        staging.stage_accounts(db, TENANT_ID, connection.id, [make_account("A1")], clock.now)
        _stage_txns(
            db, staging, connection, clock, window, [make_transaction("T1"), make_transaction("T2")]
        )
        _mark_reconciled(db, clock)
        clock.advance(hours=1)

        _stage_txns(
            db,
            staging,
            connection,
            clock,
            window,
            [make_transaction("T1", status="pending"), make_transaction("T3")],
        )
        diff = staging.pending_diff(
            db, TENANT_ID, connection.id, fetched_accounts=0, fetched_transactions=2
        )

        assert [r.native_id for r in diff.transactions.added] == ["T3"]
        assert [r.native_id for r in diff.transactions.modified] == ["T1"]
        assert [r.native_id for r in diff.transactions.removed] == ["T2"]
        assert diff.transactions.unchanged_count == 0
        assert diff.accounts.pending_count == 0
        assert diff.fetched_count == 2

    def test_unreconciled_rows_carry_over(self, db, staging, connection, clock, window):
        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])
        clock.advance(hours=1)
        # Reconciliation never ran; provider has nothing new
        _stage_txns(db, staging, connection, clock, window, [make_transaction("T1")])

        diff = staging.pending_diff(db, TENANT_ID, connection.id, fetched_transactions=1)

        assert [r.native_id for r in diff.transactions.added] == ["T1"]

    def test_scoped_by_connection(self, db, staging, connection, clock, window):
        from tests.fixtures import create_connection

        other = create_connection(db)
        _stage_txns(db, staging, other, clock, window, [make_transaction("T1")])

        diff = staging.pending_diff(db, TENANT_ID, connection.id)

        assert diff.transactions.pending_count == 0
