"""Staging service - persists raw provider records and classifies changes.

Staged rows are keyed by (connection_id, native_id) and are never
deleted.  Every fetch updates the rows it sees and stamps
``last_seen_at``; rows the provider stopped returning are marked
removed.  A row stays *pending* until the reconciler materializes its
latest change, so a reconciliation that fails is re-driven by the next
attempt even when the provider has nothing new to say.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.orm import Session

from integrations.parsing_utils import description_hash
from integrations.provider_protocol import (
    FetchWindow,
    RawAccount,
    RawTransaction,
    TransactionBatch,
)
from models import StagedAccount, StagedTransaction
from models.utils import to_money, utcnow

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement
_IN_CHUNK = 500

_ACCOUNT_MATCH_FIELDS = ("display_name", "currency", "balance", "account_status")
_TRANSACTION_MATCH_FIELDS = (
    "account_native_id",
    "amount",
    "currency",
    "booked_date",
    "value_date",
    "description_hash",
    "status",
    "category",
)


@dataclass
class RecordDiff:
    """Classification of one record kind after a staging pass."""

    added: list = field(default_factory=list)
    modified: list = field(default_factory=list)
    removed: list = field(default_factory=list)
    unchanged_count: int = 0

    @property
    def pending_count(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)


@dataclass
class StagingDiff:
    """Staged records awaiting reconciliation, grouped by change kind."""

    accounts: RecordDiff = field(default_factory=RecordDiff)
    transactions: RecordDiff = field(default_factory=RecordDiff)
    fetched_accounts: int = 0
    fetched_transactions: int = 0

    @property
    def fetched_count(self) -> int:
        return self.fetched_accounts + self.fetched_transactions


def _chunks(items: list, size: int = _IN_CHUNK):
    for i in range(0, len(items), size):
        yield items[i : i + size]


class StagingService:
    """Append/update-only staging store for one connection at a time."""

    def __init__(self, clock=utcnow):
        self._clock = clock

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def stage_accounts(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        raw_accounts: list[RawAccount],
        fetch_started_at: datetime,
    ) -> int:
        """Upsert fetched accounts and infer removals.

        A non-empty account list is the provider's complete view, so any
        staged account not seen since ``fetch_started_at`` was removed.

        Returns:
            Number of distinct accounts fetched.
        """
        now = self._clock()
        incoming = {raw.native_id: raw for raw in raw_accounts}
        existing = self._load_existing(
            db, StagedAccount, tenant_id, connection_id, list(incoming)
        )

        for native_id, raw in incoming.items():
            values = {
                "display_name": raw.display_name,
                "currency": raw.currency,
                "balance": to_money(raw.balance),
                "account_status": raw.status,
            }
            row = existing.get(native_id)
            if row is None:
                db.add(
                    StagedAccount(
                        tenant_id=tenant_id,
                        connection_id=connection_id,
                        native_id=native_id,
                        raw_payload=raw.raw_payload,
                        change_status="added",
                        first_seen_at=now,
                        last_seen_at=now,
                        changed_at=now,
                        **values,
                    )
                )
            else:
                self._apply(row, values, raw.raw_payload, _ACCOUNT_MATCH_FIELDS, now)

        db.flush()
        removed = []
        if incoming:
            removed = (
                db.query(StagedAccount)
                .filter(
                    StagedAccount.tenant_id == tenant_id,
                    StagedAccount.connection_id == connection_id,
                    StagedAccount.removed_at.is_(None),
                    StagedAccount.last_seen_at < fetch_started_at,
                )
                .all()
            )
        else:
            # An empty list carries no information; never close everything
            logger.warning(
                "Provider returned no accounts for connection %s", connection_id
            )
        for row in removed:
            self._mark_removed(row, now)

        db.flush()
        logger.info(
            "Staged %d accounts for connection %s (%d removed)",
            len(incoming),
            connection_id,
            len(removed),
        )
        return len(incoming)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def stage_transactions(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        batch: TransactionBatch,
        window: FetchWindow,
        fetch_started_at: datetime,
    ) -> int:
        """Upsert fetched transactions and apply removals.

        Explicit removals in the batch are always applied.  Removal by
        absence only happens for complete-window batches, and only for
        rows booked inside the window on accounts the fetch covered: a
        transaction that merely falls outside a date-bounded fetch is not
        evidence that the provider deleted it.

        Returns:
            Number of distinct transactions fetched.
        """
        now = self._clock()
        # Duplicates within one batch collapse to the last occurrence
        incoming: dict[str, RawTransaction] = {
            raw.native_id: raw for raw in batch.transactions
        }
        lookup_ids = list(incoming) + [
            nid for nid in batch.removed_native_ids if nid not in incoming
        ]
        existing = self._load_existing(
            db, StagedTransaction, tenant_id, connection_id, lookup_ids
        )

        for native_id, raw in incoming.items():
            values = {
                "account_native_id": raw.account_native_id,
                "amount": to_money(raw.amount),
                "currency": raw.currency,
                "booked_date": raw.booked_date,
                "value_date": raw.value_date,
                "description": raw.description,
                "description_hash": description_hash(raw.description),
                "counterparty_name": raw.counterparty_name,
                "status": raw.status,
                "category": raw.category,
            }
            row = existing.get(native_id)
            if row is None:
                db.add(
                    StagedTransaction(
                        tenant_id=tenant_id,
                        connection_id=connection_id,
                        native_id=native_id,
                        raw_payload=raw.raw_payload,
                        change_status="added",
                        first_seen_at=now,
                        last_seen_at=now,
                        changed_at=now,
                        **values,
                    )
                )
            else:
                self._apply(row, values, raw.raw_payload, _TRANSACTION_MATCH_FIELDS, now)

        removed_count = 0
        for native_id in batch.removed_native_ids:
            row = existing.get(native_id)
            if row is not None and native_id not in incoming and row.removed_at is None:
                self._mark_removed(row, now)
                removed_count += 1

        if batch.is_complete_window:
            db.flush()
            removed_count += self._remove_absent(
                db, tenant_id, connection_id, window, fetch_started_at, now
            )

        db.flush()
        logger.info(
            "Staged %d transactions for connection %s (%d removed)",
            len(incoming),
            connection_id,
            removed_count,
        )
        return len(incoming)

    def _remove_absent(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        window: FetchWindow,
        fetch_started_at: datetime,
        now: datetime,
    ) -> int:
        query = db.query(StagedTransaction).filter(
            StagedTransaction.tenant_id == tenant_id,
            StagedTransaction.connection_id == connection_id,
            StagedTransaction.removed_at.is_(None),
            StagedTransaction.last_seen_at < fetch_started_at,
            StagedTransaction.booked_date.isnot(None),
            StagedTransaction.booked_date >= window.start.date(),
            StagedTransaction.booked_date <= window.end.date(),
        )
        if window.account_native_ids is not None:
            query = query.filter(
                StagedTransaction.account_native_id.in_(window.account_native_ids)
            )
        rows = query.all()
        for row in rows:
            self._mark_removed(row, now)
        return len(rows)

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    def pending_diff(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        fetched_accounts: int = 0,
        fetched_transactions: int = 0,
    ) -> StagingDiff:
        """Build the diff of every staged row awaiting reconciliation.

        Includes rows changed by this attempt and rows left pending by an
        earlier attempt that failed before reconciling them.
        """
        diff = StagingDiff(
            fetched_accounts=fetched_accounts,
            fetched_transactions=fetched_transactions,
        )
        for model, record_diff, fetched in (
            (StagedAccount, diff.accounts, fetched_accounts),
            (StagedTransaction, diff.transactions, fetched_transactions),
        ):
            pending = (
                db.query(model)
                .filter(
                    model.tenant_id == tenant_id,
                    model.connection_id == connection_id,
                    or_(
                        model.reconciled_at.is_(None),
                        model.reconciled_at < model.changed_at,
                    ),
                )
                .order_by(model.first_seen_at, model.native_id)
                .all()
            )
            for row in pending:
                bucket = {
                    "added": record_diff.added,
                    "modified": record_diff.modified,
                    "removed": record_diff.removed,
                }.get(row.change_status)
                if bucket is None:
                    continue
                bucket.append(row)
            seen_pending = sum(1 for row in pending if row.change_status != "removed")
            record_diff.unchanged_count = max(0, fetched - seen_pending)
        return diff

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_existing(
        db: Session, model, tenant_id: str, connection_id: str, native_ids: list[str]
    ) -> dict:
        found = {}
        for chunk in _chunks(native_ids):
            rows = (
                db.query(model)
                .filter(
                    model.tenant_id == tenant_id,
                    model.connection_id == connection_id,
                    model.native_id.in_(chunk),
                )
                .all()
            )
            found.update({row.native_id: row for row in rows})
        return found

    @staticmethod
    def _apply(row, values: dict, raw_payload, match_fields, now: datetime) -> None:
        """Update a seen row, classifying it as modified or unchanged."""
        changed = row.removed_at is not None or any(
            getattr(row, name) != values[name] for name in match_fields
        )
        row.last_seen_at = now
        if not changed:
            if not row.is_pending:
                row.change_status = "unchanged"
            return

        row.previous_payload = row.raw_payload
        row.raw_payload = raw_payload
        for name, value in values.items():
            setattr(row, name, value)
        row.revision = (row.revision or 1) + 1
        # A never-reconciled addition stays an addition, with the newer values
        if not (row.is_pending and row.change_status == "added"):
            row.change_status = "modified"
        row.removed_at = None
        row.changed_at = now

    @staticmethod
    def _mark_removed(row, now: datetime) -> None:
        row.change_status = "removed"
        row.removed_at = now
        row.changed_at = now
