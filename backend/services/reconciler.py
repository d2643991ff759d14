"""Reconciler - materializes staged provider records into canonical records.

Rules:
- Added records create canonical rows.  A transaction whose
  (connection_id, native_id) is already imported is counted as a
  duplicate and skipped, never an error: retried fetches re-deliver.
- Modified accounts update balance (and name, unless the user edited it).
  Modified transactions update status and category only.  A change to
  amount or booked date is a business event: it is reported as a
  FieldConflictWarning and the imported value is kept.
- Removed transactions are flagged, removed accounts deactivated.
  Nothing canonical is ever deleted.

Every write is scoped by tenant_id and connection_id.
"""

import logging
from dataclasses import asdict, dataclass, field

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Account, StagedAccount, StagedTransaction, Transaction
from models.utils import utcnow
from utils.deadline import Deadline

logger = logging.getLogger(__name__)

# Fields on an imported transaction that are never overwritten
PROTECTED_TRANSACTION_FIELDS = ("amount", "booked_date")

_INACTIVE_ACCOUNT_STATUSES = ("inactive", "closed")


@dataclass
class RecordWarning:
    """A non-fatal condition that needs operator review."""

    native_id: str
    message: str
    code: str = "warning"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FieldConflictWarning(RecordWarning):
    """Provider reports a different value for a protected field."""

    field_name: str = ""
    imported_value: str | None = None
    provider_value: str | None = None
    code: str = "field_conflict"


@dataclass
class ImportResult:
    """Aggregate counts of one reconciliation pass."""

    accounts_created: int = 0
    accounts_updated: int = 0
    accounts_deactivated: int = 0
    transactions_added: int = 0
    transactions_updated: int = 0
    transactions_skipped_as_duplicate: int = 0
    transactions_flagged_removed: int = 0
    transactions_failed: int = 0
    warnings: list[RecordWarning] = field(default_factory=list)

    @property
    def imported_count(self) -> int:
        return self.accounts_created + self.transactions_added

    @property
    def processed_count(self) -> int:
        return (
            self.accounts_created
            + self.accounts_updated
            + self.accounts_deactivated
            + self.transactions_added
            + self.transactions_updated
            + self.transactions_skipped_as_duplicate
            + self.transactions_flagged_removed
        )


def _as_text(value) -> str | None:
    return None if value is None else str(value)


class Reconciler:
    """Diffs staged records against canonical ones and applies the changes."""

    def __init__(self, clock=utcnow):
        self._clock = clock

    def reconcile(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        diff,
        deadline: Deadline | None = None,
    ) -> ImportResult:
        """Apply a StagingDiff to the canonical store.

        Flushes but does not commit: the caller commits the import and the
        cursor advance together.

        Raises:
            SyncTimeoutError: If ``deadline`` expires mid-pass.
        """
        result = ImportResult()
        accounts = self._load_accounts(db, tenant_id, connection_id)

        for staged in diff.accounts.added + diff.accounts.modified:
            self._check(deadline)
            self._upsert_account(db, tenant_id, connection_id, staged, accounts, result)
        for staged in diff.accounts.removed:
            self._check(deadline)
            self._deactivate_account(staged, accounts, result)
        db.flush()

        existing = self._load_transactions(
            db,
            tenant_id,
            connection_id,
            [
                s.native_id
                for s in diff.transactions.added
                + diff.transactions.modified
                + diff.transactions.removed
            ],
        )
        for staged in diff.transactions.added:
            self._check(deadline)
            self._add_transaction(
                db, tenant_id, connection_id, staged, accounts, existing, result
            )
        for staged in diff.transactions.modified:
            self._check(deadline)
            self._update_transaction(
                db, tenant_id, connection_id, staged, accounts, existing, result
            )
        for staged in diff.transactions.removed:
            self._check(deadline)
            self._flag_removed(staged, existing, result)
        db.flush()

        logger.info(
            "Reconciled connection %s: %d accounts created, %d updated, "
            "%d deactivated; %d transactions added, %d updated, %d duplicate, "
            "%d flagged removed, %d failed, %d warnings",
            connection_id,
            result.accounts_created,
            result.accounts_updated,
            result.accounts_deactivated,
            result.transactions_added,
            result.transactions_updated,
            result.transactions_skipped_as_duplicate,
            result.transactions_flagged_removed,
            result.transactions_failed,
            len(result.warnings),
        )
        return result

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _upsert_account(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        staged: StagedAccount,
        accounts: dict[str, Account],
        result: ImportResult,
    ) -> None:
        now = self._clock()
        inactive = staged.account_status in _INACTIVE_ACCOUNT_STATUSES
        account = accounts.get(staged.native_id)

        if account is None:
            account = Account(
                tenant_id=tenant_id,
                connection_id=connection_id,
                staged_account_id=staged.id,
                native_id=staged.native_id,
                name=staged.display_name or staged.native_id,
                currency=staged.currency,
                balance=staged.balance,
                status="inactive" if inactive else "active",
                is_active=not inactive,
                deactivated_at=now if inactive else None,
            )
            db.add(account)
            accounts[staged.native_id] = account
            result.accounts_created += 1
        else:
            if account.staged_account_id is None:
                account.staged_account_id = staged.id
            account.balance = staged.balance
            if not account.name_user_edited and staged.display_name:
                account.name = staged.display_name
            if inactive and account.is_active:
                account.is_active = False
                account.status = "inactive"
                account.deactivated_at = now
            elif not inactive and not account.is_active:
                # Provider lists it again as open
                account.is_active = True
                account.status = "active"
                account.deactivated_at = None
            result.accounts_updated += 1

        staged.reconciled_at = now

    def _deactivate_account(
        self,
        staged: StagedAccount,
        accounts: dict[str, Account],
        result: ImportResult,
    ) -> None:
        now = self._clock()
        account = accounts.get(staged.native_id)
        if account is not None and account.is_active:
            account.is_active = False
            account.status = "inactive"
            account.deactivated_at = now
            result.accounts_deactivated += 1
        staged.reconciled_at = now

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _add_transaction(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        staged: StagedTransaction,
        accounts: dict[str, Account],
        existing: dict[str, Transaction],
        result: ImportResult,
    ) -> None:
        if staged.native_id in existing:
            # Already imported by an earlier attempt
            result.transactions_skipped_as_duplicate += 1
            self._link(existing[staged.native_id], staged)
            staged.reconciled_at = self._clock()
            return

        account = self._parent_account(staged, accounts, result)
        if account is None:
            return

        txn = self._new_transaction(tenant_id, connection_id, staged, account)
        try:
            with db.begin_nested():
                db.add(txn)
        except IntegrityError:
            # Lost a race against another writer; the row is there
            logger.debug(
                "Duplicate transaction %s on connection %s absorbed",
                staged.native_id,
                connection_id,
            )
            result.transactions_skipped_as_duplicate += 1
            duplicate = self._find_transaction(
                db, tenant_id, connection_id, staged.native_id
            )
            if duplicate is not None:
                existing[staged.native_id] = duplicate
        else:
            existing[staged.native_id] = txn
            result.transactions_added += 1
        staged.reconciled_at = self._clock()

    def _update_transaction(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        staged: StagedTransaction,
        accounts: dict[str, Account],
        existing: dict[str, Transaction],
        result: ImportResult,
    ) -> None:
        txn = existing.get(staged.native_id)
        if txn is None:
            # Modified before it was ever imported (e.g. removed then restored)
            self._add_transaction(
                db, tenant_id, connection_id, staged, accounts, existing, result
            )
            return

        for name in PROTECTED_TRANSACTION_FIELDS:
            imported = getattr(txn, name)
            reported = getattr(staged, name)
            if imported != reported:
                result.warnings.append(
                    FieldConflictWarning(
                        native_id=staged.native_id,
                        message=(
                            f"Provider reports {name} {reported} for transaction "
                            f"{staged.native_id}, imported value {imported} kept"
                        ),
                        field_name=name,
                        imported_value=_as_text(imported),
                        provider_value=_as_text(reported),
                    )
                )

        changed = False
        for name in ("status", "category"):
            if getattr(txn, name) != getattr(staged, name):
                setattr(txn, name, getattr(staged, name))
                changed = True
        if txn.is_removed:
            txn.is_removed = False
            txn.removed_at = None
            changed = True
        self._link(txn, staged)

        if changed:
            result.transactions_updated += 1
        staged.reconciled_at = self._clock()

    def _flag_removed(
        self,
        staged: StagedTransaction,
        existing: dict[str, Transaction],
        result: ImportResult,
    ) -> None:
        now = self._clock()
        txn = existing.get(staged.native_id)
        if txn is not None and not txn.is_removed:
            txn.is_removed = True
            txn.removed_at = now
            result.transactions_flagged_removed += 1
        staged.reconciled_at = now

    def _parent_account(
        self,
        staged: StagedTransaction,
        accounts: dict[str, Account],
        result: ImportResult,
    ) -> Account | None:
        account = accounts.get(staged.account_native_id)
        if account is None:
            # Left pending; retried once the account has been synced
            result.transactions_failed += 1
            result.warnings.append(
                RecordWarning(
                    native_id=staged.native_id,
                    message=(
                        f"Transaction {staged.native_id} references unknown "
                        f"account {staged.account_native_id}"
                    ),
                    code="missing_account",
                )
            )
        return account

    @staticmethod
    def _new_transaction(
        tenant_id: str,
        connection_id: str,
        staged: StagedTransaction,
        account: Account,
    ) -> Transaction:
        return Transaction(
            tenant_id=tenant_id,
            connection_id=connection_id,
            account_id=account.id,
            staged_transaction_id=staged.id,
            native_id=staged.native_id,
            amount=staged.amount,
            currency=staged.currency,
            booked_date=staged.booked_date,
            value_date=staged.value_date,
            description=staged.description,
            counterparty_name=staged.counterparty_name,
            status=staged.status,
            category=staged.category,
        )

    @staticmethod
    def _link(txn: Transaction, staged: StagedTransaction) -> None:
        if txn.staged_transaction_id is None:
            txn.staged_transaction_id = staged.id

    def _check(self, deadline: Deadline | None) -> None:
        if deadline is not None:
            deadline.check()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _load_accounts(
        db: Session, tenant_id: str, connection_id: str
    ) -> dict[str, Account]:
        rows = (
            db.query(Account)
            .filter_by(tenant_id=tenant_id, connection_id=connection_id)
            .all()
        )
        return {row.native_id: row for row in rows}

    @staticmethod
    def _load_transactions(
        db: Session, tenant_id: str, connection_id: str, native_ids: list[str]
    ) -> dict[str, Transaction]:
        found: dict[str, Transaction] = {}
        for i in range(0, len(native_ids), 500):
            chunk = native_ids[i : i + 500]
            rows = (
                db.query(Transaction)
                .filter(
                    Transaction.tenant_id == tenant_id,
                    Transaction.connection_id == connection_id,
                    Transaction.native_id.in_(chunk),
                )
                .all()
            )
            found.update({row.native_id: row for row in rows})
        return found

    @staticmethod
    def _find_transaction(
        db: Session, tenant_id: str, connection_id: str, native_id: str
    ) -> Transaction | None:
        return (
            db.query(Transaction)
            .filter_by(
                tenant_id=tenant_id, connection_id=connection_id, native_id=native_id
            )
            .first()
        )
