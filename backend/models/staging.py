"""Staged provider records - the append/update-only audit of raw fetches."""

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from database import Base
from models.utils import MONEY_SCALE, as_utc, generate_uuid, utcnow

CHANGE_STATUSES = ("added", "modified", "unchanged", "removed")


class StagedRecordMixin:
    """Columns shared by staged accounts and transactions."""

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    native_id = Column(String, nullable=False)
    raw_payload = Column(JSON, nullable=True)
    previous_payload = Column(JSON, nullable=True)  # payload before the last change
    revision = Column(Integer, nullable=False, default=1)
    change_status = Column(String, nullable=False, default="added")
    first_seen_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=utcnow)
    changed_at = Column(DateTime, nullable=False, default=utcnow)
    removed_at = Column(DateTime, nullable=True)
    reconciled_at = Column(DateTime, nullable=True)

    @property
    def is_pending(self) -> bool:
        """True until the reconciler has materialized the latest change."""
        if self.reconciled_at is None:
            return True
        return as_utc(self.reconciled_at) < as_utc(self.changed_at)


class StagedAccount(StagedRecordMixin, Base):
    """One provider account as last seen, keyed by (connection, native id)."""

    __tablename__ = "staged_accounts"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "native_id", name="uix_staged_account_connection_native"
        ),
    )

    connection_id = Column(String(36), ForeignKey("connections.id"), nullable=False)
    display_name = Column(String, nullable=True)
    currency = Column(String(3), nullable=True)
    balance = Column(Numeric(18, MONEY_SCALE), nullable=True)
    account_status = Column(String, nullable=True)  # "active" | "inactive" | "closed"


class StagedTransaction(StagedRecordMixin, Base):
    """One provider transaction as last seen, keyed by (connection, native id)."""

    __tablename__ = "staged_transactions"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "native_id", name="uix_staged_txn_connection_native"
        ),
    )

    connection_id = Column(String(36), ForeignKey("connections.id"), nullable=False)
    account_native_id = Column(String, nullable=False)
    amount = Column(Numeric(18, MONEY_SCALE), nullable=False)
    currency = Column(String(3), nullable=True)
    booked_date = Column(Date, nullable=True)
    value_date = Column(Date, nullable=True)
    description = Column(String, nullable=True)
    description_hash = Column(String(64), nullable=True)
    counterparty_name = Column(String, nullable=True)
    status = Column(String, nullable=True)  # "booked" | "pending"
    category = Column(String, nullable=True)
