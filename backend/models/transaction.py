"""Transaction model - canonical transaction materialized from a provider."""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base
from models.utils import MONEY_SCALE, generate_uuid, utcnow


class Transaction(Base):
    """A tenant-facing transaction.

    The unique (connection_id, native_id) constraint is the deduplication
    key: a re-delivered provider record never produces a second row.
    Amount and booked date are never overwritten after import.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "native_id", name="uix_transaction_connection_native"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    connection_id = Column(String(36), ForeignKey("connections.id"), nullable=False)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    staged_transaction_id = Column(
        String(36), ForeignKey("staged_transactions.id"), unique=True, nullable=True
    )
    native_id = Column(String, nullable=False)
    amount = Column(Numeric(18, MONEY_SCALE), nullable=False)
    currency = Column(String(3), nullable=True)
    booked_date = Column(Date, nullable=True)
    value_date = Column(Date, nullable=True)
    description = Column(String, nullable=True)
    counterparty_name = Column(String, nullable=True)
    status = Column(String, nullable=True)  # "booked" | "pending"
    category = Column(String, nullable=True)
    is_removed = Column(Boolean, nullable=False, default=False)
    removed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    account = relationship("Account", back_populates="transactions")
