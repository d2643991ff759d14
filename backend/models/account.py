"""Account model - canonical account materialized from a provider."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base
from models.utils import MONEY_SCALE, generate_uuid, utcnow


class Account(Base):
    """A tenant-facing account linked to exactly one staged account.

    The combination of connection_id + native_id uniquely identifies an
    account.  Provider-removed accounts are deactivated, never deleted,
    because historical transactions still reference them.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "native_id", name="uix_account_connection_native"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    connection_id = Column(String(36), ForeignKey("connections.id"), nullable=False)
    staged_account_id = Column(
        String(36), ForeignKey("staged_accounts.id"), unique=True, nullable=True
    )
    native_id = Column(String, nullable=False)  # Provider's account ID
    name = Column(String, nullable=False)
    name_user_edited = Column(Boolean, default=False)  # True if user has customized the name
    currency = Column(String(3), nullable=True)
    balance = Column(Numeric(18, MONEY_SCALE), nullable=True)
    status = Column(String, nullable=False, default="active")  # "active" | "inactive"
    is_active = Column(Boolean, default=True)
    deactivated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    transactions = relationship("Transaction", back_populates="account")
