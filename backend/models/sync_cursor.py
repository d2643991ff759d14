"""SyncCursor model - incremental sync watermark per connection."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class SyncCursor(Base):
    """How far a connection's incremental sync has progressed.

    ``last_synced_at`` only moves forward; ``reset_at`` records the last
    administrative rewind.
    """

    __tablename__ = "sync_cursors"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    connection_id = Column(
        String(36), ForeignKey("connections.id"), unique=True, nullable=False
    )
    last_synced_at = Column(DateTime, nullable=True)
    delta_token = Column(Text, nullable=True)  # provider-native pagination/delta cursor

    # Cumulative counters
    accounts_synced = Column(Integer, nullable=False, default=0)
    transactions_added = Column(Integer, nullable=False, default=0)
    transactions_modified = Column(Integer, nullable=False, default=0)
    transactions_removed = Column(Integer, nullable=False, default=0)

    reset_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    connection = relationship("Connection", back_populates="sync_cursor")
