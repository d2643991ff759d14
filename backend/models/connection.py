"""Connection model - a tenant's link to one banking data provider."""

from datetime import datetime, timedelta

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base
from models.utils import as_utc, generate_uuid, utcnow

CONNECTION_STATUSES = ("pending", "active", "error", "revoked")

# Minutes between scheduled syncs; "manual" connections only sync on request
SYNC_SCHEDULE_MINUTES: dict[str, int | None] = {
    "manual": None,
    "hourly": 60,
    "4hours": 240,
    "12hours": 720,
    "daily": 1440,
    "weekly": 10080,
}
DEFAULT_SYNC_SCHEDULE = "12hours"


class Connection(Base):
    """A tenant's configured link to an external provider.

    Connections are never hard-deleted; revoking moves status to
    ``revoked``.  Every sync attempt updates the failure counter and
    health score.
    """

    __tablename__ = "connections"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    provider_name = Column(String, nullable=False)  # e.g., "tink", "plaid"
    display_name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    last_sync_at = Column(DateTime, nullable=True)  # last attempt, any outcome
    last_success_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    health_score = Column(Integer, nullable=False, default=100)
    sync_schedule = Column(String, nullable=False, default=DEFAULT_SYNC_SCHEDULE)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_priority = Column(Integer, nullable=False, default=0)  # higher runs first
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    credential = relationship(
        "CredentialRecord", back_populates="connection", uselist=False
    )
    sync_cursor = relationship("SyncCursor", back_populates="connection", uselist=False)
    sync_jobs = relationship("SyncJob", back_populates="connection")

    @property
    def is_syncable(self) -> bool:
        """True when the connection may run a sync without reconnecting."""
        return self.status == "active"

    @property
    def sync_interval(self) -> timedelta | None:
        """Time between scheduled syncs, or None if never scheduled."""
        if self.sync_enabled is False:
            return None
        minutes = SYNC_SCHEDULE_MINUTES.get(self.sync_schedule or DEFAULT_SYNC_SCHEDULE)
        return timedelta(minutes=minutes) if minutes is not None else None

    @property
    def next_sync_at(self) -> datetime | None:
        """When the scheduler next picks this connection up.

        None when it is not scheduled, or has never synced and is due at
        the next scheduler pass.
        """
        interval = self.sync_interval
        if interval is None or not self.is_syncable:
            return None
        last = as_utc(self.last_sync_at)
        return last + interval if last is not None else None

    def is_due(self, now: datetime, interval: timedelta | None = None) -> bool:
        """True if a scheduled sync should run at ``now``.

        ``interval`` replaces the connection's own schedule, but never
        schedules a ``manual`` or disabled connection.
        """
        own = self.sync_interval
        if own is None or not self.is_syncable:
            return False
        last = as_utc(self.last_sync_at)
        return last is None or last <= now - (interval or own)
