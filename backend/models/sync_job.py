"""SyncJob model - one row per sync attempt."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow

TERMINAL_STATUSES = ("completed", "failed", "partial")


class SyncJob(Base):
    """Lifecycle and outcome metrics of a single sync attempt.

    A connection has at most one ``running`` job; the partial unique
    index below enforces this at the storage layer.  Rows are immutable
    once they reach a terminal status.
    """

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index(
            "uix_sync_jobs_one_running",
            "connection_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    connection_id = Column(
        String(36), ForeignKey("connections.id"), nullable=False, index=True
    )
    trigger = Column(String, nullable=False, default="manual")  # manual | scheduled | authorization | cli
    status = Column(String, nullable=False, default="running")  # running | completed | failed | partial
    stage = Column(String, nullable=True)  # last pipeline stage entered

    fetched_count = Column(Integer, nullable=False, default=0)
    processed_count = Column(Integer, nullable=False, default=0)
    imported_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    accounts_created = Column(Integer, nullable=False, default=0)
    accounts_updated = Column(Integer, nullable=False, default=0)
    transactions_added = Column(Integer, nullable=False, default=0)
    transactions_flagged_removed = Column(Integer, nullable=False, default=0)

    # Provider usage: adapter fetch calls (retries included) and records fetched
    api_calls = Column(Integer, nullable=False, default=0)
    accounts_fetched = Column(Integer, nullable=False, default=0)
    transactions_fetched = Column(Integer, nullable=False, default=0)

    window_start = Column(DateTime, nullable=True)
    window_end = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    errors = Column(JSON, nullable=True)  # list[str]
    warnings = Column(JSON, nullable=True)  # list[dict]

    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Relationships
    connection = relationship("Connection", back_populates="sync_jobs")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
