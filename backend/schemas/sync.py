"""Pydantic schemas for sync triggering and job inspection."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.utils import as_utc


class SyncRequest(BaseModel):
    """Options for a manual sync."""

    sync_accounts: bool = True
    sync_transactions: bool = True
    date_range_start: Optional[datetime] = None
    date_range_end: Optional[datetime] = None
    account_ids: Optional[list[str]] = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def validate_range(self):
        # Datetimes without an offset are UTC
        self.date_range_start = as_utc(self.date_range_start)
        self.date_range_end = as_utc(self.date_range_end)
        if (
            self.date_range_start is not None
            and self.date_range_end is not None
            and self.date_range_start > self.date_range_end
        ):
            raise ValueError("date_range_start must not be after date_range_end")
        return self


class SyncSummaryResponse(BaseModel):
    """Outcome of one sync attempt."""

    connection_id: str
    job_id: Optional[str] = None
    status: str
    accounts_synced: int
    accounts_created: int
    transactions_synced: int
    transactions_added: int
    transactions_skipped_as_duplicate: int
    transactions_flagged_removed: int
    duration_ms: int
    errors: list[str] = []
    warnings: list[dict] = []
    already_in_progress: bool = False

    model_config = ConfigDict(from_attributes=True)


class SyncJobResponse(BaseModel):
    """A recorded sync job."""

    id: str
    connection_id: str
    trigger: str
    status: str
    stage: Optional[str] = None
    fetched_count: int
    processed_count: int
    imported_count: int
    skipped_count: int
    failed_count: int
    accounts_created: int
    accounts_updated: int
    transactions_added: int
    transactions_flagged_removed: int
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    error_message: Optional[str] = None
    errors: Optional[list[str]] = None
    warnings: Optional[list[dict]] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class ConnectionHealthResponse(BaseModel):
    connection_id: str
    status: str
    health_score: int
    consecutive_failures: int
    last_success_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    latest_job: Optional[SyncJobResponse] = None

    model_config = ConfigDict(from_attributes=True)
