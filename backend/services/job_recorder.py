"""Job recorder - sync job lifecycle, connection health, and job inspection.

Provider usage is read back from the jobs: each job carries its adapter
call count and fetched record counts.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models import Connection, SyncJob
from models.sync_job import TERMINAL_STATUSES
from models.utils import as_utc, utcnow
from services.exceptions import ConnectionNotFoundError, JobFinalizedError

logger = logging.getLogger(__name__)

HEALTH_WINDOW_JOBS = 10
SUCCESS_RATE_WEIGHT = 40
FAILURE_PENALTY = 15
STALE_MAJOR_DAYS, STALE_MAJOR_PENALTY = 7, 20
STALE_MINOR_DAYS, STALE_MINOR_PENALTY = 3, 10

ABANDONED_REASON = "abandoned: worker stopped before finishing"


@dataclass
class ConnectionHealth:
    connection_id: str
    status: str
    health_score: int
    consecutive_failures: int
    last_success_at: datetime | None
    last_sync_at: datetime | None
    last_error: str | None
    latest_job: SyncJob | None


@dataclass
class ProviderUsageDay:
    usage_date: date
    sync_jobs: int = 0
    failed_jobs: int = 0
    api_calls: int = 0
    accounts_synced: int = 0
    transactions_synced: int = 0


@dataclass
class ProviderUsage:
    """Usage of one provider over a reporting period, with a daily breakdown."""

    provider_name: str
    sync_jobs: int = 0
    failed_jobs: int = 0
    api_calls: int = 0
    accounts_synced: int = 0
    transactions_synced: int = 0
    days: list[ProviderUsageDay] = field(default_factory=list)


def compute_health_score(
    recent_statuses: list[str],
    consecutive_failures: int,
    last_success_at: datetime | None,
    now: datetime,
) -> int:
    """Score a connection 0-100 from its recent sync outcomes.

    Args:
        recent_statuses: Terminal statuses of the most recent jobs.
            ``partial`` counts as a success.
        consecutive_failures: Failures since the last success.
        last_success_at: When the last successful sync finished.
        now: Reference time.

    Returns:
        Integer score clamped to [0, 100].
    """
    score = 100.0
    if recent_statuses:
        successes = sum(1 for s in recent_statuses if s in ("completed", "partial"))
        success_rate = successes / len(recent_statuses)
        score -= (1 - success_rate) * SUCCESS_RATE_WEIGHT
    score -= FAILURE_PENALTY * consecutive_failures

    last_success_at = as_utc(last_success_at)
    if last_success_at is None:
        if recent_statuses:
            score -= STALE_MAJOR_PENALTY
    else:
        age = now - last_success_at
        if age > timedelta(days=STALE_MAJOR_DAYS):
            score -= STALE_MAJOR_PENALTY
        elif age > timedelta(days=STALE_MINOR_DAYS):
            score -= STALE_MINOR_PENALTY

    return int(max(0, min(100, round(score))))


class JobRecorder:
    """Creates, finalizes, and inspects sync jobs.

    Jobs are immutable once terminal; every mutator checks that first.
    """

    def __init__(
        self,
        failure_threshold: int | None = None,
        stale_after_minutes: int | None = None,
        clock=utcnow,
    ):
        self._failure_threshold = failure_threshold or settings.SYNC_FAILURE_THRESHOLD
        self._stale_after = timedelta(
            minutes=stale_after_minutes
            if stale_after_minutes is not None
            else settings.STALE_JOB_AFTER_MINUTES
        )
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_job(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        trigger: str,
    ) -> SyncJob | None:
        """Insert a ``running`` job and commit it.

        Returns:
            The job, or None if another worker already has a running job
            for this connection (the storage-level exclusion fired).
        """
        self.abandon_stale_jobs(db, tenant_id, connection_id)
        job = SyncJob(
            tenant_id=tenant_id,
            connection_id=connection_id,
            trigger=trigger,
            status="running",
            stage="acquiring_lock",
            started_at=self._clock(),
        )
        db.add(job)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Connection %s already has a running job", connection_id)
            return None
        logger.info(
            "Sync job %s started for connection %s (%s)", job.id, connection_id, trigger
        )
        return job

    def abandon_stale_jobs(self, db: Session, tenant_id: str, connection_id: str) -> int:
        """Fail ``running`` jobs older than the stale threshold (commits)."""
        cutoff = self._clock() - self._stale_after
        stale = (
            db.query(SyncJob)
            .filter(
                SyncJob.tenant_id == tenant_id,
                SyncJob.connection_id == connection_id,
                SyncJob.status == "running",
                SyncJob.started_at < cutoff,
            )
            .all()
        )
        for job in stale:
            self._finalize(job, "failed")
            job.error_message = ABANDONED_REASON
            job.errors = [ABANDONED_REASON]
            logger.warning("Sync job %s marked abandoned", job.id)
        if stale:
            db.commit()
        return len(stale)

    def set_stage(self, job: SyncJob, stage: str) -> None:
        self._ensure_running(job)
        job.stage = stage
        logger.debug("Sync job %s: %s", job.id, stage)

    def record_usage(
        self,
        job: SyncJob,
        api_calls: int,
        accounts_fetched: int = 0,
        transactions_fetched: int = 0,
    ) -> None:
        """Store the provider calls and fetched record counts of an attempt."""
        self._ensure_running(job)
        job.api_calls = api_calls
        job.accounts_fetched = accounts_fetched
        job.transactions_fetched = transactions_fetched

    def complete_job(
        self,
        job: SyncJob,
        result,
        fetched_count: int,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> str:
        """Record import counts and finalize (flush/commit left to the caller).

        Returns:
            ``partial`` when the import produced warnings, else ``completed``.
        """
        self._ensure_running(job)
        status = "partial" if result.warnings else "completed"
        job.fetched_count = fetched_count
        job.processed_count = result.processed_count
        job.imported_count = result.imported_count
        job.skipped_count = result.transactions_skipped_as_duplicate
        job.failed_count = result.transactions_failed
        job.accounts_created = result.accounts_created
        job.accounts_updated = result.accounts_updated
        job.transactions_added = result.transactions_added
        job.transactions_flagged_removed = result.transactions_flagged_removed
        job.window_start = window_start
        job.window_end = window_end
        job.warnings = [w.to_dict() for w in result.warnings]
        job.errors = []
        self._finalize(job, status)
        return status

    def fail_job(
        self,
        job: SyncJob,
        message: str,
        fetched_count: int = 0,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> None:
        self._ensure_running(job)
        job.error_message = message
        job.errors = [message]
        job.fetched_count = fetched_count
        job.window_start = window_start
        job.window_end = window_end
        self._finalize(job, "failed")

    def _finalize(self, job: SyncJob, status: str) -> None:
        now = self._clock()
        job.status = status
        job.completed_at = now
        started = as_utc(job.started_at)
        if started is not None:
            job.duration_ms = int((now - started).total_seconds() * 1000)

    @staticmethod
    def _ensure_running(job: SyncJob) -> None:
        if job.status in TERMINAL_STATUSES:
            raise JobFinalizedError(job.id, job.status)

    # ------------------------------------------------------------------
    # Connection outcome & health
    # ------------------------------------------------------------------

    def record_success(self, db: Session, connection: Connection) -> None:
        now = self._clock()
        connection.last_sync_at = now
        connection.last_success_at = now
        connection.consecutive_failures = 0
        connection.last_error = None
        db.flush()
        connection.health_score = self.compute_health(db, connection)

    def record_failure(
        self,
        db: Session,
        connection: Connection,
        message: str,
        reconnect_required: bool = False,
    ) -> None:
        """Count a failed attempt and escalate to ``error`` when warranted."""
        connection.last_sync_at = self._clock()
        connection.last_error = message
        connection.consecutive_failures = (connection.consecutive_failures or 0) + 1
        if reconnect_required or connection.consecutive_failures >= self._failure_threshold:
            if connection.status != "error":
                logger.warning(
                    "Connection %s moved to error after %d consecutive failures",
                    connection.id,
                    connection.consecutive_failures,
                )
            connection.status = "error"
        db.flush()
        connection.health_score = self.compute_health(db, connection)

    def compute_health(self, db: Session, connection: Connection) -> int:
        recent = (
            db.query(SyncJob.status)
            .filter(
                SyncJob.tenant_id == connection.tenant_id,
                SyncJob.connection_id == connection.id,
                SyncJob.status.in_(TERMINAL_STATUSES),
            )
            .order_by(SyncJob.started_at.desc())
            .limit(HEALTH_WINDOW_JOBS)
            .all()
        )
        return compute_health_score(
            [row.status for row in recent],
            connection.consecutive_failures or 0,
            connection.last_success_at,
            self._clock(),
        )

    # ------------------------------------------------------------------
    # Inspection (read-only)
    # ------------------------------------------------------------------

    def list_jobs(
        self, db: Session, tenant_id: str, connection_id: str, limit: int = 20
    ) -> list[SyncJob]:
        return (
            db.query(SyncJob)
            .filter_by(tenant_id=tenant_id, connection_id=connection_id)
            .order_by(SyncJob.started_at.desc())
            .limit(limit)
            .all()
        )

    def get_job(
        self, db: Session, tenant_id: str, connection_id: str, job_id: str
    ) -> SyncJob | None:
        return (
            db.query(SyncJob)
            .filter_by(tenant_id=tenant_id, connection_id=connection_id, id=job_id)
            .first()
        )

    def get_connection_health(
        self, db: Session, tenant_id: str, connection_id: str
    ) -> ConnectionHealth:
        connection = (
            db.query(Connection)
            .filter_by(tenant_id=tenant_id, id=connection_id)
            .first()
        )
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        latest = self.list_jobs(db, tenant_id, connection_id, limit=1)
        return ConnectionHealth(
            connection_id=connection.id,
            status=connection.status,
            health_score=connection.health_score,
            consecutive_failures=connection.consecutive_failures,
            last_success_at=connection.last_success_at,
            last_sync_at=connection.last_sync_at,
            last_error=connection.last_error,
            latest_job=latest[0] if latest else None,
        )

    def provider_usage(
        self, db: Session, tenant_id: str | None = None, days: int = 7
    ) -> list[ProviderUsage]:
        """Summarize provider usage over the last ``days`` days, today included.

        Args:
            db: Database session.
            tenant_id: Restrict to one tenant; None covers every tenant.
            days: Length of the reporting period in UTC calendar days.

        Returns:
            One ProviderUsage per provider with finished jobs in the period,
            ordered by provider name, days most recent first.
        """
        first_day = self._clock().date() - timedelta(days=days - 1)
        since = datetime.combine(first_day, time.min, tzinfo=timezone.utc)
        query = (
            db.query(SyncJob, Connection.provider_name)
            .join(Connection, SyncJob.connection_id == Connection.id)
            .filter(
                SyncJob.status.in_(TERMINAL_STATUSES),
                SyncJob.started_at >= since,
            )
        )
        if tenant_id is not None:
            query = query.filter(SyncJob.tenant_id == tenant_id)

        by_provider: dict[str, ProviderUsage] = {}
        by_day: dict[tuple[str, date], ProviderUsageDay] = {}
        for job, provider_name in query.all():
            usage_date = as_utc(job.started_at).date()
            totals = by_provider.setdefault(provider_name, ProviderUsage(provider_name))
            day = by_day.get((provider_name, usage_date))
            if day is None:
                day = by_day[(provider_name, usage_date)] = ProviderUsageDay(usage_date)
                totals.days.append(day)
            for bucket in (totals, day):
                bucket.sync_jobs += 1
                bucket.failed_jobs += int(job.status == "failed")
                bucket.api_calls += job.api_calls or 0
                bucket.accounts_synced += job.accounts_fetched or 0
                bucket.transactions_synced += job.transactions_fetched or 0

        for totals in by_provider.values():
            totals.days.sort(key=lambda d: d.usage_date, reverse=True)
        return [by_provider[name] for name in sorted(by_provider)]
