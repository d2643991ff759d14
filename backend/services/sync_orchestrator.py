"""Sync orchestrator - the single entry point for provider synchronization.

One sync attempt runs these stages strictly in order:

    acquiring_lock -> fetching -> staging -> reconciling -> importing
    -> advancing_cursor -> completed | partial | failed

Staged rows are committed on their own as the audit record.  The import
and the cursor advance commit together, so the cursor only moves when
the import it describes is durable.  A failed attempt leaves the cursor
untouched and the next attempt re-fetches the same window; the
reconciler's deduplication makes that safe.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import settings
from integrations.exceptions import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitedError,
)
from integrations.provider_protocol import FetchWindow, RawAccount, TransactionBatch
from integrations.provider_registry import ProviderRegistry, get_provider_registry
from models import Connection, SyncJob
from models.utils import as_utc, utcnow
from services.credential_vault import CredentialVault
from services.cursor_tracker import CursorAdvance, CursorTracker
from services.exceptions import (
    ConnectionNotFoundError,
    ConnectionNotSyncableError,
    CredentialExpiredError,
    SyncError,
    SyncTimeoutError,
)
from services.job_recorder import JobRecorder
from services.reconciler import Reconciler
from services.staging_service import StagingService
from utils.deadline import Deadline
from utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class SyncOptions:
    """What a sync attempt should fetch."""

    sync_accounts: bool = True
    sync_transactions: bool = True
    date_range_start: datetime | None = None
    date_range_end: datetime | None = None
    # Provider account ids to fetch transactions for; None = every account
    account_native_ids: list[str] | None = None


@dataclass
class SyncSummary:
    """Outcome of one ``run_sync`` call."""

    connection_id: str
    job_id: str | None = None
    status: str = "completed"
    accounts_synced: int = 0
    accounts_created: int = 0
    transactions_synced: int = 0
    transactions_added: int = 0
    transactions_skipped_as_duplicate: int = 0
    transactions_flagged_removed: int = 0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)
    already_in_progress: bool = False

    @classmethod
    def in_progress(cls, connection_id: str) -> "SyncSummary":
        return cls(
            connection_id=connection_id,
            status="already_in_progress",
            already_in_progress=True,
        )


@dataclass
class _Fetched:
    accounts: list[RawAccount] | None = None
    batch: TransactionBatch | None = None


@dataclass
class _CallCount:
    """Adapter fetch calls issued by one attempt, retries included."""

    calls: int = 0


class SyncOrchestrator:
    """Sequences vault -> adapter -> staging -> reconciler -> cursor -> job.

    Exclusion is per connection: a second trigger for a connection that is
    already syncing returns ``already_in_progress`` immediately instead of
    waiting.  Syncs for different connections run in parallel on a bounded
    worker pool.
    """

    # Class-level so every orchestrator in the process shares one lock per
    # connection.  Multi-process deployments rely on the partial unique
    # index on running sync jobs instead.
    _connection_locks = KeyedLocks()

    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider_registry: Optional[ProviderRegistry] = None,
        vault: Optional[CredentialVault] = None,
        staging: Optional[StagingService] = None,
        reconciler: Optional[Reconciler] = None,
        cursor_tracker: Optional[CursorTracker] = None,
        job_recorder: Optional[JobRecorder] = None,
        locks: Optional[KeyedLocks] = None,
        max_concurrency: int | None = None,
        fetch_timeout: float | None = None,
        reconcile_timeout: float | None = None,
        rate_limit_attempts: int | None = None,
        backoff_seconds: float | None = None,
        max_backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize with optional collaborators for dependency injection.

        Args:
            session_factory: Zero-argument callable returning a new Session.
                Each sync attempt opens and closes its own session.
            provider_registry: Registry of provider adapters.  If None, a
                default registry is created on first use.
        """
        self._session_factory = session_factory
        self._registry = provider_registry
        self._vault = vault
        self._staging = staging or StagingService(clock=clock)
        self._reconciler = reconciler or Reconciler(clock=clock)
        self._cursors = cursor_tracker or CursorTracker(clock=clock)
        self._jobs = job_recorder or JobRecorder(clock=clock)
        self._locks = locks or SyncOrchestrator._connection_locks
        self._fetch_timeout = fetch_timeout or settings.FETCH_TIMEOUT_SECONDS
        self._reconcile_timeout = reconcile_timeout or settings.RECONCILE_TIMEOUT_SECONDS
        self._rate_limit_attempts = rate_limit_attempts or settings.RATE_LIMIT_MAX_ATTEMPTS
        self._backoff = (
            backoff_seconds
            if backoff_seconds is not None
            else settings.RATE_LIMIT_BACKOFF_SECONDS
        )
        self._max_backoff = (
            max_backoff_seconds
            if max_backoff_seconds is not None
            else settings.RATE_LIMIT_MAX_BACKOFF_SECONDS
        )
        self._sleep = sleep
        self._clock = clock

        workers = max_concurrency or settings.SYNC_MAX_CONCURRENCY
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync")
        # Provider calls run here so a hung request can be abandoned at its deadline
        self._fetch_pool = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="sync-fetch"
        )
        self._pool_lock = threading.Lock()

    @property
    def registry(self) -> ProviderRegistry:
        """Get the provider registry, creating default if not provided."""
        if self._registry is None:
            self._registry = get_provider_registry()
        return self._registry

    @property
    def job_recorder(self) -> JobRecorder:
        return self._jobs

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            self._vault = CredentialVault(self.registry, clock=self._clock)
        return self._vault

    def is_sync_in_progress(self, connection_id: str) -> bool:
        return self._locks.is_locked(connection_id)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_sync(
        self,
        tenant_id: str,
        connection_id: str,
        options: SyncOptions | None = None,
        trigger: str = "manual",
    ) -> SyncSummary:
        """Run one sync attempt for a connection, synchronously.

        Returns:
            The attempt's SyncSummary.  ``already_in_progress`` is set when
            another attempt for the connection holds the lock.  Pipeline
            failures are recorded on the job and returned with status
            ``failed``; they are not raised.

        Raises:
            ConnectionNotFoundError: No such connection for this tenant.
            ConnectionNotSyncableError: Connection is not ``active``.
        """
        options = options or SyncOptions()
        if not self._locks.try_acquire(connection_id):
            logger.info("Sync already in progress for connection %s", connection_id)
            return SyncSummary.in_progress(connection_id)
        try:
            db = self._session_factory()
            try:
                return self._run_locked(db, tenant_id, connection_id, options, trigger)
            finally:
                db.close()
        finally:
            self._locks.release(connection_id)

    def submit(
        self,
        tenant_id: str,
        connection_id: str,
        options: SyncOptions | None = None,
        trigger: str = "scheduled",
    ) -> Future:
        """Queue ``run_sync`` on the worker pool and return its Future."""
        future = self._pool.submit(self.run_sync, tenant_id, connection_id, options, trigger)
        future.add_done_callback(
            lambda f: self._log_background_outcome(connection_id, trigger, f)
        )
        return future

    def complete_authorization(
        self, tenant_id: str, connection_id: str, code: str
    ) -> Future:
        """Exchange an authorization code, seed the vault, and queue a sync.

        The follow-up sync is a tracked job on the worker pool; its outcome
        is visible through job inspection.

        Raises:
            ConnectionNotFoundError: No such connection for this tenant.
            ConnectionNotSyncableError: The connection was revoked.
            ProviderError: The provider rejected the exchange.
        """
        db = self._session_factory()
        try:
            connection = self._get_connection(db, tenant_id, connection_id)
            if connection.status == "revoked":
                raise ConnectionNotSyncableError(connection_id, connection.status)
            adapter = self.registry.get_provider(connection.provider_name)
            token_set = adapter.exchange_authorization_code(code)
            self.vault.store_tokens(db, tenant_id, connection_id, token_set)
            connection.status = "active"
            connection.consecutive_failures = 0
            connection.last_error = None
            connection.health_score = self._jobs.compute_health(db, connection)
            db.commit()
            logger.info(
                "Connection %s authorized with %s", connection_id, connection.provider_name
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return self.submit(tenant_id, connection_id, SyncOptions(), trigger="authorization")

    def sync_due_connections(self, interval_minutes: int | None = None) -> list[Future]:
        """Scheduler entry: queue every active connection whose schedule is due.

        Each connection is due once its own ``sync_schedule`` interval has
        passed since the last attempt.  Disabled and ``manual`` connections
        are never queued.  Higher ``sync_priority`` is queued first, then
        the longest-waiting.

        Args:
            interval_minutes: Use this interval for every scheduled
                connection instead of their own schedules.
        """
        override = timedelta(minutes=interval_minutes) if interval_minutes is not None else None
        now = self._clock()
        db = self._session_factory()
        try:
            candidates = (
                db.query(Connection)
                .filter(Connection.status == "active", Connection.sync_enabled.is_(True))
                .all()
            )
            due = [
                (c.tenant_id, c.id, c.sync_priority or 0, as_utc(c.last_sync_at))
                for c in candidates
                if c.is_due(now, override)
            ]
        finally:
            db.close()
        # Never-synced first within a priority, then oldest attempt
        due.sort(key=lambda d: (-d[2], d[3] is not None, d[3] or now))
        logger.info("Scheduling %d due connections", len(due))
        return [
            self.submit(tenant_id, connection_id, trigger="scheduled")
            for tenant_id, connection_id, _, _ in due
        ]

    def reset_connection(self, tenant_id: str, connection_id: str) -> bool:
        """Clear failure counters and recompute health.

        Does not reactivate a connection in ``error``; that requires
        re-authorization.

        Returns:
            False if a sync is running for the connection.
        """
        return self._admin(tenant_id, connection_id, self._reset_health)

    def reset_cursor(self, tenant_id: str, connection_id: str) -> bool:
        """Rewind the cursor so the next sync uses the initial lookback.

        Returns:
            False if a sync is running for the connection.
        """
        return self._admin(
            tenant_id,
            connection_id,
            lambda db, connection: self._cursors.reset(db, tenant_id, connection.id),
        )

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        self._fetch_pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run_locked(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        options: SyncOptions,
        trigger: str,
    ) -> SyncSummary:
        started = time.monotonic()
        connection = self._get_connection(db, tenant_id, connection_id)
        if not connection.is_syncable:
            raise ConnectionNotSyncableError(connection_id, connection.status)

        job = self._jobs.start_job(db, tenant_id, connection_id, trigger)
        if job is None:
            return SyncSummary.in_progress(connection_id)
        job_id = job.id
        summary = SyncSummary(connection_id=connection_id, job_id=job_id)

        cursor = self._cursors.get_cursor(db, tenant_id, connection_id)
        previous_synced_at = as_utc(cursor.last_synced_at) if cursor else None
        window = self._fetch_window(cursor, options)
        delta_token = cursor.delta_token if cursor else None
        usage = _CallCount()

        try:
            self._jobs.set_stage(job, "fetching")
            db.commit()
            fetch_started_at = self._clock()
            fetched = self._fetch(
                db, tenant_id, connection, options, window, delta_token, usage
            )

            self._jobs.set_stage(job, "staging")
            if fetched.accounts is not None:
                summary.accounts_synced = self._staging.stage_accounts(
                    db, tenant_id, connection_id, fetched.accounts, fetch_started_at
                )
            if fetched.batch is not None:
                summary.transactions_synced = self._staging.stage_transactions(
                    db, tenant_id, connection_id, fetched.batch, window, fetch_started_at
                )
            db.commit()

            self._jobs.set_stage(job, "reconciling")
            diff = self._staging.pending_diff(
                db,
                tenant_id,
                connection_id,
                fetched_accounts=summary.accounts_synced,
                fetched_transactions=summary.transactions_synced,
            )

            self._jobs.set_stage(job, "importing")
            db.commit()
            result = self._reconciler.reconcile(
                db,
                tenant_id,
                connection_id,
                diff,
                deadline=Deadline("reconciling", self._reconcile_timeout),
            )

            self._jobs.set_stage(job, "advancing_cursor")
            self._cursors.advance(
                db,
                tenant_id,
                connection_id,
                CursorAdvance(
                    synced_until=self._advance_to(
                        options, fetched, window, previous_synced_at
                    ),
                    delta_token=self._next_delta_token(options, fetched),
                    accounts_synced=summary.accounts_synced,
                    transactions_added=result.transactions_added,
                    transactions_modified=result.transactions_updated,
                    transactions_removed=result.transactions_flagged_removed,
                ),
            )
            self._jobs.record_usage(
                job,
                api_calls=usage.calls,
                accounts_fetched=summary.accounts_synced,
                transactions_fetched=summary.transactions_synced,
            )
            summary.status = self._jobs.complete_job(
                job,
                result,
                fetched_count=diff.fetched_count,
                window_start=window.start,
                window_end=window.end,
            )
            self._jobs.record_success(db, connection)
            db.commit()
        except Exception as exc:
            db.rollback()
            message = self._describe_failure(exc, connection_id)
            self._record_failure(
                db,
                tenant_id,
                connection_id,
                job_id,
                message,
                reconnect_required=isinstance(exc, CredentialExpiredError),
                window=window,
                api_calls=usage.calls,
            )
            summary.status = "failed"
            summary.errors = [message]
            summary.duration_ms = int((time.monotonic() - started) * 1000)
            return summary

        summary.accounts_created = result.accounts_created
        summary.transactions_added = result.transactions_added
        summary.transactions_skipped_as_duplicate = result.transactions_skipped_as_duplicate
        summary.transactions_flagged_removed = result.transactions_flagged_removed
        summary.warnings = [w.to_dict() for w in result.warnings]
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Sync job %s for connection %s %s in %d ms",
            job_id,
            connection_id,
            summary.status,
            summary.duration_ms,
        )
        return summary

    def _fetch_window(self, cursor, options: SyncOptions) -> FetchWindow:
        """Build the transaction window for this attempt.

        The end never lies in the future: the cursor advances to it, and a
        watermark ahead of the clock would swallow the overlap of every
        following incremental window.
        """
        now = self._clock()
        requested_end = as_utc(options.date_range_end)
        if requested_end is not None and requested_end > now:
            logger.info(
                "Requested window end %s is in the future; using %s",
                requested_end.isoformat(),
                now.isoformat(),
            )
            requested_end = None
        end = requested_end or now
        explicit_start = as_utc(options.date_range_start)
        if explicit_start is not None:
            explicit_start = min(explicit_start, end)
        return FetchWindow(
            start=self._cursors.window_start(cursor, end, explicit_start),
            end=end,
            account_native_ids=options.account_native_ids,
        )

    @staticmethod
    def _advance_to(
        options: SyncOptions,
        fetched: _Fetched,
        window: FetchWindow,
        previous: datetime | None,
    ) -> datetime | None:
        """Where the cursor timestamp may move after this attempt.

        Only a transaction fetch moves it.  An explicit window that starts
        after the previous watermark would leave a gap, and an account
        scoped fetch says nothing about the other accounts, so neither
        moves it.
        """
        if fetched.batch is None or options.account_native_ids is not None:
            return None
        if (
            options.date_range_start is not None
            and previous is not None
            and window.start > previous
        ):
            return None
        return window.end

    @staticmethod
    def _next_delta_token(options: SyncOptions, fetched: _Fetched) -> str | None:
        if fetched.batch is None or options.account_native_ids is not None:
            return None
        return fetched.batch.next_delta_token

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _fetch(
        self,
        db: Session,
        tenant_id: str,
        connection: Connection,
        options: SyncOptions,
        window: FetchWindow,
        delta_token: str | None,
        usage: _CallCount,
    ) -> _Fetched:
        """Fetch with rate-limit backoff under one deadline.

        A rejected token is force-refreshed and the fetch retried once per
        attempt; a second rejection fails the attempt even when rate-limit
        retries happened in between.
        """
        adapter = self.registry.get_provider(connection.provider_name)
        deadline = Deadline("fetching", self._fetch_timeout)
        token = self.vault.get_valid_token(db, tenant_id, connection.id)
        auth_retried = False
        rate_limited = 0
        while True:
            try:
                return self._call_adapter(
                    adapter, token, options, window, delta_token, deadline, usage
                )
            except ProviderAuthError:
                if auth_retried:
                    raise
                auth_retried = True
                logger.warning(
                    "Token rejected for connection %s, refreshing and retrying once",
                    connection.id,
                )
                token = self.vault.force_refresh(db, tenant_id, connection.id, token)
            except ProviderRateLimitedError as exc:
                rate_limited += 1
                if rate_limited >= self._rate_limit_attempts:
                    raise ProviderRateLimitedError(
                        f"Rate limited by {connection.provider_name} after "
                        f"{rate_limited} attempts: {exc}",
                        provider_name=connection.provider_name,
                        retry_after=exc.retry_after,
                    ) from exc
                delay = self._backoff_delay(rate_limited, exc.retry_after)
                if delay >= deadline.remaining():
                    raise SyncTimeoutError("fetching", deadline.seconds) from exc
                logger.warning(
                    "Rate limited by %s (attempt %d/%d), retrying in %.1fs",
                    connection.provider_name,
                    rate_limited,
                    self._rate_limit_attempts,
                    delay,
                )
                self._sleep(delay)
                # The token may have neared expiry during the backoff
                token = self.vault.get_valid_token(db, tenant_id, connection.id)

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        delay = self._backoff * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self._max_backoff)

    def _call_adapter(
        self, adapter, token, options, window, delta_token, deadline, usage
    ) -> _Fetched:
        deadline.check()

        def fetch() -> _Fetched:
            fetched = _Fetched()
            if options.sync_accounts:
                usage.calls += 1
                fetched.accounts = adapter.fetch_accounts(token)
            if options.sync_transactions:
                usage.calls += 1
                fetched.batch = adapter.fetch_transactions(token, window, delta_token)
            return fetched

        future = self._fetch_pool.submit(fetch)
        try:
            return future.result(timeout=deadline.remaining())
        except FutureTimeoutError as exc:
            future.cancel()
            raise SyncTimeoutError("fetching", deadline.seconds) from exc

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _describe_failure(self, exc: Exception, connection_id: str) -> str:
        if isinstance(exc, (ProviderError, SyncError)):
            logger.warning("Sync failed for connection %s: %s", connection_id, exc)
            return str(exc)
        logger.error(
            "Unexpected error syncing connection %s", connection_id, exc_info=True
        )
        return f"Internal error: {type(exc).__name__}"

    def _record_failure(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        job_id: str,
        message: str,
        reconnect_required: bool,
        window: FetchWindow,
        api_calls: int = 0,
    ) -> None:
        try:
            job = db.get(SyncJob, job_id)
            connection = self._get_connection(db, tenant_id, connection_id)
            if job is not None and not job.is_terminal:
                self._jobs.record_usage(job, api_calls=api_calls)
                self._jobs.fail_job(
                    job, message, window_start=window.start, window_end=window.end
                )
            self._jobs.record_failure(
                db, connection, message, reconnect_required=reconnect_required
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.error(
                "Could not record failure of job %s", job_id, exc_info=True
            )
            raise

    @staticmethod
    def _log_background_outcome(connection_id: str, trigger: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Background %s sync for connection %s raised",
                trigger,
                connection_id,
                exc_info=exc,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _get_connection(db: Session, tenant_id: str, connection_id: str) -> Connection:
        connection = (
            db.query(Connection)
            .filter_by(tenant_id=tenant_id, id=connection_id)
            .first()
        )
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def _admin(self, tenant_id: str, connection_id: str, action) -> bool:
        if not self._locks.try_acquire(connection_id):
            return False
        try:
            db = self._session_factory()
            try:
                connection = self._get_connection(db, tenant_id, connection_id)
                action(db, connection)
                db.commit()
                return True
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        finally:
            self._locks.release(connection_id)

    def _reset_health(self, db: Session, connection: Connection) -> None:
        connection.consecutive_failures = 0
        connection.last_error = None
        connection.health_score = self._jobs.compute_health(db, connection)
        logger.info("Health reset for connection %s", connection.id)
