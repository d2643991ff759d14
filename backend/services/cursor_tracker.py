"""Sync cursor tracker - the incremental watermark for each connection."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from config import settings
from models import SyncCursor
from models.utils import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CursorAdvance:
    """What a successful sync contributes to the cursor."""

    synced_until: datetime | None  # None = counters only, timestamp untouched
    delta_token: str | None = None
    accounts_synced: int = 0
    transactions_added: int = 0
    transactions_modified: int = 0
    transactions_removed: int = 0


class CursorTracker:
    """Reads and advances per-connection sync cursors.

    The timestamp only moves forward.  ``advance`` is called only after a
    sync's import succeeded, in the same transaction as the import, so a
    failed attempt leaves the cursor where the last success put it and the
    next attempt re-fetches the same window.
    """

    def __init__(
        self,
        lookback_days: int | None = None,
        overlap_days: int | None = None,
        clock=utcnow,
    ):
        self._lookback = timedelta(
            days=lookback_days
            if lookback_days is not None
            else settings.INITIAL_SYNC_LOOKBACK_DAYS
        )
        self._overlap = timedelta(
            days=overlap_days
            if overlap_days is not None
            else settings.INCREMENTAL_OVERLAP_DAYS
        )
        self._clock = clock

    def get_cursor(
        self, db: Session, tenant_id: str, connection_id: str
    ) -> SyncCursor | None:
        return (
            db.query(SyncCursor)
            .filter_by(tenant_id=tenant_id, connection_id=connection_id)
            .first()
        )

    def window_start(
        self,
        cursor: SyncCursor | None,
        window_end: datetime,
        explicit_start: datetime | None = None,
    ) -> datetime:
        """Choose where the next fetch window begins.

        An explicit start wins.  Otherwise the window re-covers a few days
        before the last successful sync so late-posting transactions are
        picked up, or looks back a fixed period on the first sync.
        """
        if explicit_start is not None:
            return as_utc(explicit_start)
        last = as_utc(cursor.last_synced_at) if cursor is not None else None
        if last is not None:
            return min(last - self._overlap, window_end)
        return window_end - self._lookback

    def advance(
        self,
        db: Session,
        tenant_id: str,
        connection_id: str,
        advance: CursorAdvance,
    ) -> SyncCursor:
        """Move the cursor forward and accumulate counters (flush only)."""
        cursor = self.get_cursor(db, tenant_id, connection_id)
        if cursor is None:
            cursor = SyncCursor(
                tenant_id=tenant_id,
                connection_id=connection_id,
                accounts_synced=0,
                transactions_added=0,
                transactions_modified=0,
                transactions_removed=0,
            )
            db.add(cursor)

        previous = as_utc(cursor.last_synced_at)
        new = as_utc(advance.synced_until)
        if new is not None and (previous is None or new > previous):
            cursor.last_synced_at = new
        elif new is not None:
            logger.warning(
                "Cursor for connection %s not moved back from %s to %s",
                connection_id,
                previous.isoformat(),
                new.isoformat(),
            )
        if advance.delta_token is not None:
            cursor.delta_token = advance.delta_token

        cursor.accounts_synced += advance.accounts_synced
        cursor.transactions_added += advance.transactions_added
        cursor.transactions_modified += advance.transactions_modified
        cursor.transactions_removed += advance.transactions_removed
        db.flush()
        return cursor

    def reset(self, db: Session, tenant_id: str, connection_id: str) -> SyncCursor | None:
        """Administrative rewind: the next sync starts from scratch (flush only)."""
        cursor = self.get_cursor(db, tenant_id, connection_id)
        if cursor is None:
            return None
        cursor.last_synced_at = None
        cursor.delta_token = None
        cursor.reset_at = self._clock()
        db.flush()
        logger.info("Cursor reset for connection %s", connection_id)
        return cursor
