#!/usr/bin/env python
"""Command-line access to the sync engine.

Usage:
    python -m scripts.sync_cli run --tenant t1 --connection <uuid>
    python -m scripts.sync_cli run --tenant t1 --connection <uuid> --start 2024-01-01
    python -m scripts.sync_cli due --interval-minutes 60
    python -m scripts.sync_cli jobs --tenant t1 --connection <uuid> --limit 5
    python -m scripts.sync_cli reset-cursor --tenant t1 --connection <uuid>
    python -m scripts.sync_cli reset-health --tenant t1 --connection <uuid>
    python -m scripts.sync_cli schedule --tenant t1 --connection <uuid> --every hourly
    python -m scripts.sync_cli usage --days 7
    python -m scripts.sync_cli set-secret TINK_CLIENT_SECRET
    python -m scripts.sync_cli delete-secret TINK_CLIENT_SECRET
"""

import argparse
import getpass
import sys
from datetime import datetime, timezone

from database import get_session_local, init_db
from logging_config import setup_logging
from models.connection import SYNC_SCHEDULE_MINUTES
from services.connection_service import ConnectionService
from services.credential_manager import CREDENTIAL_KEYS, delete_credential, set_credential
from services.exceptions import ConnectionNotFoundError, ConnectionNotSyncableError
from services.job_recorder import JobRecorder
from services.sync_orchestrator import SyncOptions, SyncOrchestrator, SyncSummary


def build_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(session_factory=get_session_local())


def _parse_date(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def print_summary(summary: SyncSummary) -> None:
    if summary.already_in_progress:
        print(f"{summary.connection_id}: sync already in progress")
        return
    print(f"{summary.connection_id}: {summary.status} (job {summary.job_id}, {summary.duration_ms} ms)")
    print(f"  accounts:     {summary.accounts_synced} seen, {summary.accounts_created} created")
    print(
        f"  transactions: {summary.transactions_synced} seen, "
        f"{summary.transactions_added} added, "
        f"{summary.transactions_skipped_as_duplicate} duplicate, "
        f"{summary.transactions_flagged_removed} flagged removed"
    )
    for error in summary.errors:
        print(f"  error: {error}")
    for warning in summary.warnings:
        print(f"  warning [{warning.get('code')}]: {warning.get('message')}")


def cmd_run(args, orchestrator: SyncOrchestrator) -> int:
    options = SyncOptions(
        sync_accounts=not args.no_accounts,
        sync_transactions=not args.no_transactions,
        date_range_start=args.start,
        date_range_end=args.end,
        account_native_ids=args.accounts,
    )
    try:
        summary = orchestrator.run_sync(args.tenant, args.connection, options, trigger="cli")
    except (ConnectionNotFoundError, ConnectionNotSyncableError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print_summary(summary)
    return 0 if summary.status in ("completed", "partial") else 1


def cmd_due(args, orchestrator: SyncOrchestrator) -> int:
    futures = orchestrator.sync_due_connections(args.interval_minutes)
    if not futures:
        print("No connections due")
        return 0
    failed = 0
    for future in futures:
        try:
            summary = future.result()
        except (ConnectionNotFoundError, ConnectionNotSyncableError) as e:
            # Status changed between scheduling and running
            print(f"Skipped: {e}")
            continue
        print_summary(summary)
        if summary.status == "failed":
            failed += 1
    return 1 if failed else 0


def cmd_jobs(args, orchestrator: SyncOrchestrator) -> int:
    db = get_session_local()()
    try:
        recorder = JobRecorder()
        try:
            health = recorder.get_connection_health(db, args.tenant, args.connection)
        except ConnectionNotFoundError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(
            f"{health.connection_id}: {health.status}, health {health.health_score}, "
            f"{health.consecutive_failures} consecutive failures"
        )
        for job in recorder.list_jobs(db, args.tenant, args.connection, limit=args.limit):
            line = (
                f"  {job.started_at:%Y-%m-%d %H:%M:%S}  {job.status:<9} {job.trigger:<13} "
                f"fetched={job.fetched_count} imported={job.imported_count} "
                f"skipped={job.skipped_count}"
            )
            if job.error_message:
                line += f"  error: {job.error_message}"
            print(line)
    finally:
        db.close()
    return 0


def cmd_reset_cursor(args, orchestrator: SyncOrchestrator) -> int:
    if not orchestrator.reset_cursor(args.tenant, args.connection):
        print("Sync in progress; try again later", file=sys.stderr)
        return 1
    print(f"Cursor reset for {args.connection}; next sync uses the initial lookback")
    return 0


def cmd_reset_health(args, orchestrator: SyncOrchestrator) -> int:
    if not orchestrator.reset_connection(args.tenant, args.connection):
        print("Sync in progress; try again later", file=sys.stderr)
        return 1
    print(f"Failure counters cleared for {args.connection}")
    return 0


def cmd_schedule(args, orchestrator: SyncOrchestrator) -> int:
    service = ConnectionService(provider_registry=orchestrator.registry, vault=orchestrator.vault)
    db = get_session_local()()
    try:
        connection = service.update_schedule(
            db,
            args.tenant,
            args.connection,
            sync_schedule=args.every,
            sync_enabled=args.enabled,
            sync_priority=args.priority,
        )
    except ConnectionNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    else:
        state = "enabled" if connection.sync_enabled else "disabled"
        print(
            f"{connection.id}: {connection.sync_schedule}, {state}, "
            f"priority {connection.sync_priority}"
        )
        if connection.next_sync_at is not None:
            print(f"  next sync at {connection.next_sync_at:%Y-%m-%d %H:%M} UTC")
    finally:
        db.close()
    return 0


def cmd_usage(args, orchestrator: SyncOrchestrator) -> int:
    db = get_session_local()()
    try:
        usage = orchestrator.job_recorder.provider_usage(
            db, tenant_id=args.tenant, days=args.days
        )
    finally:
        db.close()
    if not usage:
        print(f"No sync jobs in the last {args.days} day(s)")
        return 0
    for provider in usage:
        print(
            f"{provider.provider_name}: {provider.api_calls} API calls, "
            f"{provider.sync_jobs} jobs ({provider.failed_jobs} failed), "
            f"{provider.accounts_synced} accounts, "
            f"{provider.transactions_synced} transactions"
        )
        for day in provider.days:
            print(
                f"  {day.usage_date:%Y-%m-%d}  calls={day.api_calls} "
                f"jobs={day.sync_jobs} failed={day.failed_jobs}"
            )
    return 0


def cmd_set_secret(args, orchestrator: SyncOrchestrator | None) -> int:
    value = args.value if args.value is not None else getpass.getpass(f"{args.key}: ")
    if not set_credential(args.key, value.strip()):
        print(f"Could not store {args.key} in the keychain", file=sys.stderr)
        return 1
    print(f"Stored {args.key} in the keychain")
    return 0


def cmd_delete_secret(args, orchestrator: SyncOrchestrator | None) -> int:
    if not delete_credential(args.key):
        print(f"{args.key} was not removed from the keychain", file=sys.stderr)
        return 1
    print(f"Deleted {args.key} from the keychain")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provider sync engine CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_target(p):
        p.add_argument("--tenant", required=True, help="Tenant id")
        p.add_argument("--connection", required=True, help="Connection id")

    run = sub.add_parser("run", help="Run one sync now")
    add_target(run)
    run.add_argument("--start", type=_parse_date, help="Window start (ISO date)")
    run.add_argument("--end", type=_parse_date, help="Window end (ISO date)")
    run.add_argument("--no-accounts", action="store_true", help="Skip the account fetch")
    run.add_argument("--no-transactions", action="store_true", help="Skip the transaction fetch")
    run.add_argument(
        "--account",
        dest="accounts",
        action="append",
        metavar="ACCOUNT_ID",
        help="Only fetch transactions for this provider account (repeatable)",
    )
    run.set_defaults(handler=cmd_run)

    due = sub.add_parser("due", help="Sync every active connection that is due")
    due.add_argument("--interval-minutes", type=int, help="Override the scheduled interval")
    due.set_defaults(handler=cmd_due)

    jobs = sub.add_parser("jobs", help="Show connection health and recent jobs")
    add_target(jobs)
    jobs.add_argument("--limit", type=int, default=10)
    jobs.set_defaults(handler=cmd_jobs)

    reset_cursor = sub.add_parser("reset-cursor", help="Re-fetch from the initial lookback")
    add_target(reset_cursor)
    reset_cursor.set_defaults(handler=cmd_reset_cursor)

    reset_health = sub.add_parser("reset-health", help="Clear failure counters")
    add_target(reset_health)
    reset_health.set_defaults(handler=cmd_reset_health)

    schedule = sub.add_parser("schedule", help="Change a connection's sync schedule")
    add_target(schedule)
    schedule.add_argument("--every", choices=list(SYNC_SCHEDULE_MINUTES), help="Schedule")
    schedule.add_argument("--priority", type=int, help="Higher runs first when several are due")
    toggle = schedule.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_const", const=True)
    toggle.add_argument("--disable", dest="enabled", action="store_const", const=False)
    schedule.set_defaults(handler=cmd_schedule)

    usage = sub.add_parser("usage", help="Provider API usage per day")
    usage.add_argument("--tenant", help="Restrict to one tenant")
    usage.add_argument("--days", type=int, default=7)
    usage.set_defaults(handler=cmd_usage)

    # Secret commands never open the database or build an orchestrator
    set_secret = sub.add_parser("set-secret", help="Store a provider secret in the keychain")
    set_secret.add_argument("key", choices=sorted(CREDENTIAL_KEYS))
    set_secret.add_argument("--value", help="Secret value; prompted for when omitted")
    set_secret.set_defaults(handler=cmd_set_secret, needs_engine=False)

    delete_secret = sub.add_parser("delete-secret", help="Remove a secret from the keychain")
    delete_secret.add_argument("key", choices=sorted(CREDENTIAL_KEYS))
    delete_secret.set_defaults(handler=cmd_delete_secret, needs_engine=False)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    if not getattr(args, "needs_engine", True):
        return args.handler(args, None)
    init_db()
    orchestrator = build_orchestrator()
    try:
        return args.handler(args, orchestrator)
    finally:
        orchestrator.shutdown(wait=True)


if __name__ == "__main__":
    sys.exit(main())
