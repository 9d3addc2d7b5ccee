"""Command-line entry point for Gmail Sync."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import datetime

from gmail_sync.config.settings import GmailSyncSettings
from gmail_sync.core.models import SyncOptions, SyncProgress, SyncStatus
from gmail_sync.pipeline.orchestrator import SyncOrchestrator
from gmail_sync.pipeline.service import GmailSyncService

POLL_INTERVAL_SECONDS = 1.0


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def format_progress(progress: SyncProgress) -> str:
    """One-line summary of a progress snapshot."""
    eta = (
        f" eta={progress.estimated_seconds_remaining:.0f}s"
        if progress.estimated_seconds_remaining is not None
        else ""
    )
    return (
        f"[{progress.status}] "
        f"batch={progress.current_batch}/{progress.total_batches} "
        f"processed={progress.processed_messages}/{progress.total_messages} "
        f"failed={progress.failed_messages} "
        f"duplicates={progress.duplicate_messages} "
        f"rate={progress.messages_per_second:.1f}/s{eta}"
    )


def _parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gmail Sync - Synchronize a Gmail mailbox into a local contact/communication store"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Run a full (or resumed) sync")
    sync_parser.add_argument("--batch-size", type=_positive_int, default=None, dest="batch_size")
    sync_parser.add_argument(
        "--max-messages", type=_positive_int, default=None, dest="max_messages",
        help="Cap the number of messages processed in this run",
    )
    sync_parser.add_argument("--query", "-q", help="Additional Gmail search query")
    sync_parser.add_argument("--start-date", type=_parse_date, dest="start_date", help="YYYY-MM-DD")
    sync_parser.add_argument("--end-date", type=_parse_date, dest="end_date", help="YYYY-MM-DD")
    sync_parser.add_argument(
        "--focus", action="append", default=[],
        help="Only sync mail from/to this address (repeatable)",
    )
    sync_parser.add_argument(
        "--resume", action="store_true", help="Continue the last paused sync from its checkpoint"
    )

    subparsers.add_parser("incremental", help="Fetch messages added since the last sync")
    subparsers.add_parser("status", help="Show sync progress and stored counts")
    subparsers.add_parser("clear-errors", help="Clear the in-memory error log")
    subparsers.add_parser("authorize", help="Run the OAuth consent flow in a browser")
    return parser


def wait_for_run(orchestrator: SyncOrchestrator) -> SyncProgress:
    """Poll progress until the background run ends; Ctrl-C pauses it."""
    try:
        while True:
            progress = orchestrator.get_progress()
            print(format_progress(progress), end="\r", flush=True)
            if progress.status is not SyncStatus.RUNNING:
                break
            time.sleep(POLL_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        print("\n\nPausing sync...")
        orchestrator.pause()
    orchestrator.join()
    return orchestrator.get_progress()


def print_errors(progress: SyncProgress) -> None:
    for error in progress.detailed_errors:
        target = f" [{error.message_id}]" if error.message_id else ""
        print(f"  {error.timestamp:%H:%M:%S} {error.operation}{target}: {error.error}")
        if error.remedy:
            print(f"      {error.category_label}: {error.remedy}")


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = GmailSyncSettings()
    setup_logging(settings.log_level)

    service = GmailSyncService(settings=settings)

    try:
        if args.command == "authorize":
            email = service.authorize()
            print(f"\nAuthorized {email}")

        elif args.command == "sync":
            options = SyncOptions(
                batch_size=args.batch_size or settings.batch_size,
                max_messages=args.max_messages,
                query=args.query,
                start_date=args.start_date,
                end_date=args.end_date,
                focus_addresses=tuple(args.focus),
                resume_from_last_sync=args.resume,
            )
            orchestrator = service.orchestrator
            if args.resume:
                orchestrator.resume(options)
            else:
                orchestrator.start(options)
            progress = wait_for_run(orchestrator)
            print(f"\n\nFinished: {format_progress(progress)}")
            if progress.status is SyncStatus.PAUSED:
                print("Run `sync --resume` to continue.")
            if progress.error:
                print(f"Error: {progress.error}", file=sys.stderr)
            if progress.detailed_errors:
                print(f"\n{len(progress.detailed_errors)} errors:")
                print_errors(progress)
            if progress.status is SyncStatus.ERROR:
                sys.exit(1)

        elif args.command == "incremental":
            orchestrator = service.orchestrator
            orchestrator.incremental_sync()
            progress = wait_for_run(orchestrator)
            print(f"\nFinished: {format_progress(progress)}")
            if progress.detailed_errors:
                print(f"\n{len(progress.detailed_errors)} errors:")
                print_errors(progress)

        elif args.command == "status":
            progress = service.orchestrator.get_progress()
            print(f"\n{format_progress(progress)}")
            print(f"  operation: {progress.current_operation} ({progress.operation_details})")
            if progress.error:
                print(f"  last error: {progress.error}")
            status = service.get_status()
            print(f"\n  account:        {status['user_email'] or '(unknown)'}")
            print(f"  history id:     {status['history_id'] or '(none)'}")
            print(f"  communications: {status['communications']}")
            print(f"  contacts:       {status['contacts']}")
            if status["recent_runs"]:
                print("\nRecent runs:")
                for run in status["recent_runs"]:
                    print(
                        f"  #{run['run_id']} {run['kind']:<11s} {run['status'] or 'running':<9s} "
                        f"{run['processed_messages'] or 0} processed, "
                        f"{run['failed_messages'] or 0} failed  {run['started_at']}"
                    )

        elif args.command == "clear-errors":
            orchestrator = service.orchestrator
            count = len(orchestrator.get_progress().detailed_errors)
            orchestrator.clear_errors()
            print(f"\nCleared {count} errors")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.close()


if __name__ == "__main__":
    main()
