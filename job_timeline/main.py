"""Command-line entry point for the job timeline pipeline."""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

from . import pipeline_state, review
from .classifier import StructuredClassifier
from .config import Config, get_config, load_config
from .db import init_db
from .errors import ConfigurationError
from .gmail_client import GmailProvider
from .llm import LLMClient
from .matcher import list_jobs
from .models import PipelineStage, SyncOptions
from .sync import CancellationToken, recent_sync_runs, run_sync

ROOT_DIR = Path(__file__).parent.parent
LOCK_FILE = Path("/tmp/job_timeline.lock")
LOG_DIR = ROOT_DIR / "logs"

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """Configure logging for the application."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / "app.log"

    config = get_config()
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout),
        ],
    )


def resolve_db_path(config: Config) -> Path:
    path = Path(config.db_path)
    return path if path.is_absolute() else ROOT_DIR / path


def _print_event(event) -> None:
    account = f"[{event.account_id}] " if event.account_id else ""
    print(f"{account}{event.phase}: {event.detail}")


def cmd_sync(args: argparse.Namespace) -> int:
    config = get_config()
    accounts = [a for a in config.accounts if not args.account or a.account_id in args.account]
    providers = [GmailProvider.from_account(a) for a in accounts]

    options = SyncOptions(
        days_to_sync=args.days or config.days_to_sync,
        max_messages=args.max_messages or config.max_messages,
        model_id=args.model,
    )

    token = CancellationToken()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: token.cancel())

    sweeper = review.ReviewSweeper(
        interval_seconds=config.review_sweep_interval_minutes * 60,
        initial_delay_seconds=config.review_sweep_initial_delay_seconds,
    )

    try:
        with FileLock(LOCK_FILE, timeout=10):
            logger.info("Acquired lock, starting sync")
            sweeper.start()
            try:
                run = run_sync(options, providers, cancel_token=token, progress=_print_event, config=config)
            finally:
                sweeper.stop(timeout=5)
    except Timeout:
        logger.warning("Could not acquire lock - another sync is running")
        return 0
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print(
        f"Sync {run.status}: {run.accounts_synced} accounts, {run.messages_fetched} fetched, "
        f"{run.messages_classified} classified, {run.jobs_found} jobs"
        + (f" ({run.error})" if run.error else "")
    )
    return 0 if run.status in ("success", "cancelled") else 1


def cmd_reset(args: argparse.Namespace) -> int:
    count = pipeline_state.reset_stage(PipelineStage(args.stage), args.account, args.message)
    print(f"Reset {count} records to {args.stage}")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    count = review.sweep_expired()
    print(f"Removed {count} expired review items")
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    if args.review_command == "list":
        for item in review.list_items(args.account, include_reviewed=args.all):
            c = item.classification
            flag = " (reviewed)" if item.manually_reviewed else ""
            print(
                f"{item.id}\t{item.account_id}\t{item.confidence:.2f}\t"
                f"{c.company or '-'} / {c.position or '-'}\texpires {item.expires_at:%Y-%m-%d}{flag}"
            )
        return 0

    if args.review_command == "mark":
        return 0 if review.mark_reviewed(args.id) else 1

    same_job = None
    if args.review_command == "confirm":
        try:
            same_job = StructuredClassifier(LLMClient.from_config(get_config())).same_job
        except ConfigurationError as e:
            logger.warning(f"No model available, matching on similarity keys: {e}")

    try:
        job = review.confirm(args.id, args.review_command == "confirm", same_job)
    except KeyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if job is not None:
        print(f"Confirmed as job {job.id}: {job.company} - {job.position} ({job.status.value})")
    else:
        print(f"Rejected review item {args.id}")
    return 0


def cmd_jobs(args: argparse.Namespace) -> int:
    for job in list_jobs(args.account):
        print(
            f"{job.first_seen_date:%Y-%m-%d}\t{job.company}\t{job.position}\t"
            f"{job.status.value}\t{len(job.email_history)} emails"
        )
    return 0


def cmd_failed(args: argparse.Namespace) -> int:
    for record in pipeline_state.list_failed(args.account):
        print(f"{record.account_id}\t{record.provider_message_id}\t{record.stage.value}\t{record.last_error}")
    return 0


def cmd_runs(args: argparse.Namespace) -> int:
    for run in recent_sync_runs(args.limit):
        print(
            f"{run.id}\t{run.started_at:%Y-%m-%d %H:%M}\t{run.status}\t"
            f"{run.messages_fetched} fetched\t{run.jobs_found} jobs\t{run.duration_seconds:.1f}s"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="job-timeline", description="Build a job-search timeline from email")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Fetch and classify new mail")
    sync.add_argument("--days", type=int, help="How many days back to fetch")
    sync.add_argument("--max-messages", type=int, help="Per-account message cap")
    sync.add_argument("--model", help="Model id (must be in allowed_models)")
    sync.add_argument("--account", action="append", help="Only sync this account (repeatable)")
    sync.set_defaults(func=cmd_sync)

    reset = subparsers.add_parser("reset", help="Roll records back to a pipeline stage")
    reset.add_argument("stage", choices=[s.value for s in PipelineStage])
    reset.add_argument("--account")
    reset.add_argument("--message", help="Provider message id")
    reset.set_defaults(func=cmd_reset)

    sweep = subparsers.add_parser("sweep", help="Delete expired review items")
    sweep.set_defaults(func=cmd_sweep)

    review_parser = subparsers.add_parser("review", help="Work the review queue")
    review_sub = review_parser.add_subparsers(dest="review_command", required=True)
    review_list = review_sub.add_parser("list")
    review_list.add_argument("--account")
    review_list.add_argument("--all", action="store_true", help="Include reviewed items")
    for name in ("confirm", "reject", "mark"):
        p = review_sub.add_parser(name)
        p.add_argument("id", type=int)
    review_parser.set_defaults(func=cmd_review)

    jobs = subparsers.add_parser("jobs", help="List tracked jobs")
    jobs.add_argument("--account")
    jobs.set_defaults(func=cmd_jobs)

    failed = subparsers.add_parser("failed", help="List records that exhausted their attempts")
    failed.add_argument("--account")
    failed.set_defaults(func=cmd_failed)

    runs = subparsers.add_parser("runs", help="Show recent sync runs")
    runs.add_argument("--limit", type=int, default=10)
    runs.set_defaults(func=cmd_runs)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        setup_logging()
    except FileNotFoundError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        init_db(resolve_db_path(config))
        return args.func(args)
    except Exception as e:
        logger.exception(f"Command {args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
