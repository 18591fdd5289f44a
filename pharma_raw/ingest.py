from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from .config import Settings, load_settings
from .db import connect
from .exceptions import PharmaRawError
from .logging_utils import configure_logging, get_logger, log_json
from .orchestrator import run_job, validate_source
from .runs import RunTracker
from .utils import now_utc


def cmd_status(settings: Settings) -> int:
    with connect(settings.dsn()) as conn:
        row = RunTracker(conn).last_run(settings.job_name)
    if not row:
        print(f"{settings.job_name}  no runs recorded")
        return 0
    run_id, job_name, status, started_at, finished_at, stats, error = row
    print(f"{job_name}  run={run_id}  status={status}  started={started_at}  finished={finished_at}")
    print(f"  stats={stats}")
    if error:
        print(f"  error={error}")
    return 0


def schedule_loop(settings: Settings) -> None:
    """Re-invoke the job every ``schedule_seconds``; a failed run waits for the next tick."""
    from apscheduler.schedulers.blocking import BlockingScheduler
    from apscheduler.triggers.interval import IntervalTrigger

    logger = get_logger()
    sched = BlockingScheduler(timezone="UTC")

    def job() -> None:
        code = run_job(settings)
        if code != 0:
            log_json(logger, logging.ERROR, "scheduled_job_failed", job=settings.job_name, exit_code=code, next_in_seconds=settings.schedule_seconds)

    sched.add_job(
        job,
        IntervalTrigger(seconds=settings.schedule_seconds),
        id=settings.job_name,
        max_instances=1,
        coalesce=True,
        # first run immediately, then on the interval
        next_run_time=now_utc(),
    )

    log_json(logger, logging.INFO, "scheduler_started", job=settings.job_name, interval_seconds=settings.schedule_seconds)
    sched.start()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pharma_raw", description="Idempotent paginated ingestion of the CIMA medicines registry")
    sub = parser.add_subparsers(dest="cmd", required=True)

    runp = sub.add_parser("run", help="Run the ingestion job once")
    runp.add_argument("--dry-run", action="store_true", help="Fetch and decode every page, write nothing")

    sub.add_parser("validate", help="Fetch page 1, log the plan and sample fingerprints")
    sub.add_parser("status", help="Show the most recent run record")
    sub.add_parser("schedule", help="Run the job on a fixed interval (APScheduler loop)")
    return parser


def main(argv=None) -> int:
    load_dotenv(override=False)
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except PharmaRawError as e:
        configure_logging("INFO")
        log_json(get_logger(), logging.ERROR, "config_invalid", error=str(e))
        return 1
    configure_logging(settings.log_level)

    if args.cmd == "run":
        return run_job(settings, dry_run=args.dry_run)

    if args.cmd == "schedule":
        schedule_loop(settings)
        return 0

    try:
        if args.cmd == "validate":
            return validate_source(settings)
        if args.cmd == "status":
            return cmd_status(settings)
    except PharmaRawError as e:
        log_json(get_logger(), logging.ERROR, f"{args.cmd}_failed", error=str(e))
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
