from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .config import Settings
from .db import commit, connect, is_usable, rollback
from .exceptions import StorageError
from .fetcher import PageFetcher
from .fingerprint import fingerprint
from .logging_utils import get_logger, log_json
from .models import PageResult, RunStats
from .planner import plan_total_pages
from .reconciler import Reconciler
from .runs import RunTracker
from .schema import ensure_schema
from .storage import PostgresRecordStore


class RunState(str, Enum):
    INIT = "init"
    FETCH_FIRST = "fetch_first"
    PLAN = "plan"
    RECONCILE_LOOP = "reconcile_loop"
    FINALIZE_OK = "finalize_ok"
    FINALIZE_ERROR = "finalize_error"


@dataclass
class RunContext:
    """Everything one run mutates: connection, run row id, state and stats."""

    conn: Any
    run_id: Optional[str] = None
    state: RunState = RunState.INIT
    stats: RunStats = field(default_factory=RunStats)
    total_reported: int = 0
    total_pages: int = 0
    error: Optional[str] = None
    failure_recorded: bool = False


class IngestJob:
    """Fetch page 1, plan, reconcile every page in order, finalize the run row.

    With ``reconciler``/``tracker`` left as ``None`` the job runs dry: pages
    are fetched and decoded, nothing is written.
    """

    def __init__(
        self,
        settings: Settings,
        fetcher: PageFetcher,
        reconciler: Optional[Reconciler] = None,
        tracker: Optional[RunTracker] = None,
        provision: Callable[[Any], None] = ensure_schema,
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.reconciler = reconciler
        self.tracker = tracker
        self.provision = provision
        self.logger = get_logger()

    @property
    def dry_run(self) -> bool:
        return self.reconciler is None

    def run(self, ctx: RunContext) -> int:
        log_json(self.logger, logging.INFO, "run_start", job=self.settings.job_name, source=self.settings.source_url, dry_run=self.dry_run)
        try:
            self._execute(ctx)
            self._finalize_ok(ctx)
            return 0
        except BaseException as e:
            self._finalize_error(ctx, e)
            if not isinstance(e, Exception):
                raise
            return 1

    def _execute(self, ctx: RunContext) -> None:
        s = self.settings

        ctx.state = RunState.FETCH_FIRST
        if not self.dry_run:
            self.provision(ctx.conn)
            ctx.run_id = self.tracker.start_run(s.job_name)

        first = self.fetcher.fetch_page(1, s.page_size)
        self._reconcile_page(ctx, first)

        ctx.state = RunState.PLAN
        ctx.total_reported = first.total
        ctx.total_pages = plan_total_pages(first.total, s.page_size, s.max_pages)
        log_json(
            self.logger,
            logging.INFO,
            "plan",
            run_id=ctx.run_id,
            reported_total=ctx.total_reported,
            page_size=s.page_size,
            total_pages=ctx.total_pages,
            max_pages=s.max_pages,
        )

        ctx.state = RunState.RECONCILE_LOOP
        for page in range(2, ctx.total_pages + 1):
            data = self.fetcher.fetch_page(page, s.page_size)
            self._reconcile_page(ctx, data)
            if s.progress_every > 0 and page % s.progress_every == 0:
                log_json(self.logger, logging.INFO, "progress", run_id=ctx.run_id, page=page, total_pages=ctx.total_pages, stats=ctx.stats.as_dict())

    def _reconcile_page(self, ctx: RunContext, page: PageResult) -> None:
        # Tallies join the run stats only once the page is committed.
        tally = RunStats(pages=1)
        if self.dry_run:
            tally.total = len(page.records)
        else:
            for rec in page.records:
                tally.record(self.reconciler.reconcile(rec))
            commit(ctx.conn)
        ctx.stats.merge(tally)

    def _finalize_ok(self, ctx: RunContext) -> None:
        ctx.state = RunState.FINALIZE_OK
        if not self.dry_run:
            self.tracker.finish_run(ctx.run_id, ctx.stats.as_dict())
        log_json(self.logger, logging.INFO, "run_complete", run_id=ctx.run_id, total_pages=ctx.total_pages, stats=ctx.stats.as_dict(), dry_run=self.dry_run)

    def _finalize_error(self, ctx: RunContext, err: BaseException) -> None:
        failed_in = ctx.state
        ctx.state = RunState.FINALIZE_ERROR
        ctx.error = str(err) or type(err).__name__
        if not self.dry_run and is_usable(ctx.conn):
            try:
                rollback(ctx.conn)
                if ctx.run_id:
                    self.tracker.fail_run(ctx.run_id, ctx.error, ctx.stats.as_dict())
                    ctx.failure_recorded = True
            except Exception as e:
                log_json(self.logger, logging.WARNING, "run_fail_record_deferred", run_id=ctx.run_id, error=str(e))
        log_json(
            self.logger,
            logging.ERROR,
            "run_failed",
            run_id=ctx.run_id,
            state=failed_in.value,
            error=ctx.error,
            stats=ctx.stats.as_dict(),
        )


def run_job(settings: Settings, dry_run: bool = False) -> int:
    """One full run against the configured source and database. Returns the exit code."""
    fetcher = PageFetcher.from_settings(settings)
    try:
        if dry_run:
            return IngestJob(settings, fetcher).run(RunContext(conn=None))
        return _run_with_storage(settings, fetcher)
    finally:
        fetcher.close()


def _run_with_storage(settings: Settings, fetcher: PageFetcher) -> int:
    logger = get_logger()
    ctx = RunContext(conn=None)
    code = 1
    try:
        with connect(settings.dsn()) as conn:
            ctx.conn = conn
            job = IngestJob(
                settings,
                fetcher,
                reconciler=Reconciler(PostgresRecordStore(conn), mode=settings.reconcile_mode),
                tracker=RunTracker(conn),
                provision=lambda c: ensure_schema(c, settings.reconcile_mode),
            )
            code = job.run(ctx)
    except StorageError as e:
        if ctx.state is RunState.INIT:
            log_json(logger, logging.ERROR, "run_failed", run_id=None, state=RunState.INIT.value, error=str(e))
        else:
            log_json(logger, logging.WARNING, "connection_release_failed", run_id=ctx.run_id, error=str(e))

    if ctx.run_id and ctx.state is RunState.FINALIZE_ERROR and not ctx.failure_recorded:
        _record_failure(settings, ctx)
    return code


def _record_failure(settings: Settings, ctx: RunContext) -> None:
    """Persist a run failure over a fresh connection when the run's own connection was lost."""
    try:
        with connect(settings.dsn()) as conn:
            RunTracker(conn).fail_run(ctx.run_id, ctx.error, ctx.stats.as_dict())
        ctx.failure_recorded = True
    except StorageError as e:
        log_json(get_logger(), logging.ERROR, "run_fail_record_failed", run_id=ctx.run_id, error=str(e))


def validate_source(settings: Settings, sample: int = 5) -> int:
    """Fetch page 1 and log the plan plus a few fingerprints. Writes nothing."""
    logger = get_logger()
    fetcher = PageFetcher.from_settings(settings)
    try:
        first = fetcher.fetch_page(1, settings.page_size)
    finally:
        fetcher.close()
    total_pages = plan_total_pages(first.total, settings.page_size, settings.max_pages)
    log_json(
        logger,
        logging.INFO,
        "validate",
        source=settings.source_url,
        reported_total=first.total,
        page_size=settings.page_size,
        total_pages=total_pages,
        first_page_records=len(first.records),
        sample=[{"nregistro": r.nregistro, "checksum": fingerprint(r)} for r in first.records[:sample]],
    )
    return 0
