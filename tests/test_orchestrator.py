import unittest
from contextlib import contextmanager
from unittest import mock

from pharma_raw.config import Settings
from pharma_raw.exceptions import StorageError, TransportError
from pharma_raw import orchestrator
from pharma_raw.orchestrator import IngestJob, RunContext, RunState
from pharma_raw.reconciler import Reconciler

from fakes import ConnBoundTracker, FakeConn, FakeFetcher, FakeStore, FakeTracker, page, rec


def _settings(**overrides) -> Settings:
    base = dict(source_url="https://example.test/medicamentos", page_size=2, max_pages=200, progress_every=2)
    base.update(overrides)
    return Settings(**base)


def _five_pages(total=10):
    return {
        n: page(n, total, [rec(f"{n}-a"), rec(f"{n}-b")])
        for n in range(1, 6)
    }


class TestIngestJob(unittest.TestCase):
    def setUp(self):
        self.store = FakeStore()
        self.tracker = FakeTracker()
        self.conn = FakeConn()
        self.provisioned = []

    def _job(self, fetcher, **settings):
        return IngestJob(
            _settings(**settings),
            fetcher,
            reconciler=Reconciler(self.store),
            tracker=self.tracker,
            provision=self.provisioned.append,
        )

    def test_full_run_reconciles_every_page_in_order(self):
        fetcher = FakeFetcher(_five_pages())
        ctx = RunContext(conn=self.conn)

        with self.assertLogs("pharma_raw", level="INFO") as logs:
            code = self._job(fetcher).run(ctx)

        self.assertEqual(code, 0)
        self.assertEqual(ctx.state, RunState.FINALIZE_OK)
        self.assertEqual([c[0] for c in fetcher.calls], [1, 2, 3, 4, 5])
        self.assertEqual(self.provisioned, [self.conn])
        self.assertEqual(self.conn.commits, 5)
        run = self.tracker.runs[ctx.run_id]
        self.assertEqual(run["status"], "ok")
        self.assertEqual(run["stats"]["inserted"], 10)
        self.assertEqual(run["stats"]["total"], 10)
        self.assertEqual(run["stats"]["pages"], 5)
        events = "\n".join(logs.output)
        for event in ("run_start", '"plan"', "progress", "run_complete"):
            self.assertIn(event, events)

    def test_rerun_is_idempotent(self):
        self._job(FakeFetcher(_five_pages())).run(RunContext(conn=self.conn))
        ctx = RunContext(conn=self.conn)

        with self.assertLogs("pharma_raw", level="INFO"):
            code = self._job(FakeFetcher(_five_pages())).run(ctx)

        self.assertEqual(code, 0)
        stats = self.tracker.runs[ctx.run_id]["stats"]
        self.assertEqual((stats["inserted"], stats["updated"], stats["unchanged"]), (0, 0, 10))

    def test_cap_limits_fetches(self):
        pages = _five_pages(total=100000)
        fetcher = FakeFetcher(pages)

        with self.assertLogs("pharma_raw", level="INFO"):
            self._job(fetcher, page_size=200, max_pages=3).run(RunContext(conn=self.conn))

        self.assertEqual([c[0] for c in fetcher.calls], [1, 2, 3])

    def test_transport_failure_on_page_three_marks_run_error(self):
        pages = _five_pages()
        pages[3] = TransportError("fetch_failed status=502 page=3")
        fetcher = FakeFetcher(pages)
        ctx = RunContext(conn=self.conn)

        with self.assertLogs("pharma_raw", level="ERROR") as logs:
            code = self._job(fetcher).run(ctx)

        self.assertEqual(code, 1)
        self.assertEqual(ctx.state, RunState.FINALIZE_ERROR)
        self.assertEqual([c[0] for c in fetcher.calls], [1, 2, 3])
        run = self.tracker.runs[ctx.run_id]
        self.assertEqual(run["status"], "error")
        self.assertIn("status=502", run["error"])
        self.assertEqual(run["stats"]["inserted"], 4)
        self.assertEqual(self.conn.rollbacks, 1)
        self.assertNotIn("running", [r["status"] for r in self.tracker.runs.values()])
        self.assertEqual(len(logs.output), 1)
        self.assertIn("run_failed", logs.output[0])

    def test_storage_failure_mid_page_keeps_stats_consistent(self):
        self.store.fail_on = "2-b"
        ctx = RunContext(conn=self.conn)

        with self.assertLogs("pharma_raw", level="ERROR"):
            code = self._job(FakeFetcher(_five_pages())).run(ctx)

        self.assertEqual(code, 1)
        run = self.tracker.runs[ctx.run_id]
        self.assertEqual(run["status"], "error")
        # Page 2 was rolled back, so only page 1 counts.
        self.assertEqual(run["stats"]["total"], 2)
        self.assertEqual(run["stats"]["pages"], 1)

    def test_zero_total_processes_only_first_page(self):
        fetcher = FakeFetcher({1: page(1, 0, [rec("1"), rec("2"), rec("3")]), 2: page(2, 0, [rec("4")])})
        ctx = RunContext(conn=self.conn)

        with self.assertLogs("pharma_raw", level="INFO"):
            code = self._job(fetcher).run(ctx)

        self.assertEqual(code, 0)
        self.assertEqual(ctx.total_pages, 0)
        self.assertEqual([c[0] for c in fetcher.calls], [1])
        self.assertEqual(self.tracker.runs[ctx.run_id]["stats"]["inserted"], 3)

    def test_provision_failure_before_run_row(self):
        def boom(conn):
            raise StorageError("provision_failed")

        job = IngestJob(_settings(), FakeFetcher(_five_pages()), reconciler=Reconciler(self.store), tracker=self.tracker, provision=boom)
        ctx = RunContext(conn=self.conn)

        with self.assertLogs("pharma_raw", level="ERROR"):
            code = job.run(ctx)

        self.assertEqual(code, 1)
        self.assertIsNone(ctx.run_id)
        self.assertEqual(self.tracker.runs, {})

    def test_interrupt_is_recorded_then_reraised(self):
        pages = _five_pages()
        pages[2] = KeyboardInterrupt()

        class InterruptingFetcher(FakeFetcher):
            def fetch_page(self, page_index, page_size):
                data = self.pages.get(page_index)
                if isinstance(data, BaseException):
                    raise data
                return super().fetch_page(page_index, page_size)

        ctx = RunContext(conn=self.conn)
        with self.assertLogs("pharma_raw", level="ERROR"):
            with self.assertRaises(KeyboardInterrupt):
                self._job(InterruptingFetcher(pages)).run(ctx)

        self.assertEqual(self.tracker.runs[ctx.run_id]["status"], "error")

    def test_dry_run_writes_nothing(self):
        fetcher = FakeFetcher(_five_pages())
        job = IngestJob(_settings(), fetcher, provision=self.provisioned.append)
        ctx = RunContext(conn=None)

        with self.assertLogs("pharma_raw", level="INFO"):
            code = job.run(ctx)

        self.assertEqual(code, 0)
        self.assertEqual(self.provisioned, [])
        self.assertIsNone(ctx.run_id)
        self.assertEqual(ctx.stats.total, 10)


class TestRunJobStorage(unittest.TestCase):
    def setUp(self):
        self.conns = []
        self.tracker = FakeTracker()
        self.store = FakeStore()

        @contextmanager
        def fake_connect(dsn):
            conn = FakeConn()
            self.conns.append(conn)
            try:
                yield conn
            finally:
                conn.closed = True

        def make_store(conn):
            self.store.break_conn = conn
            return self.store

        patches = [
            mock.patch.object(orchestrator, "connect", fake_connect),
            mock.patch.object(orchestrator.PageFetcher, "from_settings", return_value=FakeFetcher(_five_pages())),
            mock.patch.object(orchestrator, "PostgresRecordStore", side_effect=make_store),
            mock.patch.object(orchestrator, "RunTracker", side_effect=lambda conn: ConnBoundTracker(self.tracker, conn)),
            mock.patch.object(orchestrator, "ensure_schema"),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def test_success_provisions_for_configured_mode(self):
        with self.assertLogs("pharma_raw", level="INFO"):
            code = orchestrator.run_job(_settings(reconcile_mode="checksum"))

        self.assertEqual(code, 0)
        orchestrator.ensure_schema.assert_called_once_with(self.conns[0], "checksum")
        self.assertEqual(len(self.store.checksum_rows), 10)

    def test_lost_connection_failure_is_recorded_on_fresh_connection(self):
        self.store.fail_on = "2-a"

        with self.assertLogs("pharma_raw", level="ERROR") as logs:
            code = orchestrator.run_job(_settings())

        self.assertEqual(code, 1)
        self.assertEqual(len(self.conns), 2)
        self.assertTrue(self.conns[0].broken)
        [run] = self.tracker.runs.values()
        self.assertEqual(run["status"], "error")
        self.assertIn("2-a", run["error"])
        self.assertEqual(run["stats"]["total"], 2)
        self.assertEqual(len(logs.output), 1)
        self.assertIn("run_failed", logs.output[0])

    def test_unrecordable_failure_is_logged(self):
        self.store.fail_on = "2-a"

        def tracker_for(conn):
            # the recovery connection is lost as well
            if len(self.conns) > 1:
                conn.broken = True
            return ConnBoundTracker(self.tracker, conn)

        orchestrator.RunTracker.side_effect = tracker_for

        with self.assertLogs("pharma_raw", level="ERROR") as logs:
            code = orchestrator.run_job(_settings())

        self.assertEqual(code, 1)
        self.assertEqual(len(self.conns), 2)
        self.assertEqual(len(logs.output), 2)
        self.assertIn("run_failed", logs.output[0])
        self.assertIn("run_fail_record_failed", logs.output[1])


if __name__ == "__main__":
    unittest.main()
