import json
import unittest
from unittest import mock

import psycopg

from pharma_raw.exceptions import StorageError
from pharma_raw.runs import SQL_FINISH, SQL_START, RunTracker


class TestRunTracker(unittest.TestCase):
    def setUp(self):
        self.conn = mock.MagicMock()
        self.conn.closed = False
        self.conn.broken = False
        self.cur = self.conn.cursor.return_value.__enter__.return_value
        self.tracker = RunTracker(self.conn)

    def test_start_run_commits_running_row(self):
        run_id = self.tracker.start_run("pharma_raw")
        sql, params = self.cur.execute.call_args.args
        self.assertIs(sql, SQL_START)
        self.assertEqual(params, (run_id, "pharma_raw"))
        self.assertIn("'running'", SQL_START)
        self.conn.commit.assert_called_once()

    def test_finish_run_persists_stats(self):
        self.tracker.finish_run("r1", {"inserted": 3, "total": 3})
        sql, params = self.cur.execute.call_args.args
        self.assertIs(sql, SQL_FINISH)
        self.assertEqual(params[0], "ok")
        self.assertEqual(json.loads(params[1]), {"inserted": 3, "total": 3})
        self.assertIsNone(params[2])
        self.assertEqual(params[3], "r1")

    def test_fail_run_persists_error(self):
        self.tracker.fail_run("r1", "fetch_failed status=500 page=3")
        params = self.cur.execute.call_args.args[1]
        self.assertEqual(params[0], "error")
        self.assertEqual(params[2], "fetch_failed status=500 page=3")

    def test_terminal_update_only_matches_running_rows(self):
        self.assertIn("status = 'running'", SQL_FINISH)

    def test_driver_error_rolls_back(self):
        self.cur.execute.side_effect = psycopg.OperationalError("gone")
        with self.assertRaises(StorageError):
            self.tracker.finish_run("r1", {})
        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()

    def test_lost_connection_is_not_rolled_back(self):
        self.conn.broken = True
        self.cur.execute.side_effect = psycopg.OperationalError("the connection is lost")
        with self.assertRaises(StorageError):
            self.tracker.fail_run("r1", "boom")
        self.conn.rollback.assert_not_called()


if __name__ == "__main__":
    unittest.main()
