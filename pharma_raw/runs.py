from __future__ import annotations

import json
from typing import Any, Optional
from uuid import uuid4

import psycopg

from .db import execute, fetchone, is_usable
from .exceptions import StorageError
from .models import RunStatus
from .schema import SCHEMA

SQL_START = f"""
INSERT INTO {SCHEMA}.ingestion_runs (run_id, job_name, status, started_at, stats)
VALUES (%s, %s, 'running', now(), '{{}}'::jsonb)
"""

# Only a running row may transition; terminal states are final.
SQL_FINISH = f"""
UPDATE {SCHEMA}.ingestion_runs
SET finished_at = now(),
    status = %s,
    stats = %s::jsonb,
    error = %s
WHERE run_id = %s AND status = 'running'
"""

SQL_LAST = f"""
SELECT run_id, job_name, status, started_at, finished_at, stats, error
FROM {SCHEMA}.ingestion_runs
WHERE job_name = %s
ORDER BY started_at DESC
LIMIT 1
"""


class RunTracker:
    """Run lifecycle rows. Each write commits immediately so it outlives a rolled-back page."""

    def __init__(self, conn: Any):
        self.conn = conn

    def start_run(self, job_name: str) -> str:
        run_id = str(uuid4())
        self._commit(SQL_START, (run_id, job_name))
        return run_id

    def finish_run(self, run_id: str, stats: dict) -> None:
        self._commit(SQL_FINISH, (RunStatus.OK.value, json.dumps(stats, ensure_ascii=False), None, run_id))

    def fail_run(self, run_id: str, error: str, stats: dict | None = None) -> None:
        self._commit(SQL_FINISH, (RunStatus.ERROR.value, json.dumps(stats or {}, ensure_ascii=False), error, run_id))

    def last_run(self, job_name: str) -> Optional[tuple]:
        try:
            return fetchone(self.conn, SQL_LAST, (job_name,))
        except psycopg.Error as e:
            raise StorageError(f"run_lookup_failed error={e}") from e

    def _commit(self, sql: str, params: tuple) -> None:
        try:
            execute(self.conn, sql, params)
            self.conn.commit()
        except psycopg.Error as e:
            if is_usable(self.conn):
                self.conn.rollback()
            raise StorageError(f"run_record_failed error={e}") from e
