from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional

import psycopg

from .exceptions import StorageError


def is_usable(conn: Any) -> bool:
    """False once the connection is closed or the server side is gone."""
    return not (conn.closed or conn.broken)


@contextmanager
def connect(dsn: str) -> Iterator[Any]:
    """Hold one connection for the whole run.

    Commits are explicit (per page, per run-record write); anything still
    pending when the block raises is rolled back. A lost connection is not
    committed or rolled back, only closed.
    """
    try:
        conn = psycopg.connect(dsn)
    except psycopg.Error as e:
        raise StorageError(f"connect_failed error={e}") from e
    try:
        yield conn
        if is_usable(conn):
            commit(conn)
    except BaseException:
        if is_usable(conn):
            conn.rollback()
        raise
    finally:
        conn.close()


def commit(conn: Any) -> None:
    try:
        conn.commit()
    except psycopg.Error as e:
        raise StorageError(f"commit_failed error={e}") from e


def rollback(conn: Any) -> None:
    try:
        conn.rollback()
    except psycopg.Error as e:
        raise StorageError(f"rollback_failed error={e}") from e


def execute(conn: Any, sql: str, params: tuple = ()) -> None:
    with conn.cursor() as cur:
        cur.execute(sql, params)


def fetchone(conn: Any, sql: str, params: tuple = ()) -> Optional[tuple]:
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return cur.fetchone()
