from __future__ import annotations

from typing import Any

import psycopg

from .db import execute, fetchone
from .exceptions import StorageError

SCHEMA = "pharma_raw"

# identity mode keeps one row per nregistro; checksum mode keeps one row per
# distinct content, so the same nregistro may appear many times.
IDENTITY_TABLE = f"{SCHEMA}.medicamentos"
CHECKSUM_TABLE = f"{SCHEMA}.medicamentos_checksum"
NREGISTRO_INDEX = "medicamentos_nregistro_key"


def _record_table_ddl(table: str) -> str:
    return f"""
    CREATE TABLE IF NOT EXISTS {table} (
      id SERIAL PRIMARY KEY,
      nregistro TEXT,
      nombre TEXT,
      labtitular TEXT,
      labcomercializador TEXT,
      comerc BOOLEAN,
      estado_aut BIGINT,
      estado_rev BIGINT,
      estado_susp BIGINT,
      checksum TEXT UNIQUE,
      payload JSONB,
      fetched_at TIMESTAMPTZ DEFAULT now()
    )
    """


DDL_COMMON = (
    f"CREATE SCHEMA IF NOT EXISTS {SCHEMA}",
    f"""
    CREATE TABLE IF NOT EXISTS {SCHEMA}.ingestion_runs (
      run_id TEXT PRIMARY KEY,
      job_name TEXT NOT NULL,
      status TEXT NOT NULL CHECK (status IN ('running', 'ok', 'error')),
      started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      finished_at TIMESTAMPTZ,
      stats JSONB,
      error TEXT
    )
    """,
)

SQL_HAS_NREGISTRO_INDEX = f"SELECT to_regclass('{SCHEMA}.{NREGISTRO_INDEX}')"

# Tables written by the legacy append-only job hold one row per content
# version; keep the most recent row per nregistro.
SQL_DEDUPE_IDENTITY = f"""
DELETE FROM {IDENTITY_TABLE} m
USING (
  SELECT id,
         row_number() OVER (PARTITION BY nregistro ORDER BY fetched_at DESC NULLS LAST, id DESC) AS rn
  FROM {IDENTITY_TABLE}
  WHERE nregistro IS NOT NULL
) d
WHERE m.id = d.id AND d.rn > 1
"""

SQL_CREATE_NREGISTRO_INDEX = f"CREATE UNIQUE INDEX IF NOT EXISTS {NREGISTRO_INDEX} ON {IDENTITY_TABLE} (nregistro)"


def ensure_schema(conn: Any, mode: str = "identity") -> None:
    """Create schema, run table and the record table for ``mode`` if absent. Safe on every run."""
    try:
        for stmt in DDL_COMMON:
            execute(conn, stmt)
        if mode == "checksum":
            execute(conn, _record_table_ddl(CHECKSUM_TABLE))
        else:
            execute(conn, _record_table_ddl(IDENTITY_TABLE))
            row = fetchone(conn, SQL_HAS_NREGISTRO_INDEX)
            if not row or row[0] is None:
                execute(conn, SQL_DEDUPE_IDENTITY)
                execute(conn, SQL_CREATE_NREGISTRO_INDEX)
        conn.commit()
    except psycopg.Error as e:
        conn.rollback()
        raise StorageError(f"provision_failed error={e}") from e
