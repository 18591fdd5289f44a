from __future__ import annotations

import json
from typing import Any, Protocol

import psycopg

from .exceptions import StorageError
from .models import MedicamentoRecord, Outcome
from .schema import CHECKSUM_TABLE, IDENTITY_TABLE

_COLUMNS = """
  nregistro, nombre, labtitular, labcomercializador, comerc,
  estado_aut, estado_rev, estado_susp, checksum, payload
"""

_VALUES = "%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb"

# xmax = 0 only for a freshly inserted tuple. When the fingerprint matches,
# the WHERE clause suppresses the update and no row is returned.
SQL_UPSERT_BY_IDENTITY = f"""
INSERT INTO {IDENTITY_TABLE} ({_COLUMNS})
VALUES ({_VALUES})
ON CONFLICT (nregistro)
DO UPDATE SET
  nombre = EXCLUDED.nombre,
  labtitular = EXCLUDED.labtitular,
  labcomercializador = EXCLUDED.labcomercializador,
  comerc = EXCLUDED.comerc,
  estado_aut = EXCLUDED.estado_aut,
  estado_rev = EXCLUDED.estado_rev,
  estado_susp = EXCLUDED.estado_susp,
  checksum = EXCLUDED.checksum,
  payload = EXCLUDED.payload,
  fetched_at = now()
WHERE {IDENTITY_TABLE}.checksum IS DISTINCT FROM EXCLUDED.checksum
RETURNING (xmax = 0) AS inserted
"""

SQL_INSERT_IF_UNSEEN = f"""
INSERT INTO {CHECKSUM_TABLE} ({_COLUMNS})
VALUES ({_VALUES})
ON CONFLICT (checksum) DO NOTHING
RETURNING id
"""


class RecordStore(Protocol):
    def upsert_by_identity(self, rec: MedicamentoRecord, checksum: str) -> Outcome: ...

    def insert_if_unseen(self, rec: MedicamentoRecord, checksum: str) -> Outcome: ...


def _bigint(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def row_params(rec: MedicamentoRecord, checksum: str) -> tuple:
    return (
        rec.nregistro,
        rec.nombre,
        rec.labtitular,
        rec.labcomercializador,
        _bool(rec.comerc),
        _bigint(rec.estado_aut),
        _bigint(rec.estado_rev),
        _bigint(rec.estado_susp),
        checksum,
        json.dumps(rec.payload, ensure_ascii=False, default=str),
    )


class PostgresRecordStore:
    """Conditional writes: identity upserts on ``medicamentos``, checksum inserts on ``medicamentos_checksum``.

    Writes join the connection's open transaction; the caller commits.
    """

    def __init__(self, conn: Any):
        self.conn = conn

    def upsert_by_identity(self, rec: MedicamentoRecord, checksum: str) -> Outcome:
        if not rec.identity_key:
            raise ValueError("upsert_by_identity requires a record with an identity key")
        row = self._write(SQL_UPSERT_BY_IDENTITY, rec, checksum)
        if row is None:
            return Outcome.UNCHANGED
        return Outcome.INSERTED if row[0] else Outcome.UPDATED

    def insert_if_unseen(self, rec: MedicamentoRecord, checksum: str) -> Outcome:
        row = self._write(SQL_INSERT_IF_UNSEEN, rec, checksum)
        return Outcome.INSERTED if row is not None else Outcome.UNCHANGED

    def _write(self, sql: str, rec: MedicamentoRecord, checksum: str) -> tuple | None:
        try:
            with self.conn.cursor() as cur:
                cur.execute(sql, row_params(rec, checksum))
                return cur.fetchone()
        except psycopg.Error as e:
            raise StorageError(f"upsert_failed nregistro={rec.nregistro} error={e}") from e
