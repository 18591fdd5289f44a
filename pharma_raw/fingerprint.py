from __future__ import annotations

from typing import Any

from .models import MedicamentoRecord
from .utils import sha256_hex

SEPARATOR = "|"


def _norm(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace(SEPARATOR, "\\" + SEPARATOR)


def tracked_values(rec: MedicamentoRecord) -> tuple[str, ...]:
    # Order is part of the persisted checksum; do not reorder.
    return (
        _norm(rec.nregistro),
        _norm(rec.comerc),
        _norm(rec.estado_aut),
        _norm(rec.estado_rev),
        _norm(rec.estado_susp),
    )


def fingerprint(rec: MedicamentoRecord) -> str:
    """SHA-256 hex digest over the tracked fields of ``rec``."""
    material = SEPARATOR.join(_escape(v) for v in tracked_values(rec))
    return sha256_hex(material.encode("utf-8"))
