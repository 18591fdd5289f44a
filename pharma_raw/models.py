from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return None


@dataclass(frozen=True)
class MedicamentoRecord:
    """One source record, decoded leniently from untrusted JSON.

    Every field is optional: a missing key, a null value or a wrongly shaped
    parent object all decode to ``None``. ``payload`` keeps the original
    object untouched for archival.
    """

    nregistro: str | None = None
    nombre: str | None = None
    labtitular: str | None = None
    labcomercializador: str | None = None
    comerc: bool | None = None
    estado_aut: Any = None
    estado_rev: Any = None
    estado_susp: Any = None
    payload: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_json(cls, obj: Any) -> "MedicamentoRecord":
        if not isinstance(obj, dict):
            return cls(payload={"_raw": obj})
        estado = _get(obj, "estado")
        nregistro = obj.get("nregistro")
        return cls(
            nregistro=str(nregistro) if nregistro not in (None, "") else None,
            nombre=obj.get("nombre"),
            labtitular=obj.get("labtitular"),
            labcomercializador=obj.get("labcomercializador"),
            comerc=obj.get("comerc"),
            estado_aut=_get(estado, "aut"),
            estado_rev=_get(estado, "rev"),
            estado_susp=_get(estado, "susp"),
            payload=obj,
        )

    @property
    def identity_key(self) -> str | None:
        return self.nregistro


@dataclass
class PageResult:
    page: int
    total: int
    records: List[MedicamentoRecord] = field(default_factory=list)


class Outcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"


@dataclass
class RunStats:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    total: int = 0
    pages: int = 0

    def record(self, outcome: Outcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)
        self.total += 1

    def merge(self, other: "RunStats") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.skipped += other.skipped
        self.total += other.total
        self.pages += other.pages

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)
