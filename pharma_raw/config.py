from __future__ import annotations

import os
from dataclasses import dataclass

from .exceptions import ConfigError

CIMA_URL = "https://cima.aemps.es/cima/rest/medicamentos"
RECONCILE_MODES = ("identity", "checksum")


def env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def env_first(*names: str, default: str | None = None) -> str | None:
    for name in names:
        v = os.getenv(name)
        if v:
            return v
    return default


def env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return float(v)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    source_url: str = CIMA_URL
    page_size: int = 200
    # safety hard-cap on pages fetched per run
    max_pages: int = 200
    http_timeout_sec: float = 15.0
    progress_every: int = 10
    reconcile_mode: str = "identity"
    job_name: str = "pharma_raw"
    user_agent: str = "pharma-raw/0.1"

    database_url: str = ""
    pg_host: str = "postgres"
    pg_user: str = "adl"
    pg_password: str = ""
    pg_database: str = "adl_core"
    pg_port: int = 5432

    log_level: str = "INFO"

    # Supervisor cadence (seconds between runs)
    schedule_seconds: int = 300

    def dsn(self) -> str:
        if self.database_url:
            return self.database_url
        parts = [
            f"host={self.pg_host}",
            f"port={self.pg_port}",
            f"user={self.pg_user}",
            f"dbname={self.pg_database}",
        ]
        if self.pg_password:
            parts.append(f"password={self.pg_password}")
        return " ".join(parts)


def load_settings() -> Settings:
    mode = (env("PHARMA_RECONCILE_MODE", "identity") or "identity").strip().lower()
    if mode not in RECONCILE_MODES:
        raise ConfigError(f"Unknown PHARMA_RECONCILE_MODE={mode!r}. Expected one of: {', '.join(RECONCILE_MODES)}")

    settings = Settings(
        source_url=env("PHARMA_CIMA_URL", CIMA_URL) or CIMA_URL,
        page_size=env_int("PHARMA_PAGE_SIZE", 200),
        max_pages=env_int("PHARMA_MAX_PAGES", 200),
        http_timeout_sec=env_float("PHARMA_HTTP_TIMEOUT", 15.0),
        progress_every=env_int("PHARMA_PROGRESS_EVERY", 10),
        reconcile_mode=mode,
        job_name=env("PHARMA_JOB_NAME", "pharma_raw") or "pharma_raw",
        user_agent=env("PHARMA_USER_AGENT", "pharma-raw/0.1") or "pharma-raw/0.1",
        database_url=env_first("DATABASE_URL", "POSTGRES_DSN", default="") or "",
        pg_host=env_first("PGHOST", "POSTGRES_HOST", default="postgres") or "postgres",
        pg_user=env_first("PGUSER", "POSTGRES_USER", default="adl") or "adl",
        pg_password=env_first("PGPASSWORD", "POSTGRES_PASSWORD", default="") or "",
        pg_database=env_first("PGDATABASE", "POSTGRES_DB", default="adl_core") or "adl_core",
        pg_port=env_int("PGPORT", 5432),
        log_level=(env("LOG_LEVEL", "INFO") or "INFO").upper(),
        schedule_seconds=env_int("PHARMA_SCHEDULE_SECONDS", 300),
    )
    _validate(settings)
    return settings


def _validate(s: Settings) -> None:
    if s.page_size <= 0:
        raise ConfigError(f"PHARMA_PAGE_SIZE must be positive, got {s.page_size}")
    if s.max_pages < 0:
        raise ConfigError(f"PHARMA_MAX_PAGES must be >= 0, got {s.max_pages}")
    if s.http_timeout_sec <= 0:
        raise ConfigError(f"PHARMA_HTTP_TIMEOUT must be positive, got {s.http_timeout_sec}")
    if s.schedule_seconds <= 0:
        raise ConfigError(f"PHARMA_SCHEDULE_SECONDS must be positive, got {s.schedule_seconds}")
