"""Idempotent paginated ingestion of the CIMA medicines registry into PostgreSQL."""

__version__ = "0.1.0"
