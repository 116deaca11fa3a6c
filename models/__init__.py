"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative base, portable column types and IngestionStatus
    data_source: Per-source configuration and OAuth token bundle
    raw_record: Raw source payloads, unique per (source_name, natural_key)
    ingestion_log: One audit row per send to the ingestion endpoint

Database Schema:
    JSON columns map to JSONB on PostgreSQL and to JSON on SQLite, so the
    same metadata works for production and for the test database.

Usage:
    from models import Base, RawRecord, IngestionLog, DataSourceCredential
"""

from models.base import Base, IngestionStatus
from models.data_source import DataSourceCredential
from models.raw_record import RawRecord
from models.ingestion_log import IngestionLog

__all__ = [
    "Base",
    "IngestionStatus",
    "DataSourceCredential",
    "RawRecord",
    "IngestionLog",
]
