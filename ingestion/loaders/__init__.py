"""
Persistence and delivery: record store, deduplicating writer, ingestion sender
and dataset provisioning.
"""

from ingestion.loaders.record_store import RecordStore, SQLAlchemyRecordStore
from ingestion.loaders.record_writer import RawRecordWriter
from ingestion.loaders.ingestion_sender import IngestionSender, convert_value
from ingestion.loaders.databox_admin import AdminResult, DataboxAdmin

__all__ = [
    "RecordStore",
    "SQLAlchemyRecordStore",
    "RawRecordWriter",
    "IngestionSender",
    "convert_value",
    "AdminResult",
    "DataboxAdmin",
]
