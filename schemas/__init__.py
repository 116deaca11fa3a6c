"""
Pydantic schemas for data validation between pipeline stages.

Schemas:
    records: Credentials, raw records, audit log entries and stage results

Usage:
    from schemas.records import Credential, RawRecordCreate, ExtractionResult
"""

__all__ = [
    "TokenBundle",
    "Credential",
    "RawRecordCreate",
    "StoredRawRecord",
    "IngestionLogCreate",
    "ExtractionResult",
    "TransformResult",
    "IngestionResult",
    "SourceSyncResult",
]
