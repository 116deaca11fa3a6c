"""
Pydantic schemas passed between the pipeline stages
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta

from core.timeutils import ensure_utc, utcnow
from models.base import IngestionStatus

# Refresh tokens that expire within this window before using them
TOKEN_REFRESH_LEEWAY = timedelta(minutes=5)


# ============================================================================
# Credentials
# ============================================================================

class TokenBundle(BaseModel):
    """Result of an OAuth token exchange or refresh."""
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v):
        return ensure_utc(v)


class Credential(BaseModel):
    """Current credential for one source."""
    source_name: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v):
        return ensure_utc(v)

    @field_validator("config", mode="before")
    @classmethod
    def config_dict(cls, v):
        if not isinstance(v, dict):
            return {}
        return v

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        """True when the token is expired or expires within the leeway.

        Tokens without an expiry (personal access tokens) never need a refresh.
        """
        if self.expires_at is None:
            return False
        now = ensure_utc(now) if now else utcnow()
        return self.expires_at <= now + TOKEN_REFRESH_LEEWAY


# ============================================================================
# Raw records
# ============================================================================

class RawRecordCreate(BaseModel):
    source_name: str = Field(..., min_length=1, max_length=100)
    natural_key: str = Field(..., min_length=1, max_length=255)
    payload: Dict[str, Any]
    extraction_context: Dict[str, Any] = Field(default_factory=dict)
    extracted_at: Optional[datetime] = None

    @field_validator("natural_key", mode="before")
    @classmethod
    def stringify_key(cls, v):
        if v is None:
            return v
        return str(v).strip()


class StoredRawRecord(BaseModel):
    id: int
    source_name: str
    natural_key: str
    payload: Any
    extraction_context: Optional[Dict[str, Any]] = None
    extracted_at: datetime
    sent_at: Optional[datetime] = None
    transform_failed_at: Optional[datetime] = None
    transform_error: Optional[str] = None

    class Config:
        from_attributes = True


# ============================================================================
# Audit log
# ============================================================================

class IngestionLogCreate(BaseModel):
    source_name: str
    dataset_name: str
    dataset_id: Optional[str] = None
    rows_sent: int = 0
    columns_sent: int = 0
    attempts: int = 0
    status: IngestionStatus
    error_message: Optional[str] = None


# ============================================================================
# Stage results
# ============================================================================

class ExtractionResult(BaseModel):
    """Outcome of one extraction run. Failures are reported here, never raised."""
    source_name: str
    success: bool
    records_extracted: int = 0
    records_skipped: int = 0
    message: str = ""


class TransformResult(BaseModel):
    source_name: str
    dataset_name: str = ""
    success: bool = True
    message: str = ""
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    records_loaded: int = 0
    record_ids: List[int] = Field(default_factory=list)
    # raw record id -> reason it produced no row
    dropped: Dict[int, str] = Field(default_factory=dict)
    records_failed: int = 0
    records_empty: int = 0


class IngestionResult(BaseModel):
    success: bool
    rows_sent: int = 0
    records_loaded: int = 0
    records_dropped: int = 0
    # Rows were delivered but their raw records could not be updated
    mark_failed: bool = False
    attempts: int = 0
    status_code: Optional[int] = None
    dataset_id: Optional[str] = None
    message: str = ""


class SourceSyncResult(BaseModel):
    """Outcome of extract → transform → ingest for one source."""
    source_name: str
    success: bool
    records_extracted: int = 0
    rows_sent: int = 0
    timed_out: bool = False
    message: str = ""
    extraction: Optional[ExtractionResult] = None
    ingestion: Optional[IngestionResult] = None
