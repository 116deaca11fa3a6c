from sqlalchemy import Column, String, DateTime, Text, Index
from core.timeutils import utcnow
from models.base import Base, BigIntId, JSONType


class RawRecord(Base):
    """
    Raw payloads exactly as the source API returned them.

    (source_name, natural_key) is unique so re-extraction is idempotent.
    ``sent_at`` stays NULL until the transformed row was accepted by the
    ingestion endpoint.
    ``transform_failed_at`` is set when the payload cannot become a row;
    such records are never sent.
    """
    __tablename__ = "raw_records"

    id = Column(BigIntId, primary_key=True, autoincrement=True)

    source_name = Column(String(100), nullable=False, index=True)
    natural_key = Column(String(255), nullable=False)

    payload = Column(JSONType, nullable=False)
    extraction_context = Column(JSONType, nullable=True)  # e.g. repository, event_type

    extracted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    transform_failed_at = Column(DateTime(timezone=True), nullable=True)
    transform_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("uq_raw_source_key", "source_name", "natural_key", unique=True),
        Index("idx_raw_unsent", "source_name", "sent_at", "extracted_at"),
    )
