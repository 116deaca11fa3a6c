from sqlalchemy import Column, String, Integer, DateTime, Text, Enum, Index
from core.timeutils import utcnow
from models.base import Base, BigIntId, IngestionStatus


class IngestionLog(Base):
    """
    Audit trail: exactly one row per send to the ingestion endpoint.
    """
    __tablename__ = "ingestion_logs"

    id = Column(BigIntId, primary_key=True, autoincrement=True)

    source_name = Column(String(100), nullable=False, index=True)
    dataset_name = Column(String(255), nullable=False)
    dataset_id = Column(String(255), nullable=True)

    rows_sent = Column(Integer, default=0, nullable=False)
    columns_sent = Column(Integer, default=0, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)

    status = Column(Enum(IngestionStatus), nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_ingestion_source_sent", "source_name", "sent_at"),
    )
