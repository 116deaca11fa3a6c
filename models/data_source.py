from sqlalchemy import Column, String, DateTime, Text, Boolean
from core.timeutils import utcnow
from models.base import Base, BigIntId, JSONType


class DataSourceCredential(Base):
    """
    One row per configured source (``github``, ``strava``).

    Holds the source configuration and the current OAuth token bundle.
    Token values are stored as given; encryption at rest is left to the
    database layer.
    """
    __tablename__ = "data_sources"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True, index=True)

    config = Column(JSONType, nullable=True)

    # OAuth tokens
    oauth_token = Column(Text, nullable=True)
    oauth_refresh_token = Column(Text, nullable=True)
    oauth_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
