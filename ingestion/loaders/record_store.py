"""
Durable store for raw records and the ingestion audit log.

``RecordStore`` is the interface the pipeline depends on;
``SQLAlchemyRecordStore`` implements it on the async ORM. Inserts are
idempotent: ``INSERT ... ON CONFLICT DO NOTHING`` on the
``(source_name, natural_key)`` unique index, so retried fetch cycles and
concurrent writers never produce duplicate rows.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.exceptions import StoreError
from core.timeutils import utcnow
from models.ingestion_log import IngestionLog
from models.raw_record import RawRecord
from schemas.records import IngestionLogCreate, RawRecordCreate, StoredRawRecord

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class RecordStore(ABC):
    """Raw record persistence and audit trail."""

    @abstractmethod
    async def exists(self, source_name: str, natural_key: str) -> bool:
        ...

    @abstractmethod
    async def insert(self, record: RawRecordCreate) -> bool:
        """Store ``record``; False when (source_name, natural_key) already exists."""

    @abstractmethod
    async def query_unsent(self, source_name: str, limit: Optional[int] = None) -> List[StoredRawRecord]:
        ...

    @abstractmethod
    async def mark_sent(self, record_ids: Iterable[int], sent_at: Optional[datetime] = None) -> int:
        ...

    @abstractmethod
    async def mark_transform_failed(self, failures: Mapping[int, str], failed_at: Optional[datetime] = None) -> int:
        """Exclude records that cannot be transformed from future ``query_unsent`` results."""

    @abstractmethod
    async def append_audit_log(self, entry: IngestionLogCreate) -> None:
        ...


class SQLAlchemyRecordStore(RecordStore):
    """
    Record store backed by SQLAlchemy async sessions.

    Every operation opens its own session from ``session_factory`` so
    concurrent source tasks never share one.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def exists(self, source_name: str, natural_key: str) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(RawRecord.id).where(
                        RawRecord.source_name == source_name,
                        RawRecord.natural_key == natural_key,
                    ).limit(1)
                )
                return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            raise StoreError(
                "Failed to check raw record existence",
                context={"operation": "exists", "source_name": source_name, "natural_key": natural_key},
                original_exception=e,
            )

    async def insert(self, record: RawRecordCreate) -> bool:
        values = {
            "source_name": record.source_name,
            "natural_key": record.natural_key,
            "payload": record.payload,
            "extraction_context": record.extraction_context or None,
            "extracted_at": record.extracted_at or utcnow(),
        }

        try:
            async with self.session_factory() as session:
                dialect = session.get_bind().dialect.name
                insert_fn = _UPSERT_DIALECTS.get(dialect)

                if insert_fn is not None:
                    stmt = (
                        insert_fn(RawRecord)
                        .values(**values)
                        .on_conflict_do_nothing(index_elements=["source_name", "natural_key"])
                        .returning(RawRecord.id)
                    )
                    result = await session.execute(stmt)
                    inserted = result.scalar_one_or_none() is not None
                    await session.commit()
                    return inserted

                # Other dialects: rely on the unique index
                session.add(RawRecord(**values))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            raise StoreError(
                "Failed to insert raw record",
                context={"operation": "insert", "source_name": record.source_name, "natural_key": record.natural_key},
                original_exception=e,
            )

    async def query_unsent(self, source_name: str, limit: Optional[int] = None) -> List[StoredRawRecord]:
        stmt = (
            select(RawRecord)
            .where(
                RawRecord.source_name == source_name,
                RawRecord.sent_at.is_(None),
                RawRecord.transform_failed_at.is_(None),
            )
            .order_by(RawRecord.extracted_at, RawRecord.id)
        )
        if limit:
            stmt = stmt.limit(limit)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [StoredRawRecord.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError(
                "Failed to query unsent raw records",
                context={"operation": "query_unsent", "source_name": source_name},
                original_exception=e,
            )

    async def mark_sent(self, record_ids: Iterable[int], sent_at: Optional[datetime] = None) -> int:
        ids = list(record_ids)
        if not ids:
            return 0

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(RawRecord)
                    .where(RawRecord.id.in_(ids), RawRecord.sent_at.is_(None))
                    .values(sent_at=sent_at or utcnow())
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(
                "Failed to mark raw records as sent",
                context={"operation": "mark_sent", "record_count": len(ids)},
                original_exception=e,
            )

    async def mark_transform_failed(self, failures: Mapping[int, str], failed_at: Optional[datetime] = None) -> int:
        if not failures:
            return 0

        failed_at = failed_at or utcnow()
        marked = 0
        try:
            async with self.session_factory() as session:
                for record_id, reason in failures.items():
                    result = await session.execute(
                        update(RawRecord)
                        .where(RawRecord.id == record_id, RawRecord.sent_at.is_(None))
                        .values(transform_failed_at=failed_at, transform_error=str(reason)[:1000])
                    )
                    marked += result.rowcount or 0
                await session.commit()
                return marked
        except SQLAlchemyError as e:
            raise StoreError(
                "Failed to mark raw records as not transformable",
                context={"operation": "mark_transform_failed", "record_count": len(failures)},
                original_exception=e,
            )

    async def append_audit_log(self, entry: IngestionLogCreate) -> None:
        try:
            async with self.session_factory() as session:
                session.add(IngestionLog(**entry.model_dump()))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(
                "Failed to write ingestion audit log",
                context={"operation": "audit", "source_name": entry.source_name},
                original_exception=e,
            )

    async def count(self, source_name: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(RawRecord.id)).where(RawRecord.source_name == source_name)
            )
            return result.scalar_one()
