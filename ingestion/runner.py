# ============================================================================
# File: ingestion/runner.py
# Description: Sync orchestrator, one task per source with an overall deadline
# ============================================================================
"""
Sync Runner - Orchestrates Extract, Transform, Ingest per source.

This module provides:
- One asyncio task per source, so a failing source never blocks another
- An overall deadline per source; on expiry the work is cancelled and the
  records already stored are kept
- Decoupled transform/ingest of stored but unsent records
- Structured results for every phase instead of raised exceptions
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.config import Settings
from core.exceptions import ETLException
from ingestion.base import SourceExtractor
from ingestion.credentials import CredentialStore, build_credential_store
from ingestion.extractors import available_sources, get_extractor
from ingestion.loaders.ingestion_sender import IngestionSender
from ingestion.loaders.record_store import RecordStore, SQLAlchemyRecordStore
from ingestion.transformers import DataTransformer, get_schema
from ingestion.transport import FallbackTransport, build_default_transport
from schemas.records import (
    ExtractionResult,
    IngestionResult,
    SourceSyncResult,
    TransformResult,
)

logger = logging.getLogger(__name__)


class SyncRunner:
    """
    Sync Orchestrator

    Responsibilities:
    - Extract new raw records for each source
    - Transform unsent raw records into canonical rows
    - Send rows and mark their raw records as sent
    - Enforce the per-source deadline
    """

    def __init__(
        self,
        config: Settings,
        transport: FallbackTransport,
        credentials: CredentialStore,
        store: RecordStore,
        sender: IngestionSender,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.transport = transport
        self.credentials = credentials
        self.store = store
        self.sender = sender
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        session_factory,
        transport: Optional[FallbackTransport] = None,
    ) -> "SyncRunner":
        transport = transport or build_default_transport(verify_tls=config.HTTP_VERIFY_TLS)
        store = SQLAlchemyRecordStore(session_factory)
        return cls(
            config=config,
            transport=transport,
            credentials=build_credential_store(config, session_factory, transport),
            store=store,
            sender=IngestionSender.from_settings(config, transport, store),
        )

    def build_extractor(self, source_name: str) -> SourceExtractor:
        return get_extractor(
            source_name,
            self.config,
            self.transport,
            self.credentials,
            self.store,
            sleep=self._sleep,
            clock=self._clock,
        )

    def enabled_sources(self) -> List[str]:
        return [name for name in available_sources() if self.build_extractor(name).is_enabled()]

    # --------------------------------------------------
    # PHASE 1: EXTRACTION
    # --------------------------------------------------
    async def extract_source(
        self,
        source_name: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> ExtractionResult:
        try:
            extractor = self.build_extractor(source_name)
        except ETLException as e:
            return ExtractionResult(source_name=source_name, success=False, message=e.message)
        return await extractor.extract(options)

    # --------------------------------------------------
    # PHASE 2: TRANSFORMATION
    # --------------------------------------------------
    async def transform_source(self, source_name: str, limit: Optional[int] = None) -> TransformResult:
        try:
            schema = get_schema(source_name)
            records = await self.store.query_unsent(source_name, limit or self.config.ETL_BATCH_SIZE)
        except ETLException as e:
            logger.error(
                f"Could not load unsent {source_name} records: {e.message}",
                extra={"error_context": e.to_dict()},
            )
            return TransformResult(source_name=source_name, success=False, message=e.message)

        logger.info(f"Found {len(records)} unsent {source_name} records")
        return DataTransformer(schema).transform_records(records)

    # --------------------------------------------------
    # PHASE 3: INGESTION
    # --------------------------------------------------
    async def ingest_source(
        self,
        source_name: str,
        limit: Optional[int] = None,
        dataset_id: Optional[str] = None,
    ) -> IngestionResult:
        """Transform and send one batch of unsent records, then mark them sent."""
        transformed = await self.transform_source(source_name, limit)
        if not transformed.success:
            return IngestionResult(success=False, message=transformed.message)

        loaded = transformed.records_loaded
        dropped = len(transformed.dropped)
        mark_failed = False
        if transformed.dropped:
            try:
                await self.store.mark_transform_failed(transformed.dropped)
                logger.warning(f"Excluded {dropped} {source_name} records that could not be transformed")
            except ETLException as e:
                mark_failed = True
                logger.error(
                    f"Could not exclude {dropped} untransformable {source_name} records: {e.message}",
                    extra={"error_context": e.to_dict()},
                )

        if not transformed.rows:
            message = f"No unsent {source_name} records"
            if loaded:
                message = f"No deliverable {source_name} rows, {dropped} records dropped"
            return IngestionResult(
                success=True,
                records_loaded=loaded,
                records_dropped=dropped,
                mark_failed=mark_failed,
                message=message,
            )

        result = await self.sender.send(
            source_name, get_schema(source_name), transformed.rows, dataset_id
        )
        result.records_loaded = loaded
        result.records_dropped = dropped
        result.mark_failed = mark_failed
        if not result.success:
            return result

        try:
            marked = await self.store.mark_sent(transformed.record_ids)
            logger.info(f"Marked {marked} {source_name} records as sent")
        except ETLException as e:
            # Delivered rows stay unsent and go out again next run
            result.mark_failed = True
            logger.error(
                f"Sent {result.rows_sent} {source_name} rows but could not mark them: {e.message}",
                extra={"error_context": e.to_dict()},
            )
        return result

    async def ingest_pending(self, source_name: str, dataset_id: Optional[str] = None) -> IngestionResult:
        """
        Send batches until the backlog is drained.

        Stops after a short batch, a failed send, or a batch whose raw records
        could not be updated; querying again would return the same records.
        """
        batch_size = self.config.ETL_BATCH_SIZE
        total = IngestionResult(success=True)

        while True:
            result = await self.ingest_source(source_name, batch_size, dataset_id)
            total.rows_sent += result.rows_sent
            total.records_loaded += result.records_loaded
            total.records_dropped += result.records_dropped
            total.attempts += result.attempts
            total.status_code = result.status_code or total.status_code
            total.dataset_id = result.dataset_id or total.dataset_id
            total.message = result.message
            if not result.success:
                total.success = False
                break
            if result.mark_failed:
                total.mark_failed = True
                break
            if result.records_loaded < batch_size:
                break

        if total.success and total.rows_sent:
            total.message = f"Successfully sent {total.rows_sent} rows to Databox"
            if total.mark_failed:
                total.message += "; records could not be marked and will be resent next run"
        return total

    # --------------------------------------------------
    # FULL SYNC
    # --------------------------------------------------
    async def sync_source(
        self,
        source_name: str,
        options: Optional[Dict[str, Any]] = None,
        deadline_seconds: Optional[float] = None,
    ) -> SourceSyncResult:
        try:
            extractor = self.build_extractor(source_name)
        except ETLException as e:
            return SourceSyncResult(source_name=source_name, success=False, message=e.message)

        deadline = self.config.SYNC_DEADLINE_SECONDS if deadline_seconds is None else deadline_seconds

        async def pipeline():
            extraction = await extractor.extract(options)
            ingestion = await self.ingest_pending(source_name)
            return extraction, ingestion

        try:
            extraction, ingestion = await asyncio.wait_for(
                pipeline(), timeout=deadline if deadline and deadline > 0 else None
            )
        except asyncio.TimeoutError:
            stored = extractor.writer.records_written
            message = (
                f"Sync deadline of {deadline}s exceeded for {source_name}; "
                f"{stored} records stored before cancellation were kept"
            )
            logger.warning(message)
            return SourceSyncResult(
                source_name=source_name,
                success=False,
                records_extracted=stored,
                timed_out=True,
                message=message,
            )

        success = extraction.success and ingestion.success
        message = f"{extraction.message}; {ingestion.message}" if ingestion.message else extraction.message
        log = logger.info if success else logger.warning
        log(f"Sync for {source_name} finished: {message}")

        return SourceSyncResult(
            source_name=source_name,
            success=success,
            records_extracted=extraction.records_extracted,
            rows_sent=ingestion.rows_sent,
            message=message,
            extraction=extraction,
            ingestion=ingestion,
        )

    async def sync(
        self,
        sources: Optional[List[str]] = None,
        deadline_seconds: Optional[float] = None,
        options: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> List[SourceSyncResult]:
        """Run every source concurrently. One source's failure never aborts another."""
        names = list(sources) if sources else self.enabled_sources()
        options = options or {}
        if not names:
            logger.warning("No enabled sources to sync")
            return []

        logger.info(f"Starting sync for {', '.join(names)}")
        outcomes = await asyncio.gather(
            *(self.sync_source(name, options.get(name), deadline_seconds) for name in names),
            return_exceptions=True,
        )

        results: List[SourceSyncResult] = []
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"Sync for {name} crashed: {outcome}", exc_info=outcome)
                results.append(SourceSyncResult(source_name=name, success=False, message=str(outcome)))
            else:
                results.append(outcome)

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Sync finished: {succeeded}/{len(results)} sources succeeded")
        return results
