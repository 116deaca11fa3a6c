"""
Abstract base class for source extractors
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from core.config import Settings
from core.exceptions import ETLException
from ingestion.credentials import CredentialStore
from ingestion.fetcher import FetchOutcome, HeaderBuilder, PaginatedFetcher, RateLimitPolicy
from ingestion.loaders.record_store import RecordStore
from ingestion.loaders.record_writer import RawRecordWriter
from ingestion.transport import FallbackTransport
from schemas.records import ExtractionResult

logger = logging.getLogger(__name__)


class SourceExtractor(ABC):
    """
    Abstract base class for all sources.

    Responsibilities:
    - Enabled / credential checks
    - Building the paginated fetcher for the source
    - Turning fetch outcomes into an ``ExtractionResult``

    ``extract`` never raises; failures are reported in the result.
    """

    source_name: str = ""
    display_name: str = ""

    def __init__(
        self,
        config: Settings,
        transport: FallbackTransport,
        credentials: CredentialStore,
        store: RecordStore,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.transport = transport
        self.credentials = credentials
        self.writer = RawRecordWriter(store, self.source_name)
        self._sleep = sleep
        self._clock = clock

    @abstractmethod
    def is_enabled(self) -> bool:
        pass

    @abstractmethod
    def auth_headers(self, credential) -> Dict[str, str]:
        """Request headers carrying the credential"""
        pass

    @abstractmethod
    async def run_extraction(self, options: Dict[str, Any]) -> FetchOutcome:
        """Fetch every page for ``options`` and store new records"""
        pass

    def make_fetcher(self, timeout: float, auth_headers: Optional[HeaderBuilder] = None) -> PaginatedFetcher:
        return PaginatedFetcher(
            transport=self.transport,
            credentials=self.credentials,
            source_name=self.source_name,
            auth_headers=auth_headers or self.auth_headers,
            rate_limit=RateLimitPolicy(
                low_water=self.config.RATE_LIMIT_LOW_WATER,
                max_wait=self.config.RATE_LIMIT_MAX_WAIT,
            ),
            timeout=timeout,
            sleep=self._sleep,
            clock=self._clock,
        )

    async def extract(self, options: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        name = self.display_name or self.source_name

        if not self.is_enabled():
            return ExtractionResult(
                source_name=self.source_name,
                success=False,
                message=f"{name} integration is disabled",
            )

        logger.info(f"Starting {name} extraction")
        try:
            outcome = await self.run_extraction(dict(options or {}))
        except ETLException as e:
            logger.error(
                f"{name} extraction failed: {e.message}",
                extra={"error_context": e.to_dict()},
            )
            return self._result(False, f"{name} extraction failed: {e.message}")
        except Exception as e:
            logger.error(f"{name} extraction failed: {e}", exc_info=True)
            return self._result(False, f"{name} extraction failed: {e}")

        if outcome.success:
            message = f"Successfully extracted {self.writer.records_written} records from {name}"
            logger.info(message)
        else:
            message = f"{name} extraction failed: {outcome.message}"
            logger.warning(message)

        return self._result(outcome.success, message, outcome.records_skipped)

    def _result(self, success: bool, message: str, skipped: int = 0) -> ExtractionResult:
        return ExtractionResult(
            source_name=self.source_name,
            success=success,
            records_extracted=self.writer.records_written,
            records_skipped=skipped + self.writer.duplicates,
            message=message,
        )
