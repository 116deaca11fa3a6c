"""
Paginated fetch loop shared by all source extractors.

One call to ``PaginatedFetcher.fetch`` is one fetch cycle: page 1 until a
short or empty page, a failed request, or a second authentication failure.
Each record is handed to the ``on_record`` callback (normally the raw
record writer) before the next page is requested.

The loop never raises for upstream problems. It logs a warning and returns
a ``FetchOutcome`` with ``success=False`` instead, so one failing source
cannot abort its siblings.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from core.exceptions import (
    AuthenticationError,
    ConfigError,
    ETLException,
    RateLimitError,
    ValidationError,
)
from ingestion.credentials import CredentialStore
from ingestion.transport import FallbackTransport, TransportResponse, redact_url
from schemas.records import Credential

logger = logging.getLogger(__name__)

RecordHandler = Callable[[Dict[str, Any]], Awaitable[bool]]
RecordFilter = Callable[[Dict[str, Any]], bool]
HeaderBuilder = Callable[[Credential], Dict[str, str]]

# Fallback wait for a 429 that carries neither Retry-After nor a reset time
DEFAULT_RATE_LIMIT_BACKOFF = 5.0


@dataclass
class ExtractionCursor:
    """Position of one fetch cycle. Lives only as long as the cycle."""
    per_page: int = 100
    page: int = 1
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    done: bool = False


@dataclass
class FetchOutcome:
    success: bool = True
    records_seen: int = 0
    records_stored: int = 0
    records_skipped: int = 0
    pages_fetched: int = 0
    message: str = ""

    def fail(self, message: str):
        self.success = False
        self.message = message


def header_int(headers: Mapping[str, str], name: str) -> Optional[int]:
    """Read a numeric header once, normalized to int. None when absent or garbage."""
    value = headers.get(name.lower())
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        try:
            return int(float(str(value).strip()))
        except ValueError:
            return None


@dataclass
class RateLimitPolicy:
    """
    Quota handling based on ``X-RateLimit-Remaining`` / ``X-RateLimit-Reset``.

    Missing headers mean no limiting.
    """
    low_water: int = 10
    max_wait: float = 60.0
    remaining_header: str = "x-ratelimit-remaining"
    reset_header: str = "x-ratelimit-reset"

    def wait_seconds(self, headers: Mapping[str, str], now: float) -> float:
        """Seconds to pause before the next request after a successful response."""
        remaining = header_int(headers, self.remaining_header)
        if remaining is None or remaining >= self.low_water:
            return 0.0

        reset = header_int(headers, self.reset_header)
        if reset is None:
            return 0.0

        return self._until(reset, now)

    def retry_after_seconds(self, headers: Mapping[str, str], now: float) -> float:
        """Seconds to pause after a rate-limited (429) response."""
        retry_after = header_int(headers, "retry-after")
        if retry_after is not None:
            return min(max(0.0, float(retry_after)), self.max_wait)

        reset = header_int(headers, self.reset_header)
        if reset is not None:
            return self._until(reset, now)

        return min(DEFAULT_RATE_LIMIT_BACKOFF, self.max_wait)

    def _until(self, reset: int, now: float) -> float:
        # Reset is a whole-second epoch; round up so the wait never ends early
        return float(min(max(0, math.ceil(reset - now)), self.max_wait))


def is_rate_limited(response: TransportResponse) -> bool:
    if response.status_code == 429:
        return True
    return response.status_code == 403 and "rate limit" in response.text.lower()


class PaginatedFetcher:
    """
    Drive the page loop for one source.

    Args:
        transport: Fallback transport used for every page request
        credentials: Credential store consulted for the access token
        source_name: Source whose credential is used
        auth_headers: Builds request headers from the current credential
        rate_limit: Quota policy
        timeout: Per-request timeout in seconds
        sleep: Awaitable sleep, replaceable in tests
        clock: Epoch seconds, replaceable in tests
    """

    def __init__(
        self,
        transport: FallbackTransport,
        credentials: CredentialStore,
        source_name: str,
        auth_headers: HeaderBuilder,
        rate_limit: Optional[RateLimitPolicy] = None,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        self.credentials = credentials
        self.source_name = source_name
        self.auth_headers = auth_headers
        self.rate_limit = rate_limit or RateLimitPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    async def fetch(
        self,
        url: str,
        cursor: ExtractionCursor,
        on_record: RecordHandler,
        params: Optional[Dict[str, Any]] = None,
        record_filter: Optional[RecordFilter] = None,
    ) -> FetchOutcome:
        outcome = FetchOutcome()
        try:
            await self._run(url, cursor, on_record, params or {}, record_filter, outcome)
        except ETLException as e:
            logger.warning(
                f"Fetch cycle for {self.source_name} stopped at page {cursor.page}: {e.message}",
                extra={"error_context": e.to_dict()},
            )
            outcome.fail(e.message)
        except Exception as e:
            logger.warning(
                f"Fetch cycle for {self.source_name} stopped at page {cursor.page}: {e}",
                exc_info=True,
            )
            outcome.fail(f"Unexpected error: {e}")

        cursor.done = True
        if outcome.success and not outcome.message:
            outcome.message = (
                f"Fetched {outcome.records_seen} records from {outcome.pages_fetched} page(s), "
                f"stored {outcome.records_stored}"
            )
        return outcome

    async def _current_credential(self) -> Credential:
        credential = await self.credentials.get(self.source_name)
        if not credential.access_token:
            raise ConfigError(
                f"No access token configured for {self.source_name}",
                context={"source_name": self.source_name},
            )
        return credential

    async def _run(
        self,
        url: str,
        cursor: ExtractionCursor,
        on_record: RecordHandler,
        params: Dict[str, Any],
        record_filter: Optional[RecordFilter],
        outcome: FetchOutcome,
    ):
        refreshed = False
        rate_limited = False

        credential = await self._current_credential()
        if credential.needs_refresh():
            logger.info(f"Access token for {self.source_name} is expiring, refreshing before use")
            credential = await self.credentials.refresh(self.source_name)
            refreshed = True

        while not cursor.done:
            query = {**params, "page": cursor.page, "per_page": cursor.per_page}
            logger.info(f"Fetching {self.source_name} page {cursor.page} from {redact_url(url)}")

            response = await self.transport.request(
                "GET",
                url,
                headers=self.auth_headers(credential),
                params=query,
                timeout=self.timeout,
            )

            # ----------------------------------------------------------------
            # Re-authentication
            # ----------------------------------------------------------------
            if response.status_code == 401:
                if refreshed:
                    raise AuthenticationError(
                        f"Authentication failed for {self.source_name} after token refresh",
                        context={"url": redact_url(url), "page": cursor.page},
                        status_code=401,
                    )
                logger.info(f"{self.source_name} answered 401, refreshing token and retrying page {cursor.page}")
                credential = await self.credentials.refresh(self.source_name)
                refreshed = True
                continue

            # ----------------------------------------------------------------
            # Rate limiting
            # ----------------------------------------------------------------
            if is_rate_limited(response):
                wait = self.rate_limit.retry_after_seconds(response.headers, self._clock())
                if rate_limited:
                    raise RateLimitError(
                        f"Rate limit still exceeded for {self.source_name}",
                        context={"url": redact_url(url), "page": cursor.page},
                        status_code=response.status_code,
                        retry_after=wait,
                    )
                rate_limited = True
                logger.warning(f"{self.source_name} rate limited, retrying page {cursor.page} in {wait:.0f}s")
                await self._sleep(wait)
                continue
            rate_limited = False

            if not response.is_success:
                raise ETLException(
                    f"HTTP {response.status_code} from {self.source_name}",
                    context={
                        "url": redact_url(url),
                        "page": cursor.page,
                        "status_code": response.status_code,
                        "response_body": response.text[:500],
                    },
                )

            records = self._parse_page(response, url, cursor.page)
            outcome.pages_fetched += 1

            await self._handle_records(records, on_record, record_filter, outcome)

            if len(records) < cursor.per_page:
                cursor.done = True
                continue
            cursor.page += 1

            wait = self.rate_limit.wait_seconds(response.headers, self._clock())
            if wait > 0:
                logger.warning(
                    f"{self.source_name} quota low "
                    f"({response.header(self.rate_limit.remaining_header)} left), waiting {wait:.0f}s"
                )
                await self._sleep(wait)

    def _parse_page(self, response: TransportResponse, url: str, page: int) -> List[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError as e:
            raise ValidationError(
                f"Page {page} from {self.source_name} is not valid JSON",
                context={"url": redact_url(url), "page": page, "response_body": response.text[:200]},
                original_exception=e,
            )

        if data is None:
            return []
        if not isinstance(data, list):
            raise ValidationError(
                f"Page {page} from {self.source_name} is not a JSON array",
                context={"url": redact_url(url), "page": page, "body_type": type(data).__name__},
            )
        return data

    async def _handle_records(
        self,
        records: List[Any],
        on_record: RecordHandler,
        record_filter: Optional[RecordFilter],
        outcome: FetchOutcome,
    ):
        for record in records:
            outcome.records_seen += 1

            if not isinstance(record, dict):
                outcome.records_skipped += 1
                logger.warning(f"Skipping non-object record from {self.source_name}")
                continue

            if record_filter is not None and not record_filter(record):
                outcome.records_skipped += 1
                continue

            try:
                stored = await on_record(record)
            except ValidationError as e:
                outcome.records_skipped += 1
                logger.warning(f"Skipping invalid {self.source_name} record: {e.message}")
                continue

            if stored:
                outcome.records_stored += 1
