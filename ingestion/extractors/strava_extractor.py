"""
Strava extractor: athlete activities within a time window.

Uses the OAuth bearer token from the credential store; expiring tokens are
refreshed by the fetch loop before the first request.
"""

import logging
from datetime import timedelta
from typing import Any, Dict

from core.exceptions import ConfigError
from core.timeutils import parse_timestamp, to_epoch, utcnow
from ingestion.base import SourceExtractor
from ingestion.fetcher import ExtractionCursor, FetchOutcome

logger = logging.getLogger(__name__)

STRAVA_MAX_PER_PAGE = 200


class StravaExtractor(SourceExtractor):
    """
    Options:
        after: lower time bound (default before - STRAVA_WINDOW_DAYS)
        before: upper time bound (default now)
        per_page: page size, capped at 200
    """

    source_name = "strava"
    display_name = "Strava"

    def is_enabled(self) -> bool:
        return self.config.STRAVA_ENABLED

    def auth_headers(self, credential) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.access_token}",
            "Accept": "application/json",
        }

    async def run_extraction(self, options: Dict[str, Any]) -> FetchOutcome:
        credential = await self.credentials.get(self.source_name)
        if not credential.access_token:
            raise ConfigError(
                "Strava OAuth tokens not configured. Please authorize the integration first.",
                context={"source_name": self.source_name},
            )

        before = parse_timestamp(options.get("before")) or utcnow()
        after = parse_timestamp(options.get("after")) or (
            before - timedelta(days=self.config.STRAVA_WINDOW_DAYS)
        )
        per_page = min(int(options.get("per_page") or STRAVA_MAX_PER_PAGE), STRAVA_MAX_PER_PAGE)

        cursor = ExtractionCursor(per_page=per_page, after=after, before=before)
        logger.info(f"Fetching Strava activities between {after.isoformat()} and {before.isoformat()}")

        def within_window(record: Dict[str, Any]) -> bool:
            started = parse_timestamp(record.get("start_date"))
            return started is None or started >= after

        async def store(record: Dict[str, Any]) -> bool:
            return await self.writer.write(record.get("id"), record, {"kind": "activities"})

        fetcher = self.make_fetcher(self.config.STRAVA_TIMEOUT)
        return await fetcher.fetch(
            f"{self.config.STRAVA_API_URL.rstrip('/')}/athlete/activities",
            cursor,
            store,
            params={"after": to_epoch(after), "before": to_epoch(before)},
            record_filter=within_window,
        )
