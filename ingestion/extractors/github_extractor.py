"""
GitHub extractor: repository events, commits, issues and pull requests.

Authenticates with a personal access token (``Authorization: token ...``).
When no repository is configured every repository of the authenticated
user is walked (``/user/repos``), with a short pause between repositories.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.exceptions import ConfigError, ExtractionError
from core.timeutils import parse_timestamp, utcnow
from ingestion.base import SourceExtractor
from ingestion.fetcher import ExtractionCursor, FetchOutcome, PaginatedFetcher

logger = logging.getLogger(__name__)

GITHUB_PER_PAGE = 100
REPOSITORY_DELAY = 0.1
USER_AGENT = "Activity-Metrics-Sync"


@dataclass
class GitHubEndpoint:
    """One extraction kind and how to page through it."""
    kind: str
    path: str
    key_field: str = "id"
    event_type: Optional[str] = None  # None: use the record's own type
    params: Dict[str, Any] = field(default_factory=dict)
    sends_since: bool = False
    time_field: Optional[str] = None  # filtered client side when set


ENDPOINTS: Dict[str, GitHubEndpoint] = {
    "events": GitHubEndpoint(
        kind="events",
        path="events",
        time_field="created_at",
    ),
    "commits": GitHubEndpoint(
        kind="commits",
        path="commits",
        key_field="sha",
        event_type="push",
        sends_since=True,
    ),
    "issues": GitHubEndpoint(
        kind="issues",
        path="issues",
        event_type="issue",
        params={"state": "all"},
        sends_since=True,
    ),
    "pull_requests": GitHubEndpoint(
        kind="pull_requests",
        path="pulls",
        event_type="pull_request",
        params={"state": "all", "sort": "updated", "direction": "desc"},
        time_field="updated_at",
    ),
}


def github_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class GitHubExtractor(SourceExtractor):
    """
    Options:
        type: events | commits | issues | pull_requests (default GITHUB_EXTRACT_TYPE)
        repository: ``owner/name`` (default GITHUB_REPOSITORY, else all user repositories)
        since: lower time bound (default now - GITHUB_SINCE_DAYS)
    """

    source_name = "github"
    display_name = "GitHub"

    def is_enabled(self) -> bool:
        return self.config.GITHUB_ENABLED

    def auth_headers(self, credential) -> Dict[str, str]:
        return {
            "Authorization": f"token {credential.access_token}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": USER_AGENT,
        }

    @property
    def api_url(self) -> str:
        return self.config.GITHUB_API_URL.rstrip("/")

    async def run_extraction(self, options: Dict[str, Any]) -> FetchOutcome:
        credential = await self.credentials.get(self.source_name)
        if not credential.access_token:
            raise ConfigError(
                "GitHub Personal Access Token is not configured",
                context={"setting": "GITHUB_PERSONAL_ACCESS_TOKEN"},
            )

        kind = options.get("type") or self.config.GITHUB_EXTRACT_TYPE
        endpoint = ENDPOINTS.get(kind)
        if endpoint is None:
            raise ConfigError(
                f"Unknown GitHub extraction type: {kind}",
                context={"allowed": sorted(ENDPOINTS)},
            )

        since = parse_timestamp(options.get("since")) or (
            utcnow() - timedelta(days=self.config.GITHUB_SINCE_DAYS)
        )
        repository = (
            options.get("repository")
            or self.config.GITHUB_REPOSITORY
            or credential.config.get("repository")
        )

        fetcher = self.make_fetcher(self.config.GITHUB_TIMEOUT)

        if repository:
            repositories = [repository]
        else:
            repositories = await self.list_repositories(fetcher)
            logger.info(f"Found {len(repositories)} repositories for the authenticated user")

        total = FetchOutcome()
        failures: List[str] = []
        for index, repo in enumerate(repositories):
            if index:
                await self._sleep(REPOSITORY_DELAY)

            outcome = await self.fetch_repository(fetcher, repo, endpoint, since)
            total.records_seen += outcome.records_seen
            total.records_stored += outcome.records_stored
            total.records_skipped += outcome.records_skipped
            total.pages_fetched += outcome.pages_fetched
            if not outcome.success:
                failures.append(f"{repo}: {outcome.message}")

        if failures and len(failures) == len(repositories):
            total.fail("; ".join(failures))
        elif failures:
            logger.warning(f"GitHub {kind} failed for {len(failures)} of {len(repositories)} repositories")
            total.message = f"{len(failures)} repositories failed: " + "; ".join(failures)
        return total

    async def list_repositories(self, fetcher: PaginatedFetcher) -> List[str]:
        names: List[str] = []

        async def collect(record: Dict[str, Any]) -> bool:
            name = record.get("full_name") or record.get("name")
            if name:
                names.append(name)
            return False

        outcome = await fetcher.fetch(
            f"{self.api_url}/user/repos",
            ExtractionCursor(per_page=GITHUB_PER_PAGE),
            collect,
        )
        if not outcome.success:
            raise ExtractionError(
                f"Could not list repositories: {outcome.message}",
                context={"source_name": self.source_name},
            )
        return names

    async def fetch_repository(
        self,
        fetcher: PaginatedFetcher,
        repository: str,
        endpoint: GitHubEndpoint,
        since: datetime,
    ) -> FetchOutcome:
        params = dict(endpoint.params)
        if endpoint.sends_since:
            params["since"] = github_timestamp(since)

        def within_window(record: Dict[str, Any]) -> bool:
            if endpoint.time_field is None:
                return True
            timestamp = parse_timestamp(record.get(endpoint.time_field))
            return timestamp is None or timestamp >= since

        async def store(record: Dict[str, Any]) -> bool:
            key = record.get(endpoint.key_field)
            context = {
                "repository": repository,
                "kind": endpoint.kind,
                "event_type": endpoint.event_type or record.get("type") or "unknown",
            }
            natural_key = f"{repository}:{endpoint.kind}:{key}" if key is not None else None
            return await self.writer.write(natural_key, record, context)

        return await fetcher.fetch(
            f"{self.api_url}/repos/{repository}/{endpoint.path}",
            ExtractionCursor(per_page=GITHUB_PER_PAGE, after=since),
            store,
            params=params,
            record_filter=within_window,
        )
