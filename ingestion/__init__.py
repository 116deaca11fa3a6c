"""
Sync pipeline components: extract from source APIs, transform to dataset
rows, ingest into Databox.

Modules:
    transport: HTTP client fallback chain (httpx → tuned httpx → curl)
    credentials: Per-source tokens and the Strava OAuth refresh
    fetcher: Paginated fetch loop with re-authentication and rate limiting
    base: Abstract base class for source extractors
    runner: Sync orchestrator, one task per source with a deadline
    scheduler: APScheduler integration for periodic syncs

Subpackages:
    extractors: GitHub and Strava extractors
    transformers: Dataset schema variants and the batch transformer
    loaders: Record store, deduplicating writer and the ingestion sender

Architecture:
    Each source runs three independent phases:

    1. Extract - Page through the source API and store new raw records
    2. Transform - Map unsent raw records to canonical dataset rows
    3. Ingest - Send the rows with retries, audit the attempt, mark them sent

    A phase reports failure in its result instead of raising, so one
    source never aborts another.

Usage:
    from core.config import settings
    from core.database import engine_from_settings, create_session_factory
    from ingestion.runner import SyncRunner

    engine = engine_from_settings(settings)
    runner = SyncRunner.from_settings(settings, create_session_factory(engine))
    results = await runner.sync()
"""

__all__ = [
    "SourceExtractor",
    "SyncRunner",
    "SyncScheduler",
    "FallbackTransport",
    "PaginatedFetcher",
]
