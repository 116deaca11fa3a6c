"""
Source extractors and the factory that builds them by source name.
"""

from typing import Dict, List, Type

from core.exceptions import ConfigError
from ingestion.base import SourceExtractor
from ingestion.extractors.github_extractor import GitHubExtractor
from ingestion.extractors.strava_extractor import StravaExtractor

EXTRACTORS: Dict[str, Type[SourceExtractor]] = {
    GitHubExtractor.source_name: GitHubExtractor,
    StravaExtractor.source_name: StravaExtractor,
}


def available_sources() -> List[str]:
    return list(EXTRACTORS)


def get_extractor(source_name: str, *args, **kwargs) -> SourceExtractor:
    """Build a fresh extractor for ``source_name``. Arguments go to its constructor."""
    extractor_cls = EXTRACTORS.get(source_name)
    if extractor_cls is None:
        raise ConfigError(
            f"No extractor for source: {source_name}",
            context={"available": available_sources()},
        )
    return extractor_cls(*args, **kwargs)


__all__ = [
    "SourceExtractor",
    "GitHubExtractor",
    "StravaExtractor",
    "available_sources",
    "get_extractor",
]
