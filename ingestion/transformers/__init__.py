"""
Dataset schema variants and the batch transformer.

Importing the package registers the built-in schemas.
"""

from ingestion.transformers.base import DatasetSchema
from ingestion.transformers.registry import available_schemas, get_schema, register_schema
from ingestion.transformers.github_schema import GitHubDatasetSchema
from ingestion.transformers.strava_schema import StravaDatasetSchema
from ingestion.transformers.transformer import DataTransformer

__all__ = [
    "DatasetSchema",
    "GitHubDatasetSchema",
    "StravaDatasetSchema",
    "DataTransformer",
    "available_schemas",
    "get_schema",
    "register_schema",
]
