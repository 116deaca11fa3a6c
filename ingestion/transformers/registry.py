"""
Registry of dataset schema variants, keyed by source name.

Variants register themselves with the ``register_schema`` decorator.
"""

from typing import Dict, List, Type

from core.exceptions import ConfigError
from ingestion.transformers.base import DatasetSchema

_SCHEMAS: Dict[str, Type[DatasetSchema]] = {}


def register_schema(schema_cls: Type[DatasetSchema]) -> Type[DatasetSchema]:
    if not schema_cls.source_name:
        raise ConfigError(f"{schema_cls.__name__} has no source_name")
    _SCHEMAS[schema_cls.source_name] = schema_cls
    return schema_cls


def get_schema(source_name: str) -> DatasetSchema:
    schema_cls = _SCHEMAS.get(source_name)
    if schema_cls is None:
        raise ConfigError(
            f"No dataset schema registered for source: {source_name}",
            context={"available": available_schemas()},
        )
    return schema_cls()


def available_schemas() -> List[str]:
    return sorted(_SCHEMAS)
