"""
Dataset schema variants: the contract and shared extraction helpers.

A schema maps one raw source payload to a flat row of typed values. Every
variant declares its fields with a semantic type (``string``, ``integer``,
``float``, ``boolean``, ``datetime``, ``json``) and implements
``transform`` as a pure function. Missing source fields become a default or
``None``; they never raise.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from core.timeutils import parse_timestamp

FIELD_TYPES = ("string", "integer", "float", "boolean", "datetime", "json")

_MISSING = object()


class DatasetSchema(ABC):
    """One target dataset and how to fill it from a source payload."""

    source_name: str = ""
    dataset_name: str = ""
    version: str = "1.0"
    # Columns that identify a row in the target dataset
    primary_keys: List[str] = []

    @abstractmethod
    def get_fields(self) -> Dict[str, Dict[str, str]]:
        """Field name → {"type": ..., "description": ...}, in column order."""

    @abstractmethod
    def transform(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Map one raw payload to a canonical row."""

    def get_source_mapping(self) -> Dict[str, str]:
        """Source path → target field, for documentation."""
        return {}

    def prepare(self, payload: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Hook to enrich a stored payload with its extraction context before ``transform``."""
        return payload

    def column_names(self) -> List[str]:
        return list(self.get_fields())

    def field_type(self, name: str) -> str:
        return self.get_fields().get(name, {}).get("type", "string")


# ============================================================================
# Extraction helpers
# ============================================================================

def dig(data: Any, path: str, default: Any = None) -> Any:
    """Follow a dotted path through nested dicts. Missing or None → default."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return default
        current = current.get(part, _MISSING)
        if current is _MISSING or current is None:
            return default
    return current


def first_of(data: Any, *paths: str, default: Any = None) -> Any:
    """Value of the first path that is present and not None."""
    for path in paths:
        value = dig(data, path, _MISSING)
        if value is not _MISSING:
            return value
    return default


def first_present(data: Any, *paths: str, default: Any = None) -> Any:
    """Value of the first path that is populated (not None, not empty string)."""
    for path in paths:
        value = dig(data, path)
        if value is not None and value != "":
            return value
    return default


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


def round_half_up(value: Any, places: int = 2) -> Optional[float]:
    """Round on the decimal representation, halves away from zero: 12.345 → 12.35."""
    number = to_decimal(value)
    if number is None or not number.is_finite():
        return None
    quantum = Decimal(1).scaleb(-places)
    return float(number.quantize(quantum, rounding=ROUND_HALF_UP))


def scaled(value: Any, factor: str, places: int = 2) -> float:
    """``value × factor`` rounded half-up; unusable input counts as 0."""
    number = to_decimal(value)
    if number is None or not number.is_finite():
        number = Decimal(0)
    return round_half_up(number * Decimal(factor), places)


def format_timestamp(value: Any) -> Optional[str]:
    """ISO-8601 with offset (``YYYY-MM-DDTHH:MM:SS+00:00``), None when unparsable."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.replace(microsecond=0).isoformat()
