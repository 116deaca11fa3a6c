"""
Deduplicating writer between the fetch loop and the record store.
"""

import logging
from typing import Any, Dict, Optional

from core.exceptions import ValidationError
from ingestion.loaders.record_store import RecordStore
from schemas.records import RawRecordCreate

logger = logging.getLogger(__name__)


class RawRecordWriter:
    """
    Persist raw records for one source, skipping ones already stored.

    ``records_written`` counts rows actually inserted and stays readable if
    the surrounding task is cancelled mid-cycle.
    """

    def __init__(self, store: RecordStore, source_name: str):
        self.store = store
        self.source_name = source_name
        self.records_written = 0
        self.duplicates = 0

    async def write(
        self,
        natural_key: Any,
        payload: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Store one record. Returns False for a duplicate."""
        if natural_key is None or str(natural_key).strip() == "":
            raise ValidationError(
                "Record has no natural key",
                context={"source_name": self.source_name, "field_name": "natural_key"},
            )
        if not isinstance(payload, dict):
            raise ValidationError(
                "Record payload is not an object",
                context={"source_name": self.source_name, "natural_key": natural_key},
            )

        key = str(natural_key).strip()
        if await self.store.exists(self.source_name, key):
            self.duplicates += 1
            return False

        # exists() is only a shortcut; the insert itself is conflict-safe
        inserted = await self.store.insert(RawRecordCreate(
            source_name=self.source_name,
            natural_key=key,
            payload=payload,
            extraction_context=context or {},
        ))
        if inserted:
            self.records_written += 1
        else:
            self.duplicates += 1
            logger.debug(f"{self.source_name} record {key} stored concurrently, skipped")
        return inserted
