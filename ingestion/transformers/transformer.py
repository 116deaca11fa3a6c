"""
Batch transformation of stored raw records into canonical rows.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional

from core.exceptions import ValidationError
from ingestion.transformers.base import DatasetSchema
from schemas.records import StoredRawRecord, TransformResult

logger = logging.getLogger(__name__)


class DataTransformer:
    """
    Apply a dataset schema to a batch of raw records.

    Handles:
    - Payloads stored as JSON text
    - Context enrichment via ``DatasetSchema.prepare``
    - Per-record failures (logged, record dropped, batch continues)
    - Rows without any field (dropped)
    """

    def __init__(self, schema: DatasetSchema):
        self.schema = schema

    @staticmethod
    def _as_dict(payload: Any, record_id: Optional[int] = None) -> Dict[str, Any]:
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise ValidationError(
                    "Stored payload is not valid JSON",
                    context={"raw_record_id": record_id},
                    original_exception=e,
                )
        if not isinstance(payload, dict):
            raise ValidationError(
                "Stored payload is not an object",
                context={"raw_record_id": record_id, "payload_type": type(payload).__name__},
            )
        return payload

    def transform_one(self, payload: Any, context: Optional[Dict[str, Any]] = None, record_id: Optional[int] = None) -> Dict[str, Any]:
        prepared = self.schema.prepare(self._as_dict(payload, record_id), context)
        return self.schema.transform(prepared)

    def transform_records(self, records: Iterable[StoredRawRecord]) -> TransformResult:
        result = TransformResult(
            source_name=self.schema.source_name,
            dataset_name=self.schema.dataset_name,
        )

        for record in records:
            result.records_loaded += 1
            try:
                row = self.transform_one(record.payload, record.extraction_context, record.id)
            except Exception as e:
                result.records_failed += 1
                result.dropped[record.id] = str(e)
                logger.warning(
                    f"Failed to transform {record.source_name} record {record.id} ({record.natural_key}): {e}"
                )
                continue

            if not row:
                result.records_empty += 1
                result.dropped[record.id] = "Transformed row is empty"
                logger.debug(f"Dropping empty row for {record.source_name} record {record.id}")
                continue

            result.rows.append(row)
            result.record_ids.append(record.id)

        logger.info(
            f"Transformed {len(result.rows)} {self.schema.dataset_name} rows "
            f"({result.records_failed} failed, {result.records_empty} empty)"
        )
        return result
