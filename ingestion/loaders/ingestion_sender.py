"""
Deliver canonical rows to the metrics ingestion endpoint (Databox).

``POST {base}/datasets/{dataset_id}/data`` with an ``x-api-key`` header and
a ``{"records": [...]}`` body. Values are coerced to their declared schema
type right before serialization. Each ``send`` call retries internally with
linear backoff and writes exactly one audit log entry.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from core.config import Settings
from core.exceptions import ConfigError, ETLException, IngestionError, ValidationError
from ingestion.loaders.record_store import RecordStore
from ingestion.transformers.base import DatasetSchema
from ingestion.transport import FallbackTransport
from models.base import IngestionStatus
from schemas.records import IngestionLogCreate, IngestionResult

logger = logging.getLogger(__name__)

TRUTHY_TOKENS = frozenset({"1", "true", "yes", "on"})

# Never retried: the same request fails the same way
TERMINAL_STATUSES = frozenset({400, 401})

_TAG_RE = re.compile(r"<[^>]+>")


def convert_value(value: Any, field_type: str) -> Any:
    """
    Coerce ``value`` to the schema type ``field_type``.

    Raises ValueError / TypeError when the value cannot be converted.
    """
    if value is None:
        return None

    field_type = (field_type or "string").lower()

    if field_type in ("integer", "int"):
        if isinstance(value, str):
            if value.strip() == "":
                return None
            try:
                return int(value.strip())
            except ValueError:
                return int(float(value.strip()))
        return int(value)

    if field_type in ("float", "double"):
        if isinstance(value, str) and value.strip() == "":
            return None
        return float(value)

    if field_type in ("boolean", "bool"):
        if isinstance(value, str):
            return value.strip().lower() in TRUTHY_TOKENS
        return bool(value)

    if field_type in ("datetime", "date", "timestamp"):
        if isinstance(value, str):
            return value
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return str(value)

    if field_type == "json":
        if isinstance(value, str):
            return value
        return json.dumps(value)

    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def parse_error_body(status_code: Optional[int], body: str) -> str:
    """
    Extract a readable error from an ingestion endpoint response body.

    ``errors[0].message`` / ``errors[0].code``, then ``message`` / ``error``,
    else the start of the tag-stripped body.
    """
    try:
        data = json.loads(body) if body else None
    except ValueError:
        data = None

    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                detail = first.get("message") or first.get("code")
                if detail:
                    return str(detail)
            elif first:
                return str(first)
        for key in ("message", "error"):
            if data.get(key):
                return str(data[key])

    text = " ".join(_TAG_RE.sub(" ", body or "").split())
    return f"HTTP {status_code}: {text[:200]}"


@dataclass
class SendAttempts:
    success: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None


class IngestionSender:
    """
    Send canonical rows to the ingestion endpoint with bounded retries.

    Args:
        transport: Fallback transport for the POST
        store: Record store receiving the audit log entry
        endpoint: Base URL; ``/datasets/{id}/data`` is appended
        api_key: Value for the ``x-api-key`` header
        retry_attempts: Total attempts per call
        retry_delay_ms: Base delay; attempt n waits ``n × base`` before n + 1
        dataset_ids: Per-source dataset ids
        default_dataset_id: Used when a source has no dataset id of its own
        sleep: Awaitable sleep, replaceable in tests
    """

    def __init__(
        self,
        transport: FallbackTransport,
        store: RecordStore,
        endpoint: str,
        api_key: Optional[str],
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_delay_ms: int = 1000,
        dataset_ids: Optional[Mapping[str, str]] = None,
        default_dataset_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.store = store
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = max(0, retry_delay_ms) / 1000.0
        self.dataset_ids = dict(dataset_ids or {})
        self.default_dataset_id = default_dataset_id
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        transport: FallbackTransport,
        store: RecordStore,
        **kwargs,
    ) -> "IngestionSender":
        return cls(
            transport=transport,
            store=store,
            endpoint=config.DATABOX_ENDPOINT,
            api_key=config.DATABOX_TOKEN,
            timeout=config.DATABOX_TIMEOUT,
            retry_attempts=config.DATABOX_RETRY_ATTEMPTS,
            retry_delay_ms=config.DATABOX_RETRY_DELAY,
            dataset_ids=config.dataset_ids(),
            default_dataset_id=config.DATABOX_DATASET_ID,
            **kwargs,
        )

    def resolve_dataset_id(self, source_name: str, dataset_id: Optional[str] = None) -> str:
        resolved = dataset_id or self.dataset_ids.get(source_name.lower()) or self.default_dataset_id
        if not resolved:
            raise ConfigError(
                "Dataset ID not provided. Pass it explicitly or set DATABOX_DATASET_ID.",
                context={"source_name": source_name, "setting": f"DATABOX_DATASET_ID_{source_name.upper()}"},
            )
        return resolved

    def prepare_payload(self, schema: DatasetSchema, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        fields = schema.get_fields()
        typed_rows = []

        for row in rows:
            typed_row = {}
            for field_name, value in row.items():
                field_type = fields.get(field_name, {}).get("type", "string")
                try:
                    typed_row[field_name] = convert_value(value, field_type)
                except (TypeError, ValueError, OverflowError) as e:
                    logger.warning(
                        f"Failed to convert field {field_name} to {field_type}, sending original value: {e}"
                    )
                    typed_row[field_name] = value
            typed_rows.append(typed_row)

        return {"records": typed_rows}

    async def send(
        self,
        source_name: str,
        schema: DatasetSchema,
        rows: List[Dict[str, Any]],
        dataset_id: Optional[str] = None,
    ) -> IngestionResult:
        if not rows:
            return IngestionResult(success=False, message="No data to send")

        dataset_name = schema.dataset_name
        columns = len(schema.get_fields())
        resolved_id: Optional[str] = None

        try:
            resolved_id = self.resolve_dataset_id(source_name, dataset_id)
            if not self.api_key:
                raise ConfigError(
                    "Databox API key not configured",
                    context={"setting": "DATABOX_TOKEN"},
                )

            payload = self.prepare_payload(schema, rows)
            try:
                body = json.dumps(payload).encode("utf-8")
            except (TypeError, ValueError) as e:
                raise ValidationError(
                    f"Failed to encode payload as JSON: {e}",
                    context={"dataset_name": dataset_name, "rows": len(rows)},
                    original_exception=e,
                )

            url = f"{self.endpoint}/datasets/{resolved_id}/data"
            logger.info(f"Sending {len(rows)} {dataset_name} rows to dataset {resolved_id}")
            outcome = await self._send_with_retry(url, body)
        except ETLException as e:
            logger.error(
                f"Ingestion of {dataset_name} failed: {e.message}",
                extra={"error_context": e.to_dict()},
            )
            outcome = SendAttempts(success=False, attempts=0, error=e.message)

        await self._audit(
            IngestionLogCreate(
                source_name=source_name,
                dataset_name=dataset_name,
                dataset_id=resolved_id,
                rows_sent=len(rows),
                columns_sent=columns,
                attempts=outcome.attempts,
                status=IngestionStatus.SUCCESS if outcome.success else IngestionStatus.FAILED,
                error_message=None if outcome.success else outcome.error,
            )
        )

        if outcome.success:
            logger.info(f"Sent {len(rows)} {dataset_name} rows in {outcome.attempts} attempt(s)")
            return IngestionResult(
                success=True,
                rows_sent=len(rows),
                attempts=outcome.attempts,
                status_code=outcome.status_code,
                dataset_id=resolved_id,
                message=f"Successfully sent {len(rows)} rows to Databox",
            )

        error = IngestionError(
            f"Failed to send data to Databox: {outcome.error}",
            context={
                "dataset_id": resolved_id,
                "status_code": outcome.status_code,
                "attempts": outcome.attempts,
            },
        )
        logger.error(error.message, extra={"error_context": error.to_dict()})
        return IngestionResult(
            success=False,
            rows_sent=0,
            attempts=outcome.attempts,
            status_code=outcome.status_code,
            dataset_id=resolved_id,
            message=f"Failed to send data to Databox: {outcome.error}",
        )

    async def _send_with_retry(self, url: str, body: bytes) -> SendAttempts:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-api-key": self.api_key,
        }
        last_status: Optional[int] = None
        last_error: Optional[str] = None
        attempt = 0

        for attempt in range(1, self.retry_attempts + 1):
            try:
                response = await self.transport.request(
                    "POST", url, headers=headers, body=body, timeout=self.timeout
                )
            except ETLException as e:
                last_status = None
                last_error = e.message
                logger.warning(f"Ingestion request failed (attempt {attempt}/{self.retry_attempts}): {e.message}")
            else:
                if response.is_success:
                    return SendAttempts(success=True, attempts=attempt, status_code=response.status_code)

                last_status = response.status_code
                last_error = parse_error_body(response.status_code, response.text)
                if last_status in TERMINAL_STATUSES:
                    logger.error(f"Ingestion endpoint rejected the request with {last_status}: {last_error}")
                    break

            if attempt < self.retry_attempts:
                delay = self.retry_delay * attempt
                logger.warning(
                    f"Ingestion attempt {attempt}/{self.retry_attempts} failed "
                    f"({last_status or 'no response'}: {last_error}), retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        return SendAttempts(
            success=False,
            attempts=attempt,
            status_code=last_status,
            error=last_error or "Request failed after all retries",
        )

    async def _audit(self, entry: IngestionLogCreate):
        try:
            await self.store.append_audit_log(entry)
        except ETLException as e:
            logger.error(
                f"Could not write ingestion audit log for {entry.source_name}: {e.message}",
                extra={"error_context": e.to_dict()},
            )
