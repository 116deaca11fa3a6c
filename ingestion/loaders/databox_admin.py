"""
Dataset provisioning on the ingestion target (Databox).

Accounts, data sources and datasets are set up once, before the first
``IngestionSender.send``. Calls are single attempts through the fallback
transport; every outcome is returned as an ``AdminResult``.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.config import Settings
from core.exceptions import ETLException
from ingestion.loaders.ingestion_sender import parse_error_body
from ingestion.transformers.base import DatasetSchema
from ingestion.transport import FallbackTransport

logger = logging.getLogger(__name__)

NO_API_KEY = "Databox API key not configured"


class AdminResult(BaseModel):
    success: bool
    status_code: int = 0
    id: Optional[Any] = None
    data: Optional[Any] = None
    items: List[Any] = Field(default_factory=list)
    error: Optional[str] = None


class DataboxAdmin:
    """
    Account, data source and dataset management.

    Args:
        transport: Fallback transport for every call
        endpoint: API base URL
        api_key: Value for the ``x-api-key`` header
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        transport: FallbackTransport,
        endpoint: str,
        api_key: Optional[str],
        timeout: float = 30.0,
    ):
        self.transport = transport
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_settings(cls, config: Settings, transport: FallbackTransport) -> "DataboxAdmin":
        return cls(
            transport=transport,
            endpoint=config.DATABOX_ENDPOINT,
            api_key=config.DATABOX_TOKEN,
            timeout=config.DATABOX_TIMEOUT,
        )

    async def list_accounts(self) -> AdminResult:
        result = await self._request("GET", "/accounts")
        if result.success:
            accounts = result.data
            if isinstance(accounts, dict):
                accounts = accounts.get("accounts", accounts)
            if accounts is None:
                accounts = []
            result.items = accounts if isinstance(accounts, list) else [accounts]
            return result

        if result.status_code == 404:
            logger.warning("Accounts endpoint not found - this may be normal for some API versions")
            result.error = (
                "Accounts endpoint not available. "
                "You may need to create datasets directly using dataset IDs."
            )
        return result

    async def create_data_source(
        self,
        title: str,
        account_id: Optional[int] = None,
        timezone: str = "UTC",
    ) -> AdminResult:
        payload: Dict[str, Any] = {"title": title, "timezone": timezone}
        if account_id is not None:
            payload["accountId"] = account_id
        return await self._request("POST", "/data-sources", payload)

    async def list_datasets(self, data_source_id: int) -> AdminResult:
        result = await self._request("GET", f"/data-sources/{data_source_id}/datasets")
        if result.success and isinstance(result.data, dict) and isinstance(result.data.get("datasets"), list):
            result.items = result.data["datasets"]
        return result

    async def create_dataset(
        self,
        data_source_id: int,
        title: str,
        primary_keys: Optional[List[str]] = None,
    ) -> AdminResult:
        payload: Dict[str, Any] = {"title": title, "dataSourceId": data_source_id}
        if primary_keys:
            payload["primaryKeys"] = list(primary_keys)
        return await self._request("POST", "/datasets", payload)

    async def create_dataset_for(self, data_source_id: int, schema: DatasetSchema) -> AdminResult:
        """Create the dataset a schema's rows are sent to, keyed on its primary keys."""
        return await self.create_dataset(data_source_id, schema.dataset_name, schema.primary_keys)

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> AdminResult:
        if not self.api_key:
            return AdminResult(success=False, error=NO_API_KEY)

        url = f"{self.endpoint}{path}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-api-key": self.api_key,
        }
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        logger.info(f"Databox {method} {url}")

        try:
            response = await self.transport.request(
                method, url, headers=headers, body=body, timeout=self.timeout
            )
        except ETLException as e:
            logger.error(f"Databox {method} {path} failed: {e.message}", extra={"error_context": e.to_dict()})
            return AdminResult(success=False, error=e.message)

        if not response.is_success:
            error = parse_error_body(response.status_code, response.text)
            logger.warning(f"Databox {method} {path} returned {response.status_code}: {error}")
            return AdminResult(success=False, status_code=response.status_code, error=error)

        try:
            data = response.json()
        except ValueError:
            data = None
        return AdminResult(
            success=True,
            status_code=response.status_code,
            id=data.get("id") if isinstance(data, dict) else None,
            data=data,
        )
