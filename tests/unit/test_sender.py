"""
Unit tests for value conversion, the ingestion sender and dataset provisioning
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from core.exceptions import ConfigError, StoreError, TransportError
from ingestion.loaders.databox_admin import DataboxAdmin
from ingestion.loaders.ingestion_sender import IngestionSender, convert_value, parse_error_body
from ingestion.transformers import GitHubDatasetSchema, StravaDatasetSchema
from models.base import IngestionStatus

ROWS = [
    {"repository_name": "octo/hello", "repository_id": "12", "is_public": "true", "metadata": {"size": 1}},
    {"repository_name": "octo/hello", "repository_id": 13, "is_public": False, "metadata": {}},
]


@pytest.fixture
def audit_store():
    return AsyncMock()


@pytest.fixture
def make_sender(test_settings, audit_store, sleep_recorder):
    def factory(transport, **overrides):
        return IngestionSender.from_settings(
            test_settings.model_copy(update=overrides),
            transport,
            audit_store,
            sleep=sleep_recorder,
        )
    return factory


def audit_entry(audit_store):
    assert audit_store.append_audit_log.await_count == 1
    return audit_store.append_audit_log.await_args.args[0]


class TestConvertValue:

    def test_integer(self):
        assert convert_value("42", "integer") == 42
        assert convert_value("42.7", "integer") == 42
        assert convert_value(" ", "integer") is None
        assert convert_value(7.9, "integer") == 7

    def test_float(self):
        assert convert_value("3.5", "float") == 3.5
        assert convert_value("", "float") is None
        assert convert_value(2, "float") == 2.0

    def test_boolean(self):
        assert convert_value("yes", "boolean") is True
        assert convert_value("ON", "boolean") is True
        assert convert_value("1", "boolean") is True
        assert convert_value("off", "boolean") is False
        assert convert_value("no", "boolean") is False
        assert convert_value(0, "boolean") is False

    def test_datetime(self):
        moment = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

        assert convert_value(moment, "datetime") == "2024-01-15T10:00:00+00:00"
        assert convert_value("2024-01-15T10:00:00Z", "datetime") == "2024-01-15T10:00:00Z"

    def test_json_and_string(self):
        assert convert_value({"a": 1}, "json") == '{"a": 1}'
        assert convert_value('{"a": 1}', "json") == '{"a": 1}'
        assert convert_value([1, 2], "string") == "[1, 2]"
        assert convert_value(5, "string") == "5"

    def test_none_stays_none(self):
        for field_type in ("integer", "float", "boolean", "datetime", "json", "string"):
            assert convert_value(None, field_type) is None

    def test_unconvertible_raises(self):
        with pytest.raises(ValueError):
            convert_value("abc", "integer")


class TestParseErrorBody:

    def test_errors_array(self):
        assert parse_error_body(400, '{"errors": [{"message": "Invalid dataset", "code": "E1"}]}') == "Invalid dataset"
        assert parse_error_body(400, '{"errors": [{"code": "E1"}]}') == "E1"

    def test_message_field(self):
        assert parse_error_body(401, '{"message": "Unauthorized"}') == "Unauthorized"
        assert parse_error_body(500, '{"error": "boom"}') == "boom"

    def test_html_body(self):
        assert parse_error_body(502, "<html><body><h1>Bad Gateway</h1></body></html>") == "HTTP 502: Bad Gateway"


class TestIngestionSender:

    @pytest.mark.asyncio
    async def test_success_sends_typed_rows(self, make_transport, respond, make_sender, audit_store, sleep_recorder):
        transport = make_transport(responses=[respond({"status": "ok"})])

        result = await make_sender(transport).send("github", GitHubDatasetSchema(), ROWS)

        assert result.success
        assert result.rows_sent == 2
        assert result.attempts == 1
        assert result.dataset_id == "ds-github"
        assert sleep_recorder.calls == []

        call = transport.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == "https://databox.test/v1/input/datasets/ds-github/data"
        assert call["headers"]["x-api-key"] == "test-api-key"
        body = json.loads(call["body"])
        assert body["records"][0]["repository_id"] == 12
        assert body["records"][0]["is_public"] is True
        assert body["records"][0]["metadata"] == '{"size": 1}'

        entry = audit_entry(audit_store)
        assert entry.status == IngestionStatus.SUCCESS
        assert entry.dataset_name == "github_events"
        assert entry.rows_sent == 2
        assert entry.columns_sent == len(GitHubDatasetSchema().get_fields())
        assert entry.error_message is None

    @pytest.mark.asyncio
    async def test_server_errors_retry_with_linear_backoff(self, make_transport, respond, make_sender, audit_store, sleep_recorder):
        transport = make_transport(responses=[respond({"message": "unavailable"}, status_code=500)] * 3)

        result = await make_sender(transport).send("github", GitHubDatasetSchema(), ROWS)

        assert not result.success
        assert result.attempts == 3
        assert result.status_code == 500
        assert result.rows_sent == 0
        assert "unavailable" in result.message
        assert sleep_recorder.calls == [1.0, 2.0]

        entry = audit_entry(audit_store)
        assert entry.status == IngestionStatus.FAILED
        assert entry.attempts == 3
        assert entry.error_message == "unavailable"

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self, make_transport, respond, make_sender, audit_store, sleep_recorder):
        transport = make_transport(responses=[
            respond(status_code=503),
            respond({"status": "ok"}),
        ])

        result = await make_sender(transport).send("github", GitHubDatasetSchema(), ROWS)

        assert result.success
        assert result.attempts == 2
        assert sleep_recorder.calls == [1.0]
        assert audit_entry(audit_store).attempts == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401])
    async def test_client_errors_are_terminal(self, status_code, make_transport, respond, make_sender, audit_store, sleep_recorder):
        transport = make_transport(responses=[respond({"errors": [{"message": "rejected"}]}, status_code=status_code)])

        result = await make_sender(transport).send("github", GitHubDatasetSchema(), ROWS)

        assert not result.success
        assert result.attempts == 1
        assert result.status_code == status_code
        assert len(transport.calls) == 1
        assert sleep_recorder.calls == []
        assert audit_entry(audit_store).error_message == "rejected"

    @pytest.mark.asyncio
    async def test_transport_failures_are_retried(self, make_transport, make_sender, audit_store, sleep_recorder):
        transport = make_transport(responses=[TransportError("All transports failed")] * 3)

        result = await make_sender(transport).send("strava", GitHubDatasetSchema(), ROWS)

        assert not result.success
        assert result.attempts == 3
        assert result.status_code is None
        assert result.dataset_id == "ds-strava"
        assert "All transports failed" in result.message

    @pytest.mark.asyncio
    async def test_empty_batch(self, make_transport, make_sender, audit_store):
        transport = make_transport()

        result = await make_sender(transport).send("github", GitHubDatasetSchema(), [])

        assert not result.success
        assert result.message == "No data to send"
        assert transport.calls == []
        audit_store.append_audit_log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_dataset_id(self, make_transport, make_sender, audit_store):
        transport = make_transport()
        sender = make_sender(transport, DATABOX_DATASET_ID_GITHUB=None, DATABOX_DATASET_ID=None)

        result = await sender.send("github", GitHubDatasetSchema(), ROWS)

        assert not result.success
        assert "Dataset ID not provided" in result.message
        assert transport.calls == []

        entry = audit_entry(audit_store)
        assert entry.status == IngestionStatus.FAILED
        assert entry.attempts == 0
        assert entry.dataset_id is None

    @pytest.mark.asyncio
    async def test_missing_api_key(self, make_transport, make_sender, audit_store):
        transport = make_transport()

        result = await make_sender(transport, DATABOX_TOKEN=None).send("github", GitHubDatasetSchema(), ROWS)

        assert not result.success
        assert "API key" in result.message
        assert transport.calls == []
        assert audit_entry(audit_store).dataset_id == "ds-github"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_hide_result(self, make_transport, respond, make_sender, audit_store):
        audit_store.append_audit_log.side_effect = StoreError("database is locked")
        transport = make_transport(responses=[respond({"status": "ok"})])

        result = await make_sender(transport).send("github", GitHubDatasetSchema(), ROWS)

        assert result.success

    def test_dataset_resolution_order(self, make_transport, make_sender):
        sender = make_sender(make_transport(), DATABOX_DATASET_ID="ds-default")

        assert sender.resolve_dataset_id("github", "explicit") == "explicit"
        assert sender.resolve_dataset_id("GitHub") == "ds-github"
        assert sender.resolve_dataset_id("rss") == "ds-default"

        with pytest.raises(ConfigError):
            make_sender(make_transport()).resolve_dataset_id("rss")


class TestDataboxAdmin:

    @pytest.mark.asyncio
    async def test_list_accounts(self, test_settings, make_transport, respond):
        transport = make_transport(responses=[respond({"accounts": [{"id": 1, "name": "Main"}]})])
        admin = DataboxAdmin.from_settings(test_settings, transport)

        result = await admin.list_accounts()

        assert result.success
        assert result.items == [{"id": 1, "name": "Main"}]
        call = transport.calls[0]
        assert call["method"] == "GET"
        assert call["url"] == "https://databox.test/v1/input/accounts"
        assert call["headers"]["x-api-key"] == "test-api-key"
        assert call["body"] is None

    @pytest.mark.asyncio
    async def test_missing_accounts_endpoint_is_tolerated(self, test_settings, make_transport, respond):
        transport = make_transport(responses=[respond({"message": "Not Found"}, status_code=404)])
        admin = DataboxAdmin.from_settings(test_settings, transport)

        result = await admin.list_accounts()

        assert not result.success
        assert result.status_code == 404
        assert "Accounts endpoint not available" in result.error

    @pytest.mark.asyncio
    async def test_create_data_source(self, test_settings, make_transport, respond):
        transport = make_transport(responses=[
            respond({"id": 321}, status_code=201),
            respond({"id": 322}, status_code=201),
        ])
        admin = DataboxAdmin.from_settings(test_settings, transport)

        result = await admin.create_data_source("Activity metrics")
        with_account = await admin.create_data_source("Other", account_id=9, timezone="Europe/Ljubljana")

        assert result.success
        assert result.id == 321
        assert transport.calls[0]["url"].endswith("/data-sources")
        assert json.loads(transport.calls[0]["body"]) == {"title": "Activity metrics", "timezone": "UTC"}
        assert with_account.id == 322
        assert json.loads(transport.calls[1]["body"]) == {
            "title": "Other",
            "timezone": "Europe/Ljubljana",
            "accountId": 9,
        }

    @pytest.mark.asyncio
    async def test_list_datasets(self, test_settings, make_transport, respond):
        transport = make_transport(responses=[respond({"datasets": [{"id": "ds-1", "title": "github_events"}]})])
        admin = DataboxAdmin.from_settings(test_settings, transport)

        result = await admin.list_datasets(321)

        assert result.success
        assert result.items == [{"id": "ds-1", "title": "github_events"}]
        assert transport.calls[0]["url"].endswith("/data-sources/321/datasets")

    @pytest.mark.asyncio
    async def test_create_dataset_with_primary_keys(self, test_settings, make_transport, respond):
        transport = make_transport(responses=[
            respond({"id": "ds-strava"}, status_code=201),
            respond({"id": "ds-github"}, status_code=201),
        ])
        admin = DataboxAdmin.from_settings(test_settings, transport)

        strava = await admin.create_dataset_for(321, StravaDatasetSchema())
        github = await admin.create_dataset_for(321, GitHubDatasetSchema())

        assert strava.id == "ds-strava"
        assert transport.calls[0]["url"].endswith("/v1/input/datasets")
        assert json.loads(transport.calls[0]["body"]) == {
            "title": "strava_activities",
            "dataSourceId": 321,
            "primaryKeys": ["activity_id"],
        }
        assert github.id == "ds-github"
        assert json.loads(transport.calls[1]["body"]) == {"title": "github_events", "dataSourceId": 321}

    @pytest.mark.asyncio
    async def test_errors_are_returned(self, test_settings, make_transport, respond):
        transport = make_transport(responses=[
            respond({"errors": [{"code": "invalid_title", "message": "Title is required"}]}, status_code=422),
            TransportError("All transports failed for POST https://databox.test/v1/input/datasets"),
        ])
        admin = DataboxAdmin.from_settings(test_settings, transport)

        rejected = await admin.create_dataset(321, "")
        unreachable = await admin.create_dataset(321, "github_events")

        assert not rejected.success
        assert rejected.status_code == 422
        assert rejected.error == "Title is required"
        assert not unreachable.success
        assert unreachable.status_code == 0
        assert "All transports failed" in unreachable.error

    @pytest.mark.asyncio
    async def test_missing_api_key_makes_no_call(self, test_settings, make_transport):
        transport = make_transport()
        admin = DataboxAdmin.from_settings(test_settings.model_copy(update={"DATABOX_TOKEN": None}), transport)

        result = await admin.list_datasets(321)

        assert not result.success
        assert result.error == "Databox API key not configured"
        assert transport.calls == []
