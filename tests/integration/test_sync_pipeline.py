"""
End-to-end sync tests: extract → store → transform → send → mark sent
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from core.exceptions import StoreError
from core.timeutils import to_epoch, utcnow
from ingestion.credentials import build_credential_store
from ingestion.loaders.ingestion_sender import IngestionSender
from ingestion.runner import SyncRunner
from models.base import IngestionStatus
from models.ingestion_log import IngestionLog
from models.raw_record import RawRecord
from schemas.records import RawRecordCreate, TokenBundle


def recent(minutes=5):
    return (utcnow() - timedelta(minutes=minutes)).strftime("%Y-%m-%dT%H:%M:%SZ")


GITHUB_EVENTS = [
    {
        "id": "1",
        "type": "PushEvent",
        "actor": {"id": 1, "login": "octocat"},
        "repo": {"id": 10, "name": "octo/hello"},
        "payload": {"ref": "refs/heads/main", "commits": [{"sha": "a"}, {"sha": "b"}]},
        "created_at": recent(),
    },
    {
        "id": "2",
        "type": "WatchEvent",
        "actor": {"id": 2, "login": "hubot"},
        "repo": {"id": 10, "name": "octo/hello"},
        "payload": {"action": "started"},
        "created_at": recent(10),
    },
]


class Routes:
    """Handler for FakeTransport keyed on URL fragments"""

    def __init__(self, respond, databox_status=200):
        self.respond = respond
        self.databox_status = databox_status
        self.github_events = list(GITHUB_EVENTS)
        self.strava_activities = [{"id": 501, "type": "Run", "distance": 5000, "start_date": recent()}]

    def __call__(self, method, url, params):
        if "databox.test" in url:
            return self.respond({"status": "ok"}, status_code=self.databox_status)
        if url.endswith("/repos/octo/hello/events"):
            return self.respond(self.github_events)
        if url.endswith("/athlete/activities"):
            return self.respond(self.strava_activities)
        if url.endswith("/oauth/token"):
            return self.respond({
                "access_token": "fresh-token",
                "refresh_token": "fresh-refresh",
                "expires_at": to_epoch(utcnow() + timedelta(hours=6)),
            })
        return self.respond({"message": "Not Found"}, status_code=404)


@pytest.fixture
def routes(respond):
    return Routes(respond)


@pytest.fixture
def transport(make_transport, routes):
    return make_transport(handler=routes)


@pytest.fixture
def runner(test_settings, transport, session_factory, record_store, sleep_recorder):
    return SyncRunner(
        config=test_settings,
        transport=transport,
        credentials=build_credential_store(test_settings, session_factory, transport),
        store=record_store,
        sender=IngestionSender.from_settings(test_settings, transport, record_store, sleep=sleep_recorder),
        sleep=sleep_recorder,
    )


async def audit_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(IngestionLog).order_by(IngestionLog.id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_github_sync_end_to_end(runner, transport, record_store, session_factory):
    results = await runner.sync(["github"])

    assert len(results) == 1
    result = results[0]
    assert result.success
    assert result.records_extracted == 2
    assert result.rows_sent == 2
    assert not result.timed_out

    posts = transport.calls_to("databox.test")
    assert len(posts) == 1
    assert posts[0]["url"].endswith("/datasets/ds-github/data")
    records = json.loads(posts[0]["body"])["records"]
    assert {r["event_type"] for r in records} == {"PushEvent", "WatchEvent"}
    push = next(r for r in records if r["event_type"] == "PushEvent")
    assert push["commit_count"] == 2
    assert push["branch"] == "main"
    assert push["metadata"] == "{}"

    assert await record_store.query_unsent("github") == []

    logs = await audit_rows(session_factory)
    assert len(logs) == 1
    assert logs[0].status == IngestionStatus.SUCCESS
    assert logs[0].dataset_id == "ds-github"
    assert logs[0].rows_sent == 2


@pytest.mark.asyncio
async def test_second_run_is_idempotent(runner, transport, record_store, session_factory):
    await runner.sync(["github"])
    second = (await runner.sync(["github"]))[0]

    assert second.success
    assert second.records_extracted == 0
    assert second.rows_sent == 0
    assert "No unsent github records" in second.message
    assert await record_store.count("github") == 2
    assert len(transport.calls_to("databox.test")) == 1
    assert len(await audit_rows(session_factory)) == 1


@pytest.mark.asyncio
async def test_failed_delivery_keeps_records_unsent(runner, routes, record_store, session_factory, sleep_recorder):
    routes.databox_status = 500

    result = (await runner.sync(["github"]))[0]

    assert not result.success
    assert result.records_extracted == 2
    assert result.rows_sent == 0
    assert len(await record_store.query_unsent("github")) == 2
    assert sleep_recorder.calls == [1.0, 2.0]

    logs = await audit_rows(session_factory)
    assert len(logs) == 1
    assert logs[0].status == IngestionStatus.FAILED
    assert logs[0].attempts == 3

    # Next run delivers the backlog without fetching anything new
    routes.databox_status = 200
    retry = (await runner.sync(["github"]))[0]

    assert retry.success
    assert retry.records_extracted == 0
    assert retry.rows_sent == 2
    assert await record_store.query_unsent("github") == []


@pytest.mark.asyncio
async def test_backlog_is_sent_in_batches(test_settings, runner, routes, transport, record_store):
    runner.config = test_settings.model_copy(update={"ETL_BATCH_SIZE": 1})

    result = (await runner.sync(["github"]))[0]

    assert result.success
    assert result.rows_sent == 2
    assert len(transport.calls_to("databox.test")) == 2
    assert await record_store.query_unsent("github") == []


@pytest.mark.asyncio
async def test_strava_expired_token_is_refreshed(runner, transport, session_factory):
    await runner.credentials.store("strava", TokenBundle(
        access_token="expired-token",
        refresh_token="old-refresh",
        expires_at=utcnow() - timedelta(hours=1),
    ))

    result = (await runner.sync(["strava"]))[0]

    assert result.success
    assert result.records_extracted == 1
    assert result.rows_sent == 1

    token_calls = transport.calls_to("/oauth/token")
    assert len(token_calls) == 1
    assert b"refresh_token=old-refresh" in token_calls[0]["body"]
    activity_calls = transport.calls_to("/athlete/activities")
    assert activity_calls[0]["headers"]["Authorization"] == "Bearer fresh-token"

    credential = await runner.credentials.get("strava")
    assert credential.access_token == "fresh-token"
    assert credential.refresh_token == "fresh-refresh"

    post = transport.calls_to("databox.test")[0]
    assert post["url"].endswith("/datasets/ds-strava/data")
    row = json.loads(post["body"])["records"][0]
    assert row["activity_id"] == 501
    assert row["distance_km"] == 5.0


@pytest.mark.asyncio
async def test_enabled_sources_are_synced_by_default(runner):
    await runner.credentials.store("strava", TokenBundle(access_token="token", refresh_token="r"))

    results = await runner.sync()

    assert [r.source_name for r in results] == ["github", "strava"]
    assert all(r.success for r in results)


@pytest.mark.asyncio
async def test_transform_source_reports_rows(runner):
    await runner.extract_source("github")

    transformed = await runner.transform_source("github")

    assert transformed.success
    assert len(transformed.rows) == 2
    assert len(transformed.record_ids) == 2


@pytest.mark.asyncio
async def test_untransformable_records_do_not_block_backlog(
    test_settings, runner, transport, record_store, session_factory
):
    runner.config = test_settings.model_copy(update={"ETL_BATCH_SIZE": 2})
    async with session_factory() as session:
        for key in ("bad-1", "bad-2"):
            session.add(RawRecord(
                source_name="strava",
                natural_key=key,
                payload=[1, 2],
                extracted_at=utcnow() - timedelta(hours=1),
            ))
        await session.commit()
    await record_store.insert(RawRecordCreate(
        source_name="strava",
        natural_key="good",
        payload={"id": 777, "type": "Run", "distance": 3000, "start_date": recent()},
    ))

    result = await runner.ingest_pending("strava")

    assert result.success
    assert result.rows_sent == 1
    assert result.records_dropped == 2
    assert await record_store.query_unsent("strava") == []
    post = transport.calls_to("databox.test")[0]
    assert [r["activity_id"] for r in json.loads(post["body"])["records"]] == [777]

    async with session_factory() as session:
        bad = (await session.execute(
            select(RawRecord).where(RawRecord.natural_key.like("bad-%"))
        )).scalars().all()
    assert all(r.transform_failed_at is not None for r in bad)
    assert all(r.sent_at is None for r in bad)
    assert "not an object" in bad[0].transform_error

    # Excluded records are not retried on later runs
    again = await runner.ingest_pending("strava")
    assert again.records_loaded == 0
    assert len(transport.calls_to("databox.test")) == 1


@pytest.mark.asyncio
async def test_mark_failure_stops_backlog_drain(test_settings, runner, transport, record_store, session_factory):
    runner.config = test_settings.model_copy(update={"ETL_BATCH_SIZE": 2})

    with patch.object(record_store, "mark_sent", AsyncMock(side_effect=StoreError("database is locked"))):
        result = await runner.sync_source("github", deadline_seconds=5)

    assert not result.timed_out
    assert result.rows_sent == 2
    assert result.ingestion.mark_failed
    assert len(transport.calls_to("databox.test")) == 1
    assert len(await audit_rows(session_factory)) == 1
    assert len(await record_store.query_unsent("github")) == 2
