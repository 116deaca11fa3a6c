"""
Pytest configuration and fixtures
"""

import asyncio
import json
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from core.config import Settings
from core.database import create_db_engine, create_session_factory
from ingestion.credentials import CredentialStore
from ingestion.loaders.record_store import SQLAlchemyRecordStore
from ingestion.transport import TransportResponse
from models.base import Base
from schemas.records import Credential, TokenBundle


def json_response(data=None, status_code: int = 200, headers: Optional[dict] = None) -> TransportResponse:
    """TransportResponse with a JSON (or raw text) body"""
    if isinstance(data, (bytes, str)):
        body = data.encode("utf-8") if isinstance(data, str) else data
    else:
        body = json.dumps(data).encode("utf-8") if data is not None else b""
    return TransportResponse(status_code=status_code, body=body, headers=headers or {}, strategy="fake")


class FakeTransport:
    """
    Stands in for FallbackTransport.

    Answers from a scripted list of responses, or from ``handler(method, url, params)``.
    Exceptions are raised, coroutines are awaited. Every call is recorded.
    """

    def __init__(self, responses=None, handler=None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls = []

    async def request(self, method, url, headers=None, params=None, body=None, timeout=30.0):
        self.calls.append({
            "method": method,
            "url": url,
            "headers": dict(headers or {}),
            "params": dict(params or {}),
            "body": body,
        })
        if self.handler is not None:
            outcome = self.handler(method, url, dict(params or {}))
        else:
            outcome = self.responses.pop(0)

        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def calls_to(self, fragment: str):
        return [c for c in self.calls if fragment in c["url"]]


class SleepRecorder:
    """Replaces asyncio.sleep; records requested delays without waiting"""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class InMemoryCredentialStore(CredentialStore):
    """Credential store for tests; ``refresh`` hands out ``refreshed_token``"""

    def __init__(self, credentials=None, refreshed_token: str = "refreshed-token"):
        self.credentials = {c.source_name: c for c in (credentials or [])}
        self.refreshed_token = refreshed_token
        self.refresh_calls = 0

    async def get(self, source_name: str) -> Credential:
        return self.credentials.get(source_name) or Credential(source_name=source_name)

    async def refresh(self, source_name: str) -> Credential:
        self.refresh_calls += 1
        credential = Credential(
            source_name=source_name,
            access_token=self.refreshed_token,
            refresh_token="refresh-token",
        )
        self.credentials[source_name] = credential
        return credential

    async def store(self, source_name: str, bundle: TokenBundle) -> Credential:
        credential = Credential(source_name=source_name, **bundle.model_dump())
        self.credentials[source_name] = credential
        return credential


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from the environment and any .env file"""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        DATABOX_TOKEN="test-api-key",
        DATABOX_ENDPOINT="https://databox.test/v1/input",
        DATABOX_RETRY_ATTEMPTS=3,
        DATABOX_RETRY_DELAY=1000,
        DATABOX_DATASET_ID_GITHUB="ds-github",
        DATABOX_DATASET_ID_STRAVA="ds-strava",
        GITHUB_ENABLED=True,
        GITHUB_PERSONAL_ACCESS_TOKEN="ghp_test",
        GITHUB_API_URL="https://github.test",
        GITHUB_REPOSITORY="octo/hello",
        STRAVA_ENABLED=True,
        STRAVA_CLIENT_ID="12345",
        STRAVA_CLIENT_SECRET="strava-secret",
        STRAVA_API_URL="https://strava.test/api/v3",
        STRAVA_TOKEN_URL="https://strava.test/oauth/token",
        STRAVA_AUTH_URL="https://strava.test/oauth/authorize",
        STRAVA_REDIRECT_URI="http://localhost:8000/callback",
        SYNC_DEADLINE_SECONDS=30.0,
    )


# ============================================================================
# Database
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def test_engine(test_settings) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with all tables created"""
    engine = create_db_engine(test_settings.DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
def record_store(session_factory) -> SQLAlchemyRecordStore:
    return SQLAlchemyRecordStore(session_factory)


# ============================================================================
# Doubles
# ============================================================================

@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def credentials() -> InMemoryCredentialStore:
    return InMemoryCredentialStore([
        Credential(source_name="github", access_token="ghp_test"),
        Credential(source_name="strava", access_token="strava-token", refresh_token="refresh-token"),
    ])


@pytest.fixture
def make_transport():
    """Factory: ``make_transport(responses=[...])`` or ``make_transport(handler=fn)``"""
    return FakeTransport


@pytest.fixture
def respond():
    """``respond(data, status_code=200, headers=None)`` builds a TransportResponse"""
    return json_response


@pytest.fixture
def credential_store_cls():
    return InMemoryCredentialStore
