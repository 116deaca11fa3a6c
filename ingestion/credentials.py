"""
Credential store and OAuth token refresh.

``CredentialStore`` is the interface the fetch loop depends on:
``get`` / ``refresh`` / ``store``. ``SQLAlchemyCredentialStore`` keeps the
token bundle on the ``data_sources`` row of each source and delegates the
provider-specific refresh-token exchange to a ``TokenRefresher``
(``StravaOAuthClient`` for Strava). GitHub uses a personal access token
from settings, which never expires and cannot be refreshed.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from core.config import Settings
from core.exceptions import AuthenticationError, ConfigError, StoreError
from core.timeutils import utcnow
from ingestion.transport import FallbackTransport
from models.data_source import DataSourceCredential
from schemas.records import Credential, TokenBundle

logger = logging.getLogger(__name__)

# Strava access tokens live six hours
DEFAULT_TOKEN_LIFETIME = 21600


class CredentialStore(ABC):
    """Per-source access/refresh tokens."""

    @abstractmethod
    async def get(self, source_name: str) -> Credential:
        """Current credential for ``source_name``."""

    @abstractmethod
    async def refresh(self, source_name: str) -> Credential:
        """Exchange the refresh token for a new access token and persist it."""

    @abstractmethod
    async def store(self, source_name: str, bundle: TokenBundle) -> Credential:
        """Persist a token bundle."""


class TokenRefresher(ABC):
    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenBundle:
        """Provider-specific refresh-token exchange."""


def token_bundle_from_response(
    data: Any,
    previous_refresh_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TokenBundle:
    """
    Build a ``TokenBundle`` from an OAuth token endpoint response.

    The old refresh token is kept when the provider does not rotate it.
    Expiry comes from ``expires_at`` (epoch seconds), else ``expires_in``,
    else the default six hour lifetime.
    """
    if not isinstance(data, dict) or not data.get("access_token"):
        raise AuthenticationError(
            "Token response did not contain an access token",
            context={"response_keys": sorted(data.keys()) if isinstance(data, dict) else None},
        )

    now = now or utcnow()
    expires_at: Optional[datetime] = None
    if data.get("expires_at") is not None:
        try:
            expires_at = datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            expires_at = None
    if expires_at is None:
        try:
            expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME
        expires_at = now + timedelta(seconds=expires_in)

    return TokenBundle(
        access_token=str(data["access_token"]),
        refresh_token=data.get("refresh_token") or previous_refresh_token,
        expires_at=expires_at,
    )


class StravaOAuthClient(TokenRefresher):
    """
    Strava OAuth2 token endpoint client.

    Only the token-acquisition half of the authorization-code flow lives
    here: building the authorize URL and exchanging the returned code. The
    redirect handling belongs to whatever web layer hosts it.
    """

    def __init__(
        self,
        transport: FallbackTransport,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_url: str,
        auth_url: str,
        redirect_uri: Optional[str] = None,
        scope: str = "activity:read_all",
        timeout: float = 30.0,
    ):
        self.transport = transport
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.auth_url = auth_url
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.timeout = timeout

    @classmethod
    def from_settings(cls, config: Settings, transport: FallbackTransport) -> "StravaOAuthClient":
        return cls(
            transport=transport,
            client_id=config.STRAVA_CLIENT_ID,
            client_secret=config.STRAVA_CLIENT_SECRET,
            token_url=config.STRAVA_TOKEN_URL,
            auth_url=config.STRAVA_AUTH_URL,
            redirect_uri=config.STRAVA_REDIRECT_URI,
            scope=config.STRAVA_SCOPE,
            timeout=config.STRAVA_TIMEOUT,
        )

    def authorization_url(self) -> str:
        self._require_client()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri or "",
            "response_type": "code",
            "scope": self.scope,
            "approval_prompt": "force",
        }
        return f"{self.auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenBundle:
        return await self._token_request(
            {"code": code, "grant_type": "authorization_code"},
            action="exchange authorization code for token",
        )

    async def refresh(self, refresh_token: str) -> TokenBundle:
        if not refresh_token:
            raise AuthenticationError("No refresh token available", context={"source_name": "strava"})
        return await self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
            action="refresh access token",
            previous_refresh_token=refresh_token,
        )

    def _require_client(self):
        if not self.client_id or not self.client_secret:
            raise ConfigError(
                "Strava client credentials are not configured",
                context={"setting": "STRAVA_CLIENT_ID/STRAVA_CLIENT_SECRET"},
            )

    async def _token_request(
        self,
        form: Dict[str, str],
        action: str,
        previous_refresh_token: Optional[str] = None,
    ) -> TokenBundle:
        self._require_client()
        body = urlencode({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **form,
        }).encode("utf-8")

        response = await self.transport.request(
            "POST",
            self.token_url,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            body=body,
            timeout=self.timeout,
        )

        if not response.is_success:
            logger.error(
                f"Strava token request failed ({action}): HTTP {response.status_code}",
                extra={"error_context": {"status": response.status_code, "body": response.text[:500]}},
            )
            raise AuthenticationError(
                f"Failed to {action}",
                context={"token_url": self.token_url},
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError(
                f"Failed to {action}: token response is not JSON",
                context={"token_url": self.token_url},
                original_exception=e,
            )

        return token_bundle_from_response(data, previous_refresh_token)


class SQLAlchemyCredentialStore(CredentialStore):
    """
    Credentials persisted on the ``data_sources`` table.

    Args:
        session_factory: async_sessionmaker; every call opens its own session
        refreshers: source name → TokenRefresher for OAuth sources
        static_tokens: source name → token that overrides the stored one
            (the GitHub personal access token)
    """

    def __init__(
        self,
        session_factory,
        refreshers: Optional[Mapping[str, TokenRefresher]] = None,
        static_tokens: Optional[Mapping[str, Optional[str]]] = None,
    ):
        self.session_factory = session_factory
        self.refreshers = dict(refreshers or {})
        self.static_tokens = {k: v for k, v in (static_tokens or {}).items() if v}

    async def _load(self, session, source_name: str) -> Optional[DataSourceCredential]:
        result = await session.execute(
            select(DataSourceCredential).where(DataSourceCredential.name == source_name)
        )
        return result.scalar_one_or_none()

    async def get(self, source_name: str) -> Credential:
        try:
            async with self.session_factory() as session:
                row = await self._load(session, source_name)
        except SQLAlchemyError as e:
            raise StoreError(
                f"Failed to load credential for {source_name}",
                context={"operation": "get", "source_name": source_name},
                original_exception=e,
            )

        if row is not None and not row.is_active:
            raise ConfigError(
                f"Data source {source_name} is inactive",
                context={"source_name": source_name},
            )

        static_token = self.static_tokens.get(source_name)
        if static_token:
            return Credential(
                source_name=source_name,
                access_token=static_token,
                config=row.config if row is not None else {},
            )

        if row is None:
            return Credential(source_name=source_name)

        return Credential(
            source_name=source_name,
            access_token=row.oauth_token,
            refresh_token=row.oauth_refresh_token,
            expires_at=row.oauth_token_expires_at,
            config=row.config or {},
        )

    async def refresh(self, source_name: str) -> Credential:
        refresher = self.refreshers.get(source_name)
        if refresher is None:
            raise AuthenticationError(
                f"Credential for {source_name} cannot be refreshed",
                context={"source_name": source_name},
            )

        current = await self.get(source_name)
        if not current.refresh_token:
            raise AuthenticationError(
                "No refresh token available",
                context={"source_name": source_name},
            )

        logger.info(f"Refreshing access token for {source_name}")
        bundle = await refresher.refresh(current.refresh_token)
        if not bundle.refresh_token:
            bundle = bundle.model_copy(update={"refresh_token": current.refresh_token})

        credential = await self.store(source_name, bundle)
        logger.info(f"Access token for {source_name} refreshed, expires at {credential.expires_at}")
        return credential

    async def store(self, source_name: str, bundle: TokenBundle) -> Credential:
        try:
            async with self.session_factory() as session:
                row = await self._load(session, source_name)
                if row is None:
                    row = DataSourceCredential(name=source_name, config={}, is_active=True)
                    session.add(row)

                row.oauth_token = bundle.access_token
                if bundle.refresh_token:
                    row.oauth_refresh_token = bundle.refresh_token
                row.oauth_token_expires_at = bundle.expires_at

                await session.commit()

                return Credential(
                    source_name=source_name,
                    access_token=row.oauth_token,
                    refresh_token=row.oauth_refresh_token,
                    expires_at=row.oauth_token_expires_at,
                    config=row.config or {},
                )
        except SQLAlchemyError as e:
            raise StoreError(
                f"Failed to store credential for {source_name}",
                context={"operation": "store", "source_name": source_name},
                original_exception=e,
            )


def build_credential_store(
    config: Settings,
    session_factory,
    transport: FallbackTransport,
) -> SQLAlchemyCredentialStore:
    return SQLAlchemyCredentialStore(
        session_factory,
        refreshers={"strava": StravaOAuthClient.from_settings(config, transport)},
        static_tokens={"github": config.GITHUB_PERSONAL_ACCESS_TOKEN},
    )
