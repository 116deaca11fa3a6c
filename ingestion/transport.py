"""
HTTP transport with an ordered fallback chain.

A request is attempted with each strategy in turn:

1. the primary ``httpx.AsyncClient``
2. a second ``httpx`` client pinned to HTTP/1.1 with explicit socket options
3. the ``curl`` command line tool

The first strategy that produces any HTTP response wins, whatever its status
code. Only transport failures (exceptions, timeouts, refused connections)
move on to the next strategy. When every strategy fails a ``TransportError``
is raised.

Certificate verification is off by default in every strategy; pass
``verify_tls=True`` (``HTTP_VERIFY_TLS``) to turn it on.
"""

import asyncio
import json
import logging
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx

from core.exceptions import ConfigError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
CONNECT_TIMEOUT = 10.0


@dataclass
class TransportResponse:
    """Uniform response returned by every strategy. Header names are lower-cased."""
    status_code: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    strategy: str = ""

    def __post_init__(self):
        self.headers = {str(k).lower(): str(v) for k, v in self.headers.items()}

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    def json(self) -> Any:
        """Decode the body as JSON. Raises ValueError on invalid JSON."""
        if not self.body.strip():
            return None
        return json.loads(self.body)


def redact_url(url: str) -> str:
    """Strip the query string so tokens passed as parameters never reach the logs."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def build_url(url: str, params: Optional[Mapping[str, Any]] = None) -> str:
    if not params:
        return url
    query = urlencode({k: v for k, v in params.items() if v is not None}, doseq=True)
    if not query:
        return url
    separator = "&" if urlsplit(url).query else "?"
    return f"{url}{separator}{query}"


class TransportStrategy(ABC):
    """One way of performing an HTTP request."""

    name = "strategy"

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[bytes] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> TransportResponse:
        """Perform the request or raise on transport failure."""


# ============================================================================
# httpx strategies
# ============================================================================

def _tuned_transport(verify: bool) -> httpx.AsyncHTTPTransport:
    return httpx.AsyncHTTPTransport(
        verify=verify,
        http1=True,
        http2=False,
        retries=1,
        socket_options=[
            (socket.IPPROTO_TCP, socket.TCP_NODELAY, 1),
            (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1),
        ],
    )


class HttpxStrategy(TransportStrategy):
    """
    Request through an ``httpx.AsyncClient``.

    Args:
        name: Label used in logs and in ``TransportResponse.strategy``
        verify_tls: Verify server certificates
        transport_factory: Builds the low-level transport for each client.
            ``None`` uses the httpx default.
    """

    def __init__(
        self,
        name: str = "httpx",
        verify_tls: bool = False,
        transport_factory: Optional[Callable[[], httpx.AsyncBaseTransport]] = None,
    ):
        self.name = name
        self.verify_tls = verify_tls
        self.transport_factory = transport_factory

    @classmethod
    def tuned(cls, verify_tls: bool = False) -> "HttpxStrategy":
        """HTTP/1.1 client with TCP_NODELAY, keep-alive and one connect retry."""
        return cls(
            name="httpx-tuned",
            verify_tls=verify_tls,
            transport_factory=lambda: _tuned_transport(verify_tls),
        )

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[bytes] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> TransportResponse:
        client_kwargs: Dict[str, Any] = {
            "verify": self.verify_tls,
            "follow_redirects": True,
            "timeout": httpx.Timeout(timeout, connect=min(CONNECT_TIMEOUT, timeout)),
        }
        if self.transport_factory is not None:
            client_kwargs["transport"] = self.transport_factory()

        async with httpx.AsyncClient(**client_kwargs) as client:
            response = await client.request(
                method.upper(),
                url,
                headers=dict(headers or {}),
                params={k: v for k, v in (params or {}).items() if v is not None},
                content=body,
            )

        return TransportResponse(
            status_code=response.status_code,
            body=response.content,
            headers=dict(response.headers),
            strategy=self.name,
        )


# ============================================================================
# curl strategy
# ============================================================================

def parse_curl_output(raw: bytes) -> Tuple[int, Dict[str, str], bytes]:
    """
    Split ``curl -D -`` output into status, headers and body.

    With redirects or ``100 Continue`` curl prints several header blocks;
    the last one belongs to the body. Output without a status line is
    treated as a bare body with status 200.
    """
    status = 200
    headers: Dict[str, str] = {}
    data = raw

    while data.startswith(b"HTTP/"):
        end = data.find(b"\r\n\r\n")
        separator_length = 4
        if end == -1:
            end = data.find(b"\n\n")
            separator_length = 2
        if end == -1:
            block, data = data, b""
        else:
            block, data = data[:end], data[end + separator_length:]

        lines = block.decode("iso-8859-1").splitlines()
        status_parts = lines[0].split(None, 2)
        if len(status_parts) >= 2 and status_parts[1].isdigit():
            status = int(status_parts[1])

        headers = {}
        for line in lines[1:]:
            name, sep, value = line.partition(":")
            if sep:
                headers[name.strip().lower()] = value.strip()

    return status, headers, data


class CurlStrategy(TransportStrategy):
    """Last resort: run the ``curl`` binary in a subprocess."""

    name = "curl"

    def __init__(self, binary: str = "curl", verify_tls: bool = False):
        self.binary = binary
        self.verify_tls = verify_tls

    def build_command(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]],
        has_body: bool,
        timeout: float,
    ) -> List[str]:
        command = [
            self.binary,
            "--silent",
            "--show-error",
            "--location",
            "--dump-header", "-",
            "--max-time", str(max(1, int(timeout))),
            "--connect-timeout", str(int(min(CONNECT_TIMEOUT, timeout)) or 1),
            "--request", method.upper(),
        ]
        if not self.verify_tls:
            command.append("--insecure")
        for name, value in (headers or {}).items():
            command.extend(["--header", f"{name}: {value}"])
        if has_body:
            command.extend(["--data-binary", "@-"])
        command.append(url)
        return command

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[bytes] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> TransportResponse:
        command = self.build_command(
            method, build_url(url, params), headers, body is not None, timeout
        )

        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if body is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await process.communicate(input=body)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            raise TransportError(
                f"curl exited with code {process.returncode}",
                context={
                    "url": redact_url(url),
                    "stderr": stderr.decode("utf-8", errors="replace").strip()[:500],
                },
            )

        status, response_headers, content = parse_curl_output(stdout)
        return TransportResponse(
            status_code=status,
            body=content,
            headers=response_headers,
            strategy=self.name,
        )


# ============================================================================
# Fallback chain
# ============================================================================

class FallbackTransport:
    """Try each strategy in order until one returns a response."""

    def __init__(self, strategies: Sequence[TransportStrategy]):
        if not strategies:
            raise ConfigError("FallbackTransport needs at least one strategy")
        self.strategies = list(strategies)

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[bytes] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> TransportResponse:
        errors: List[str] = []
        last_exception: Optional[Exception] = None

        for strategy in self.strategies:
            try:
                response = await strategy.request(
                    method, url, headers=headers, params=params, body=body, timeout=timeout
                )
            except Exception as e:
                last_exception = e
                errors.append(f"{strategy.name}: {type(e).__name__}: {e}")
                logger.warning(
                    f"Transport {strategy.name} failed for {method.upper()} {redact_url(url)}: {e}"
                )
                continue

            if errors:
                logger.info(
                    f"Transport {strategy.name} answered {response.status_code} "
                    f"for {redact_url(url)} after {len(errors)} failed attempt(s)"
                )
            return response

        raise TransportError(
            f"All transports failed for {method.upper()} {redact_url(url)}",
            context={
                "url": redact_url(url),
                "strategies": [s.name for s in self.strategies],
                "errors": errors,
            },
            original_exception=last_exception,
        )


def build_default_transport(verify_tls: bool = False) -> FallbackTransport:
    """Primary httpx client → tuned httpx client → curl."""
    return FallbackTransport([
        HttpxStrategy(verify_tls=verify_tls),
        HttpxStrategy.tuned(verify_tls=verify_tls),
        CurlStrategy(verify_tls=verify_tls),
    ])
