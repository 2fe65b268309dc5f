"""
Registry Transport Adapter

Performs a single request/response exchange or opens a single long-lived
event stream against the registry. No retry or caching logic lives here;
failures are classified and raised for the layers above:

- 2xx and 404 come back as a TransportResponse
- 429, 5xx, connection errors and timeouts raise RegistryTransportError
- any other 4xx raises RegistryRequestError
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import structlog
from pydantic import SecretStr

from discovery_client.exceptions import RegistryRequestError, RegistryTransportError, redact

logger = structlog.get_logger("registry-transport")


DEFAULT_LIMITS = httpx.Limits(
    max_keepalive_connections=20,
    max_connections=50,
    keepalive_expiry=30.0
)


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    data: Any = None

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class EventStream(ABC):
    """One open push connection; iterate it for decoded JSON events."""

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        ...


class Transport(ABC):
    """Swappable leaf that talks to the registry"""

    @abstractmethod
    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> TransportResponse:
        ...

    @abstractmethod
    def open_stream(self, path: str) -> EventStream:
        ...

    async def aclose(self) -> None:
        return None


def decode_event(payload: str, path: Optional[str] = None) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except ValueError:
        raise RegistryTransportError("Malformed event on watch stream", path=path) from None
    if not isinstance(event, dict):
        raise RegistryTransportError("Watch event is not a JSON object", path=path)
    return event


async def iter_events(lines: AsyncIterator[str], path: Optional[str] = None) -> AsyncIterator[Dict[str, Any]]:
    """
    Decode a server-sent-events body into JSON objects.

    Multi-line ``data:`` fields are joined, comments and keep-alives are
    skipped. A bare JSON object on its own line (newline-delimited JSON, as
    socket bridges tend to send) is accepted as a complete event.
    """
    data_lines: List[str] = []

    async for raw in lines:
        line = raw.rstrip("\r")

        if not line:
            if data_lines:
                yield decode_event("\n".join(data_lines), path)
                data_lines = []
            continue

        if line.startswith(":"):
            continue

        if line.startswith("{") and not data_lines:
            yield decode_event(line, path)
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data_lines.append(value)

    if data_lines:
        yield decode_event("\n".join(data_lines), path)


class _HttpxEventStream(EventStream):
    def __init__(self, transport: "HttpxTransport", path: str):
        self._transport = transport
        self._path = path
        self._context = None
        self._response: Optional[httpx.Response] = None

    async def __aenter__(self) -> "_HttpxEventStream":
        client = await self._transport._get_client()
        self._context = client.stream(
            "GET",
            self._path,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self._transport.timeout, read=None),
        )
        try:
            self._response = await self._context.__aenter__()
        except httpx.HTTPError as e:
            raise self._transport._transport_error("GET", self._path, e) from None

        if self._response.status_code != 200:
            status = self._response.status_code
            await self._context.__aexit__(None, None, None)
            raise RegistryTransportError(
                f"Watch stream refused with status {status}",
                status_code=status,
                path=self._path
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._context is not None:
            await self._context.__aexit__(exc_type, exc_val, exc_tb)
        return False

    async def _events(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for event in iter_events(self._response.aiter_lines(), self._path):
                yield event
        except httpx.HTTPError as e:
            raise self._transport._transport_error("GET", self._path, e) from None

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._events()


class HttpxTransport(Transport):
    """
    httpx-backed transport with connection pooling.

    The API key is forwarded on every request and never appears in errors.

    Usage:
        transport = HttpxTransport("https://registry.internal", SecretStr(key))
        response = await transport.request("GET", "/services/orders")
    """

    def __init__(
        self,
        base_url: str,
        api_key: SecretStr,
        timeout: float = 5.0,
        max_connections: int = 50,
        http_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._api_key = api_key
        self._max_connections = max_connections
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings) -> "HttpxTransport":
        return cls(
            base_url=settings.REGISTRY_URL,
            api_key=settings.REGISTRY_API_KEY,
            timeout=settings.timeout_seconds,
            max_connections=settings.REGISTRY_MAX_CONNECTIONS,
        )

    def _headers(self) -> Dict[str, str]:
        key = self._api_key.get_secret_value()
        return {
            "accept": "application/json",
            "authorization": f"Bearer {key}",
            "x-api-key": key,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with connection pooling"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._headers(),
                transport=self._http_transport,
                limits=httpx.Limits(
                    max_connections=self._max_connections,
                    max_keepalive_connections=DEFAULT_LIMITS.max_keepalive_connections,
                    keepalive_expiry=DEFAULT_LIMITS.keepalive_expiry,
                ),
            )
        return self._client

    def _transport_error(self, method: str, path: str, exc: Exception) -> RegistryTransportError:
        kind = "timed out" if isinstance(exc, httpx.TimeoutException) else "failed"
        detail = redact(str(exc) or type(exc).__name__, [self._api_key.get_secret_value()])
        return RegistryTransportError(f"{method} {path} {kind}: {detail}", path=path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> TransportResponse:
        client = await self._get_client()
        try:
            response = await client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise self._transport_error(method, path, e) from None

        status = response.status_code
        if status == 404:
            return TransportResponse(status_code=404)
        if status == 429 or status >= 500:
            raise RegistryTransportError(
                f"{method} {path} returned {status}", status_code=status, path=path
            )
        if status >= 400:
            raise RegistryRequestError(
                f"{method} {path} rejected with {status}", status_code=status, path=path
            )

        if not response.content:
            return TransportResponse(status_code=status)
        try:
            return TransportResponse(status_code=status, data=response.json())
        except ValueError:
            raise RegistryTransportError(
                f"{method} {path} returned invalid JSON", status_code=status, path=path
            ) from None

    def open_stream(self, path: str) -> EventStream:
        return _HttpxEventStream(self, path)

    async def aclose(self) -> None:
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
