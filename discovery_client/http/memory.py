"""
In-Memory Registry

An in-process registry and a Transport that talks to it, so unit tests and
local development never perform network I/O. Honours registration TTL on the
injected clock, assigns strictly increasing updatedAt stamps, pushes change
events to open watch streams and supports failure injection.

Usage:
    clock = FakeClock()
    registry = InMemoryRegistry(clock)
    registry.seed("orders", "http://10.0.0.1:9001", region="us-east-1")
    client = DiscoveryClient(settings, transport=InMemoryTransport(registry), clock=clock)
"""

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from discovery_client.exceptions import RegistryTransportError
from discovery_client.http.transport import EventStream, Transport, TransportResponse
from discovery_client.service_discovery.models import ServiceRecord
from discovery_client.utils.clock import Clock

_DISCONNECT = object()


@dataclass
class _Instance:
    record: ServiceRecord
    expires_at: Optional[float]


class InMemoryRegistry:
    """Authoritative service table kept in process memory"""

    def __init__(self, clock: Optional[Clock] = None, initial_healthy: bool = True):
        self.clock = clock or Clock()
        self.initial_healthy = initial_healthy
        self.health_checker: Optional[Callable[[ServiceRecord], bool]] = None

        self._services: Dict[str, Dict[str, _Instance]] = {}
        self._watchers: Dict[str, List[asyncio.Queue]] = {}
        self._last_stamp = 0.0

        # Failure injection
        self.unavailable = False
        self._fail_next = 0

        # Request log for assertions: (method, path)
        self.requests: List[Tuple[str, str]] = []
        self.stream_opens: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Table management
    # ------------------------------------------------------------------

    def _stamp(self) -> float:
        self._last_stamp = max(self.clock.now(), self._last_stamp + 0.001)
        return self._last_stamp

    def _live(self, name: str) -> Dict[str, _Instance]:
        now = self.clock.now()
        instances = self._services.get(name, {})
        expired = [url for url, inst in instances.items() if inst.expires_at is not None and inst.expires_at <= now]
        for url in expired:
            del instances[url]
        if not instances:
            self._services.pop(name, None)
        return instances

    def records(self, name: str) -> List[ServiceRecord]:
        return [inst.record for inst in self._live(name).values()]

    def seed(
        self,
        name: str,
        url: str,
        region: str = "",
        healthy: bool = True,
        tags: Iterable[str] = (),
        version: str = "",
        ttl: Optional[float] = None
    ) -> ServiceRecord:
        """Place a record directly in the table and notify watchers."""
        record = ServiceRecord(
            name=name,
            url=url,
            region=region,
            version=version,
            healthy=healthy,
            tags=frozenset(tags),
            updated_at=self._stamp(),
        )
        self._put(record, ttl)
        return record

    def upsert(self, name: str, body: Dict[str, Any]) -> ServiceRecord:
        """PUT semantics: upsert by name and URL, last writer wins."""
        current = self._live(name).get(body["url"])
        healthy = current.record.healthy if current else self.initial_healthy
        record = ServiceRecord(
            name=name,
            url=body["url"],
            region=body.get("region", ""),
            version=body.get("version", ""),
            healthy=healthy,
            tags=frozenset(body.get("tags", ())),
            updated_at=self._stamp(),
        )
        self._put(record, body.get("ttl"))
        return record

    def _put(self, record: ServiceRecord, ttl: Optional[float]) -> None:
        expires_at = self.clock.now() + ttl if ttl else None
        self._services.setdefault(record.name, {})[record.url] = _Instance(record, expires_at)
        self._notify(record)

    def set_healthy(self, name: str, url: str, healthy: bool) -> ServiceRecord:
        instance = self._live(name)[url]
        record = instance.record.model_copy(update={"healthy": healthy, "updated_at": self._stamp()})
        instance.record = record
        self._notify(record)
        return record

    def remove(self, name: str, url: Optional[str] = None) -> bool:
        instances = self._live(name)
        if url is None:
            return self._services.pop(name, None) is not None
        removed = instances.pop(url, None) is not None
        if not instances:
            self._services.pop(name, None)
        return removed

    def check_health(self, name: str) -> Optional[Dict[str, Any]]:
        instances = self._live(name)
        if not instances:
            return None
        for instance in instances.values():
            healthy = self.health_checker(instance.record) if self.health_checker else True
            if healthy != instance.record.healthy:
                self.set_healthy(name, instance.record.url, healthy)
        return {
            "healthy": any(inst.record.healthy for inst in instances.values()),
            "latencyMs": 1.0,
            "checkedAt": self.clock.now(),
        }

    # ------------------------------------------------------------------
    # Watchers and failure injection
    # ------------------------------------------------------------------

    def _notify(self, record: ServiceRecord) -> None:
        payload = record.model_dump(mode="json", by_alias=True)
        for queue in self._watchers.get(record.name, []):
            queue.put_nowait(payload)

    def push_raw(self, name: str, payload: Any) -> None:
        """Push an arbitrary event, e.g. a stale replay, to watchers of name."""
        for queue in self._watchers.get(name, []):
            queue.put_nowait(payload)

    def watcher_count(self, name: str) -> int:
        return len(self._watchers.get(name, []))

    def disconnect_watchers(self, name: str) -> None:
        for queue in self._watchers.get(name, []):
            queue.put_nowait(_DISCONNECT)

    def fail_next(self, count: int = 1) -> None:
        self._fail_next += count

    def calls(self, method: Optional[str] = None, path: Optional[str] = None) -> int:
        return sum(
            1 for m, p in self.requests
            if (method is None or m == method) and (path is None or p == path)
        )

    def _maybe_fail(self, method: str, path: str) -> None:
        if self.unavailable:
            raise RegistryTransportError(f"{method} {path} failed: registry unavailable", path=path)
        if self._fail_next > 0:
            self._fail_next -= 1
            raise RegistryTransportError(f"{method} {path} failed: injected failure", path=path)


class _MemoryEventStream(EventStream):
    def __init__(self, registry: InMemoryRegistry, name: str, path: str):
        self._registry = registry
        self._name = name
        self._path = path
        self._queue: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> "_MemoryEventStream":
        self._registry._maybe_fail("GET", self._path)
        self._registry._watchers.setdefault(self._name, []).append(self._queue)
        self._registry.stream_opens[self._name] = self._registry.stream_opens.get(self._name, 0) + 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        watchers = self._registry._watchers.get(self._name, [])
        if self._queue in watchers:
            watchers.remove(self._queue)
        return False

    async def _events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _DISCONNECT:
                raise RegistryTransportError("Watch stream dropped", path=self._path)
            yield item

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._events()


class InMemoryTransport(Transport):
    """Transport that routes registry calls to an InMemoryRegistry"""

    def __init__(self, registry: Optional[InMemoryRegistry] = None):
        self.registry = registry or InMemoryRegistry()
        self.closed = False

    @staticmethod
    def _split(path: str) -> Tuple[str, str]:
        parts = path.strip("/").split("/", 1)
        if len(parts) != 2 or not parts[1]:
            raise RegistryTransportError(f"Unroutable path {path}", status_code=400, path=path)
        return parts[0], parts[1]

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> TransportResponse:
        self.registry.requests.append((method, path))
        # Let concurrent callers interleave as they would on a real socket
        await asyncio.sleep(0)
        self.registry._maybe_fail(method, path)

        resource, name = self._split(path)
        registry = self.registry

        if resource == "services" and method == "GET":
            records = registry.records(name)
            if not records:
                return TransportResponse(status_code=404)
            return TransportResponse(
                status_code=200,
                data=[r.model_dump(mode="json", by_alias=True) for r in records]
            )

        if resource == "services" and method == "PUT":
            created = not registry.records(name)
            record = registry.upsert(name, json or {})
            return TransportResponse(
                status_code=201 if created else 200,
                data=record.model_dump(mode="json", by_alias=True)
            )

        if resource == "services" and method == "DELETE":
            registry.remove(name)
            return TransportResponse(status_code=204)

        if resource == "health" and method == "GET":
            result = registry.check_health(name)
            if result is None:
                return TransportResponse(status_code=404)
            return TransportResponse(status_code=200, data=result)

        raise RegistryTransportError(f"Unroutable request {method} {path}", status_code=405, path=path)

    def open_stream(self, path: str) -> EventStream:
        resource, name = self._split(path)
        return _MemoryEventStream(self.registry, name, path)

    async def aclose(self) -> None:
        self.closed = True
