"""
Discovery Client

Composes transport, retry, circuit breaking, the resolution cache, watch
subscriptions, region failover and registration into the public API.

Usage:
    settings = Settings(REGISTRY_API_KEY=key, REGISTRY_REGION="us-west-2")

    async with DiscoveryClient(settings) as client:
        await client.register(RegisterPayload(name="orders", url="http://10.0.0.5:9001", ttl=30))

        record = await client.discover("payments", tags=["grpc"])

        async with client.watch("payments") as handle:
            async for event in handle:
                ...

Each DiscoveryClient is an independent instance: construct one per process
and pass it to the code that needs it.
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import pydantic
import structlog

from discovery_client.cache import ResolutionCache, SingleFlight
from discovery_client.config import Settings
from discovery_client.exceptions import (
    CircuitOpenError,
    ConfigurationException,
    DiscoveryException,
    RegistryRequestError,
    RegistryUnavailableError,
    ServiceNotFoundError,
    ValidationError,
)
from discovery_client.http import HttpxTransport, Transport, TransportResponse
from discovery_client.resilience import CircuitBreakerRegistry, RetryPolicy
from discovery_client.service_discovery import (
    HealthStatus,
    RegionFailoverSelector,
    RegisterPayload,
    Registration,
    RegistrationManager,
    ServiceRecord,
    WatchHandle,
    WatchSubscriptionManager,
    validate_service_name,
)
from discovery_client.utils.clock import Clock

logger = structlog.get_logger("discovery-client")

_PAYLOAD_ALIASES = {"healthPath": "health_path"}


class DiscoveryClient:
    """
    Client-side resolution and liveness engine for a remote service registry.

    Args:
        settings: Configuration; built from the environment when omitted
        transport: Registry transport (HttpxTransport by default). Swap in an
            InMemoryTransport for tests.
        clock: Time source for TTLs, cooldowns, renewal and reconnect timers
        retry_policy: Retry strategy; built from settings when omitted
        on_circuit_change: Called with (service, old_state, new_state)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[Transport] = None,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        on_circuit_change=None
    ):
        self.settings = settings or _load_settings()
        self.clock = clock or Clock()
        self.transport = transport or HttpxTransport.from_settings(self.settings)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings, sleep=self.clock.sleep)

        self.breakers = CircuitBreakerRegistry.from_settings(
            self.settings, clock=self.clock, on_state_change=on_circuit_change
        )
        self.cache = ResolutionCache(
            capacity=self.settings.REGISTRY_CACHE_CAPACITY,
            default_ttl=self.settings.REGISTRY_CACHE_TTL,
            clock=self.clock,
        )
        self.selector = RegionFailoverSelector(self.settings.REGISTRY_REGION)
        self.watches = WatchSubscriptionManager(
            transport=self.transport,
            reconcile=self._refresh,
            retry_policy=self.retry_policy,
            clock=self.clock,
            on_update=self._on_watch_update,
        )
        self.registrations = RegistrationManager(
            upsert=self._send_upsert,
            remove=self._send_remove,
            clock=self.clock,
        )

        self._single_flight = SingleFlight()
        self._closed = False

    async def __aenter__(self) -> "DiscoveryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise DiscoveryException("Discovery client is closed", "CLIENT_CLOSED")

    # ------------------------------------------------------------------
    # Registry calls
    # ------------------------------------------------------------------

    async def _call(self, name: str, func, *, operation: str, idempotent: bool = True) -> TransportResponse:
        return await self.retry_policy.execute(
            func,
            breaker=self.breakers.get(name),
            idempotent=idempotent,
            operation=operation,
            service=name,
        )

    async def _refresh(self, name: str) -> Tuple[ServiceRecord, ...]:
        """Fetch the replica set for name, coalescing concurrent callers."""
        return await self._single_flight.do(name, lambda: self._fetch_and_store(name))

    async def _fetch_and_store(self, name: str) -> Tuple[ServiceRecord, ...]:
        async def fetch():
            return await self.transport.request("GET", f"/services/{name}")

        response = await self._call(name, fetch, operation="discover")

        if response.not_found:
            if self.cache.invalidate(name):
                logger.info("Registry no longer knows service; dropped cached entry", service=name)
            raise ServiceNotFoundError(name)

        try:
            records = ServiceRecord.parse_many(response.data)
        except pydantic.ValidationError as e:
            raise RegistryUnavailableError(
                f"Registry returned malformed records for '{name}' ({e.error_count()} errors)",
                service=name,
            ) from None

        if not records:
            self.cache.invalidate(name)
            raise ServiceNotFoundError(name)

        return self.cache.store(name, records).records

    def _select(self, name: str, records: Sequence[ServiceRecord], tags: frozenset) -> ServiceRecord:
        candidates = [r for r in records if r.matches(tags)]
        if not candidates:
            raise ServiceNotFoundError(name, tags)
        return self.selector.select(candidates, service=name)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def discover(self, name: str, tags: Optional[Iterable[str]] = None) -> ServiceRecord:
        """
        Resolve name to one endpoint.

        Fresh cache entries are served without touching the network. On a
        miss or stale entry the registry is consulted; if it cannot be
        reached or rejects the lookup and a stale entry exists, that entry
        is served with ``degraded=True``.

        Raises:
            ServiceNotFoundError: registry has no such name, or no replica
                carries every requested tag
            RegistryUnavailableError: registry unreachable and nothing cached
            CircuitOpenError: circuit open for name and nothing cached
            RegistryRequestError: registry rejected the lookup and nothing cached
        """
        self._ensure_open()
        validate_service_name(name)
        wanted = _tag_set(tags)

        entry = self.cache.get(name)
        if entry is not None and entry.is_fresh(self.clock.now()):
            return self._select(name, entry.records, wanted)

        try:
            records = await self._refresh(name)
        except (RegistryUnavailableError, CircuitOpenError, RegistryRequestError) as e:
            if entry is None:
                raise
            logger.warning(
                "Registry refresh failed, serving stale record",
                service=name,
                error_code=e.error_code,
                age=round(self.clock.now() - entry.fetched_at, 3)
            )
            return self._select(name, entry.records, wanted).as_degraded()

        return self._select(name, records, wanted)

    async def register(self, payload: Union[RegisterPayload, Mapping[str, Any]]) -> Registration:
        """
        Advertise this process and keep the advertisement renewed.

        Raises:
            ValidationError: payload is malformed (nothing is sent)
            RegistryUnavailableError / CircuitOpenError: initial upsert failed
        """
        self._ensure_open()
        registration = await self.registrations.register(_coerce_payload(payload))
        self.cache.expire(registration.name)
        return registration

    async def deregister(self, name: str) -> bool:
        """
        Stop renewing name and remove it from the registry (best effort).

        Never raises for remote failures; calling it twice is harmless.
        Returns True when the registry acknowledged the removal.
        """
        self._ensure_open()
        validate_service_name(name)
        removed = await self.registrations.deregister(name)
        self.cache.invalidate(name)
        return removed

    def watch(self, name: str) -> WatchHandle:
        """Subscribe to updates for name. Must be called from a running event loop."""
        self._ensure_open()
        validate_service_name(name)
        return self.watches.watch(name)

    async def health(self, name: str) -> HealthStatus:
        """
        Probe the registry's health view of name.

        When the answer disagrees with what the cache would serve, the entry
        is marked stale so the next discover picks up the change.
        """
        self._ensure_open()
        validate_service_name(name)

        async def probe():
            return await self.transport.request("GET", f"/health/{name}")

        response = await self._call(name, probe, operation="health")
        if response.not_found:
            raise ServiceNotFoundError(name)

        try:
            status = HealthStatus.model_validate(response.data)
        except pydantic.ValidationError:
            raise RegistryUnavailableError(
                f"Registry returned a malformed health report for '{name}'", service=name
            ) from None

        entry = self.cache.get(name)
        if entry is not None and entry.records:
            if self.selector.select(entry.records, service=name).healthy != status.healthy:
                self.cache.expire(name)

        logger.debug("Health probe", service=name, healthy=status.healthy, latency_ms=status.latency_ms)
        return status

    async def close(self) -> None:
        """Stop renewals, close watches and release the transport. Idempotent."""
        if self._closed:
            return
        self._closed = True

        await self.registrations.shutdown()
        await self.watches.close_all()
        self._single_flight.cancel_all()
        await self.transport.aclose()
        logger.info("Discovery client closed")

    # ------------------------------------------------------------------
    # Internal callbacks
    # ------------------------------------------------------------------

    async def _send_upsert(self, payload: RegisterPayload, renewal: bool) -> None:
        body = payload.to_wire(default_region=self.settings.REGISTRY_REGION)

        async def upsert():
            return await self.transport.request("PUT", f"/services/{payload.name}", json=body)

        await self._call(
            payload.name,
            upsert,
            operation="renew" if renewal else "register",
            idempotent=renewal or self.settings.REGISTRY_IDEMPOTENT_UPSERT,
        )

    async def _send_remove(self, name: str) -> None:
        async def remove():
            return await self.transport.request("DELETE", f"/services/{name}")

        await self._call(name, remove, operation="deregister")

    def _on_watch_update(self, record: ServiceRecord) -> None:
        if self.cache.apply_update(record):
            logger.debug("Applied watch update", service=record.name, updated_at=record.updated_at)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def circuit_states(self) -> Dict[str, str]:
        return self.breakers.get_all_states()

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()


def _load_settings() -> Settings:
    try:
        return Settings()
    except pydantic.ValidationError as e:
        keys = ", ".join(sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]}))
        raise ConfigurationException(
            f"Invalid discovery client configuration: {keys}", config_key=keys
        ) from None


def _coerce_payload(payload: Union[RegisterPayload, Mapping[str, Any]]) -> RegisterPayload:
    if isinstance(payload, RegisterPayload):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError("Registration payload must be a RegisterPayload or a mapping")

    fields = {_PAYLOAD_ALIASES.get(k, k): v for k, v in payload.items()}
    if "tags" in fields:
        fields["tags"] = _tag_set(fields["tags"])
    try:
        return RegisterPayload(**fields)
    except TypeError as e:
        raise ValidationError(f"Invalid registration payload: {e}") from None


def _tag_set(tags: Union[str, Iterable[str], None]) -> frozenset:
    """A bare string is one tag, never a sequence of characters."""
    if tags is None:
        return frozenset()
    if isinstance(tags, str):
        return frozenset({tags})
    try:
        return frozenset(tags)
    except TypeError:
        raise ValidationError("tags must be a string or an iterable of strings", field="tags") from None
