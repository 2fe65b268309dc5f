"""
Discovery facade tests: cached resolution, single-flight, degraded reads,
circuit breaking through the public API and region failover.
"""
import asyncio

import pytest

from discovery_client import (
    CircuitOpenError,
    CircuitStatus,
    DiscoveryClient,
    DiscoveryException,
    InMemoryTransport,
    RegistryRequestError,
    RegistryUnavailableError,
    ServiceNotFoundError,
    Settings,
    Transport,
    ValidationError,
)


@pytest.mark.asyncio
async def test_discover_unknown_service_raises_not_found(make_client, registry):
    client = make_client()

    with pytest.raises(ServiceNotFoundError) as exc_info:
        await client.discover("ghost")

    assert exc_info.value.service == "ghost"
    assert registry.calls("GET", "/services/ghost") == 1
    await client.close()


@pytest.mark.asyncio
async def test_fresh_cache_serves_without_network(make_client, registry):
    """Within the TTL no further registry call is made"""
    registry.seed("orders", "http://10.0.0.1:9001")
    client = make_client()

    first = await client.discover("orders")
    for _ in range(5):
        again = await client.discover("orders")
        assert again == first

    assert registry.calls("GET", "/services/orders") == 1
    assert client.cache_stats()["hits"] == 5
    await client.close()


@pytest.mark.asyncio
async def test_stale_entry_triggers_refresh(make_client, registry, clock):
    registry.seed("orders", "http://10.0.0.1:9001", version="1.0")
    client = make_client(REGISTRY_CACHE_TTL=30.0)

    await client.discover("orders")
    registry.seed("orders", "http://10.0.0.1:9001", version="2.0")
    await clock.advance(30)

    record = await client.discover("orders")

    assert record.version == "2.0"
    assert registry.calls("GET", "/services/orders") == 2
    await client.close()


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch(make_client, registry):
    """N concurrent discovers of an uncached name issue one registry call"""
    registry.seed("orders", "http://10.0.0.1:9001")
    client = make_client()

    results = await asyncio.gather(*(client.discover("orders") for _ in range(10)))

    assert registry.calls("GET", "/services/orders") == 1
    assert {r.url for r in results} == {"http://10.0.0.1:9001"}
    await client.close()


@pytest.mark.asyncio
async def test_concurrent_failures_are_shared(make_client, registry):
    client = make_client()
    registry.unavailable = True

    results = await asyncio.gather(
        *(client.discover("orders") for _ in range(4)), return_exceptions=True
    )

    assert all(isinstance(r, RegistryUnavailableError) for r in results)
    assert registry.calls("GET", "/services/orders") == 1
    await client.close()


@pytest.mark.asyncio
async def test_unavailable_registry_serves_stale_record_degraded(make_client, registry, clock):
    registry.seed("orders", "http://10.0.0.1:9001")
    client = make_client()
    fresh = await client.discover("orders")
    assert fresh.degraded is False

    registry.unavailable = True
    await clock.advance(31)

    stale = await client.discover("orders")

    assert stale.degraded is True
    assert stale.url == fresh.url
    await client.close()


@pytest.mark.asyncio
async def test_unavailable_registry_without_cache_raises(make_client, registry):
    client = make_client(REGISTRY_RETRIES=2)
    registry.unavailable = True

    with pytest.raises(RegistryUnavailableError) as exc_info:
        await client.discover("orders")

    assert exc_info.value.attempts == 3
    assert registry.calls("GET", "/services/orders") == 3
    await client.close()


@pytest.mark.asyncio
async def test_rejected_refresh_serves_stale_record_degraded(registry, clock):
    """A 4xx on refresh falls back to the cached entry like an outage does"""
    class RejectingTransport(InMemoryTransport):
        reject = False

        async def request(self, method, path, *, params=None, json=None):
            if self.reject:
                raise RegistryRequestError(f"{method} {path} rejected with 403", status_code=403, path=path)
            return await super().request(method, path, params=params, json=json)

    registry.seed("orders", "http://10.0.0.1:9001")
    transport = RejectingTransport(registry)
    client = DiscoveryClient(Settings(REGISTRY_API_KEY="test-key", REGISTRY_RETRIES=0), transport=transport, clock=clock)
    await client.discover("orders")

    transport.reject = True
    await clock.advance(31)
    stale = await client.discover("orders")

    assert stale.degraded is True
    assert stale.url == "http://10.0.0.1:9001"

    with pytest.raises(RegistryRequestError) as exc_info:
        await client.discover("payments")
    assert exc_info.value.status_code == 403
    await client.close()


@pytest.mark.asyncio
async def test_transient_failure_recovered_by_retry(make_client, registry):
    registry.seed("orders", "http://10.0.0.1:9001")
    registry.fail_next(2)
    client = make_client(REGISTRY_RETRIES=3)

    record = await client.discover("orders")

    assert record.url == "http://10.0.0.1:9001"
    assert registry.calls("GET", "/services/orders") == 3
    await client.close()


@pytest.mark.asyncio
async def test_removed_service_is_not_served_stale(make_client, registry, clock):
    """An authoritative not-found evicts the cached entry"""
    registry.seed("orders", "http://10.0.0.1:9001")
    client = make_client()
    await client.discover("orders")

    registry.remove("orders")
    await clock.advance(31)

    with pytest.raises(ServiceNotFoundError):
        await client.discover("orders")
    assert "orders" not in client.cache
    await client.close()


@pytest.mark.asyncio
async def test_tag_filter_applied_to_cached_set(make_client, registry):
    registry.seed("payments", "http://rest:8080", tags=["http"])
    registry.seed("payments", "http://grpc:9090", tags=["grpc", "v2"])
    client = make_client()

    assert (await client.discover("payments", tags=["grpc"])).url == "http://grpc:9090"
    assert (await client.discover("payments", tags=["http"])).url == "http://rest:8080"
    assert (await client.discover("payments", tags=["grpc", "v2"])).url == "http://grpc:9090"

    with pytest.raises(ServiceNotFoundError) as exc_info:
        await client.discover("payments", tags=["grpc", "http"])
    assert exc_info.value.tags == ["grpc", "http"]

    assert registry.calls("GET", "/services/payments") == 1
    await client.close()


@pytest.mark.asyncio
async def test_single_string_tag_is_one_tag(make_client, registry):
    registry.seed("payments", "http://rest:8080", tags=["http", "g", "r", "p", "c"])
    registry.seed("payments", "http://grpc:9090", tags=["grpc"])
    client = make_client()

    assert (await client.discover("payments", tags="grpc")).url == "http://grpc:9090"

    with pytest.raises(ServiceNotFoundError):
        await client.discover("payments", tags="rpc")

    with pytest.raises(ValidationError):
        await client.discover("payments", tags=42)
    await client.close()


@pytest.mark.asyncio
async def test_service_names_are_opaque(make_client, registry):
    """Names are looked up verbatim, never parsed for region or version"""
    registry.seed("stripe-billing", "https://billing.internal:443", region="eu-west-1")
    registry.seed("orders.v2:grpc", "http://10.0.0.9:9090")
    client = make_client(REGISTRY_REGION="us-east-1")

    billing = await client.discover("stripe-billing")
    dotted = await client.discover("orders.v2:grpc")

    assert billing.url == "https://billing.internal:443"
    assert dotted.url == "http://10.0.0.9:9090"
    assert registry.calls("GET", "/services/stripe-billing") == 1
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "   ", "orders/../admin", "orders?x=1", "-leading"])
async def test_invalid_names_rejected_locally(make_client, registry, name):
    client = make_client()

    with pytest.raises(ValidationError):
        await client.discover(name)

    assert registry.calls() == 0
    await client.close()


@pytest.mark.asyncio
async def test_circuit_opens_after_threshold_and_skips_transport(make_client, registry):
    """While open, discover fails fast without touching the transport"""
    client = make_client(REGISTRY_BREAKER_THRESHOLD=3, REGISTRY_BREAKER_COOLDOWN=10.0)
    registry.unavailable = True

    for _ in range(3):
        with pytest.raises(RegistryUnavailableError):
            await client.discover("orders")
    assert client.circuit_states() == {"orders": "open"}

    before = registry.calls()
    with pytest.raises(CircuitOpenError) as exc_info:
        await client.discover("orders")

    assert registry.calls() == before
    assert exc_info.value.retry_after == pytest.approx(10.0)
    await client.close()


@pytest.mark.asyncio
async def test_circuit_admits_single_probe_after_cooldown(make_client, registry, clock):
    client = make_client(
        REGISTRY_RETRIES=2, REGISTRY_BREAKER_THRESHOLD=3, REGISTRY_BREAKER_COOLDOWN=10.0
    )
    registry.unavailable = True

    with pytest.raises(RegistryUnavailableError):
        await client.discover("orders")
    assert registry.calls() == 3

    await clock.advance(10)

    # The probe fails, the circuit reopens and the remaining retries are rejected locally
    with pytest.raises(CircuitOpenError):
        await client.discover("orders")
    assert registry.calls() == 4
    assert client.breakers.get("orders").current_cooldown == 20.0

    registry.unavailable = False
    registry.seed("orders", "http://10.0.0.1:9001")
    await clock.advance(20)

    record = await client.discover("orders")
    assert record.url == "http://10.0.0.1:9001"
    assert client.breakers.get("orders").status == CircuitStatus.CLOSED
    await client.close()


@pytest.mark.asyncio
async def test_open_circuit_falls_back_to_stale_entry(make_client, registry, clock):
    registry.seed("orders", "http://10.0.0.1:9001")
    client = make_client(REGISTRY_BREAKER_THRESHOLD=1)
    await client.discover("orders")

    registry.unavailable = True
    await clock.advance(31)
    first = await client.discover("orders")
    second = await client.discover("orders")

    assert first.degraded and second.degraded
    assert client.circuit_states()["orders"] == "open"
    await client.close()


@pytest.mark.asyncio
async def test_circuits_are_per_service(make_client, registry):
    registry.seed("payments", "http://10.0.0.2:9002")
    client = make_client(REGISTRY_BREAKER_THRESHOLD=1)

    registry.fail_next(1)
    with pytest.raises(RegistryUnavailableError):
        await client.discover("orders")

    assert (await client.discover("payments")).url == "http://10.0.0.2:9002"
    await client.close()


@pytest.mark.asyncio
async def test_circuit_change_callback(registry, clock):
    transitions = []
    client = DiscoveryClient(
        Settings(REGISTRY_API_KEY="test-key", REGISTRY_RETRIES=0, REGISTRY_BREAKER_THRESHOLD=1),
        transport=InMemoryTransport(registry),
        clock=clock,
        on_circuit_change=lambda *args: transitions.append(args),
    )
    registry.unavailable = True

    with pytest.raises(RegistryUnavailableError):
        await client.discover("orders")

    assert transitions == [("orders", "closed", "open")]
    await client.close()


@pytest.mark.asyncio
async def test_region_failover_on_health_change(make_client, registry, clock):
    """Preferred region wins while healthy; the other region serves once it is not"""
    registry.seed("orders", "http://east:9001", region="us-east-1")
    registry.seed("orders", "http://west:9001", region="us-west-2")
    client = make_client(REGISTRY_REGION="us-east-1")

    assert (await client.discover("orders")).url == "http://east:9001"

    registry.set_healthy("orders", "http://east:9001", False)
    await clock.advance(31)

    record = await client.discover("orders")
    assert record.url == "http://west:9001"
    assert record.healthy is True
    assert record.degraded is False
    await client.close()


@pytest.mark.asyncio
async def test_all_unhealthy_returns_degraded_record(make_client, registry):
    registry.seed("orders", "http://east:9001", region="us-east-1", healthy=False)
    client = make_client(REGISTRY_REGION="us-east-1")

    record = await client.discover("orders")

    assert record.url == "http://east:9001"
    assert record.degraded is True
    await client.close()


@pytest.mark.asyncio
async def test_health_probe_reports_status(make_client, registry):
    registry.seed("orders", "http://10.0.0.1:9001")
    client = make_client()

    status = await client.health("orders")

    assert status.healthy is True
    assert status.latency_ms == 1.0
    assert registry.calls("GET", "/health/orders") == 1
    await client.close()


@pytest.mark.asyncio
async def test_health_probe_unknown_service(make_client):
    client = make_client()

    with pytest.raises(ServiceNotFoundError):
        await client.health("ghost")
    await client.close()


@pytest.mark.asyncio
async def test_health_change_expires_cached_selection(make_client, registry):
    """A probe that disagrees with the cache makes the next discover refetch"""
    registry.seed("orders", "http://10.0.0.1:9001")
    client = make_client()
    await client.discover("orders")

    registry.health_checker = lambda record: False
    status = await client.health("orders")
    assert status.healthy is False

    record = await client.discover("orders")
    assert record.healthy is False
    assert record.degraded is True
    assert registry.calls("GET", "/services/orders") == 2
    await client.close()


@pytest.mark.asyncio
async def test_health_probe_consistent_with_cache_keeps_entry_fresh(make_client, registry):
    registry.seed("orders", "http://10.0.0.1:9001")
    client = make_client()
    await client.discover("orders")

    await client.health("orders")
    await client.discover("orders")

    assert registry.calls("GET", "/services/orders") == 1
    await client.close()


@pytest.mark.asyncio
async def test_attempt_timeout_surfaces_as_unavailable(clock):
    class HangingTransport(Transport):
        def __init__(self):
            self.calls = 0

        async def request(self, method, path, *, params=None, json=None):
            self.calls += 1
            await asyncio.Event().wait()

        def open_stream(self, path):
            raise NotImplementedError

    transport = HangingTransport()
    client = DiscoveryClient(
        Settings(REGISTRY_API_KEY="test-key", REGISTRY_TIMEOUT_MS=20, REGISTRY_RETRIES=1, REGISTRY_BACKOFF_BASE_MS=0),
        transport=transport,
        clock=clock,
    )

    with pytest.raises(RegistryUnavailableError):
        await client.discover("orders")

    assert transport.calls == 2
    await client.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_releases_transport(make_client, registry):
    client = make_client()
    transport = client.transport

    await client.close()
    await client.close()

    assert client.closed
    assert transport.closed
    with pytest.raises(DiscoveryException):
        await client.discover("orders")


@pytest.mark.asyncio
async def test_async_context_manager_closes(make_client, registry):
    registry.seed("orders", "http://10.0.0.1:9001")

    async with make_client() as client:
        await client.discover("orders")

    assert client.closed


@pytest.mark.asyncio
async def test_deregister_after_close_is_rejected(make_client, registry):
    client = make_client()
    await client.close()

    with pytest.raises(DiscoveryException) as exc_info:
        await client.deregister("orders")

    assert exc_info.value.error_code == "CLIENT_CLOSED"
    assert registry.calls("DELETE") == 0
