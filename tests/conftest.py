"""
Shared fixtures: a simulated clock, an in-memory registry and a factory for
clients wired to both, so no test touches the network or real timers.
"""
import pytest

from discovery_client import DiscoveryClient, FakeClock, InMemoryRegistry, InMemoryTransport, Settings


def make_settings(**overrides) -> Settings:
    values = {
        "REGISTRY_API_KEY": "test-key",
        "REGISTRY_RETRIES": 0,
        "REGISTRY_BACKOFF_BASE_MS": 0,
        "REGISTRY_CACHE_TTL": 30.0,
        "REGISTRY_BREAKER_THRESHOLD": 5,
        "REGISTRY_BREAKER_COOLDOWN": 10.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return InMemoryRegistry(clock)


@pytest.fixture
def make_client(registry, clock):
    """Factory: make_client(**settings_overrides) -> DiscoveryClient"""

    def factory(**overrides) -> DiscoveryClient:
        return DiscoveryClient(
            make_settings(**overrides),
            transport=InMemoryTransport(registry),
            clock=clock,
        )

    return factory
