"""
Registry Discovery Client

Resolves logical service names to live endpoints against a remote registry,
keeps the resolution current through push subscriptions and shields callers
from registry unavailability with retries, circuit breaking and degraded
reads.
"""

from discovery_client.client import DiscoveryClient
from discovery_client.config import Settings, get_settings
from discovery_client.exceptions import (
    CircuitOpenError,
    ConfigurationException,
    DiscoveryException,
    RegistryRequestError,
    RegistryTransportError,
    RegistryUnavailableError,
    ServiceNotFoundError,
    ValidationError,
)
from discovery_client.http import HttpxTransport, InMemoryRegistry, InMemoryTransport, Transport
from discovery_client.resilience import CircuitBreaker, CircuitStatus, RetryPolicy
from discovery_client.service_discovery import (
    ConnectionStatus,
    HealthStatus,
    RegisterPayload,
    Registration,
    ServiceRecord,
    WatchEvent,
    WatchHandle,
)
from discovery_client.utils.clock import Clock, FakeClock

__version__ = "1.0.0"

__all__ = [
    "DiscoveryClient",
    "Settings",
    "get_settings",
    "CircuitOpenError",
    "ConfigurationException",
    "DiscoveryException",
    "RegistryRequestError",
    "RegistryTransportError",
    "RegistryUnavailableError",
    "ServiceNotFoundError",
    "ValidationError",
    "HttpxTransport",
    "InMemoryRegistry",
    "InMemoryTransport",
    "Transport",
    "CircuitBreaker",
    "CircuitStatus",
    "RetryPolicy",
    "ConnectionStatus",
    "HealthStatus",
    "RegisterPayload",
    "Registration",
    "ServiceRecord",
    "WatchEvent",
    "WatchHandle",
    "Clock",
    "FakeClock",
]
