"""
Service Discovery

Data model, replica selection, watch subscriptions and registration
lifecycle for the registry client.
"""

from discovery_client.service_discovery.models import (
    ConnectionStatus,
    HealthStatus,
    RegisterPayload,
    ServiceRecord,
    WatchEvent,
)
from discovery_client.service_discovery.failover import RegionFailoverSelector
from discovery_client.service_discovery.watch import (
    WatchHandle,
    WatchSubscription,
    WatchSubscriptionManager,
)
from discovery_client.service_discovery.registration import (
    Registration,
    RegistrationManager,
    validate_payload,
    validate_service_name,
)

__all__ = [
    "ConnectionStatus",
    "HealthStatus",
    "RegisterPayload",
    "ServiceRecord",
    "WatchEvent",
    "RegionFailoverSelector",
    "WatchHandle",
    "WatchSubscription",
    "WatchSubscriptionManager",
    "Registration",
    "RegistrationManager",
    "validate_payload",
    "validate_service_name",
]
