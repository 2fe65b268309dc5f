from discovery_client.http.transport import (
    EventStream,
    HttpxTransport,
    Transport,
    TransportResponse,
    iter_events,
)
from discovery_client.http.memory import InMemoryRegistry, InMemoryTransport

__all__ = [
    "EventStream",
    "HttpxTransport",
    "Transport",
    "TransportResponse",
    "iter_events",
    "InMemoryRegistry",
    "InMemoryTransport",
]
