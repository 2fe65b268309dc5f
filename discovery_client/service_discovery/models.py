"""
Discovery Data Models

Wire-facing models parse the registry's camelCase JSON; everything the
client hands back to callers is immutable.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ServiceRecord(BaseModel):
    """Immutable snapshot of one service endpoint at a point in time"""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    name: str = Field(min_length=1)
    url: str
    region: str = ""
    version: str = ""
    healthy: bool = True
    tags: FrozenSet[str] = frozenset()
    updated_at: float = 0.0

    # Client-side annotation, never sent by the registry
    degraded: bool = Field(default=False, exclude=True)

    @field_validator("tags", mode="before")
    @classmethod
    def coerce_tags(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            return frozenset(t.strip() for t in v.split(",") if t.strip())
        return v

    def matches(self, tags: Optional[FrozenSet[str]]) -> bool:
        """A record matches when every requested tag is present."""
        return not tags or tags <= self.tags

    def as_degraded(self) -> "ServiceRecord":
        return self if self.degraded else self.model_copy(update={"degraded": True})

    @classmethod
    def parse_many(cls, data: Any) -> List["ServiceRecord"]:
        """Registry answers with one object, a list, or {"instances": [...]}."""
        if isinstance(data, dict) and "instances" in data:
            data = data["instances"]
        if isinstance(data, dict):
            data = [data]
        return [cls.model_validate(item) for item in data or []]


class HealthStatus(BaseModel):
    """Result of GET /health/{name}"""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True, extra="ignore")

    healthy: bool
    latency_ms: float = 0.0
    checked_at: float = 0.0


@dataclass(frozen=True)
class RegisterPayload:
    """The caller's own service advertisement"""
    name: str
    url: str
    ttl: float = 30.0
    version: str = ""
    health_path: Optional[str] = None
    tags: FrozenSet[str] = field(default_factory=frozenset)
    region: Optional[str] = None

    def to_wire(self, default_region: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "name": self.name,
            "url": self.url,
            "version": self.version,
            "tags": sorted(self.tags),
            "ttl": self.ttl,
        }
        if self.health_path:
            body["healthPath"] = self.health_path
        region = self.region or default_region
        if region:
            body["region"] = region
        return body

    @property
    def renewal_interval(self) -> float:
        return self.ttl / 3.0


class ConnectionStatus(Enum):
    """Watch subscription connection states"""
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class WatchEvent:
    """One item of a watch stream: an update or a non-terminal error"""
    kind: str
    record: Optional[ServiceRecord] = None
    error: Optional[Exception] = None

    UPDATE = "update"
    ERROR = "error"

    @classmethod
    def update(cls, record: ServiceRecord) -> "WatchEvent":
        return cls(kind=cls.UPDATE, record=record)

    @classmethod
    def failure(cls, error: Exception) -> "WatchEvent":
        return cls(kind=cls.ERROR, error=error)
