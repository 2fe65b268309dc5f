"""
Region Failover Selection

Chooses which replica discover() hands back. Preference order:

1. healthy replicas in the preferred region
2. healthy replicas in any region
3. the most recently updated replica regardless of health, flagged degraded

Ties inside a tier go to the most recent updated_at. Selection runs on every
read, so it always reflects the latest cache refresh or watch update.
"""

from typing import List, Optional, Sequence

from discovery_client.exceptions import ServiceNotFoundError
from discovery_client.service_discovery.models import ServiceRecord


class RegionFailoverSelector:
    """Region- and health-aware replica selection"""

    def __init__(self, preferred_region: Optional[str] = None):
        self.preferred_region = preferred_region

    def _tier(self, record: ServiceRecord) -> int:
        if record.healthy and self.preferred_region and record.region == self.preferred_region:
            return 0
        if record.healthy:
            return 1
        return 2

    def rank(self, records: Sequence[ServiceRecord]) -> List[ServiceRecord]:
        """All replicas in preference order."""
        return sorted(records, key=lambda r: (self._tier(r), -r.updated_at))

    def select(self, records: Sequence[ServiceRecord], service: Optional[str] = None) -> ServiceRecord:
        if not records:
            raise ServiceNotFoundError(service or "<unknown>")

        best = self.rank(records)[0]
        if not best.healthy:
            return best.as_degraded()
        return best
