"""
Region failover selection tests
"""
import pytest

from discovery_client.exceptions import ServiceNotFoundError
from discovery_client.service_discovery import RegionFailoverSelector, ServiceRecord


def replica(url, region, healthy=True, updated_at=1.0):
    return ServiceRecord(name="orders", url=url, region=region, healthy=healthy, updated_at=updated_at)


EAST = replica("http://east:9001", "us-east-1", updated_at=1.0)
WEST = replica("http://west:9001", "us-west-2", updated_at=2.0)


def test_prefers_healthy_replica_in_preferred_region():
    selector = RegionFailoverSelector("us-east-1")

    assert selector.select([WEST, EAST]).url == EAST.url


def test_fails_over_when_preferred_region_unhealthy():
    selector = RegionFailoverSelector("us-west-2")
    west_down = replica("http://west:9001", "us-west-2", healthy=False, updated_at=3.0)

    chosen = selector.select([EAST, west_down])

    assert chosen.url == EAST.url
    assert chosen.degraded is False


def test_without_preference_newest_healthy_wins():
    selector = RegionFailoverSelector(None)

    assert selector.select([EAST, WEST]).url == WEST.url


def test_newest_wins_within_preferred_region():
    selector = RegionFailoverSelector("us-east-1")
    newer_east = replica("http://east-2:9001", "us-east-1", updated_at=5.0)

    assert selector.select([EAST, newer_east, WEST]).url == newer_east.url


def test_all_unhealthy_returns_newest_flagged_degraded():
    selector = RegionFailoverSelector("us-east-1")
    older = replica("http://east:9001", "us-east-1", healthy=False, updated_at=1.0)
    newer = replica("http://west:9001", "us-west-2", healthy=False, updated_at=4.0)

    chosen = selector.select([older, newer])

    assert chosen.url == newer.url
    assert chosen.degraded is True
    assert chosen.healthy is False


def test_rank_orders_all_tiers():
    selector = RegionFailoverSelector("us-west-2")
    down = replica("http://down:9001", "us-west-2", healthy=False, updated_at=9.0)

    ranked = selector.rank([down, EAST, WEST])

    assert [r.url for r in ranked] == [WEST.url, EAST.url, down.url]


def test_empty_set_is_not_found():
    selector = RegionFailoverSelector("us-east-1")

    with pytest.raises(ServiceNotFoundError):
        selector.select([], service="orders")
