from discovery_client.utils.clock import Clock, FakeClock

__all__ = ["Clock", "FakeClock"]
