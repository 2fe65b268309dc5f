from discovery_client.cache.resolution_cache import CacheEntry, ResolutionCache, SingleFlight

__all__ = ["CacheEntry", "ResolutionCache", "SingleFlight"]
