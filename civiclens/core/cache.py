"""
Aggregation cache lifecycle.

Mirrors database.py: one CacheRegistry singleton holds the process-wide
AggregationCache. It is created and torn down explicitly in FastAPI's
lifespan, never at import time, so tests can build a fresh
AggregationCache per case and inject it through dependency overrides.
"""

import logging

from civiclens.core.config import settings
from civiclens.services.aggregation_cache import AggregationCache

logger = logging.getLogger(__name__)


class CacheRegistry:
    cache: AggregationCache | None = None


cache_registry = CacheRegistry()


async def open_cache() -> AggregationCache:
    """Create the cache and start its background TTL sweep."""
    cache_registry.cache = AggregationCache(
        ttl_seconds=settings.heatmap_cache_ttl_seconds,
        sweep_interval_seconds=settings.heatmap_sweep_interval_seconds,
    )
    cache_registry.cache.start()
    logger.info(
        "Heatmap cache ready (ttl=%ss, sweep every %ss)",
        settings.heatmap_cache_ttl_seconds,
        settings.heatmap_sweep_interval_seconds,
    )
    return cache_registry.cache


async def close_cache() -> None:
    if cache_registry.cache is not None:
        await cache_registry.cache.close()
        cache_registry.cache = None
        logger.info("Heatmap cache closed")


def get_cache() -> AggregationCache:
    """
    FastAPI dependency — the process-wide cache.

    Created on first use when the lifespan has not run (e.g. under an ASGI
    test transport); the background sweep only runs when opened via lifespan.
    """
    if cache_registry.cache is None:
        cache_registry.cache = AggregationCache(ttl_seconds=settings.heatmap_cache_ttl_seconds)
    return cache_registry.cache
