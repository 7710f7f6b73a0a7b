"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address. The heatmap reads are public, so
this is the only throttle between a dashboard refresh loop and the
complaint store.

Usage in routes:
    from fastapi import Request
    from civiclens.core.rate_limit import limiter

    @router.get("/global")
    @limiter.limit(settings.heatmap_rate_limit)
    async def my_endpoint(request: Request):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
