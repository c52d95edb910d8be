"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address. Creating a map session triggers
outbound fetches, so that route is the one that opts in.

Usage in routes:
    from fastapi import Request
    from whispr.core.rate_limit import limiter

    @router.post("/api/v1/sessions")
    @limiter.limit(settings.session_rate_limit)
    async def create_session(request: Request, payload: CreateSessionRequest):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
