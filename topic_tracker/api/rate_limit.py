"""Request throttling for the trigger endpoints (slowapi).

Off unless ``RATE_LIMIT_ENABLED=true``. When on, counters live in Redis
so every API process shares them.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from topic_tracker.config.settings import get_settings


def client_key(request: Request) -> str:
    """First ``X-Forwarded-For`` hop, else the socket peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or get_remote_address(request)


def trigger_limit() -> str:
    return get_settings().rate_limit_triggers


def create_limiter() -> Limiter:
    settings = get_settings()
    storage = str(settings.redis_url) if settings.rate_limit_enabled else "memory://"
    return Limiter(
        key_func=client_key,
        default_limits=[settings.rate_limit_default],
        storage_uri=storage,
        enabled=settings.rate_limit_enabled,
    )


limiter = create_limiter()
