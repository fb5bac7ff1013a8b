"""
Rate-limit and security-event persistence.
Can import from: models, utils
Must NOT import from: middleware, routers
"""

from .rate_limit_repository import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    SupabaseRateLimitStore,
    create_rate_limit_store,
)

__all__ = [
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "SupabaseRateLimitStore",
    "RedisRateLimitStore",
    "create_rate_limit_store"
]
