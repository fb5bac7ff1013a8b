"""
API endpoints and request handling.
Can import from: middleware, models
"""

from . import rate_limits

__all__ = [
    "rate_limits"
]
