"""
Middleware package for FastAPI application.
"""
from .security import DefenseContext, GeneralRateLimitMiddleware, defend

__all__ = ["DefenseContext", "GeneralRateLimitMiddleware", "defend"]
