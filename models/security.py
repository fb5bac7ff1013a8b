"""
Data types of the request-defense layer: sanitization policies and results,
rate-limit records and decisions, and API response schemas.
"""
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field


# ============================================================================
# SANITIZATION
# ============================================================================

@dataclass(frozen=True)
class SanitizationConfig:
    """Named sanitization policy for one field archetype.

    ``allowed_tags`` and ``allowed_attributes`` only apply when ``allow_html`` is set.
    """
    allow_html: bool = False
    allowed_tags: Tuple[str, ...] = ()
    allowed_attributes: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    max_length: Optional[int] = 1000
    strip_scripts: bool = True
    normalize_whitespace: bool = True
    prevent_sql_injection: bool = True
    prevent_xss: bool = True
    prevent_command_injection: bool = True
    prevent_path_traversal: bool = True
    prevent_ldap_injection: bool = True
    log_suspicious_content: bool = True

    def __post_init__(self):
        object.__setattr__(self, "allowed_tags", tuple(self.allowed_tags))
        object.__setattr__(self, "allowed_attributes", MappingProxyType({
            tag: tuple(names) for tag, names in self.allowed_attributes.items()
        }))


@dataclass
class SanitizationResult:
    """Outcome of sanitizing a single value."""
    sanitized: str
    was_modified: bool
    threats: List[str]
    original_length: int
    sanitized_length: int


@dataclass
class FormSanitizationResult:
    """Outcome of sanitizing a whole payload."""
    sanitized: Dict[str, Any]
    threats: Dict[str, List[str]]
    was_modified: bool


@dataclass
class FieldValidation:
    is_valid: bool
    error: Optional[str] = None


# ============================================================================
# RATE LIMITING
# ============================================================================

@dataclass
class RateLimitRecord:
    """One durable counter row per (limiter key, sub-window bucket)."""
    key: str
    count: int
    window_ms: int
    max_requests: int
    created_at: int  # epoch ms
    updated_at: Optional[int] = None
    successful: bool = False
    failed: bool = False


@dataclass
class RateLimitResult:
    """Allow/deny decision for one request."""
    allowed: bool
    count: int
    remaining: int
    reset_time: int  # epoch ms
    retry_after: Optional[int] = None  # seconds

    @classmethod
    def fail_open(cls, max_requests: int, now_ms: int, window_ms: int) -> "RateLimitResult":
        return cls(allowed=True, count=0, remaining=max_requests, reset_time=now_ms + window_ms)

    @staticmethod
    def retry_after_for(window_ms: int) -> int:
        return int(math.ceil(window_ms / 1000))

    def headers(self, limit: int) -> Dict[str, str]:
        """Standard rate-limit headers for a response."""
        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after or 60)
        return headers


# ============================================================================
# API SCHEMAS
# ============================================================================

class RateLimitStatusResponse(BaseModel):
    """Read-only status of one operation for one identifier."""
    allowed: bool
    count: int
    remaining: int
    reset_time: int = Field(..., alias="resetTime")
    retry_after: Optional[int] = Field(None, alias="retryAfter")

    model_config = {"populate_by_name": True}


class RateLimitResetResponse(BaseModel):
    success: bool
    error: Optional[str] = None


class RequestCount(BaseModel):
    name: str
    requests: int


class RateLimitStatsResponse(BaseModel):
    """Aggregated rate-limit usage over a timeframe."""
    total_requests: int = Field(..., alias="totalRequests")
    blocked_requests: int = Field(..., alias="blockedRequests")
    top_identifiers: List[RequestCount] = Field(default_factory=list, alias="topIdentifiers")
    top_operations: List[RequestCount] = Field(default_factory=list, alias="topOperations")

    model_config = {"populate_by_name": True}
