"""
Rate-limit administration endpoints.
Status, reset, usage statistics and recent security events for portal admins.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from middleware.rate_limiting import RateLimiter, get_rate_limiter
from models.security import RateLimitResetResponse, RateLimitStatsResponse, RateLimitStatusResponse
from security.security_audit_logger import SecurityAuditLogger, get_security_audit_logger
from utils.exceptions import ConfigurationError, ForbiddenError, ValidationError

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"

router = APIRouter(prefix="/api/admin/rate-limits", tags=["Rate Limits"])


def require_admin(request: Request) -> str:
    """Role is set on request.state by the upstream auth service."""
    role = getattr(request.state, "user_role", None)
    if role != ADMIN_ROLE:
        raise ForbiddenError(
            f"Rate-limit admin endpoint requires role '{ADMIN_ROLE}', got '{role}'",
            required_role=ADMIN_ROLE
        )
    return role


def get_limiter(request: Request) -> RateLimiter:
    return getattr(request.app.state, "rate_limiter", None) or get_rate_limiter()


def get_audit_logger(request: Request) -> SecurityAuditLogger:
    return getattr(request.app.state, "security_audit_logger", None) or get_security_audit_logger()


def _parse_operations(raw: Optional[str], limiter: RateLimiter) -> List[str]:
    if not raw:
        return list(limiter.policies)
    return [op.strip() for op in raw.split(",") if op.strip()]


@router.get("/status", response_model=Dict[str, RateLimitStatusResponse])
async def get_rate_limit_status(
    identifier: str = Query(..., min_length=1),
    operations: Optional[str] = Query(None, description="Comma-separated operation names"),
    _: str = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter)
):
    """Read-only status of each operation for one identifier."""
    try:
        results = await limiter.get_status(identifier, _parse_operations(operations, limiter))
    except ConfigurationError as e:
        raise ValidationError(e.message, field="operations", user_message=e.message)

    return {
        operation: RateLimitStatusResponse(
            allowed=result.allowed,
            count=result.count,
            remaining=result.remaining,
            reset_time=result.reset_time,
            retry_after=result.retry_after,
        )
        for operation, result in results.items()
    }


@router.delete("/{identifier}", response_model=RateLimitResetResponse)
async def reset_rate_limit(
    identifier: str,
    operation: Optional[str] = Query(None),
    _: str = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter)
):
    try:
        result = await limiter.reset(identifier, operation)
    except ConfigurationError as e:
        raise ValidationError(e.message, field="operation", user_message=e.message)

    if not result.success:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result.model_dump())

    logger.info(f"✅ [RATE-LIMIT-ADMIN] Reset rate limits for {identifier} ({operation or 'all'})")
    return result


@router.get("/stats", response_model=RateLimitStatsResponse)
async def get_rate_limit_stats(
    timeframe: str = Query("24h"),
    _: str = Depends(require_admin),
    limiter: RateLimiter = Depends(get_limiter)
):
    return await limiter.get_stats(timeframe)


@router.get("/events")
async def get_security_events(
    limit: int = Query(100, ge=1, le=1000),
    event_type: Optional[str] = Query(None),
    _: str = Depends(require_admin),
    audit_logger: SecurityAuditLogger = Depends(get_audit_logger)
) -> List[Dict[str, Any]]:
    """Recent security events held in memory, newest first."""
    return [event.to_record() for event in audit_logger.get_recent_events(limit, event_type)]
