"""
Request defense for the claims portal API.

``defend(operation)`` wraps a route handler with:
- sliding-window rate limiting keyed by operation and caller identity
- payload sanitization and threat detection
- security events for denials and detected threats
- X-RateLimit-* headers on every defended response

``GeneralRateLimitMiddleware`` applies the api_general policy to a whole path prefix.
"""
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from fastapi import HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.middleware.base import BaseHTTPMiddleware

from config import RateLimitPolicy, get_policy, settings
from middleware.client_identity import ClientIdentityResolver, get_identity_resolver
from middleware.rate_limiting import RateLimiter, get_rate_limiter, make_key
from models.security import RateLimitResult, SanitizationConfig
from security.security_audit_logger import (
    SecurityAuditLogger,
    SecurityEvent,
    SecurityEventSeverity,
    SecurityEventType,
    get_security_audit_logger,
)
from utils.exceptions import AuditLogUnavailableError, ClaimsPortalError, RateLimitError, ValidationError
from utils.input_sanitization import sanitize_file_name, sanitize_form_data

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "DELETE"})

MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass
class DefenseContext:
    """What the defense layer learned about a request, handed to the route handler."""
    payload: Dict[str, Any] = field(default_factory=dict)
    threats: Dict[str, List[str]] = field(default_factory=dict)
    client_id: Optional[str] = None
    rate_limit: Optional[RateLimitResult] = None
    was_modified: bool = False


async def _maybe_await(value: MaybeAwaitable) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _limiter_for(request: Request) -> RateLimiter:
    return getattr(request.app.state, "rate_limiter", None) or get_rate_limiter()


def _audit_logger_for(request: Request) -> SecurityAuditLogger:
    return getattr(request.app.state, "security_audit_logger", None) or get_security_audit_logger()


def _resolver_for(request: Request) -> ClientIdentityResolver:
    return getattr(request.app.state, "identity_resolver", None) or get_identity_resolver()


def _user_id(request: Request) -> Optional[str]:
    return getattr(request.state, "user_id", None)


def rate_limit_exceeded_response(result: RateLimitResult, limit: int) -> JSONResponse:
    """429 body and headers for a denied request."""
    error = RateLimitError(
        "Rate limit exceeded",
        limit=limit,
        reset_time=result.reset_time,
        retry_after=result.retry_after,
    )
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_response(),
        headers=result.headers(limit),
    )


def _error_response(error: ClaimsPortalError, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_response(), headers=headers)


async def _record_rate_limit_exceeded(
    request: Request,
    operation: str,
    client_id: str,
    result: RateLimitResult,
    limit: int
) -> None:
    await _audit_logger_for(request).log_event(SecurityEvent(
        event_type=SecurityEventType.RATE_LIMIT_EXCEEDED,
        message=f"Rate limit exceeded for {operation}",
        ip_address=client_id,
        user_id=_user_id(request),
        severity=SecurityEventSeverity.MEDIUM,
        metadata={
            "operation": operation,
            "path": request.url.path,
            "count": result.count,
            "limit": limit,
            "retry_after": result.retry_after,
        },
    ))


async def read_payload(request: Request) -> Dict[str, Any]:
    """
    Request payload as a mapping.

    JSON and form bodies are read for methods that carry one; otherwise the query
    parameters are used. Uploaded file names are sanitized in place.
    """
    if request.method in BODYLESS_METHODS:
        return dict(request.query_params)

    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type:
        body = await request.body()
        if not body:
            return {}
        try:
            data = json.loads(body)
        except ValueError:
            raise ValidationError("Malformed JSON body", user_message="Request body is not valid JSON")
        if not isinstance(data, dict):
            raise ValidationError("JSON body must be an object", user_message="Request body must be a JSON object")
        return data

    if "multipart/form-data" in content_type or "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        payload: Dict[str, Any] = {}
        for name, value in form.multi_items():
            if isinstance(value, UploadFile) and value.filename is not None:
                value.filename = sanitize_file_name(value.filename)
            if name in payload:
                existing = payload[name]
                payload[name] = existing + [value] if isinstance(existing, list) else [existing, value]
            else:
                payload[name] = value
        return payload

    return dict(request.query_params)


def _to_response(result: Any) -> Response:
    if isinstance(result, Response):
        return result
    return JSONResponse(content=jsonable_encoder(result))


def defend(
    operation: str,
    skip_condition: Optional[Callable[[Request], MaybeAwaitable]] = None,
    key_generator: Optional[Callable[[Request], MaybeAwaitable]] = None,
    on_limit_reached: Optional[Callable[[Request, RateLimitResult], MaybeAwaitable]] = None,
    field_configs: Optional[Mapping[str, SanitizationConfig]] = None,
    reject_on_threats: bool = False,
    policies: Optional[Mapping[str, RateLimitPolicy]] = None
):
    """
    Decorate ``async def handler(request, context)`` with rate limiting and sanitization.

    Args:
        operation: Policy name from the rate-limit policy table
        skip_condition: Predicate; when true the handler runs with the raw payload
        key_generator: Caller identity override (default: trusted-header resolver)
        on_limit_reached: Builds the response for a denied request
        field_configs: Sanitization policy per field name
        reject_on_threats: Answer 400 instead of passing sanitized input on
        policies: Policy table to validate ``operation`` against up front. Without
            it, operations missing from the default table are resolved against
            the serving app's limiter on each request.

    Raises:
        ConfigurationError: ``operation`` is not in ``policies``
    """
    if policies is not None:
        get_policy(operation, policies)
    elif operation not in settings.get_rate_limit_policies():
        logger.info(f"ℹ️ [DEFENSE] '{operation}' is not a default policy; it must come from the app's rate-limit overrides")

    def decorator(handler: Callable[[Request, DefenseContext], Awaitable[Any]]):

        async def endpoint(request: Request):
            limiter = _limiter_for(request)
            policy = limiter.policy_for(operation)

            if skip_condition is not None and await _maybe_await(skip_condition(request)):
                context = DefenseContext(
                    payload=await read_payload(request),
                    client_id=_resolver_for(request).resolve(request),
                )
                return await handler(request, context)

            if key_generator is not None:
                client_id = str(await _maybe_await(key_generator(request)))
            else:
                client_id = _resolver_for(request).resolve(request)

            result = await limiter.consume(make_key(operation, client_id), policy.max_requests, policy.window_ms)
            headers = result.headers(policy.max_requests)

            try:
                if not result.allowed:
                    await _record_rate_limit_exceeded(request, operation, client_id, result, policy.max_requests)
                    if on_limit_reached is not None:
                        return await _maybe_await(on_limit_reached(request, result))
                    return rate_limit_exceeded_response(result, policy.max_requests)

                sanitization_context = {"user_ip": client_id, "user_id": _user_id(request)}
                sanitized = sanitize_form_data(await read_payload(request), field_configs, sanitization_context)

                if sanitized.threats:
                    await _audit_logger_for(request).log_event(SecurityEvent(
                        event_type=SecurityEventType.INPUT_THREAT_DETECTED,
                        message=f"Threats detected in {operation} input",
                        ip_address=client_id,
                        user_id=_user_id(request),
                        severity=SecurityEventSeverity.HIGH,
                        metadata={
                            "operation": operation,
                            "path": request.url.path,
                            "threats": sanitized.threats,
                        },
                    ))
                    if reject_on_threats:
                        return JSONResponse(
                            status_code=status.HTTP_400_BAD_REQUEST,
                            content={
                                "success": False,
                                "error": "Invalid input",
                                "fields": sorted(sanitized.threats),
                            },
                            headers=headers,
                        )

            except (AuditLogUnavailableError, ValidationError) as e:
                return _error_response(e, headers)

            context = DefenseContext(
                payload=sanitized.sanitized,
                threats=sanitized.threats,
                client_id=client_id,
                rate_limit=result,
                was_modified=sanitized.was_modified,
            )

            try:
                response = _to_response(await handler(request, context))
            except HTTPException as e:
                e.headers = {**(e.headers or {}), **headers}
                raise
            except ClaimsPortalError as e:
                logger.warning(f"⚠️ [DEFENSE] {operation} handler raised {e.__class__.__name__}: {e.message}")
                return _error_response(e, headers)

            response.headers.update(headers)
            return response

        endpoint.__name__ = handler.__name__
        endpoint.__doc__ = handler.__doc__
        return endpoint

    return decorator


# ============================================================================
# SKIP PREDICATES
# ============================================================================

def skip_safe_methods(request: Request) -> bool:
    """Skip defense for GET, HEAD and OPTIONS."""
    return request.method in SAFE_METHODS


def skip_privileged_roles(roles: Iterable[str]) -> Callable[[Request], bool]:
    """Skip defense for callers whose upstream-authenticated role is in ``roles``."""
    allowed = frozenset(roles)

    def predicate(request: Request) -> bool:
        return getattr(request.state, "user_role", None) in allowed

    return predicate


# ============================================================================
# GENERAL API RATE LIMIT
# ============================================================================

class GeneralRateLimitMiddleware(BaseHTTPMiddleware):
    """Apply one rate-limit policy to every request under a path prefix."""

    def __init__(
        self,
        app,
        prefix: str = "/api",
        exempt_paths: Iterable[str] = (),
        operation: str = "api_general"
    ):
        super().__init__(app)
        self.prefix = prefix
        self.exempt_paths = tuple(p.rstrip("/") or "/" for p in exempt_paths)
        self.operation = operation
        logger.info(f"🛡️ [RATE-LIMITER] General rate limit '{operation}' active under {prefix}")

    def _is_exempt(self, path: str) -> bool:
        if not path.startswith(self.prefix):
            return True
        return any(path == p or path.startswith(p + "/") for p in self.exempt_paths)

    async def dispatch(self, request: Request, call_next):
        if self._is_exempt(request.url.path):
            return await call_next(request)

        limiter = _limiter_for(request)
        policy = limiter.policy_for(self.operation)
        client_id = _resolver_for(request).resolve(request)
        result = await limiter.consume(make_key(self.operation, client_id), policy.max_requests, policy.window_ms)

        if not result.allowed:
            try:
                await _record_rate_limit_exceeded(request, self.operation, client_id, result, policy.max_requests)
            except AuditLogUnavailableError as e:
                return _error_response(e, result.headers(policy.max_requests))
            return rate_limit_exceeded_response(result, policy.max_requests)

        response = await call_next(request)
        response.headers.update(result.headers(policy.max_requests))
        return response
