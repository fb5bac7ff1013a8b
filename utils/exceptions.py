"""
Custom exceptions for the claims portal defense layer.
Type-safe error handling with clear semantics for monitoring and API responses.
"""
import uuid
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categorization for better handling and monitoring."""
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    DATABASE = "database"
    SECURITY = "security"
    SYSTEM = "system"
    RATE_LIMIT = "rate_limit"


class ClaimsPortalError(Exception):
    """Base exception for all defense-layer errors with enhanced context."""

    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        user_message: Optional[str] = None,
        correlation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.error_code = error_code or self._generate_error_code()
        self.severity = severity
        self.category = category
        self.user_message = user_message or message
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.context = context or {}

    def _generate_error_code(self) -> str:
        """Generate a unique error code for tracking."""
        return f"{self.__class__.__name__.upper()}_{int(self.timestamp.timestamp() * 1000)}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def to_response(self) -> Dict[str, Any]:
        """Public error body; internal context stays in the logs."""
        return {
            "success": False,
            "error": self.user_message,
            "error_code": self.error_code,
            "correlation_id": self.correlation_id
        }


class ForbiddenError(ClaimsPortalError):
    """Raised when the caller lacks the role required for an operation."""

    status_code = 403

    def __init__(self, message: str, required_role: Optional[str] = None, **kwargs):
        kwargs.setdefault('category', ErrorCategory.AUTHORIZATION)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('user_message', 'Access denied.')
        super().__init__(message, **kwargs)

        self.required_role = required_role
        self.context.update({'required_role': required_role})


class ValidationError(ClaimsPortalError):
    """Raised when request parameters are invalid."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        kwargs.setdefault('category', ErrorCategory.VALIDATION)
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        super().__init__(message, **kwargs)

        self.field = field
        self.context.update({'field': field})


class StoreUnavailableError(ClaimsPortalError):
    """Raised by a rate-limit store when its backend cannot be reached."""

    status_code = 503

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        backend: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault('category', ErrorCategory.DATABASE)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('user_message', 'A storage error occurred. Please try again later.')
        super().__init__(message, **kwargs)

        self.operation = operation
        self.backend = backend

        self.context.update({
            'operation': operation,
            'backend': backend
        })


class AuditLogUnavailableError(ClaimsPortalError):
    """Raised when a security event cannot be persisted and the audit policy is 'reject'."""

    status_code = 503

    def __init__(self, message: str, event_type: Optional[str] = None, **kwargs):
        kwargs.setdefault('category', ErrorCategory.SECURITY)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('user_message', 'The service is temporarily unavailable. Please try again later.')
        super().__init__(message, **kwargs)

        self.event_type = event_type
        self.context.update({'event_type': event_type})


class ConfigurationError(ClaimsPortalError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault('category', ErrorCategory.SYSTEM)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('user_message', 'A configuration error occurred. Please contact support.')
        super().__init__(message, **kwargs)

        self.config_key = config_key
        self.context.update({'config_key': config_key})


class RateLimitError(ClaimsPortalError):
    """Raised when rate limits are exceeded."""

    status_code = 429

    def __init__(
        self,
        message: str,
        limit: Optional[int] = None,
        reset_time: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault('category', ErrorCategory.RATE_LIMIT)
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        kwargs.setdefault('user_message', 'Rate limit exceeded')
        super().__init__(message, **kwargs)

        self.limit = limit
        self.reset_time = reset_time
        self.retry_after = retry_after

        self.context.update({
            'limit': limit,
            'reset_time': reset_time,
            'retry_after': retry_after
        })

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.user_message,
            "retryAfter": self.retry_after,
            "resetTime": self.reset_time
        }
