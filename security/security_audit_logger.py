"""
Security Audit Logger
=====================

Records security events raised by the defense layer:
1. Structured [SECURITY] log line on the security logger
2. Bounded in-memory ring of recent events for the admin API
3. Append-only write to the durable store

When the durable write fails, AUDIT_FAILURE_POLICY decides: "log" keeps serving
the request, "reject" raises AuditLogUnavailableError.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from repositories.rate_limit_repository import RateLimitStore
from utils.exceptions import AuditLogUnavailableError, ConfigurationError
from utils.logging_config import get_security_logger

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

AUDIT_FAILURE_POLICIES = ("log", "reject")


class SecurityEventType(str, Enum):
    """Types of security events raised by the defense layer."""
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INPUT_THREAT_DETECTED = "input_threat_detected"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class SecurityEventSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    SecurityEventSeverity.LOW: logging.INFO,
    SecurityEventSeverity.MEDIUM: logging.WARNING,
    SecurityEventSeverity.HIGH: logging.WARNING,
    SecurityEventSeverity.CRITICAL: logging.ERROR,
}


@dataclass
class SecurityEvent:
    """Structured security event data."""
    event_type: str
    message: str
    ip_address: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: SecurityEventSeverity = SecurityEventSeverity.MEDIUM

    def to_record(self) -> Dict[str, Any]:
        """Row shape of the security_events table."""
        return {
            "event_type": str(getattr(self.event_type, "value", self.event_type)),
            "message": self.message,
            "severity": self.severity.value,
            "ip_address": self.ip_address,
            "user_id": self.user_id,
            "metadata": self.metadata,
            "created_at": self.timestamp.isoformat(),
        }


class SecurityAuditLogger:
    """Security event sink shared by the defense middleware."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        failure_policy: str = "log",
        max_recent_events: int = 1000,
        store_timeout: float = 2.0
    ):
        if failure_policy not in AUDIT_FAILURE_POLICIES:
            raise ConfigurationError(
                f"Unknown audit failure policy: {failure_policy}",
                config_key="AUDIT_FAILURE_POLICY"
            )
        self.store = store
        self.failure_policy = failure_policy
        self.store_timeout = store_timeout
        self._recent: Deque[SecurityEvent] = deque(maxlen=max_recent_events)
        self.persist_failures = 0

    @classmethod
    def from_settings(cls, settings, store: Optional[RateLimitStore] = None) -> "SecurityAuditLogger":
        return cls(
            store=store,
            failure_policy=settings.audit_failure_policy,
            max_recent_events=settings.audit_recent_events,
            store_timeout=settings.rate_limit_store_timeout,
        )

    async def log_event(self, event: SecurityEvent) -> None:
        """
        Record a security event.

        Raises:
            AuditLogUnavailableError: the store write failed under the "reject" policy
        """
        record = event.to_record()
        security_logger.log(
            _LOG_LEVELS.get(event.severity, logging.WARNING),
            f"[SECURITY] {record['event_type']}: {event.message}",
            extra={"client_id": event.ip_address, "security_event": record},
        )
        self._recent.append(event)

        if self.store is None:
            return

        try:
            await asyncio.wait_for(self.store.insert_security_event(record), timeout=self.store_timeout)
        except Exception as e:
            self.persist_failures += 1
            logger.error(f"❌ [SECURITY-AUDIT] Failed to persist {record['event_type']} event: {e}")
            if self.failure_policy == "reject":
                raise AuditLogUnavailableError(
                    f"Security event could not be persisted: {e}",
                    event_type=record["event_type"]
                ) from e

    def get_recent_events(self, limit: int = 100, event_type: Optional[str] = None) -> List[SecurityEvent]:
        """Most recent events first."""
        events = [
            event for event in reversed(self._recent)
            if event_type is None or str(getattr(event.event_type, "value", event.event_type)) == event_type
        ]
        return events[:max(0, limit)]


# Global audit logger instance
_security_audit_logger: Optional[SecurityAuditLogger] = None


def get_security_audit_logger() -> SecurityAuditLogger:
    """Get the global audit logger; it shares the store of the global rate limiter."""
    global _security_audit_logger
    if _security_audit_logger is None:
        from config import settings
        from middleware.rate_limiting import get_rate_limiter
        _security_audit_logger = SecurityAuditLogger.from_settings(settings, store=get_rate_limiter().store)
    return _security_audit_logger


def set_security_audit_logger(audit_logger: Optional[SecurityAuditLogger]) -> None:
    global _security_audit_logger
    _security_audit_logger = audit_logger
