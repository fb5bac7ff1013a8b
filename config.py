"""
Configuration management for the claims portal defense layer.
Centralized configuration with environment variables and the rate-limit policy table.
"""
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.exceptions import ConfigurationError


@dataclass(frozen=True)
class RateLimitPolicy:
    """Window size and quota for one protected operation."""
    window_ms: int
    max_requests: int


MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

# Default policies for the protected operations
RATE_LIMIT_POLICIES: Dict[str, RateLimitPolicy] = {
    # Authentication attempts
    "login": RateLimitPolicy(window_ms=15 * MINUTE_MS, max_requests=5),
    "password_reset": RateLimitPolicy(window_ms=HOUR_MS, max_requests=3),
    "two_factor": RateLimitPolicy(window_ms=5 * MINUTE_MS, max_requests=3),

    # File operations
    "file_upload": RateLimitPolicy(window_ms=HOUR_MS, max_requests=20),
    "document_download": RateLimitPolicy(window_ms=HOUR_MS, max_requests=100),

    # Claims and back office
    "claim_submission": RateLimitPolicy(window_ms=24 * HOUR_MS, max_requests=5),
    "admin_action": RateLimitPolicy(window_ms=MINUTE_MS, max_requests=60),
    "content_update": RateLimitPolicy(window_ms=HOUR_MS, max_requests=50),

    # General API
    "api_general": RateLimitPolicy(window_ms=15 * MINUTE_MS, max_requests=1000),
    "api_strict": RateLimitPolicy(window_ms=MINUTE_MS, max_requests=10),
}


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    debug: bool = Field(default=False, validation_alias="DEBUG")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # Application
    app_name: str = Field(default="Claims Portal Defense", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")

    # Supabase configuration
    supabase_url: Optional[str] = Field(default=None, validation_alias="SUPABASE_URL")
    supabase_anon_key: Optional[str] = Field(default=None, validation_alias="SUPABASE_ANON_KEY")
    supabase_service_role_key: Optional[str] = Field(default=None, validation_alias="SUPABASE_SERVICE_ROLE_KEY")
    rate_limits_table: str = Field(default="rate_limits", validation_alias="RATE_LIMITS_TABLE")
    security_events_table: str = Field(default="security_events", validation_alias="SECURITY_EVENTS_TABLE")

    # Redis configuration (optional rate-limit backend)
    redis_url: Optional[str] = Field(default=None, validation_alias="REDIS_URL")
    redis_key_prefix: str = Field(default="claims:rate_limit:", validation_alias="REDIS_KEY_PREFIX")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, validation_alias="RATE_LIMIT_ENABLED")
    rate_limit_backend: str = Field(default="supabase", validation_alias="RATE_LIMIT_BACKEND")
    rate_limit_sub_window_ms: int = Field(default=60000, validation_alias="RATE_LIMIT_SUB_WINDOW_MS")
    rate_limit_store_timeout: float = Field(default=2.0, validation_alias="RATE_LIMIT_STORE_TIMEOUT")
    rate_limit_cleanup_interval: float = Field(default=60.0, validation_alias="RATE_LIMIT_CLEANUP_INTERVAL")
    rate_limit_overrides: Dict[str, Dict[str, int]] = Field(default_factory=dict, validation_alias="RATE_LIMIT_OVERRIDES")
    general_rate_limit_prefix: str = Field(default="/api", validation_alias="GENERAL_RATE_LIMIT_PREFIX")
    general_rate_limit_exempt_paths: List[str] = Field(
        default=["/health", "/docs", "/openapi.json"],
        validation_alias="GENERAL_RATE_LIMIT_EXEMPT_PATHS"
    )

    # CORS
    cors_origins: List[str] = Field(default=["http://localhost:3000"], validation_alias="CORS_ORIGINS")

    # Caller identity: only the headers listed here are trusted, in order
    trusted_client_ip_headers: List[str] = Field(
        default=["x-forwarded-for", "x-real-ip", "x-client-ip", "cf-connecting-ip"],
        validation_alias="TRUSTED_CLIENT_IP_HEADERS"
    )
    trusted_proxy_count: int = Field(default=0, validation_alias="TRUSTED_PROXY_COUNT")
    use_peer_address: bool = Field(default=False, validation_alias="USE_PEER_ADDRESS")

    # Security event auditing: "log" keeps serving when the audit store fails, "reject" answers 503
    audit_failure_policy: str = Field(default="log", validation_alias="AUDIT_FAILURE_POLICY")
    audit_recent_events: int = Field(default=1000, validation_alias="AUDIT_RECENT_EVENTS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() in ["development", "dev", "local"]

    def get_rate_limit_policies(self) -> Dict[str, RateLimitPolicy]:
        """Default policy table with RATE_LIMIT_OVERRIDES applied."""
        policies = dict(RATE_LIMIT_POLICIES)
        for operation, override in self.rate_limit_overrides.items():
            base = policies.get(operation)
            try:
                policies[operation] = RateLimitPolicy(
                    window_ms=int(override.get("window_ms", base.window_ms if base else 0)),
                    max_requests=int(override.get("max_requests", base.max_requests if base else 0)),
                )
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid rate limit override for '{operation}': {e}",
                    config_key="RATE_LIMIT_OVERRIDES"
                )
            if policies[operation].window_ms <= 0 or policies[operation].max_requests <= 0:
                raise ConfigurationError(
                    f"Rate limit override for '{operation}' needs positive window_ms and max_requests",
                    config_key="RATE_LIMIT_OVERRIDES"
                )
        return policies

    def validate_production_security(self) -> None:
        """Validate that defense settings are production-ready."""
        if not self.is_production():
            return

        errors = []
        if self.debug:
            errors.append("DEBUG must be False in production")
        if not self.rate_limit_enabled:
            errors.append("RATE_LIMIT_ENABLED must be true in production")
        if self.rate_limit_backend == "memory":
            errors.append("RATE_LIMIT_BACKEND=memory is process-local and not allowed in production")
        if self.audit_failure_policy not in ("log", "reject"):
            errors.append("AUDIT_FAILURE_POLICY must be 'log' or 'reject'")

        if errors:
            raise ConfigurationError(
                "Production configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors)
            )


def get_policy(operation: str, policies: Optional[Mapping[str, RateLimitPolicy]] = None) -> RateLimitPolicy:
    """Look up the policy for an operation name."""
    table = policies if policies is not None else RATE_LIMIT_POLICIES
    try:
        return table[operation]
    except KeyError:
        raise ConfigurationError(f"Unknown rate-limited operation: {operation}", config_key=operation)


# Global settings instance
settings = Settings()
