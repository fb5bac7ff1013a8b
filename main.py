"""
Claims portal request-defense service.
FastAPI application factory wiring the rate limiter, the security audit logger,
the admin router and the general API rate limit.
"""
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, settings as default_settings
from middleware.client_identity import ClientIdentityResolver
from middleware.rate_limiting import RateLimiter
from middleware.security import GeneralRateLimitMiddleware
from repositories.rate_limit_repository import InMemoryRateLimitStore, RateLimitStore, create_rate_limit_store
from routers import rate_limits
from security.security_audit_logger import SecurityAuditLogger
from utils.exceptions import ClaimsPortalError, ConfigurationError, ErrorSeverity
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _build_store(settings: Settings) -> RateLimitStore:
    try:
        return create_rate_limit_store(settings)
    except ConfigurationError as e:
        if settings.is_production():
            raise
        logger.warning(f"⚠️ [STARTUP] {e.message}; using in-memory rate-limit store")
        return InMemoryRateLimitStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    logger.info("🚀 [STARTUP] Request defense ready")
    logger.info(f"  - Rate limit store: {app.state.store.backend_name}")
    logger.info(f"  - Rate limiting: {'✅ Enabled' if app.state.rate_limiter.enabled else '❌ Disabled'}")
    logger.info(f"  - Audit failure policy: {app.state.security_audit_logger.failure_policy}")

    yield

    logger.info("👋 [SHUTDOWN] Closing rate-limit store...")
    try:
        await app.state.rate_limiter.close()
        logger.info("✅ [SHUTDOWN] Rate-limit store closed")
    except Exception as e:
        logger.warning(f"⚠️ [SHUTDOWN] Rate-limit store close error: {e}")


async def claims_portal_error_handler(request: Request, exc: ClaimsPortalError):
    """Map defense-layer errors to JSON responses."""
    log = logger.error if exc.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL) else logger.warning
    log(f"[{exc.correlation_id}] {exc.__class__.__name__}: {exc.message}", extra={"operation": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RateLimitStore] = None,
    clock: Optional[Callable[[], int]] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (default: environment)
        store: Rate-limit store override; built from settings when omitted
        clock: Epoch-millisecond clock for the rate limiter
    """
    settings = settings or default_settings
    settings.validate_production_security()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None if settings.is_production() else "/docs",
        redoc_url=None if settings.is_production() else "/redoc",
    )

    store = store or _build_store(settings)
    limiter = RateLimiter.from_settings(settings, store=store)
    if clock is not None:
        limiter.clock = clock

    app.state.settings = settings
    app.state.store = store
    app.state.rate_limiter = limiter
    app.state.security_audit_logger = SecurityAuditLogger.from_settings(settings, store=store)
    app.state.identity_resolver = ClientIdentityResolver.from_settings(settings)

    app.add_exception_handler(ClaimsPortalError, claims_portal_error_handler)
    app.include_router(rate_limits.router)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "rate_limit_backend": store.backend_name,
        }

    if settings.rate_limit_enabled:
        app.add_middleware(
            GeneralRateLimitMiddleware,
            prefix=settings.general_rate_limit_prefix,
            exempt_paths=settings.general_rate_limit_exempt_paths,
        )

    # CORS must be outermost
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )

    return app


setup_logging(default_settings.log_level, structured=default_settings.is_production())
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
