"""
Pytest configuration and fixtures for the request-defense layer.
In-memory store, controllable clock, mocked Supabase/Redis clients and a test
application with defended routes.
"""
import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import APIRouter, HTTPException, Request, UploadFile
from fastapi.testclient import TestClient

# Set testing environment before importing application modules
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ.pop("SUPABASE_URL", None)

from config import Settings
from main import create_app
from middleware.rate_limiting import RateLimiter
from middleware.security import DefenseContext, defend, skip_privileged_roles, skip_safe_methods
from repositories.rate_limit_repository import InMemoryRateLimitStore
from utils.input_sanitization import get_sanitization_config

START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return InMemoryRateLimitStore()


@pytest.fixture
def limiter(memory_store, clock):
    """Rate limiter over the in-memory store with a one-minute sub-window."""
    return RateLimiter(memory_store, clock=clock, sub_window_ms=60000, store_timeout=1.0)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        RATE_LIMIT_BACKEND="memory",
        TRUSTED_CLIENT_IP_HEADERS=["x-forwarded-for"],
        RATE_LIMIT_OVERRIDES={"api_general": {"window_ms": 60000, "max_requests": 5}},
    )


def _build_test_router() -> APIRouter:
    router = APIRouter(prefix="/portal")

    @router.post("/login")
    @defend("login")
    async def login(request: Request, context: DefenseContext):
        return {"payload": context.payload, "threats": context.threats, "client_id": context.client_id}

    @router.post("/claims")
    @defend(
        "claim_submission",
        field_configs={"email": get_sanitization_config("email"), "address": get_sanitization_config("address")},
        reject_on_threats=True,
    )
    async def submit_claim(request: Request, context: DefenseContext):
        return {"payload": context.payload}

    @router.api_route("/content", methods=["GET", "PUT"])
    @defend(
        "content_update",
        skip_condition=skip_safe_methods,
        field_configs={"body": get_sanitization_config("rich_text")},
    )
    async def update_content(request: Request, context: DefenseContext):
        return {"payload": context.payload, "rate_limited": context.rate_limit is not None}

    @router.post("/admin-action")
    @defend("admin_action", skip_condition=skip_privileged_roles(["super_admin"]))
    async def admin_action(request: Request, context: DefenseContext):
        return {"ok": True}

    @router.post("/files")
    @defend("file_upload", key_generator=lambda request: request.headers.get("x-user-id", "anonymous"))
    async def upload(request: Request, context: DefenseContext):
        upload_file: UploadFile = context.payload["file"]
        return {"filename": upload_file.filename, "description": context.payload.get("description")}

    @router.post("/two-factor")
    @defend("two_factor")
    async def two_factor(request: Request, context: DefenseContext):
        raise HTTPException(status_code=401, detail="Invalid code")

    return router


@pytest.fixture
def app(test_settings, memory_store, clock):
    """Application wired to the in-memory store and fake clock."""
    application = create_app(test_settings, store=memory_store, clock=clock)
    application.include_router(_build_test_router())

    @application.middleware("http")
    async def upstream_role(request: Request, call_next):
        # Stands in for the upstream auth service
        request.state.user_role = request.headers.get("x-test-role")
        request.state.user_id = request.headers.get("x-test-user")
        return await call_next(request)

    return application


@pytest.fixture
def client(app):
    """Test client for the defended application."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"x-test-role": "admin", "x-forwarded-for": "10.0.0.1"}


@pytest.fixture
def mock_supabase_client():
    """Mock Supabase client with a chainable query builder."""
    mock_client = MagicMock()

    mock_table = MagicMock()
    mock_client.table.return_value = mock_table

    for method in ("select", "insert", "update", "delete", "eq", "gte", "lt", "like", "order", "limit"):
        getattr(mock_table, method).return_value = mock_table

    mock_table.execute.return_value = MagicMock(data=[])

    mock_rpc = MagicMock()
    mock_client.rpc.return_value = mock_rpc
    mock_rpc.execute.return_value = MagicMock(data=[])

    return mock_client


@pytest.fixture
def mock_redis_client():
    """Mock redis.asyncio client."""
    mock_redis = AsyncMock()
    mock_redis.register_script = MagicMock(return_value=AsyncMock())

    mock_pipeline = MagicMock()
    mock_pipeline.execute = AsyncMock(return_value=[])
    mock_redis.pipeline = MagicMock(return_value=mock_pipeline)

    mock_redis.smembers.return_value = set()
    mock_redis.zrevrangebyscore.return_value = []
    mock_redis.zrangebyscore.return_value = []
    mock_redis.zcard.return_value = 0
    return mock_redis
