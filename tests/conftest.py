from __future__ import annotations

import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# 测试环境：固定配置，避免读取本地 .env 与真实网络调用
os.environ["SUPABASE_URL"] = "https://test.supabase.co"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-service-role-key"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-0123456789abcdef0123456789"
os.environ["POLAR_ACCESS_TOKEN"] = "test-polar-token"
os.environ["POLAR_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["CORS_ALLOW_ORIGINS"] = "*"
os.environ["SSE_HEARTBEAT_SECONDS"] = "1"
os.environ["DEBUG"] = "false"
os.environ["LOG_TO_FILE"] = "false"

from entitlements.settings.config import get_settings

get_settings.cache_clear()

from entitlements import app as fastapi_app
from entitlements.auth import AuthenticatedUser
from entitlements.repositories.subscription_repo import SubscriptionRepository

NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def async_client() -> AsyncClient:
    async with fastapi_app.router.lifespan_context(fastapi_app):
        transport = ASGITransport(app=fastapi_app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.fixture
def mock_jwt_token() -> str:
    return "mock.supabase.jwt"


@contextmanager
def authenticated_as(uid: str) -> Iterator[MagicMock]:
    with patch("entitlements.auth.dependencies.get_jwt_verifier") as mock_get_verifier:
        mock_verifier = MagicMock()
        mock_verifier.verify_token.return_value = AuthenticatedUser(uid=uid, claims={"sub": uid})
        mock_get_verifier.return_value = mock_verifier
        yield mock_verifier


@contextmanager
def swapped_state(**services: Any) -> Iterator[None]:
    previous = {name: getattr(fastapi_app.state, name, None) for name in services}
    for name, value in services.items():
        setattr(fastapi_app.state, name, value)
    try:
        yield
    finally:
        for name, value in previous.items():
            setattr(fastapi_app.state, name, value)


@pytest.fixture
def now() -> datetime:
    return NOW


def subscription_row(
    user_id: str = "user-1",
    status: str = "active",
    *,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    last_verified_at: Optional[datetime] = None,
    polar_subscription_id: Optional[str] = "sub_123",
    **extra: Any,
) -> dict[str, Any]:
    start = period_start or NOW - timedelta(days=10)
    end = period_end or NOW + timedelta(days=20)
    row = {
        "user_id": user_id,
        "status": status,
        "current_period_start": start.isoformat(),
        "current_period_end": end.isoformat(),
        "canceled_at": None,
        "cancellation_reason": None,
        "last_verified_at": last_verified_at.isoformat() if last_verified_at else None,
        "polar_subscription_id": polar_subscription_id,
        "polar_customer_id": "cus_123",
        "plan_name": "Unlimited Access",
    }
    row.update(extra)
    return row


def make_repository(
    subscription: Optional[dict[str, Any]] = None,
    trial_started_at: Optional[str] = None,
) -> MagicMock:
    repo = MagicMock(spec=SubscriptionRepository)
    repo.get_entitlement_rows = AsyncMock(
        return_value={"subscription": subscription, "trial_started_at": trial_started_at}
    )
    repo.get_subscription = AsyncMock(return_value=subscription)
    repo.get_subscription_by_polar_id = AsyncMock(return_value=subscription)
    repo.update_subscription = AsyncMock(side_effect=lambda user_id, values: {**(subscription or {}), **values})
    repo.upsert_subscription = AsyncMock(side_effect=lambda values: dict(values))
    return repo
