"""Root conftest - test infrastructure for all backend tests.

Provides:
- Test settings (Stripe price ids, secret key) patched onto the live settings
- Autouse mock for the Stripe SDK so no test reaches the network
- In-memory store fixture patched into the subscription services
- API client with dependency overrides
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from app.config.settings import settings
from app.models.profile import Profile

from tests.helpers.fake_store import FakeStore
from tests.helpers.mock_factories import PRICE_CLASSROOM, PRICE_MONTHLY, PRICE_YEARLY

# Modules that import the domain singletons by name
_STORE_TARGETS = {
    "app.services.trial_gate": ("subscription_ops", "profile_ops"),
    "app.services.transition_engine": ("subscription_ops", "profile_ops"),
    "app.services.event_reconciler": ("subscription_ops", "profile_ops", "webhook_event_ops"),
    "app.services.subscription_cache": ("subscription_ops", "profile_ops"),
    "app.api.v1.billing": ("subscription_ops",),
}


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def test_settings(monkeypatch: pytest.MonkeyPatch):
    """Stripe configured with known price ids; 7-day trials."""
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_dummy")
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(settings, "stripe_price_student_monthly", PRICE_MONTHLY)
    monkeypatch.setattr(settings, "stripe_price_student_yearly", PRICE_YEARLY)
    monkeypatch.setattr(settings, "stripe_price_classroom", PRICE_CLASSROOM)
    monkeypatch.setattr(settings, "frontend_url", "https://prep.test")
    monkeypatch.setattr(settings, "trial_period_days", 7)
    monkeypatch.setattr(settings, "webhook_event_retention_days", 30)
    return settings


# ─────────────────────────────────────────────────────────────────────────────
# External Service Mocks
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def mock_stripe_sdk():
    """SAFETY: Always replace the Stripe SDK so no test can create charges."""
    with patch("app.services.stripe_service.stripe") as mock_sdk:
        yield mock_sdk


# ─────────────────────────────────────────────────────────────────────────────
# In-memory store
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def store():
    """In-memory subscription/profile/webhook store patched into the services."""
    fake = FakeStore()
    patches = [
        patch(f"{module}.{name}", getattr(fake, name))
        for module, names in _STORE_TARGETS.items()
        for name in names
    ]

    for p in patches:
        p.start()
    yield fake
    for p in reversed(patches):
        p.stop()


@pytest.fixture
def db():
    """Stand-in AsyncSession; the fake store never touches it."""
    session = MagicMock()
    session.flush = AsyncMock()
    session.refresh = AsyncMock()
    session.execute = AsyncMock()
    session.delete = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


# ─────────────────────────────────────────────────────────────────────────────
# API Client
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def current_user():
    """The authenticated caller for API tests."""
    return Profile(id=uuid.uuid4(), email="student@example.com")


@pytest.fixture
async def api_client(db, current_user):
    """HTTP client that bypasses JWT auth and uses a mocked DB session.

    Overrides: get_current_user, get_db
    """
    from app.api.deps.auth import get_current_user
    from app.core.database import get_db
    from app.main import app

    # Override auth to return current_user
    app.dependency_overrides[get_current_user] = lambda: current_user

    async def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
async def anon_client():
    """HTTP client with no credentials (real auth dependency, DB mocked)."""
    from app.core.database import get_db
    from app.main import app

    async def override_db():
        yield MagicMock()

    app.dependency_overrides[get_db] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
