"""Root conftest - shared fixtures for all backend tests.

Provides:
- Billing enabled by default (a cloud region set), commerce key configured
- A mocked audit emitter that records calls without touching the database
- Organization mock factory shortcut
- Transaction-rollback db_session fixture for integration tests
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

import app.models  # noqa: F401  (registers every table on SQLModel.metadata)
from app.config.settings import settings
from app.services.billing.audit import AuditEmitter

from tests.helpers.mock_factories import make_mock_organization


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "integration: DB integration tests (transaction rollback)")


@pytest.fixture(autouse=True)
def billing_settings(monkeypatch: pytest.MonkeyPatch):
    """Every test runs as a cloud deployment with a configured processor."""
    monkeypatch.setattr(settings, "cloud_region", "us")
    monkeypatch.setattr(settings, "commerce_api_key", "sk_test")
    monkeypatch.setattr(settings, "commerce_webhook_secret", "whsec_test")
    monkeypatch.setattr(settings, "frontend_url", "https://console.test")
    return settings


@pytest.fixture
def billing_disabled(monkeypatch: pytest.MonkeyPatch):
    """Deployment without a cloud region: billing reads empty, mutations refused."""
    monkeypatch.setattr(settings, "cloud_region", "")
    return settings


@pytest.fixture
def audit():
    """AuditEmitter stand-in; assert on audit.record calls."""
    return MagicMock(spec=AuditEmitter)


@pytest.fixture
def org():
    return make_mock_organization()


# ─────────────────────────────────────────────────────────────────────────────
# Transaction-Rollback Engine (uses DIRECT connection, not pooler)
# ─────────────────────────────────────────────────────────────────────────────

# The transaction pooler breaks SAVEPOINTs, so tests use the direct URL.
# NullPool: every test gets a fresh connection on its own event loop.
TEST_ENGINE = create_async_engine(
    settings.database_url_direct,
    echo=False,
    poolclass=NullPool,
    connect_args={"command_timeout": 30, "timeout": 5},
)


@pytest.fixture
async def db_session():
    """Database session wrapped in a transaction that is ALWAYS rolled back.

    Tables are created inside the transaction when missing, so a bare
    database works and nothing persists. Application code may call commit()
    freely: with create_savepoint each commit releases a SAVEPOINT, not the
    outer transaction.

    Skips when the database is unreachable.
    """
    try:
        conn = await TEST_ENGINE.connect()
    except (OSError, SQLAlchemyError) as e:
        pytest.skip(f"Integration database unavailable: {e}")

    trans = await conn.begin()
    await conn.run_sync(SQLModel.metadata.create_all)
    session = AsyncSession(
        bind=conn,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        await session.close()
        await trans.rollback()
        await conn.close()
