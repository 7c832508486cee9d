"""API test fixtures - a mocked BillingService behind the real app.

The database session and the billing service are replaced through
dependency_overrides, so these tests exercise routing, identity headers,
request validation and BillingError -> HTTP mapping only.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.deps import get_billing_service
from app.core.database import get_db
from app.main import app
from app.services.billing import BillingService

from tests.helpers.mock_factories import make_mock_db


@pytest.fixture
def billing_service():
    """BillingService stand-in; every public coroutine is an AsyncMock."""
    service = MagicMock(spec=BillingService)
    for name in (
        "get_subscription_info",
        "get_subscription_history",
        "create_checkout_session",
        "change_plan",
        "cancel",
        "cancel_immediately_and_invoice",
        "reactivate",
        "clear_plan_switch_schedule",
        "apply_promotion_code",
        "get_customer_portal_url",
        "assign_manual_plan",
        "clear_manual_plan",
        "get_usage",
        "record_usage",
        "get_invoices",
        "get_payment_methods",
        "get_credits",
        "get_credit_transactions",
        "handle_event",
    ):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
async def api_client(billing_service):
    """Client wired to the app with the database and billing service mocked."""
    db = make_mock_db()

    async def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_billing_service] = lambda: billing_service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
