"""Integration test conftest - DB rollback fixtures.

Inherits the root conftest.py fixtures (db_session, billing_settings, etc.)
and adds integration-specific markers and a real organization row.

All tests in this directory use the transaction-rollback pattern:
real SQL executes, but nothing persists.
"""

import pytest

from app.models.organization import Organization


@pytest.fixture(autouse=True)
def _mark_integration(request):
    """Auto-mark all tests in this directory as integration."""
    request.node.add_marker(pytest.mark.integration)


@pytest.fixture
async def test_org(db_session):
    """Subscribed organization row, visible only inside the test transaction."""
    org = Organization(
        name="[TEST] Billing Org",
        cloud_config={"stripe": {"customerId": "cus_1", "activeSubscriptionId": "sub_1"}},
        credits=0,
    )
    db_session.add(org)
    await db_session.flush()
    await db_session.refresh(org)
    return org
