"""Unit tests for OrganizationOperations - all DB calls mocked."""

import uuid
from unittest.mock import MagicMock

import pytest

from app.domain.organization_operations import OrganizationOperations
from app.schemas.billing import CloudConfig, ProcessorRef

from tests.helpers.mock_factories import (
    make_mock_db,
    make_mock_organization,
    mock_scalar_result,
    subscribed_config,
)


class TestParseCloudConfig:
    def test_empty_document(self):
        org = make_mock_organization(cloud_config=None)

        config = OrganizationOperations.parse_cloud_config(org)

        assert config.customer_id is None
        assert config.subscription_id is None
        assert config.plan is None

    def test_processor_ids(self):
        org = make_mock_organization(cloud_config=subscribed_config(plan="cloud:pro"))

        config = OrganizationOperations.parse_cloud_config(org)

        assert config.customer_id == "cus_123"
        assert config.subscription_id == "sub_123"
        assert config.plan == "cloud:pro"

    def test_unknown_keys_survive_round_trip(self):
        org = make_mock_organization(
            cloud_config={"stripe": {"customerId": "cus_1", "legacy": True}, "region": "eu"}
        )

        document = OrganizationOperations.parse_cloud_config(org).to_document()

        assert document["region"] == "eu"
        assert document["stripe"] == {"customerId": "cus_1", "legacy": True}


class TestOrganizationWrites:
    def setup_method(self):
        self.ops = OrganizationOperations()
        self.db = make_mock_db()
        self.db.add = MagicMock()

    @pytest.mark.asyncio
    async def test_update_cloud_config(self):
        org = make_mock_organization(cloud_config={"plan": "cloud:team"})
        config = CloudConfig(stripe=ProcessorRef(customer_id="cus_9"))

        await self.ops.update_cloud_config(self.db, org, config)

        assert org.cloud_config == {"stripe": {"customerId": "cus_9"}}
        self.db.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_increment_credits_returns_balance(self):
        self.db.execute.return_value = mock_scalar_result(175)

        balance = await self.ops.increment_credits(self.db, uuid.uuid4(), 25.0)

        assert balance == 175.0
        assert isinstance(balance, float)

    @pytest.mark.asyncio
    async def test_get_credits_missing_org(self):
        self.db.execute.return_value = mock_scalar_result(None)

        assert await self.ops.get_credits(self.db, uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_get_for_update_locks_and_refreshes_session_copy(self):
        org = make_mock_organization()
        self.db.execute.return_value = mock_scalar_result(org)

        assert await self.ops.get_for_update(self.db, org.id) is org

        statement = self.db.execute.call_args.args[0]
        assert statement.get_execution_options()["populate_existing"] is True
        assert statement._for_update_arg is not None
