"""Unit tests for UsageAggregator - live processor usage with local fallback."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest

from app.services.billing.cycle import current_period
from app.services.billing.usage import UsageAggregator
from app.services.processor import ErrorKind, ProcessorConfigurationError, ProcessorError
from app.services.processor.types import UsageResponse

from tests.helpers.mock_factories import (
    make_mock_commerce_client,
    make_mock_db,
    make_mock_organization,
    subscribed_config,
)


def _usage_response(start="2026-04-15T00:00:00+00:00", end="2026-05-15T00:00:00+00:00"):
    return UsageResponse.model_validate(
        {
            "usage_count": 1234,
            "usage_type": "requests",
            "billing_period": {"start": start, "end": end},
        }
    )


class TestGetUsage:
    def setup_method(self):
        self.client = make_mock_commerce_client()
        self.aggregator = UsageAggregator(self.client)
        self.db = make_mock_db()

    @pytest.mark.asyncio
    async def test_processor_usage(self):
        org = make_mock_organization(cloud_config=subscribed_config())
        self.client.get.return_value = _usage_response()

        usage = await self.aggregator.get_usage(self.db, org)

        assert usage.source == "processor"
        assert usage.usage_count == 1234
        assert usage.usage_type == "requests"
        assert usage.billing_period.start == datetime(2026, 4, 15, tzinfo=UTC)
        query = self.client.get.call_args.kwargs["query"]
        assert query == {"customer_id": "cus_123", "subscription_id": "sub_123"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            ProcessorError(ErrorKind.TIMEOUT, "timed out"),
            ProcessorError(ErrorKind.INTERNAL, "Malformed commerce response"),
            ProcessorError(ErrorKind.FORBIDDEN, "wrong tenant"),
            ProcessorConfigurationError(),
        ],
    )
    async def test_any_processor_error_falls_back(self, error):
        org = make_mock_organization(
            cloud_config=subscribed_config(), cloud_current_cycle_usage=42
        )
        self.client.get.side_effect = error

        usage = await self.aggregator.get_usage(self.db, org)

        assert usage.source == "fallback"
        assert usage.usage_count == 42
        assert usage.usage_type == "units"
        assert usage.billing_period == current_period(org)

    @pytest.mark.asyncio
    async def test_unparseable_period_falls_back(self):
        org = make_mock_organization(cloud_config=subscribed_config())
        self.client.get.return_value = _usage_response(start="yesterday")

        usage = await self.aggregator.get_usage(self.db, org)

        assert usage.source == "fallback"

    @pytest.mark.asyncio
    async def test_unsubscribed_skips_processor(self):
        org = make_mock_organization(cloud_config=None, cloud_current_cycle_usage=7)

        usage = await self.aggregator.get_usage(self.db, org)

        assert usage.usage_count == 7
        self.client.get.assert_not_called()

    @pytest.mark.asyncio
    @patch("app.services.billing.usage.usage_ops")
    async def test_missing_counter_counts_local_events(self, mock_usage_ops):
        org = make_mock_organization(cloud_config=None, cloud_current_cycle_usage=None)
        mock_usage_ops.count_events_since = AsyncMock(return_value=19)

        usage = await self.aggregator.get_usage(self.db, org)

        assert usage.usage_count == 19
        since = mock_usage_ops.count_events_since.call_args.args[2]
        assert since == usage.billing_period.start


class TestRecordUsage:
    @pytest.mark.asyncio
    @patch("app.services.billing.usage.usage_ops")
    async def test_delegates_to_domain(self, mock_usage_ops):
        mock_usage_ops.record_usage = AsyncMock(return_value="record")
        aggregator = UsageAggregator(make_mock_commerce_client())
        org = make_mock_organization()
        db = make_mock_db()

        result = await aggregator.record_usage(db, org, "ai", 3.0, metadata={"model": "m"})

        assert result == "record"
        args = mock_usage_ops.record_usage.call_args
        assert args.args[:4] == (db, org.id, "ai", 3.0)
        assert args.kwargs["metadata"] == {"model": "m"}
