"""Unit tests for UsageOperations and meter aggregation - all DB calls mocked."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from app.domain.usage_operations import UsageOperations, aggregate
from app.models.usage import UsageAggregationMethod

from tests.helpers.mock_factories import (
    make_mock_db,
    make_mock_meter,
    make_mock_usage_record,
    mock_scalar_result,
    mock_scalars_result,
)


def _nested_context() -> MagicMock:
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=None)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


class TestAggregate:
    @pytest.mark.parametrize(
        ("method", "current", "value", "count", "expected"),
        [
            (UsageAggregationMethod.SUM, 10.0, 4.0, 2, 14.0),
            (UsageAggregationMethod.AVERAGE, 8.0, 4.0, 2, 20.0 / 3),
            (UsageAggregationMethod.MAX, 10.0, 4.0, 2, 10.0),
            (UsageAggregationMethod.MIN, 10.0, 4.0, 2, 4.0),
            (UsageAggregationMethod.LAST, 10.0, 4.0, 2, 4.0),
        ],
    )
    def test_fold(self, method, current, value, count, expected):
        assert aggregate(method, current, value, count) == pytest.approx(expected)

    def test_first_record_replaces_current(self):
        assert aggregate("SUM", 99.0, 3.0, 0) == 3.0
        assert aggregate(UsageAggregationMethod.MIN, 0.0, 3.0, 0) == 3.0

    def test_unknown_method_rejected(self):
        with pytest.raises(ValueError):
            aggregate("MEDIAN", 1.0, 2.0, 1)


class TestGetOrCreateMeter:
    def setup_method(self):
        self.ops = UsageOperations()
        self.db = make_mock_db()
        self.db.add = MagicMock()
        self.db.begin_nested = MagicMock(return_value=_nested_context())
        self.org_id = uuid.uuid4()

    @pytest.mark.asyncio
    async def test_returns_existing_meter(self):
        meter = make_mock_meter(name="ai")
        self.db.execute.return_value = mock_scalar_result(meter)

        result = await self.ops.get_or_create_meter(self.db, self.org_id, "ai")

        assert result is meter
        self.db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_missing_meter(self):
        self.db.execute.return_value = mock_scalar_result(None)

        result = await self.ops.get_or_create_meter(self.db, self.org_id, "storage")

        assert result.name == "storage"
        assert result.organization_id == self.org_id
        assert result.aggregation_method == "SUM"
        self.db.add.assert_called_once_with(result)
        self.db.refresh.assert_awaited_once_with(result)

    @pytest.mark.asyncio
    async def test_concurrent_create_rereads_winner(self):
        winner = make_mock_meter(name="ai")
        self.db.execute.side_effect = [mock_scalar_result(None), mock_scalar_result(winner)]
        self.db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate"))

        result = await self.ops.get_or_create_meter(self.db, self.org_id, "ai")

        assert result is winner

    @pytest.mark.asyncio
    async def test_integrity_error_without_winner_propagates(self):
        self.db.execute.return_value = mock_scalar_result(None)
        self.db.flush.side_effect = IntegrityError("INSERT", {}, Exception("fk violation"))

        with pytest.raises(IntegrityError):
            await self.ops.get_or_create_meter(self.db, self.org_id, "ai")


class TestRecordUsage:
    @pytest.mark.asyncio
    async def test_folds_value_into_locked_meter(self):
        ops = UsageOperations()
        db = make_mock_db()
        db.add = MagicMock()
        stale = make_mock_meter(current_value=10.0, aggregation_method="SUM")
        # Another event was folded in after this session first loaded the meter
        locked = make_mock_meter(id=stale.id, current_value=12.0, aggregation_method="SUM")
        db.execute.return_value = mock_scalar_result(locked)

        with (
            patch.object(ops, "get_or_create_meter", new=AsyncMock(return_value=stale)),
            patch.object(ops, "count_records_since", new=AsyncMock(return_value=3)),
        ):
            record = await ops.record_usage(db, uuid.uuid4(), "ai", 5.0, metadata={"k": "v"})

        assert locked.current_value == 17.0
        assert record.usage_meter_id == stale.id
        assert record.value == 5.0
        assert record.record_metadata == {"k": "v"}
        db.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lock_meter_refreshes_session_copy(self):
        ops = UsageOperations()
        db = make_mock_db()
        meter = make_mock_meter()
        db.execute.return_value = mock_scalar_result(meter)

        assert await ops.lock_meter(db, meter) is meter

        statement = db.execute.call_args.args[0]
        assert statement.get_execution_options()["populate_existing"] is True
        assert statement._for_update_arg is not None

    @pytest.mark.asyncio
    async def test_count_events_since(self):
        ops = UsageOperations()
        db = make_mock_db()
        db.execute.return_value = mock_scalar_result(12)

        count = await ops.count_events_since(db, uuid.uuid4(), datetime(2026, 4, 1, tzinfo=UTC))

        assert count == 12

    @pytest.mark.asyncio
    async def test_list_credit_transactions(self):
        ops = UsageOperations()
        db = make_mock_db()
        records = [make_mock_usage_record(payment_event_id="pay_1")]
        db.execute.return_value = mock_scalars_result(records)

        result = await ops.list_credit_transactions(db, uuid.uuid4())

        assert result == records
