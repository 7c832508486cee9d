"""Domain operations for usage meters and usage records."""

import logging
import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.base_operations import BaseOperations
from app.models.usage import UsageAggregationMethod, UsageMeter, UsageMeterType, UsageRecord

logger = logging.getLogger(__name__)

CREDITS_METER = "credits"


def aggregate(
    method: UsageAggregationMethod | str,
    current: float,
    value: float,
    previous_count: int,
) -> float:
    """
    Fold a new value into a meter's current value.

    previous_count is the number of records already counted in the current
    cycle (0 means this is the first one).
    """
    method = UsageAggregationMethod(method)
    if previous_count <= 0:
        return value
    if method == UsageAggregationMethod.SUM:
        return current + value
    if method == UsageAggregationMethod.AVERAGE:
        return (current * previous_count + value) / (previous_count + 1)
    if method == UsageAggregationMethod.MAX:
        return max(current, value)
    if method == UsageAggregationMethod.MIN:
        return min(current, value)
    return value  # LAST


class UsageOperations(BaseOperations[UsageMeter]):
    """Operations for UsageMeter and its append-only UsageRecords."""

    def __init__(self) -> None:
        super().__init__(UsageMeter)

    async def get_meter(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        name: str,
    ) -> UsageMeter | None:
        statement = select(UsageMeter).where(
            UsageMeter.organization_id == organization_id,  # type: ignore[arg-type]
            UsageMeter.name == name,  # type: ignore[arg-type]
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def lock_meter(self, db: AsyncSession, meter: UsageMeter) -> UsageMeter:
        """Re-read a meter under a row lock, replacing the copy held by the session."""
        statement = (
            select(UsageMeter)
            .where(UsageMeter.id == meter.id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return result.scalar_one()

    async def get_or_create_meter(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        name: str,
        meter_type: UsageMeterType = UsageMeterType.AI,
        unit: str = "units",
        aggregation_method: UsageAggregationMethod = UsageAggregationMethod.SUM,
    ) -> UsageMeter:
        """
        Get a meter by name, creating it on first use.

        Two concurrent first events can both try the insert; the loser hits the
        (organization_id, name) unique constraint and re-reads the winner's row.
        """
        meter = await self.get_meter(db, organization_id, name)
        if meter:
            return meter

        meter = UsageMeter(
            organization_id=organization_id,
            name=name,
            type=meter_type.value,
            unit=unit,
            aggregation_method=aggregation_method.value,
        )
        try:
            async with db.begin_nested():
                db.add(meter)
                await db.flush()
        except IntegrityError:
            logger.info(f"[usage] Meter '{name}' for org {organization_id} created concurrently")
            existing = await self.get_meter(db, organization_id, name)
            if existing is None:
                raise
            return existing

        await db.refresh(meter)
        return meter

    async def count_records_since(
        self,
        db: AsyncSession,
        meter: UsageMeter,
        since: datetime | None,
    ) -> int:
        """Number of records on a meter, optionally since a timestamp."""
        statement = select(func.count(UsageRecord.id)).where(  # type: ignore[arg-type]
            UsageRecord.usage_meter_id == meter.id,  # type: ignore[arg-type]
        )
        if since is not None:
            statement = statement.where(UsageRecord.timestamp >= since)  # type: ignore[arg-type]
        result = await db.execute(statement)
        return result.scalar() or 0

    async def record_usage(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        meter_name: str,
        value: float,
        metadata: dict[str, Any] | None = None,
        meter_type: UsageMeterType = UsageMeterType.AI,
        unit: str = "units",
        aggregation_method: UsageAggregationMethod = UsageAggregationMethod.SUM,
    ) -> UsageRecord:
        """
        Append a usage record and fold it into the meter's current value.

        The meter is created lazily with the given type, unit and aggregation
        method; an existing meter keeps its own settings. The fold runs under
        the meter's row lock so concurrent events on one meter serialize.
        """
        meter = await self.get_or_create_meter(
            db,
            organization_id,
            meter_name,
            meter_type=meter_type,
            unit=unit,
            aggregation_method=aggregation_method,
        )
        meter = await self.lock_meter(db, meter)
        previous_count = await self.count_records_since(db, meter, meter.last_reset_at)

        record = UsageRecord(
            organization_id=organization_id,
            usage_meter_id=meter.id,
            value=value,
            record_metadata=metadata,
        )
        db.add(record)

        meter.current_value = aggregate(
            meter.aggregation_method, meter.current_value, value, previous_count
        )
        db.add(meter)

        await db.flush()
        await db.refresh(record)
        return record

    async def count_events_since(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        since: datetime,
    ) -> int:
        """
        Count usage events for an organization since a timestamp.

        Credit purchases are bookkeeping, not usage, and are never counted.
        """
        statement = (
            select(func.count(UsageRecord.id))  # type: ignore[arg-type]
            .join(UsageMeter, UsageRecord.usage_meter_id == UsageMeter.id)  # type: ignore[arg-type]
            .where(
                UsageRecord.organization_id == organization_id,  # type: ignore[arg-type]
                UsageRecord.timestamp >= since,  # type: ignore[arg-type]
                UsageMeter.name != CREDITS_METER,  # type: ignore[arg-type]
            )
        )
        result = await db.execute(statement)
        return result.scalar() or 0

    async def list_credit_transactions(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        limit: int = 50,
        offset: int = 0,
    ) -> list[UsageRecord]:
        """Credit purchase records for an organization, newest first."""
        statement = (
            select(UsageRecord)
            .where(
                UsageRecord.organization_id == organization_id,  # type: ignore[arg-type]
                UsageRecord.payment_event_id.is_not(None),  # type: ignore[union-attr]
            )
            .order_by(UsageRecord.timestamp.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


usage_ops = UsageOperations()
