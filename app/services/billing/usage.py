"""
Usage aggregator - billing-period usage for the dashboard.

Live processor numbers are preferred. Any processor failure is logged and
answered from local data instead: usage may be briefly stale, but the usage
view never fails because the processor is degraded.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.organization_operations import organization_ops
from app.domain.usage_operations import usage_ops
from app.models.organization import Organization
from app.models.usage import UsageAggregationMethod, UsageMeterType, UsageRecord
from app.schemas.billing import BillingPeriod, UsageInfo
from app.services.billing.cycle import current_period
from app.services.processor import BillingError, CommerceClient
from app.services.processor.types import UsageResponse

logger = logging.getLogger(__name__)

FALLBACK_USAGE_TYPE = "units"


class UsageAggregator:
    """Computes usage for the current billing period."""

    def __init__(self, client: CommerceClient):
        self.client = client

    async def get_usage(self, db: AsyncSession, org: Organization) -> UsageInfo:
        config = organization_ops.parse_cloud_config(org)

        if config.customer_id and config.subscription_id:
            try:
                result = await self.client.get(
                    "/usage",
                    org_id=str(org.id),
                    response_model=UsageResponse,
                    query={
                        "customer_id": config.customer_id,
                        "subscription_id": config.subscription_id,
                    },
                )
                return UsageInfo(
                    usage_count=result.usage_count,
                    usage_type=result.usage_type,
                    billing_period=BillingPeriod(
                        start=datetime.fromisoformat(result.billing_period.start),
                        end=datetime.fromisoformat(result.billing_period.end),
                    ),
                    source="processor",
                )
            except (BillingError, ValueError) as e:
                # ValueError: unparseable billing_period timestamps
                logger.warning(
                    f"[billing] Usage lookup failed for org {org.id}, using fallback: {e}"
                )

        return await self._fallback(db, org)

    async def _fallback(self, db: AsyncSession, org: Organization) -> UsageInfo:
        """Cached cycle counter, or a local event count when no counter is cached."""
        now = datetime.now(UTC)
        period = current_period(org, now)
        usage_count = org.cloud_current_cycle_usage
        if usage_count is None:
            usage_count = await usage_ops.count_events_since(db, org.id, period.start)
        return UsageInfo(
            usage_count=usage_count,
            usage_type=FALLBACK_USAGE_TYPE,
            billing_period=period,
            source="fallback",
        )

    async def record_usage(
        self,
        db: AsyncSession,
        org: Organization,
        meter_name: str,
        value: float,
        metadata: dict[str, Any] | None = None,
        meter_type: UsageMeterType = UsageMeterType.AI,
        unit: str = "units",
        aggregation_method: UsageAggregationMethod = UsageAggregationMethod.SUM,
    ) -> UsageRecord:
        """Append a usage event, creating the meter on first use."""
        return await usage_ops.record_usage(
            db,
            org.id,
            meter_name,
            value,
            metadata=metadata,
            meter_type=meter_type,
            unit=unit,
            aggregation_method=aggregation_method,
        )
