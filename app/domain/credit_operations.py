"""Domain operations for the per-organization credit ledger."""

import logging
import uuid as uuid_pkg
from dataclasses import dataclass
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.organization_operations import organization_ops
from app.domain.usage_operations import CREDITS_METER, usage_ops
from app.models.usage import UsageAggregationMethod, UsageMeter, UsageMeterType, UsageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditPurchase:
    """Result of a purchase attempt. applied=False means the event was already seen."""

    applied: bool
    balance: float


class CreditOperations:
    """Credit balance mutations, each tied to one external payment event."""

    async def purchase(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        payment_event_id: str,
        amount: float,
        metadata: dict[str, Any] | None = None,
    ) -> CreditPurchase:
        """
        Apply a credit purchase exactly once per payment event.

        The ledger record and the balance increment share the caller's
        transaction. The record insert runs in a savepoint so a duplicate
        payment_event_id (unique constraint) rolls back only the insert; the
        replay then returns the current balance untouched.
        """
        meter = await usage_ops.get_or_create_meter(
            db,
            organization_id,
            CREDITS_METER,
            meter_type=UsageMeterType.CREDITS,
            unit="credits",
            aggregation_method=UsageAggregationMethod.SUM,
        )

        record = UsageRecord(
            organization_id=organization_id,
            usage_meter_id=meter.id,
            value=amount,
            record_metadata={"type": "credit_purchase", **(metadata or {})},
            payment_event_id=payment_event_id,
        )
        try:
            async with db.begin_nested():
                db.add(record)
                await db.flush()
        except IntegrityError:
            logger.info(
                f"[credits] Payment event {payment_event_id} already applied "
                f"for org {organization_id}, ignoring replay"
            )
            balance = await organization_ops.get_credits(db, organization_id)
            return CreditPurchase(applied=False, balance=float(balance or 0))

        await db.execute(
            update(UsageMeter)
            .where(UsageMeter.id == meter.id)  # type: ignore[arg-type]
            .values(current_value=UsageMeter.current_value + amount)
        )
        balance = await organization_ops.increment_credits(db, organization_id, amount)
        logger.info(
            f"[credits] Applied {amount} credits to org {organization_id} "
            f"(event {payment_event_id}), balance {balance}"
        )
        return CreditPurchase(applied=True, balance=balance)


credit_ops = CreditOperations()
