"""Billing API endpoints - subscription, usage, invoices and credits per organization."""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from app.api.deps import Billing, CurrentActor, DbSession
from app.schemas.billing import (
    CheckoutSession,
    CreditBalance,
    CreditTransaction,
    InvoicePage,
    OperationResult,
    PaymentMethod,
    PromotionResult,
    SubscriptionHistoryEntry,
    SubscriptionInfo,
    UsageInfo,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ─────────────────────────────────────────────────────────────────────────────
# Request/Response Schemas
# ─────────────────────────────────────────────────────────────────────────────


class CheckoutRequest(BaseModel):
    """Request to create a checkout session."""

    product_id: str = Field(min_length=1)


class OperationRequest(BaseModel):
    """Body of a mutating call. op_id makes a retried call safe to re-apply."""

    op_id: str | None = Field(default=None, max_length=255)


class ChangePlanRequest(OperationRequest):
    product_id: str = Field(min_length=1)


class PromotionRequest(OperationRequest):
    code: str = Field(min_length=1, max_length=100)


class ManualPlanRequest(BaseModel):
    """Request to place an organization on a manual plan."""

    plan: str


class UsageEventRequest(BaseModel):
    """One usage event to fold into a named meter."""

    meter: str = Field(min_length=1, max_length=100)
    value: float
    metadata: dict[str, Any] | None = None


class PortalResponse(BaseModel):
    """Response with portal URL (None when cloud billing is disabled)."""

    url: str | None


# ─────────────────────────────────────────────────────────────────────────────
# Subscription
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/{org_id}/subscription", response_model=SubscriptionInfo | None)
async def get_subscription(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
) -> SubscriptionInfo | None:
    """Get the organization's subscription as the processor currently sees it."""
    return await billing.get_subscription_info(db, org_id)


@router.get("/{org_id}/subscription/history", response_model=list[SubscriptionHistoryEntry])
async def get_subscription_history(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
    limit: int = Query(default=10, ge=1, le=100),
) -> list[SubscriptionHistoryEntry]:
    return await billing.get_subscription_history(db, org_id, limit=limit)


@router.post("/{org_id}/checkout", response_model=CheckoutSession)
async def create_checkout(
    org_id: UUID,
    data: CheckoutRequest,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
) -> CheckoutSession:
    """Create a processor checkout session and return its redirect URL."""
    return await billing.create_checkout_session(db, org_id, actor, data.product_id)


@router.post("/{org_id}/plan", response_model=OperationResult)
async def change_plan(
    org_id: UUID,
    data: ChangePlanRequest,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
) -> OperationResult:
    return await billing.change_plan(db, org_id, actor, data.product_id, op_id=data.op_id)


@router.post("/{org_id}/cancel", response_model=OperationResult)
async def cancel_subscription(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
    data: OperationRequest | None = None,
) -> OperationResult:
    """Cancel at the end of the current billing period."""
    op_id = data.op_id if data else None
    return await billing.cancel(db, org_id, actor, op_id=op_id)


@router.post("/{org_id}/cancel-now", response_model=OperationResult)
async def cancel_subscription_now(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
    data: OperationRequest | None = None,
) -> OperationResult:
    """Cancel immediately and invoice. Returns status "noop" without a subscription."""
    op_id = data.op_id if data else None
    return await billing.cancel_immediately_and_invoice(db, org_id, actor, op_id=op_id)


@router.post("/{org_id}/reactivate", response_model=OperationResult)
async def reactivate_subscription(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
    data: OperationRequest | None = None,
) -> OperationResult:
    op_id = data.op_id if data else None
    return await billing.reactivate(db, org_id, actor, op_id=op_id)


@router.post("/{org_id}/clear-schedule", response_model=OperationResult)
async def clear_plan_switch_schedule(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
    data: OperationRequest | None = None,
) -> OperationResult:
    op_id = data.op_id if data else None
    return await billing.clear_plan_switch_schedule(db, org_id, actor, op_id=op_id)


@router.post("/{org_id}/promotion", response_model=PromotionResult)
async def apply_promotion_code(
    org_id: UUID,
    data: PromotionRequest,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
) -> PromotionResult:
    return await billing.apply_promotion_code(db, org_id, actor, data.code, op_id=data.op_id)


@router.get("/{org_id}/portal", response_model=PortalResponse)
async def get_portal(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
) -> PortalResponse:
    """Create a processor billing portal session."""
    url = await billing.get_customer_portal_url(db, org_id)
    return PortalResponse(url=url)


# ─────────────────────────────────────────────────────────────────────────────
# Manual plan administration
# ─────────────────────────────────────────────────────────────────────────────


@router.post("/{org_id}/manual-plan", response_model=SubscriptionInfo)
async def assign_manual_plan(
    org_id: UUID,
    data: ManualPlanRequest,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
) -> SubscriptionInfo:
    """Take the organization out of processor-managed billing."""
    return await billing.assign_manual_plan(db, org_id, actor, data.plan)


@router.delete("/{org_id}/manual-plan", response_model=OperationResult)
async def clear_manual_plan(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    actor: CurrentActor,
) -> OperationResult:
    return await billing.clear_manual_plan(db, org_id, actor)


# ─────────────────────────────────────────────────────────────────────────────
# Usage, invoices, payment methods
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/{org_id}/usage", response_model=UsageInfo | None)
async def get_usage(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
) -> UsageInfo | None:
    """Usage for the current billing period. Falls back to local data on processor errors."""
    return await billing.get_usage(db, org_id)


@router.post("/{org_id}/usage", response_model=OperationResult)
async def record_usage(
    org_id: UUID,
    data: UsageEventRequest,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
) -> OperationResult:
    """Record a usage event against one of the organization's meters."""
    return await billing.record_usage(db, org_id, data.meter, data.value, metadata=data.metadata)


@router.get("/{org_id}/invoices", response_model=InvoicePage)
async def get_invoices(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
    limit: int = Query(default=10, ge=1, le=100),
    starting_after: str | None = None,
    ending_before: str | None = None,
) -> InvoicePage:
    return await billing.get_invoices(
        db,
        org_id,
        limit=limit,
        starting_after=starting_after,
        ending_before=ending_before,
    )


@router.get("/{org_id}/payment-methods", response_model=list[PaymentMethod])
async def get_payment_methods(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
) -> list[PaymentMethod]:
    return await billing.get_payment_methods(db, org_id)


# ─────────────────────────────────────────────────────────────────────────────
# Credits
# ─────────────────────────────────────────────────────────────────────────────


@router.get("/{org_id}/credits", response_model=CreditBalance)
async def get_credits(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
) -> CreditBalance:
    return await billing.get_credits(db, org_id)


@router.get("/{org_id}/credits/transactions", response_model=list[CreditTransaction])
async def get_credit_transactions(
    org_id: UUID,
    db: DbSession,
    billing: Billing,
    _actor: CurrentActor,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[CreditTransaction]:
    return await billing.get_credit_transactions(db, org_id, limit=limit, offset=offset)
