"""Canonical billing shapes returned by the reconciliation service.

These are the plain-data contracts the API layer serializes. Nothing here
mirrors the processor's field names; the mapping lives in the services that
build these objects.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Actor(BaseModel):
    """Identity of whoever triggered an operation (session user or system)."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str | None = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system")


# ─────────────────────────────────────────────────────────────────────────────
# cloud_config document
# ─────────────────────────────────────────────────────────────────────────────


class ProcessorRef(BaseModel):
    """Processor identifiers stored under cloud_config["stripe"]."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    customer_id: str | None = Field(default=None, alias="customerId")
    active_subscription_id: str | None = Field(default=None, alias="activeSubscriptionId")


class CloudConfig(BaseModel):
    """Parsed view of Organization.cloud_config. Unknown keys are preserved."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    stripe: ProcessorRef | None = None
    plan: str | None = None  # Manual plan override
    billing_cycle_anchor: datetime | None = Field(default=None, alias="billingCycleAnchor")

    @property
    def customer_id(self) -> str | None:
        return self.stripe.customer_id if self.stripe else None

    @property
    def subscription_id(self) -> str | None:
        return self.stripe.active_subscription_id if self.stripe else None

    def to_document(self) -> dict[str, Any]:
        """Serialize back to the JSONB document layout."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ─────────────────────────────────────────────────────────────────────────────
# Subscription info
# ─────────────────────────────────────────────────────────────────────────────


class BillingPeriod(BaseModel):
    start: datetime
    end: datetime


class Cancellation(BaseModel):
    cancel_at: int  # Epoch seconds


class ScheduledChange(BaseModel):
    schedule_id: str
    switch_at: int  # Epoch seconds, 0 if the processor did not report one
    new_product_id: str | None = None
    message: str | None = None


class Discount(BaseModel):
    id: str
    code: str | None = None
    name: str | None = None
    kind: Literal["percent", "amount"]
    value: float
    currency: str | None = None
    duration: Literal["forever", "once", "repeating"] | None = None
    duration_in_months: int | None = None


class SubscriptionInfo(BaseModel):
    """Projection of an organization's subscription as the processor sees it."""

    state: str
    subscription_id: str | None = None
    product_id: str | None = None
    status: str | None = None
    cancellation: Cancellation | None = None
    scheduled_change: ScheduledChange | None = None
    billing_period: BillingPeriod | None = None
    discounts: list[Discount] = Field(default_factory=list)
    has_valid_payment_method: bool = False
    manual_plan: str | None = None


class OperationResult(BaseModel):
    """Outcome of a mutating operation."""

    status: Literal["success", "noop"] = "success"
    op_id: str | None = None


class PromotionResult(BaseModel):
    ok: Literal[True] = True


class CheckoutSession(BaseModel):
    url: str
    session_id: str | None = None


# ─────────────────────────────────────────────────────────────────────────────
# Usage & credits
# ─────────────────────────────────────────────────────────────────────────────


class UsageInfo(BaseModel):
    usage_count: int
    usage_type: str
    billing_period: BillingPeriod
    source: Literal["processor", "fallback"] = "processor"


class CreditBalance(BaseModel):
    organization_id: str
    credits: float


class CreditPurchaseResult(BaseModel):
    """Outcome of purchase_credits. applied=False means the event was a replay."""

    applied: bool
    credits: float
    payment_event_id: str


class CreditTransaction(BaseModel):
    id: str
    amount: float
    payment_event_id: str | None = None
    timestamp: datetime
    metadata: dict[str, Any] | None = None


# ─────────────────────────────────────────────────────────────────────────────
# Invoices, history, payment methods
# ─────────────────────────────────────────────────────────────────────────────


class CostBreakdown(BaseModel):
    """Invoice amounts in minor currency units (cents)."""

    subscription_cents: int
    usage_cents: int
    discount_cents: int
    tax_cents: int
    total_cents: int


class Invoice(BaseModel):
    id: str
    number: str | None = None
    status: str | None = None
    currency: str
    created: datetime
    hosted_invoice_url: str | None = None
    invoice_pdf_url: str | None = None
    breakdown: CostBreakdown


class InvoiceCursors(BaseModel):
    next: str | None = None
    prev: str | None = None


class InvoicePage(BaseModel):
    invoices: list[Invoice] = Field(default_factory=list)
    has_more: bool = False
    cursors: InvoiceCursors = Field(default_factory=InvoiceCursors)


class InvoiceSummary(BaseModel):
    id: str
    number: str | None = None
    status: str | None = None
    created: datetime
    total_cents: int
    currency: str


class SubscriptionHistoryEntry(BaseModel):
    id: str
    status: str
    product_ids: list[str] = Field(default_factory=list)
    product_names: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    billing_period: BillingPeriod | None = None
    invoices: list[InvoiceSummary] = Field(default_factory=list)


class PaymentMethod(BaseModel):
    id: str
    type: Literal["card", "crypto", "wire"]
    label: str
    is_default: bool = False
