"""
Wire schemas for processor (commerce) responses.

Every adapter call names the model its response must satisfy. Payloads that
fail validation are rejected at the adapter boundary as INTERNAL errors, so
nothing loosely typed travels further into the billing core. Field names are
the processor's own (snake_case, epoch seconds, minor currency units).
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Base for processor payloads - tolerate fields we don't read."""

    model_config = ConfigDict(extra="ignore")


class ProcessorSchedule(WireModel):
    id: str
    status: str | None = None
    switch_at: int | None = None
    new_product_id: str | None = None
    message: str | None = None


class ProcessorDiscount(WireModel):
    id: str
    code: str | None = None
    name: str | None = None
    kind: Literal["percent", "amount"]
    value: float
    currency: str | None = None
    duration: Literal["forever", "once", "repeating"] | None = None
    duration_in_months: int | None = None


class ProcessorSubscription(WireModel):
    id: str
    status: str
    cancel_at: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    customer_id: str | None = None
    product_id: str | None = None
    has_valid_payment_method: bool = False
    schedule: ProcessorSchedule | None = None
    discounts: list[ProcessorDiscount] = Field(default_factory=list)
    created: int | None = None
    ended_at: int | None = None


class MutationAck(WireModel):
    """Response to a mutating call. Processors may answer with an empty object."""

    id: str | None = None
    status: str | None = None
    product_id: str | None = None


class CheckoutResponse(WireModel):
    url: str = ""
    session_id: str | None = None


class PortalResponse(WireModel):
    url: str


class InvoiceBreakdown(WireModel):
    subscription_cents: int = 0
    usage_cents: int = 0
    discount_cents: int = 0
    tax_cents: int = 0
    total_cents: int = 0


class ProcessorInvoice(WireModel):
    id: str
    number: str | None = None
    status: str | None = None
    currency: str
    created: int
    hosted_invoice_url: str | None = None
    invoice_pdf_url: str | None = None
    subscription_id: str | None = None
    breakdown: InvoiceBreakdown = Field(default_factory=InvoiceBreakdown)


class PageCursors(WireModel):
    next: str | None = None
    prev: str | None = None


class InvoicesResponse(WireModel):
    invoices: list[ProcessorInvoice]
    has_more: bool = False
    cursors: PageCursors = Field(default_factory=PageCursors)


class UsagePeriod(WireModel):
    start: str
    end: str


class UsageResponse(WireModel):
    usage_count: int
    usage_type: str
    billing_period: UsagePeriod


class SubscriptionItem(WireModel):
    id: str | None = None
    product_id: str
    quantity: int | None = None


class HistoricalSubscription(ProcessorSubscription):
    items: list[SubscriptionItem] = Field(default_factory=list)
    invoices: list[ProcessorInvoice] = Field(default_factory=list)


class SubscriptionsResponse(WireModel):
    subscriptions: list[HistoricalSubscription]
    has_more: bool = False


class ProcessorProduct(WireModel):
    id: str
    name: str
    description: str | None = None


class ProductsResponse(WireModel):
    products: list[ProcessorProduct]


class ProcessorPaymentMethod(WireModel):
    id: str
    type: Literal["card", "crypto", "wire"]
    label: str | None = None
    brand: str | None = None
    last4: str | None = None
    is_default: bool = False


class PaymentMethodsResponse(WireModel):
    payment_methods: list[ProcessorPaymentMethod]
