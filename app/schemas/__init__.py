"""Pydantic schemas for API request/response validation."""

from app.schemas.billing import (
    Actor,
    BillingPeriod,
    Cancellation,
    CheckoutSession,
    CloudConfig,
    CostBreakdown,
    CreditBalance,
    CreditPurchaseResult,
    CreditTransaction,
    Discount,
    Invoice,
    InvoiceCursors,
    InvoicePage,
    InvoiceSummary,
    OperationResult,
    PaymentMethod,
    ProcessorRef,
    PromotionResult,
    ScheduledChange,
    SubscriptionHistoryEntry,
    SubscriptionInfo,
    UsageInfo,
)

__all__ = [
    "Actor",
    "BillingPeriod",
    "Cancellation",
    "CheckoutSession",
    "CloudConfig",
    "CostBreakdown",
    "CreditBalance",
    "CreditPurchaseResult",
    "CreditTransaction",
    "Discount",
    "Invoice",
    "InvoiceCursors",
    "InvoicePage",
    "InvoiceSummary",
    "OperationResult",
    "PaymentMethod",
    "ProcessorRef",
    "PromotionResult",
    "ScheduledChange",
    "SubscriptionHistoryEntry",
    "SubscriptionInfo",
    "UsageInfo",
]
