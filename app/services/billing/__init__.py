"""
Subscription & usage-billing reconciliation.

Usage:
    from app.services.billing import BillingService, create_billing_service

    billing = create_billing_service()
    info = await billing.get_subscription_info(db, org_id)
"""

from app.services.billing.audit import AuditEmitter
from app.services.billing.cycle import current_period, cycle_end, cycle_start
from app.services.billing.events import CommerceEvent, CommerceEventHandler, construct_event
from app.services.billing.idempotency import IdempotencyStore
from app.services.billing.invoices import InvoiceProjector
from app.services.billing.results import ManualOverride, NotSubscribed, Ok, resolve_subscription
from app.services.billing.service import BillingService, create_billing_service
from app.services.billing.subscription_state import (
    SubscriptionState,
    SubscriptionStateMachine,
    derive_state,
)
from app.services.billing.usage import UsageAggregator

__all__ = [
    # Orchestrator
    "BillingService",
    "create_billing_service",
    # Components
    "AuditEmitter",
    "IdempotencyStore",
    "InvoiceProjector",
    "SubscriptionStateMachine",
    "UsageAggregator",
    "CommerceEventHandler",
    # State
    "SubscriptionState",
    "derive_state",
    "Ok",
    "NotSubscribed",
    "ManualOverride",
    "resolve_subscription",
    # Cycle
    "cycle_start",
    "cycle_end",
    "current_period",
    # Webhooks
    "CommerceEvent",
    "construct_event",
]
