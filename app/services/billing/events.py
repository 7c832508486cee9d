"""
Processor webhook events - signature check and dispatch.

Events move local state only where the processor owns it: checkout records the
customer and subscription ids, a replaced subscription id is recorded, a
terminal cancellation clears the active id and a credit purchase payment tops
up the credit ledger. Everything else is acknowledged and ignored.

Handlers are idempotent so redelivered events are harmless: id writes are
no-ops when the value is already recorded, and credit purchases are keyed by
the payment event id.
"""

import hashlib
import hmac
import logging
import uuid as uuid_pkg
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.organization_operations import organization_ops
from app.models.organization import Organization
from app.schemas.billing import CreditPurchaseResult

if TYPE_CHECKING:
    from app.services.billing.service import BillingService

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Commerce-Signature"
CREDIT_PURCHASE_TYPE = "credit_purchase"


class CommerceEvent(BaseModel):
    """Envelope of a processor webhook delivery."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    org_id: uuid_pkg.UUID
    data: dict[str, Any] = Field(default_factory=dict)


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CheckoutCompletedData(EventData):
    customer_id: str | None = None
    subscription_id: str | None = None


class SubscriptionEventData(EventData):
    subscription_id: str | None = None
    id: str | None = None

    @property
    def resolved_id(self) -> str | None:
        return self.subscription_id or self.id


class PaymentSucceededData(EventData):
    payment_id: str | None = None
    credits: float | None = None
    amount: float | None = None
    metadata: dict[str, Any] | None = None

    @property
    def credit_amount(self) -> float:
        if self.credits is not None:
            return self.credits
        return self.amount or 0.0


EventDataT = TypeVar("EventDataT", bound=EventData)


def parse_data(model: type[EventDataT], event: CommerceEvent) -> EventDataT | None:
    """Validate an event's data, logging and returning None when it is malformed."""
    try:
        return model.model_validate(event.data)
    except ValidationError as e:
        logger.error(f"[webhooks] Malformed data in {event.type} event {event.id}: {e}")
        return None


def sign_payload(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def construct_event(payload: bytes, signature: str, secret: str) -> CommerceEvent:
    """
    Verify a webhook signature and parse the event.

    Raises ValueError if the secret is unset, the signature does not match or
    the payload is not a valid event.
    """
    if not secret:
        raise ValueError("Webhook secret is not configured")
    expected = sign_payload(payload, secret)
    if not signature or not hmac.compare_digest(expected, signature.strip()):
        logger.warning("[webhooks] Commerce signature verification failed")
        raise ValueError("Invalid webhook signature")
    try:
        return CommerceEvent.model_validate_json(payload)
    except ValidationError as e:
        logger.warning(f"[webhooks] Invalid commerce webhook payload: {e}")
        raise ValueError("Invalid webhook payload") from None


class CommerceEventHandler:
    """Routes verified events to the billing service."""

    def __init__(self, billing: "BillingService"):
        self.billing = billing

    async def handle(self, db: AsyncSession, event: CommerceEvent) -> str:
        """
        Apply one event. Returns a short status for the webhook response.

        Malformed event data is logged and acknowledged as ignored so the
        processor stops redelivering it.
        """
        logger.info(
            f"[webhooks] Received commerce event {event.type} ({event.id}) for org {event.org_id}"
        )

        org = await organization_ops.get(db, event.org_id)
        if org is None:
            logger.error(f"[webhooks] Event {event.id} references unknown org {event.org_id}")
            return "ignored"

        return await self._dispatch(db, org, event)

    async def _dispatch(self, db: AsyncSession, org: Organization, event: CommerceEvent) -> str:
        machine = self.billing.subscriptions

        if event.type == "checkout.completed":
            checkout = parse_data(CheckoutCompletedData, event)
            if checkout is None:
                return "ignored"
            await machine.record_checkout_completed(
                db,
                org,
                customer_id=checkout.customer_id,
                subscription_id=checkout.subscription_id,
            )
            return "ok"

        if event.type == "subscription.updated":
            subscription = parse_data(SubscriptionEventData, event)
            if subscription is None:
                return "ignored"
            if subscription.resolved_id:
                await machine.record_subscription_updated(db, org, subscription.resolved_id)
            return "ok"

        if event.type == "subscription.canceled":
            subscription = parse_data(SubscriptionEventData, event)
            if subscription is None:
                return "ignored"
            if subscription.resolved_id:
                await machine.record_subscription_canceled(db, org, subscription.resolved_id)
            return "ok"

        if event.type == "payment.succeeded":
            payment = parse_data(PaymentSucceededData, event)
            if payment is None:
                return "ignored"
            metadata = payment.metadata or {}
            if metadata.get("type") != CREDIT_PURCHASE_TYPE:
                logger.debug(f"[webhooks] Payment {event.id} is not a credit purchase, skipping")
                return "ignored"
            if payment.credit_amount <= 0:
                logger.error(f"[webhooks] Credit purchase {event.id} has no positive amount")
                return "ignored"
            result: CreditPurchaseResult = await self.billing.purchase_credits(
                db,
                org.id,
                payment_event_id=payment.payment_id or event.id,
                amount=payment.credit_amount,
                metadata={k: v for k, v in metadata.items() if k != "type"},
            )
            return "ok" if result.applied else "already_processed"

        logger.debug(f"[webhooks] Unhandled commerce event type: {event.type}")
        return "ignored"
