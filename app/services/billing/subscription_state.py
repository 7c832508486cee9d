"""
Subscription state machine.

Lifecycle of an organization's processor subscription:

    NONE -> ACTIVE -> CANCEL_SCHEDULED | SCHEDULED_CHANGE -> CANCELED
                  ^------------- reactivate -------------'

MANUAL is a pseudo-state entered whenever cloud_config.plan is set. While
MANUAL every transition fails fast with a precondition error and the processor
is never called.

The processor is the source of truth for subscription state. Nothing here is
cached: every projection is fetched live, and local cloud_config fields are
written back only after the processor has confirmed the transition.
"""

import logging
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import is_plan, settings
from app.domain.organization_operations import organization_ops
from app.models.organization import Organization
from app.schemas.billing import (
    Actor,
    BillingPeriod,
    Cancellation,
    CheckoutSession,
    CloudConfig,
    Discount,
    OperationResult,
    ProcessorRef,
    PromotionResult,
    ScheduledChange,
    SubscriptionInfo,
)
from app.services.billing.audit import PROCESSOR_OWNED, AuditEmitter
from app.services.billing.cycle import current_period
from app.services.billing.results import (
    ManualOverride,
    NotSubscribed,
    Ok,
    SubscriptionLookup,
    resolve_subscription,
)
from app.services.processor import (
    BillingError,
    CommerceClient,
    ErrorKind,
    PreconditionError,
    ProcessorError,
)
from app.services.processor.types import (
    CheckoutResponse,
    MutationAck,
    PortalResponse,
    ProcessorSubscription,
)

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "organization"
PROMOTION_NEW_CUSTOMERS_ONLY = "Promotion code only valid for new customers"
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})


class SubscriptionState(str, Enum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    CANCEL_SCHEDULED = "CANCEL_SCHEDULED"
    SCHEDULED_CHANGE = "SCHEDULED_CHANGE"
    CANCELED = "CANCELED"
    MANUAL = "MANUAL"


def _from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(value, UTC)


def project_cancellation(sub: ProcessorSubscription, now_ts: int) -> Cancellation | None:
    """
    Pending cancellation, if one lies in the future.

    An explicit cancel_at wins; otherwise cancel_at_period_end counts only
    while the current period has not ended yet.
    """
    if sub.cancel_at is not None and sub.cancel_at > now_ts:
        return Cancellation(cancel_at=sub.cancel_at)
    if (
        sub.cancel_at_period_end
        and sub.current_period_end is not None
        and sub.current_period_end > now_ts
    ):
        return Cancellation(cancel_at=sub.current_period_end)
    return None


def project_scheduled_change(sub: ProcessorSubscription) -> ScheduledChange | None:
    if sub.schedule is None:
        return None
    return ScheduledChange(
        schedule_id=sub.schedule.id,
        switch_at=sub.schedule.switch_at or 0,
        new_product_id=sub.schedule.new_product_id,
        message=sub.schedule.message,
    )


def project_billing_period(sub: ProcessorSubscription) -> BillingPeriod | None:
    if not sub.current_period_start or not sub.current_period_end:
        return None
    return BillingPeriod(
        start=_from_epoch(sub.current_period_start),
        end=_from_epoch(sub.current_period_end),
    )


def derive_state(
    lookup: SubscriptionLookup,
    sub: ProcessorSubscription | None = None,
    now_ts: int | None = None,
) -> SubscriptionState:
    """Map a precondition lookup plus the processor's view onto a lifecycle state."""
    if isinstance(lookup, ManualOverride):
        return SubscriptionState.MANUAL
    if isinstance(lookup, NotSubscribed) or sub is None:
        return SubscriptionState.NONE

    if now_ts is None:
        now_ts = int(datetime.now(UTC).timestamp())
    if sub.status in TERMINAL_STATUSES or sub.ended_at is not None:
        return SubscriptionState.CANCELED
    if project_cancellation(sub, now_ts) is not None:
        return SubscriptionState.CANCEL_SCHEDULED
    if sub.schedule is not None:
        return SubscriptionState.SCHEDULED_CHANGE
    return SubscriptionState.ACTIVE


class SubscriptionStateMachine:
    """Lifecycle transitions for one organization's processor subscription."""

    def __init__(self, client: CommerceClient, audit: AuditEmitter):
        self.client = client
        self.audit = audit

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _return_url(org: Organization) -> str:
        return f"{settings.frontend_url.rstrip('/')}/organization/{org.id}/settings/billing"

    @staticmethod
    def _require_subscription(
        lookup: SubscriptionLookup,
        manual_message: str,
        missing_message: str,
    ) -> Ok:
        """Turn a non-Ok lookup into the operation's precondition error."""
        if isinstance(lookup, ManualOverride):
            raise PreconditionError(manual_message)
        if isinstance(lookup, NotSubscribed):
            raise PreconditionError(missing_message)
        return lookup

    @staticmethod
    def _failed(
        e: BillingError,
        label: str,
        org: Organization,
        subscription_id: str | None = None,
        op_id: str | None = None,
    ) -> BillingError:
        logger.error(
            f"[billing] Failed to {label} for org {org.id} "
            f"(subscription={subscription_id}, op_id={op_id}): {e.kind.value} {e.message}"
        )
        return e.for_operation(label, op_id)

    def _audit(
        self,
        actor: Actor,
        org: Organization,
        action: str,
        before: CloudConfig,
        after: dict | None = None,
    ) -> None:
        self.audit.record(
            actor,
            org.id,
            resource_type=RESOURCE_TYPE,
            resource_id=str(org.id),
            action=action,
            before=before.to_document(),
            after=after,
        )

    async def _write_back(
        self,
        db: AsyncSession,
        org: Organization,
        customer_id: str | None = None,
        subscription_id: str | None = None,
        clear_subscription: bool = False,
    ) -> CloudConfig:
        """
        Write processor-confirmed identifiers into cloud_config.

        Re-reads the row under a lock so concurrent writes to other keys of the
        document are not lost.
        """
        locked = await organization_ops.get_for_update(db, org.id) or org
        config = organization_ops.parse_cloud_config(locked)
        ref = config.stripe or ProcessorRef()
        if customer_id:
            ref.customer_id = customer_id
        if clear_subscription:
            ref.active_subscription_id = None
        elif subscription_id:
            ref.active_subscription_id = subscription_id
        config.stripe = ref
        await organization_ops.update_cloud_config(db, locked, config)
        return config

    # ─────────────────────────────────────────────────────────────────────────
    # Projection
    # ─────────────────────────────────────────────────────────────────────────

    async def get_subscription_info(self, org: Organization) -> SubscriptionInfo:
        """
        Project the organization's subscription. Never mutates state.

        Without a recorded subscription id (or under a manual plan) the answer
        is synthesized from the local billing cycle with no network call.
        """
        config = organization_ops.parse_cloud_config(org)
        lookup = resolve_subscription(config)

        if not isinstance(lookup, Ok):
            return SubscriptionInfo(
                state=derive_state(lookup).value,
                billing_period=current_period(org),
                has_valid_payment_method=False,
                manual_plan=lookup.plan if isinstance(lookup, ManualOverride) else None,
            )

        try:
            sub = await self.client.get(
                f"/subscribe/{lookup.subscription_id}",
                org_id=str(org.id),
                response_model=ProcessorSubscription,
            )
        except BillingError as e:
            raise self._failed(e, "get subscription info", org, lookup.subscription_id) from e

        now_ts = int(datetime.now(UTC).timestamp())
        return SubscriptionInfo(
            state=derive_state(lookup, sub, now_ts).value,
            subscription_id=sub.id,
            product_id=sub.product_id,
            status=sub.status,
            cancellation=project_cancellation(sub, now_ts),
            scheduled_change=project_scheduled_change(sub),
            billing_period=project_billing_period(sub),
            discounts=[Discount.model_validate(d.model_dump()) for d in sub.discounts],
            has_valid_payment_method=sub.has_valid_payment_method,
        )

    async def get_customer_portal_url(self, org: Organization) -> str:
        config = organization_ops.parse_cloud_config(org)
        if not config.customer_id:
            raise PreconditionError("No billing customer found")

        try:
            result = await self.client.post(
                "/billing/portal",
                org_id=str(org.id),
                response_model=PortalResponse,
                body={"return_url": self._return_url(org), "customer_id": config.customer_id},
            )
        except BillingError as e:
            raise self._failed(e, "create billing portal session", org) from e
        return result.url

    # ─────────────────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────────────────

    async def create_checkout_session(
        self,
        org: Organization,
        actor: Actor,
        product_id: str,
    ) -> CheckoutSession:
        config = organization_ops.parse_cloud_config(org)
        if isinstance(resolve_subscription(config), ManualOverride):
            raise PreconditionError(
                "Cannot initialize checkout for orgs with a manual plan override"
            )

        return_url = self._return_url(org)
        try:
            result = await self.client.post(
                "/checkout/authorize",
                org_id=str(org.id),
                response_model=CheckoutResponse,
                body={
                    "product_id": product_id,
                    "customer_id": config.customer_id,
                    "org_id": str(org.id),
                    "success_url": return_url,
                    "cancel_url": return_url,
                    "cloud_region": settings.cloud_region,
                    "user_id": actor.user_id,
                    "user_email": actor.email,
                },
            )
            if not result.url:
                raise ProcessorError(ErrorKind.INTERNAL, "no URL returned")
        except BillingError as e:
            raise self._failed(e, "create checkout session", org) from e

        self._audit(actor, org, "billing.create_checkout_session", before=config)
        logger.info(f"[billing] Checkout session created for org {org.id} (product={product_id})")
        return CheckoutSession(url=result.url, session_id=result.session_id)

    async def change_plan(
        self,
        db: AsyncSession,
        org: Organization,
        actor: Actor,
        new_product_id: str,
        op_id: str | None = None,
    ) -> OperationResult:
        config = organization_ops.parse_cloud_config(org)
        active = self._require_subscription(
            resolve_subscription(config),
            manual_message="Cannot change plan for orgs with a manually set plan",
            missing_message="Organization does not have an active subscription",
        )

        try:
            ack = await self.client.patch(
                f"/subscribe/{active.subscription_id}",
                org_id=str(org.id),
                response_model=MutationAck,
                body={
                    "product_id": new_product_id,
                    "op_id": op_id,
                    "user_id": actor.user_id,
                    "user_email": actor.email,
                },
            )
        except BillingError as e:
            raise self._failed(e, "change plan", org, active.subscription_id, op_id) from e

        # Some plan changes replace the subscription; record the processor's new id
        if ack.id and ack.id != active.subscription_id:
            await self._write_back(db, org, subscription_id=ack.id)
            logger.info(
                f"[billing] Org {org.id} subscription replaced: "
                f"{active.subscription_id} -> {ack.id}"
            )

        self._audit(actor, org, "billing.change_plan", before=config, after=PROCESSOR_OWNED)
        return OperationResult(status="success", op_id=op_id)

    async def cancel(
        self,
        org: Organization,
        actor: Actor,
        op_id: str | None = None,
    ) -> OperationResult:
        """Cancel at period end."""
        config = organization_ops.parse_cloud_config(org)
        active = self._require_subscription(
            resolve_subscription(config),
            manual_message="Cannot cancel subscription for orgs with a manually set plan",
            missing_message="No active subscription to cancel",
        )

        try:
            await self.client.delete(
                f"/subscribe/{active.subscription_id}",
                org_id=str(org.id),
                response_model=MutationAck,
                query={"cancel_at_period_end": "true", "op_id": op_id},
            )
        except BillingError as e:
            raise self._failed(e, "cancel subscription", org, active.subscription_id, op_id) from e

        self._audit(actor, org, "billing.cancel", before=config, after=PROCESSOR_OWNED)
        return OperationResult(status="success", op_id=op_id)

    async def reactivate(
        self,
        org: Organization,
        actor: Actor,
        op_id: str | None = None,
    ) -> OperationResult:
        """Undo a scheduled cancellation; the processor also drops any pending switch."""
        config = organization_ops.parse_cloud_config(org)
        active = self._require_subscription(
            resolve_subscription(config),
            manual_message="Cannot reactivate subscription for orgs with a manually set plan",
            missing_message="No active subscription to reactivate",
        )

        try:
            await self.client.patch(
                f"/subscribe/{active.subscription_id}",
                org_id=str(org.id),
                response_model=MutationAck,
                body={
                    "reactivate": True,
                    "op_id": op_id,
                    "user_id": actor.user_id,
                    "user_email": actor.email,
                },
            )
        except BillingError as e:
            raise self._failed(
                e, "reactivate subscription", org, active.subscription_id, op_id
            ) from e

        self._audit(actor, org, "billing.reactivate", before=config, after=PROCESSOR_OWNED)
        return OperationResult(status="success", op_id=op_id)

    async def cancel_immediately_and_invoice(
        self,
        db: AsyncSession,
        org: Organization,
        actor: Actor,
        op_id: str | None = None,
    ) -> OperationResult:
        """
        Cancel now and invoice outstanding usage.

        An organization without a subscription is a noop, not an error, so
        teardown paths can call this unconditionally.
        """
        config = organization_ops.parse_cloud_config(org)
        if not config.subscription_id:
            logger.info(f"[billing] Cancel-now for org {org.id}: no active subscription, noop")
            return OperationResult(status="noop", op_id=op_id)
        active = self._require_subscription(
            resolve_subscription(config),
            manual_message="Cannot cancel subscription for orgs with a manually set plan",
            missing_message="No active subscription to cancel",
        )

        try:
            await self.client.delete(
                f"/subscribe/{active.subscription_id}",
                org_id=str(org.id),
                response_model=MutationAck,
                query={"immediate": "true", "invoice_now": "true", "op_id": op_id},
            )
        except BillingError as e:
            raise self._failed(
                e, "cancel subscription immediately", org, active.subscription_id, op_id
            ) from e

        after = await self._write_back(db, org, clear_subscription=True)
        self._audit(
            actor,
            org,
            "billing.cancel_immediately_and_invoice",
            before=config,
            after=after.to_document(),
        )
        return OperationResult(status="success", op_id=op_id)

    async def clear_plan_switch_schedule(
        self,
        org: Organization,
        actor: Actor,
        op_id: str | None = None,
    ) -> OperationResult:
        config = organization_ops.parse_cloud_config(org)
        active = self._require_subscription(
            resolve_subscription(config),
            manual_message="Cannot change plan for orgs with a manually set plan",
            missing_message="No active subscription found",
        )

        try:
            await self.client.post(
                f"/subscribe/{active.subscription_id}/clear-schedule",
                org_id=str(org.id),
                response_model=MutationAck,
                body={"op_id": op_id},
            )
        except BillingError as e:
            raise self._failed(
                e, "clear plan switch schedule", org, active.subscription_id, op_id
            ) from e

        self._audit(
            actor, org, "billing.clear_plan_switch_schedule", before=config, after=PROCESSOR_OWNED
        )
        return OperationResult(status="success", op_id=op_id)

    async def apply_promotion_code(
        self,
        org: Organization,
        actor: Actor,
        code: str,
        op_id: str | None = None,
    ) -> PromotionResult:
        config = organization_ops.parse_cloud_config(org)
        active = self._require_subscription(
            resolve_subscription(config),
            manual_message="Cannot apply promotion codes for orgs with a manually set plan",
            missing_message="Organization does not have an active subscription",
        )

        try:
            await self.client.post(
                f"/subscribe/{active.subscription_id}/promotion",
                org_id=str(org.id),
                response_model=MutationAck,
                body={
                    "code": code,
                    "op_id": op_id,
                    "user_id": actor.user_id,
                    "user_email": actor.email,
                },
            )
        except BillingError as e:
            if "prior transactions" in e.message:
                logger.info(
                    f"[billing] Promotion {code} rejected for org {org.id}: prior transactions"
                )
                raise ProcessorError(
                    ErrorKind.BAD_REQUEST,
                    PROMOTION_NEW_CUSTOMERS_ONLY,
                    status_code=e.status_code,
                ) from e
            raise self._failed(
                e, "apply promotion code", org, active.subscription_id, op_id
            ) from e

        self._audit(
            actor, org, "billing.apply_promotion_code", before=config, after=PROCESSOR_OWNED
        )
        return PromotionResult()

    # ─────────────────────────────────────────────────────────────────────────
    # Manual plan administration (local only, never touches the processor)
    # ─────────────────────────────────────────────────────────────────────────

    async def assign_manual_plan(
        self,
        db: AsyncSession,
        org: Organization,
        actor: Actor,
        plan: str,
    ) -> SubscriptionInfo:
        if not is_plan(plan):
            raise BillingError(ErrorKind.BAD_REQUEST, f"Unknown plan: {plan}")

        locked = await organization_ops.get_for_update(db, org.id) or org
        before = organization_ops.parse_cloud_config(locked)
        after = before.model_copy(deep=True)
        after.plan = plan
        await organization_ops.update_cloud_config(db, locked, after)

        self._audit(
            actor, org, "billing.assign_manual_plan", before=before, after=after.to_document()
        )
        logger.info(f"[billing] Org {org.id} placed on manual plan {plan}")
        return await self.get_subscription_info(locked)

    async def clear_manual_plan(
        self,
        db: AsyncSession,
        org: Organization,
        actor: Actor,
    ) -> OperationResult:
        locked = await organization_ops.get_for_update(db, org.id) or org
        before = organization_ops.parse_cloud_config(locked)
        if not before.plan:
            return OperationResult(status="noop")

        after = before.model_copy(deep=True)
        after.plan = None
        await organization_ops.update_cloud_config(db, locked, after)

        self._audit(
            actor, org, "billing.clear_manual_plan", before=before, after=after.to_document()
        )
        logger.info(f"[billing] Org {org.id} manual plan {before.plan} cleared")
        return OperationResult(status="success")

    # ─────────────────────────────────────────────────────────────────────────
    # Processor-driven sync (webhooks)
    # ─────────────────────────────────────────────────────────────────────────

    async def record_checkout_completed(
        self,
        db: AsyncSession,
        org: Organization,
        customer_id: str | None,
        subscription_id: str | None,
    ) -> None:
        before = organization_ops.parse_cloud_config(org)
        after = await self._write_back(
            db, org, customer_id=customer_id, subscription_id=subscription_id
        )
        self._audit(
            Actor.system(),
            org,
            "billing.sync.checkout_completed",
            before=before,
            after=after.to_document(),
        )

    async def record_subscription_updated(
        self,
        db: AsyncSession,
        org: Organization,
        subscription_id: str,
    ) -> bool:
        """Record a processor-reported subscription id. Returns True if it changed."""
        before = organization_ops.parse_cloud_config(org)
        if before.subscription_id == subscription_id:
            return False
        after = await self._write_back(db, org, subscription_id=subscription_id)
        self._audit(
            Actor.system(),
            org,
            "billing.sync.subscription_updated",
            before=before,
            after=after.to_document(),
        )
        return True

    async def record_subscription_canceled(
        self,
        db: AsyncSession,
        org: Organization,
        subscription_id: str,
    ) -> bool:
        """
        Clear the active subscription id after terminal cancellation.

        Only the subscription currently on record is cleared; an event for an
        older, already-replaced subscription is ignored.
        """
        before = organization_ops.parse_cloud_config(org)
        if before.subscription_id != subscription_id:
            return False
        after = await self._write_back(db, org, clear_subscription=True)
        self._audit(
            Actor.system(),
            org,
            "billing.sync.subscription_canceled",
            before=before,
            after=after.to_document(),
        )
        return True
