"""
Billing service - the reconciliation façade exposed to the API layer.

Composes the subscription state machine, usage aggregator, invoice projector,
credit ledger and audit emitter around one injected CommerceClient. Every
method loads the organization itself and returns plain data from
app.schemas.billing; failures are BillingError with an ErrorKind.

Every write path commits before it returns, so a result is only remembered
for op_id replay, and only audited, once its local writes are durable.

Cloud billing gating: when the deployment has no cloud region configured,
reads answer with empty shapes and mutations fail with PRECONDITION.
"""

import logging
import uuid as uuid_pkg
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.database import async_session_maker
from app.domain.credit_operations import credit_ops
from app.domain.organization_operations import organization_ops
from app.domain.usage_operations import usage_ops
from app.models.organization import Organization
from app.schemas.billing import (
    Actor,
    CheckoutSession,
    CreditBalance,
    CreditPurchaseResult,
    CreditTransaction,
    InvoicePage,
    OperationResult,
    PaymentMethod,
    PromotionResult,
    SubscriptionHistoryEntry,
    SubscriptionInfo,
    UsageInfo,
)
from app.services.billing.audit import AuditEmitter, deferred
from app.services.billing.events import CommerceEvent, CommerceEventHandler
from app.services.billing.idempotency import IdempotencyKey, IdempotencyStore
from app.services.billing.invoices import InvoiceProjector
from app.services.billing.subscription_state import SubscriptionStateMachine
from app.services.billing.usage import UsageAggregator
from app.services.processor import BillingError, CommerceClient, ErrorKind, PreconditionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BILLING_DISABLED_MESSAGE = "Cloud billing is not enabled for this deployment"


class BillingService:
    """Reconciliation orchestrator. One instance per process, built at startup."""

    def __init__(
        self,
        client: CommerceClient,
        session_factory: Callable[[], AsyncSession],
        idempotency: IdempotencyStore | None = None,
        audit: AuditEmitter | None = None,
    ):
        self.client = client
        self.audit = audit or AuditEmitter(session_factory)
        self.idempotency = idempotency or IdempotencyStore.from_settings()
        self.subscriptions = SubscriptionStateMachine(client, self.audit)
        self.usage = UsageAggregator(client)
        self.invoices = InvoiceProjector(client)
        self.events = CommerceEventHandler(self)

    async def aclose(self) -> None:
        """Flush pending audit writes and close the processor client."""
        if self.audit.pending:
            logger.info(f"[billing] Waiting for {self.audit.pending} pending audit writes")
        await self.audit.drain()
        await self.client.aclose()

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    async def _load_org(db: AsyncSession, org_id: uuid_pkg.UUID) -> Organization:
        org = await organization_ops.get(db, org_id)
        if org is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Organization not found")
        return org

    @staticmethod
    def _require_billing() -> None:
        if not settings.billing_enabled:
            raise PreconditionError(BILLING_DISABLED_MESSAGE)

    def _key(
        self,
        actor: Actor,
        org_id: uuid_pkg.UUID,
        operation: str,
        op_id: str | None,
    ) -> IdempotencyKey | None:
        if not op_id:
            return None
        return self.idempotency.key(actor.user_id, str(org_id), operation, op_id)

    async def _commit(self, db: AsyncSession, run: Callable[[], Awaitable[T]]) -> T:
        """
        Run one unit of local work and commit it before returning.

        Audit records made by run are released only after the commit succeeds.
        A failed commit raises to the caller instead of surfacing after the
        response has been sent.
        """
        with deferred():
            result = await run()
            await db.commit()
        return result

    async def _mutate(
        self,
        db: AsyncSession,
        actor: Actor,
        org_id: uuid_pkg.UUID,
        operation: str,
        op_id: str | None,
        run: Callable[[], Awaitable[T]],
    ) -> T:
        self._require_billing()

        # The result is remembered only once its local writes are committed
        async def committed() -> T:
            return await self._commit(db, run)

        return await self.idempotency.run(self._key(actor, org_id, operation, op_id), committed)

    # ─────────────────────────────────────────────────────────────────────────
    # Subscription
    # ─────────────────────────────────────────────────────────────────────────

    async def get_subscription_info(
        self, db: AsyncSession, org_id: uuid_pkg.UUID
    ) -> SubscriptionInfo | None:
        if not settings.billing_enabled:
            return None
        org = await self._load_org(db, org_id)
        return await self.subscriptions.get_subscription_info(org)

    async def create_checkout_session(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
        product_id: str,
    ) -> CheckoutSession:
        self._require_billing()

        async def run() -> CheckoutSession:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.create_checkout_session(org, actor, product_id)

        return await self._commit(db, run)

    async def change_plan(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
        new_product_id: str,
        op_id: str | None = None,
    ) -> OperationResult:
        async def run() -> OperationResult:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.change_plan(db, org, actor, new_product_id, op_id)

        return await self._mutate(db, actor, org_id, "change_plan", op_id, run)

    async def cancel(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
        op_id: str | None = None,
    ) -> OperationResult:
        async def run() -> OperationResult:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.cancel(org, actor, op_id)

        return await self._mutate(db, actor, org_id, "cancel", op_id, run)

    async def reactivate(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
        op_id: str | None = None,
    ) -> OperationResult:
        async def run() -> OperationResult:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.reactivate(org, actor, op_id)

        return await self._mutate(db, actor, org_id, "reactivate", op_id, run)

    async def cancel_immediately_and_invoice(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
        op_id: str | None = None,
    ) -> OperationResult:
        # Teardown paths call this unconditionally; nothing to cancel without billing
        if not settings.billing_enabled:
            return OperationResult(status="noop", op_id=op_id)

        async def run() -> OperationResult:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.cancel_immediately_and_invoice(db, org, actor, op_id)

        return await self._mutate(db, actor, org_id, "cancel_immediately_and_invoice", op_id, run)

    async def clear_plan_switch_schedule(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
        op_id: str | None = None,
    ) -> OperationResult:
        async def run() -> OperationResult:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.clear_plan_switch_schedule(org, actor, op_id)

        return await self._mutate(db, actor, org_id, "clear_plan_switch_schedule", op_id, run)

    async def apply_promotion_code(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
        code: str,
        op_id: str | None = None,
    ) -> PromotionResult:
        async def run() -> PromotionResult:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.apply_promotion_code(org, actor, code, op_id)

        return await self._mutate(db, actor, org_id, "apply_promotion_code", op_id, run)

    async def get_customer_portal_url(self, db: AsyncSession, org_id: uuid_pkg.UUID) -> str | None:
        if not settings.billing_enabled:
            return None
        org = await self._load_org(db, org_id)
        return await self.subscriptions.get_customer_portal_url(org)

    async def assign_manual_plan(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
        plan: str,
    ) -> SubscriptionInfo:
        async def run() -> SubscriptionInfo:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.assign_manual_plan(db, org, actor, plan)

        return await self._commit(db, run)

    async def clear_manual_plan(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        actor: Actor,
    ) -> OperationResult:
        async def run() -> OperationResult:
            org = await self._load_org(db, org_id)
            return await self.subscriptions.clear_manual_plan(db, org, actor)

        return await self._commit(db, run)

    # ─────────────────────────────────────────────────────────────────────────
    # Usage
    # ─────────────────────────────────────────────────────────────────────────

    async def get_usage(self, db: AsyncSession, org_id: uuid_pkg.UUID) -> UsageInfo | None:
        if not settings.billing_enabled:
            return None
        org = await self._load_org(db, org_id)
        return await self.usage.get_usage(db, org)

    async def record_usage(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        meter_name: str,
        value: float,
        metadata: dict[str, Any] | None = None,
    ) -> OperationResult:
        """Append a usage event to a meter. Not gated: metering is local."""

        async def run() -> OperationResult:
            org = await self._load_org(db, org_id)
            await self.usage.record_usage(db, org, meter_name, value, metadata=metadata)
            return OperationResult(status="success")

        return await self._commit(db, run)

    # ─────────────────────────────────────────────────────────────────────────
    # Invoices, history, payment methods
    # ─────────────────────────────────────────────────────────────────────────

    async def get_invoices(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        limit: int = 10,
        starting_after: str | None = None,
        ending_before: str | None = None,
    ) -> InvoicePage:
        if not settings.billing_enabled:
            return InvoicePage()
        org = await self._load_org(db, org_id)
        return await self.invoices.get_invoices(
            org, limit=limit, starting_after=starting_after, ending_before=ending_before
        )

    async def get_subscription_history(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        limit: int = 10,
    ) -> list[SubscriptionHistoryEntry]:
        if not settings.billing_enabled:
            return []
        org = await self._load_org(db, org_id)
        return await self.invoices.get_subscription_history(org, limit=limit)

    async def get_payment_methods(
        self, db: AsyncSession, org_id: uuid_pkg.UUID
    ) -> list[PaymentMethod]:
        if not settings.billing_enabled:
            return []
        org = await self._load_org(db, org_id)
        return await self.invoices.get_payment_methods(org)

    # ─────────────────────────────────────────────────────────────────────────
    # Credits
    # ─────────────────────────────────────────────────────────────────────────

    async def purchase_credits(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        payment_event_id: str,
        amount: float,
        metadata: dict[str, Any] | None = None,
    ) -> CreditPurchaseResult:
        """
        Add credits for a confirmed payment, at most once per payment_event_id.

        A replayed event is not an error: it reports applied=False with the
        unchanged balance.
        """
        if amount <= 0:
            raise BillingError(ErrorKind.BAD_REQUEST, "Credit amount must be positive")

        async def run() -> CreditPurchaseResult:
            org = await self._load_org(db, org_id)
            purchase = await credit_ops.purchase(
                db, org.id, payment_event_id, amount, metadata=metadata
            )
            if purchase.applied:
                self.audit.record(
                    Actor.system(),
                    org.id,
                    resource_type="organization",
                    resource_id=str(org.id),
                    action="billing.purchase_credits",
                    before={"credits": purchase.balance - amount},
                    after={"credits": purchase.balance, "payment_event_id": payment_event_id},
                )
            return CreditPurchaseResult(
                applied=purchase.applied,
                credits=purchase.balance,
                payment_event_id=payment_event_id,
            )

        return await self._commit(db, run)

    async def get_credits(self, db: AsyncSession, org_id: uuid_pkg.UUID) -> CreditBalance:
        credits = await organization_ops.get_credits(db, org_id)
        if credits is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Organization not found")
        return CreditBalance(organization_id=str(org_id), credits=float(credits))

    async def get_credit_transactions(
        self,
        db: AsyncSession,
        org_id: uuid_pkg.UUID,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CreditTransaction]:
        org = await self._load_org(db, org_id)
        records = await usage_ops.list_credit_transactions(db, org.id, limit=limit, offset=offset)
        return [
            CreditTransaction(
                id=str(record.id),
                amount=record.value,
                payment_event_id=record.payment_event_id,
                timestamp=record.timestamp,
                metadata=record.record_metadata,
            )
            for record in records
        ]

    # ─────────────────────────────────────────────────────────────────────────
    # Webhooks
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_event(self, db: AsyncSession, event: CommerceEvent) -> str:
        """Apply a verified webhook event and commit its local writes."""
        return await self._commit(db, lambda: self.events.handle(db, event))


def create_billing_service(
    client: CommerceClient | None = None,
    session_factory: Callable[[], AsyncSession] | None = None,
) -> BillingService:
    """Build the service from settings. Called once from the app lifespan."""
    return BillingService(
        client=client or CommerceClient.from_settings(),
        session_factory=session_factory or async_session_maker,
    )
