"""
Invoice and subscription-history projector.

Read-only projections of processor records into the canonical shapes in
app.schemas.billing. Nothing is stored locally and there is no fallback:
financial history either comes from the processor or the call fails.
"""

import logging
from datetime import UTC, datetime

from app.domain.organization_operations import organization_ops
from app.models.organization import Organization
from app.schemas.billing import (
    BillingPeriod,
    CostBreakdown,
    Invoice,
    InvoiceCursors,
    InvoicePage,
    InvoiceSummary,
    PaymentMethod,
    SubscriptionHistoryEntry,
)
from app.services.processor import BillingError, CommerceClient, ErrorKind
from app.services.processor.types import (
    HistoricalSubscription,
    InvoicesResponse,
    PaymentMethodsResponse,
    ProcessorInvoice,
    ProcessorPaymentMethod,
    ProductsResponse,
    SubscriptionsResponse,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
NO_CUSTOMER_MESSAGE = "No billing customer found"


def _from_epoch(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value else None


def to_invoice(inv: ProcessorInvoice) -> Invoice:
    return Invoice(
        id=inv.id,
        number=inv.number,
        status=inv.status,
        currency=inv.currency,
        created=datetime.fromtimestamp(inv.created, UTC),
        hosted_invoice_url=inv.hosted_invoice_url,
        invoice_pdf_url=inv.invoice_pdf_url,
        breakdown=CostBreakdown(
            subscription_cents=inv.breakdown.subscription_cents,
            usage_cents=inv.breakdown.usage_cents,
            discount_cents=inv.breakdown.discount_cents,
            tax_cents=inv.breakdown.tax_cents,
            total_cents=inv.breakdown.total_cents,
        ),
    )


def to_invoice_summary(inv: ProcessorInvoice) -> InvoiceSummary:
    return InvoiceSummary(
        id=inv.id,
        number=inv.number,
        status=inv.status,
        created=datetime.fromtimestamp(inv.created, UTC),
        total_cents=inv.breakdown.total_cents,
        currency=inv.currency,
    )


def to_payment_method(method: ProcessorPaymentMethod) -> PaymentMethod:
    label = method.label
    if not label:
        if method.type == "card" and method.last4:
            label = f"{(method.brand or 'Card').title()} ending in {method.last4}"
        else:
            label = method.type.title()
    return PaymentMethod(id=method.id, type=method.type, label=label, is_default=method.is_default)


def subscription_product_ids(sub: HistoricalSubscription) -> list[str]:
    """Product ids on a subscription's line items, in order, without repeats."""
    ids = [item.product_id for item in sub.items]
    if not ids and sub.product_id:
        ids = [sub.product_id]
    return list(dict.fromkeys(ids))


class InvoiceProjector:
    """Fetches and normalizes invoices, subscription history and payment methods."""

    def __init__(self, client: CommerceClient):
        self.client = client

    @staticmethod
    def _customer_id(org: Organization) -> str:
        config = organization_ops.parse_cloud_config(org)
        if not config.customer_id:
            raise BillingError(ErrorKind.INTERNAL, NO_CUSTOMER_MESSAGE)
        return config.customer_id

    async def get_invoices(
        self,
        org: Organization,
        limit: int = 10,
        starting_after: str | None = None,
        ending_before: str | None = None,
    ) -> InvoicePage:
        """One page of invoices, newest first, with cursors for the neighbours."""
        customer_id = self._customer_id(org)
        config = organization_ops.parse_cloud_config(org)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        try:
            result = await self.client.get(
                "/invoices",
                org_id=str(org.id),
                response_model=InvoicesResponse,
                query={
                    "customer_id": customer_id,
                    "subscription_id": config.subscription_id,
                    "limit": str(limit),
                    "starting_after": starting_after,
                    "ending_before": ending_before,
                },
            )
        except BillingError as e:
            logger.error(f"[billing] Failed to list invoices for org {org.id}: {e.message}")
            raise e.for_operation("list invoices") from e

        invoices = [to_invoice(inv) for inv in result.invoices[:limit]]
        has_more = result.has_more or len(result.invoices) > limit
        next_cursor = result.cursors.next
        if next_cursor is None and has_more and invoices:
            next_cursor = invoices[-1].id
        return InvoicePage(
            invoices=invoices,
            has_more=has_more,
            cursors=InvoiceCursors(next=next_cursor, prev=result.cursors.prev),
        )

    async def get_subscription_history(
        self,
        org: Organization,
        limit: int = 10,
    ) -> list[SubscriptionHistoryEntry]:
        """
        Prior and current subscriptions with product names resolved.

        Product names come from a single batched lookup over the distinct
        product ids, so the number of product fetches does not grow with the
        number of subscriptions.
        """
        customer_id = self._customer_id(org)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        try:
            result = await self.client.get(
                "/subscriptions",
                org_id=str(org.id),
                response_model=SubscriptionsResponse,
                query={"customer_id": customer_id, "status": "all", "limit": str(limit)},
            )
            subscriptions = result.subscriptions[:limit]

            product_ids = list(
                dict.fromkeys(pid for sub in subscriptions for pid in subscription_product_ids(sub))
            )
            names: dict[str, str] = {}
            if product_ids:
                products = await self.client.get(
                    "/products",
                    org_id=str(org.id),
                    response_model=ProductsResponse,
                    query={"ids": ",".join(product_ids)},
                )
                names = {product.id: product.name for product in products.products}
        except BillingError as e:
            logger.error(f"[billing] Failed to list subscriptions for org {org.id}: {e.message}")
            raise e.for_operation("list subscription history") from e

        history = []
        for sub in subscriptions:
            sub_product_ids = subscription_product_ids(sub)
            period = None
            if sub.current_period_start and sub.current_period_end:
                period = BillingPeriod(
                    start=datetime.fromtimestamp(sub.current_period_start, UTC),
                    end=datetime.fromtimestamp(sub.current_period_end, UTC),
                )
            history.append(
                SubscriptionHistoryEntry(
                    id=sub.id,
                    status=sub.status,
                    product_ids=sub_product_ids,
                    product_names=[names.get(pid, pid) for pid in sub_product_ids],
                    started_at=_from_epoch(sub.created),
                    ended_at=_from_epoch(sub.ended_at or sub.canceled_at),
                    billing_period=period,
                    invoices=[to_invoice_summary(inv) for inv in sub.invoices],
                )
            )
        return history

    async def get_payment_methods(self, org: Organization) -> list[PaymentMethod]:
        customer_id = self._customer_id(org)
        try:
            result = await self.client.get(
                "/payment-methods",
                org_id=str(org.id),
                response_model=PaymentMethodsResponse,
                query={"customer_id": customer_id},
            )
        except BillingError as e:
            logger.error(f"[billing] Failed to list payment methods for org {org.id}: {e.message}")
            raise e.for_operation("list payment methods") from e
        return [to_payment_method(method) for method in result.payment_methods]
