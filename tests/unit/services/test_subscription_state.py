"""
Tests for the subscription state machine.

Tests cover:
- Manual plan override blocks every processor transition
- Precondition messages for organizations without a subscription
- Cancel-now as a noop without a subscription
- Promotion code error remapping
- Synthesized projection for unsubscribed organizations
- Cancellation / state projection from processor payloads
- Write-back of processor-confirmed ids into cloud_config
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.domain.organization_operations import organization_ops
from app.schemas.billing import Actor
from app.services.billing.cycle import current_period
from app.services.billing.results import ManualOverride, NotSubscribed, Ok
from app.services.billing.subscription_state import (
    PROMOTION_NEW_CUSTOMERS_ONLY,
    SubscriptionState,
    SubscriptionStateMachine,
    derive_state,
    project_cancellation,
)
from app.services.processor import BillingError, ErrorKind, PreconditionError, ProcessorError
from app.services.processor.types import CheckoutResponse, MutationAck, ProcessorSubscription

from tests.helpers.mock_factories import (
    make_commerce_client,
    make_mock_commerce_client,
    make_mock_db,
    make_mock_organization,
    request_json,
    subscribed_config,
)

ACTOR = Actor(user_id="user_1", email="owner@example.com")
NOW = 1_800_000_000


def _sub(**overrides) -> ProcessorSubscription:
    data = {"id": "sub_123", "status": "active", "product_id": "prod_pro"}
    data.update(overrides)
    return ProcessorSubscription.model_validate(data)


@pytest.fixture
def client():
    return make_mock_commerce_client()


@pytest.fixture
def machine(client, audit):
    return SubscriptionStateMachine(client, audit)


@pytest.fixture
def persisted():
    """Patch the locked re-read and cloud_config write used by write-backs."""
    with (
        patch.object(organization_ops, "get_for_update", new=AsyncMock(return_value=None)),
        patch.object(
            organization_ops,
            "update_cloud_config",
            new=AsyncMock(side_effect=lambda db, org, config: org),
        ) as update,
    ):
        yield update


class TestProjectCancellation:
    def test_future_cancel_at_wins(self):
        sub = _sub(cancel_at=NOW + 100, cancel_at_period_end=True, current_period_end=NOW + 50)
        assert project_cancellation(sub, NOW).cancel_at == NOW + 100

    def test_period_end_when_cancel_at_period_end(self):
        sub = _sub(cancel_at_period_end=True, current_period_end=NOW + 50)
        assert project_cancellation(sub, NOW).cancel_at == NOW + 50

    def test_past_cancel_at_falls_through_to_period_end(self):
        sub = _sub(cancel_at=NOW - 10, cancel_at_period_end=True, current_period_end=NOW + 50)
        assert project_cancellation(sub, NOW).cancel_at == NOW + 50

    def test_period_already_ended(self):
        sub = _sub(cancel_at_period_end=True, current_period_end=NOW - 1)
        assert project_cancellation(sub, NOW) is None

    def test_not_cancelling(self):
        assert project_cancellation(_sub(current_period_end=NOW + 50), NOW) is None


class TestDeriveState:
    OK = Ok(subscription_id="sub_123", customer_id="cus_123")

    def test_manual_override(self):
        assert derive_state(ManualOverride(plan="cloud:team")) == SubscriptionState.MANUAL

    def test_not_subscribed(self):
        assert derive_state(NotSubscribed()) == SubscriptionState.NONE

    def test_active(self):
        assert derive_state(self.OK, _sub(), NOW) == SubscriptionState.ACTIVE

    def test_cancel_scheduled(self):
        sub = _sub(cancel_at=NOW + 10)
        assert derive_state(self.OK, sub, NOW) == SubscriptionState.CANCEL_SCHEDULED

    def test_scheduled_change(self):
        sub = _sub(schedule={"id": "sched_1", "switch_at": NOW + 10})
        assert derive_state(self.OK, sub, NOW) == SubscriptionState.SCHEDULED_CHANGE

    def test_canceled(self):
        assert derive_state(self.OK, _sub(status="canceled"), NOW) == SubscriptionState.CANCELED


class TestManualPlanBlocksTransitions:
    """A manual plan fails fast and never reaches the processor."""

    def setup_method(self):
        self.org = make_mock_organization(cloud_config=subscribed_config(plan="cloud:team"))

    @pytest.mark.asyncio
    async def test_checkout(self, machine, client):
        with pytest.raises(PreconditionError, match="manual plan override"):
            await machine.create_checkout_session(self.org, ACTOR, "prod_pro")
        client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_change_plan(self, machine, client):
        with pytest.raises(PreconditionError, match="manually set plan"):
            await machine.change_plan(make_mock_db(), self.org, ACTOR, "prod_team")
        client.patch.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel(self, machine, client):
        with pytest.raises(PreconditionError):
            await machine.cancel(self.org, ACTOR)
        client.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_reactivate(self, machine, client):
        with pytest.raises(PreconditionError):
            await machine.reactivate(self.org, ACTOR)
        client.patch.assert_not_called()

    @pytest.mark.asyncio
    async def test_clear_schedule_and_promotion(self, machine, client):
        with pytest.raises(PreconditionError):
            await machine.clear_plan_switch_schedule(self.org, ACTOR)
        with pytest.raises(PreconditionError):
            await machine.apply_promotion_code(self.org, ACTOR, "SAVE10")
        client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_now(self, machine, client):
        with pytest.raises(PreconditionError):
            await machine.cancel_immediately_and_invoice(make_mock_db(), self.org, ACTOR)
        client.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_info_is_synthesized(self, machine, client):
        info = await machine.get_subscription_info(self.org)

        assert info.state == "MANUAL"
        assert info.manual_plan == "cloud:team"
        client.get.assert_not_called()


class TestNoSubscription:
    def setup_method(self):
        self.org = make_mock_organization(
            cloud_config=subscribed_config(subscription_id=None),
        )

    @pytest.mark.asyncio
    async def test_change_plan_requires_subscription(self, machine, client):
        with pytest.raises(PreconditionError) as exc_info:
            await machine.change_plan(make_mock_db(), self.org, ACTOR, "prod_team")

        assert exc_info.value.message == "Organization does not have an active subscription"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_cancel_message(self, machine):
        with pytest.raises(PreconditionError, match="No active subscription to cancel"):
            await machine.cancel(self.org, ACTOR)

    @pytest.mark.asyncio
    async def test_cancel_now_is_noop(self, machine, client, audit):
        result = await machine.cancel_immediately_and_invoice(
            make_mock_db(), self.org, ACTOR, op_id="op-1"
        )

        assert result.status == "noop"
        assert result.op_id == "op-1"
        client.delete.assert_not_called()
        audit.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_now_noop_under_manual_plan_without_subscription(self, machine, client):
        org = make_mock_organization(cloud_config={"plan": "cloud:team"})

        result = await machine.cancel_immediately_and_invoice(make_mock_db(), org, ACTOR)

        assert result.status == "noop"
        client.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_synthesized_info(self, machine, client):
        info = await machine.get_subscription_info(self.org)

        assert info.state == "NONE"
        assert info.cancellation is None
        assert info.has_valid_payment_method is False
        assert info.billing_period == current_period(self.org)
        client.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_portal_requires_customer(self, machine, client):
        org = make_mock_organization(cloud_config=None)

        with pytest.raises(PreconditionError, match="No billing customer found"):
            await machine.get_customer_portal_url(org)
        client.post.assert_not_called()


class TestTransitions:
    def setup_method(self):
        self.org = make_mock_organization(cloud_config=subscribed_config())

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, machine, client, audit):
        client.delete.return_value = MutationAck(id="sub_123")

        result = await machine.cancel(self.org, ACTOR, op_id="op-7")

        assert result.status == "success"
        kwargs = client.delete.call_args.kwargs
        assert client.delete.call_args.args[0] == "/subscribe/sub_123"
        assert kwargs["query"] == {"cancel_at_period_end": "true", "op_id": "op-7"}
        assert kwargs["org_id"] == str(self.org.id)
        assert audit.record.call_args.kwargs["action"] == "billing.cancel"

    @pytest.mark.asyncio
    async def test_processor_failure_is_relabelled(self, machine, client, audit):
        client.delete.side_effect = ProcessorError(ErrorKind.TIMEOUT, "timed out")

        with pytest.raises(ProcessorError) as exc_info:
            await machine.cancel(self.org, ACTOR, op_id="op-7")

        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert exc_info.value.message == "Failed to cancel subscription: timed out"
        assert exc_info.value.retryable is True
        audit.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_transient_failure_without_op_id_not_retryable(self, machine, client):
        client.patch.side_effect = ProcessorError(ErrorKind.INTERNAL, "boom")

        with pytest.raises(ProcessorError) as exc_info:
            await machine.reactivate(self.org, ACTOR)

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_checkout_without_url(self, machine, client):
        client.post.return_value = CheckoutResponse(url="")

        with pytest.raises(ProcessorError) as exc_info:
            await machine.create_checkout_session(self.org, ACTOR, "prod_pro")

        assert exc_info.value.kind == ErrorKind.INTERNAL
        assert exc_info.value.message == "Failed to create checkout session: no URL returned"

    @pytest.mark.asyncio
    async def test_promotion_prior_transactions_remapped(self, machine, client):
        client.post.side_effect = ProcessorError(
            ErrorKind.BAD_REQUEST,
            "This customer has prior transactions",
            status_code=400,
        )

        with pytest.raises(ProcessorError) as exc_info:
            await machine.apply_promotion_code(self.org, ACTOR, "WELCOME")

        assert exc_info.value.kind == ErrorKind.BAD_REQUEST
        assert exc_info.value.message == PROMOTION_NEW_CUSTOMERS_ONLY

    @pytest.mark.asyncio
    async def test_promotion_other_errors_wrapped(self, machine, client):
        client.post.side_effect = ProcessorError(ErrorKind.NOT_FOUND, "No such code")

        with pytest.raises(ProcessorError) as exc_info:
            await machine.apply_promotion_code(self.org, ACTOR, "NOPE")

        assert exc_info.value.message == "Failed to apply promotion code: No such code"

    @pytest.mark.asyncio
    async def test_change_plan_records_replaced_subscription(
        self, machine, client, persisted
    ):
        client.patch.return_value = MutationAck(id="sub_456")

        await machine.change_plan(make_mock_db(), self.org, ACTOR, "prod_team", op_id="op-1")

        written = persisted.call_args.args[2]
        assert written.subscription_id == "sub_456"
        assert written.customer_id == "cus_123"

    @pytest.mark.asyncio
    async def test_change_plan_same_subscription_skips_write(self, machine, client, persisted):
        client.patch.return_value = MutationAck(id="sub_123")

        await machine.change_plan(make_mock_db(), self.org, ACTOR, "prod_team")

        persisted.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_now_clears_subscription(self, machine, client, persisted, audit):
        client.delete.return_value = MutationAck()

        result = await machine.cancel_immediately_and_invoice(make_mock_db(), self.org, ACTOR)

        assert result.status == "success"
        assert client.delete.call_args.kwargs["query"]["immediate"] == "true"
        written = persisted.call_args.args[2]
        assert written.subscription_id is None
        assert written.customer_id == "cus_123"
        assert audit.record.call_args.kwargs["action"] == "billing.cancel_immediately_and_invoice"


class TestManualPlanAdministration:
    @pytest.mark.asyncio
    async def test_unknown_plan_rejected(self, machine, persisted):
        org = make_mock_organization(cloud_config=subscribed_config())

        with pytest.raises(BillingError) as exc_info:
            await machine.assign_manual_plan(make_mock_db(), org, ACTOR, "cloud:galaxy")

        assert exc_info.value.kind == ErrorKind.BAD_REQUEST
        persisted.assert_not_called()

    @pytest.mark.asyncio
    async def test_assign_then_info_is_manual(self, machine, client, persisted):
        org = make_mock_organization(cloud_config=subscribed_config())

        def write(db, target, config):
            target.cloud_config = config.to_document()
            return target

        persisted.side_effect = write

        info = await machine.assign_manual_plan(make_mock_db(), org, ACTOR, "cloud:team")

        assert info.state == "MANUAL"
        assert org.cloud_config["plan"] == "cloud:team"
        assert org.cloud_config["stripe"]["activeSubscriptionId"] == "sub_123"
        client.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_clear_without_plan_is_noop(self, machine, persisted):
        org = make_mock_organization(cloud_config=subscribed_config())

        result = await machine.clear_manual_plan(make_mock_db(), org, ACTOR)

        assert result.status == "noop"
        persisted.assert_not_called()


class TestWebhookSync:
    @pytest.mark.asyncio
    async def test_canceled_event_for_other_subscription_ignored(self, machine, persisted):
        org = make_mock_organization(cloud_config=subscribed_config())

        changed = await machine.record_subscription_canceled(make_mock_db(), org, "sub_old")

        assert changed is False
        persisted.assert_not_called()

    @pytest.mark.asyncio
    async def test_updated_event_is_idempotent(self, machine, persisted):
        org = make_mock_organization(cloud_config=subscribed_config())

        assert await machine.record_subscription_updated(make_mock_db(), org, "sub_123") is False
        assert await machine.record_subscription_updated(make_mock_db(), org, "sub_789") is True
        assert persisted.call_count == 1


class TestRoundTrip:
    """State changes are visible through a fresh projection, nothing is cached."""

    @pytest.mark.asyncio
    async def test_change_plan_then_read(self, audit):
        state = {"product_id": "prod_pro", "cancel_at_period_end": False}

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/subscribe/sub_123")
            if request.method == "PATCH":
                body = request_json(request)
                if "product_id" in body:
                    state["product_id"] = body["product_id"]
                if body.get("reactivate"):
                    state["cancel_at_period_end"] = False
                return httpx.Response(200, json={"id": "sub_123"})
            if request.method == "DELETE":
                state["cancel_at_period_end"] = True
                return httpx.Response(200, json={"id": "sub_123"})
            now = int(datetime.now(UTC).timestamp())
            return httpx.Response(
                200,
                json={
                    "id": "sub_123",
                    "status": "active",
                    "product_id": state["product_id"],
                    "cancel_at_period_end": state["cancel_at_period_end"],
                    "current_period_start": now - 86400,
                    "current_period_end": now + 86400,
                    "has_valid_payment_method": True,
                },
            )

        machine = SubscriptionStateMachine(make_commerce_client(handler), audit)
        org = make_mock_organization(cloud_config=subscribed_config())

        await machine.change_plan(make_mock_db(), org, ACTOR, "prod_team")
        info = await machine.get_subscription_info(org)
        assert info.product_id == "prod_team"
        assert info.state == "ACTIVE"

        await machine.cancel(org, ACTOR)
        info = await machine.get_subscription_info(org)
        assert info.state == "CANCEL_SCHEDULED"
        assert info.cancellation is not None

        await machine.reactivate(org, ACTOR)
        info = await machine.get_subscription_info(org)
        assert info.state == "ACTIVE"
        assert info.cancellation is None
        assert info.has_valid_payment_method is True
