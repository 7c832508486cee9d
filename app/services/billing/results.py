"""
Result variants for subscription preconditions.

Whether an organization can be acted on through the processor is ordinary
control flow, not an exceptional condition. resolve_subscription() returns one
of three variants and each operation decides what the non-Ok variants mean for
it (a precondition error, a synthesized projection or a noop).
"""

from dataclasses import dataclass

from app.schemas.billing import CloudConfig


@dataclass(frozen=True)
class Ok:
    """The organization has a processor-managed subscription."""

    subscription_id: str
    customer_id: str | None


@dataclass(frozen=True)
class NotSubscribed:
    """No active subscription id is recorded (default/free tier)."""

    customer_id: str | None = None


@dataclass(frozen=True)
class ManualOverride:
    """A manual plan is set; the processor must not be touched."""

    plan: str


SubscriptionLookup = Ok | NotSubscribed | ManualOverride


def resolve_subscription(config: CloudConfig) -> SubscriptionLookup:
    """Classify an organization's cloud_config. A manual plan wins over everything."""
    if config.plan:
        return ManualOverride(plan=config.plan)
    if not config.subscription_id:
        return NotSubscribed(customer_id=config.customer_id)
    return Ok(subscription_id=config.subscription_id, customer_id=config.customer_id)
