"""
Billing cycle boundaries.

Cycles are monthly and start on the anchor's day of month. The anchor is
cloud_config.billingCycleAnchor when set, otherwise the organization's
creation time. Months shorter than the anchor day clamp to their last day
(an anchor on the 31st starts the February cycle on the 28th or 29th).
"""

import calendar
from datetime import UTC, datetime

from app.models.organization import Organization
from app.schemas.billing import BillingPeriod, CloudConfig


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _add_months(anchor: datetime, months: int) -> datetime:
    years, month_index = divmod(anchor.month - 1 + months, 12)
    year = anchor.year + years
    month = month_index + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def cycle_anchor(org: Organization, config: CloudConfig | None = None) -> datetime:
    if config is None:
        config = CloudConfig.model_validate(org.cloud_config or {})
    return _aware(config.billing_cycle_anchor or org.created_at)


def _cycle_index(anchor: datetime, now: datetime) -> int:
    """Number of whole cycles between the anchor and now (negative before it)."""
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    if _add_months(anchor, months) > now:
        months -= 1
    return months


def cycle_start(org: Organization, now: datetime | None = None) -> datetime:
    anchor = cycle_anchor(org)
    now = _aware(now or datetime.now(UTC))
    return _add_months(anchor, _cycle_index(anchor, now))


def cycle_end(org: Organization, now: datetime | None = None) -> datetime:
    anchor = cycle_anchor(org)
    now = _aware(now or datetime.now(UTC))
    return _add_months(anchor, _cycle_index(anchor, now) + 1)


def current_period(org: Organization, now: datetime | None = None) -> BillingPeriod:
    """The local billing period containing now."""
    now = now or datetime.now(UTC)
    return BillingPeriod(start=cycle_start(org, now), end=cycle_end(org, now))
