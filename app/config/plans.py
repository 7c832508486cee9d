"""Plan catalog - labels for the plans an organization can be placed on.

Processor-managed organizations are billed per product id; the labels below
are what a manual plan override may be set to.
"""

PLANS: frozenset[str] = frozenset(
    {
        "cloud:free",
        "cloud:pro",
        "cloud:team",
        "cloud:dev",
        "cloud:premium",
        "cloud:max",
        "self-hosted:pro",
        "self-hosted:team",
        "self-hosted:dev",
    }
)


def is_plan(value: str) -> bool:
    """Return True if value names a plan in the catalog."""
    return value in PLANS
