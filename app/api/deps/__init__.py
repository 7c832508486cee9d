"""API dependencies - re-exports from submodules."""

from .auth import CurrentActor, DbSession, get_current_actor
from .billing import Billing, get_billing_service

__all__ = [
    # Auth
    "get_current_actor",
    "CurrentActor",
    "DbSession",
    # Billing
    "get_billing_service",
    "Billing",
]
