"""Configuration package."""

from app.config.plans import PLANS, is_plan
from app.config.settings import Settings, settings

__all__ = [
    "PLANS",
    "is_plan",
    "Settings",
    "settings",
]
