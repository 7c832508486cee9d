"""Organization model - the billing tenant."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Column, DateTime, Float, Integer, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


class Organization(SQLModel, table=True):
    """
    Organization model - the billing tenant.

    Owns one processor subscription (referenced from cloud_config), one credit
    balance and any number of usage meters. This service never deletes an
    organization; expiry is recorded in expired_at.

    cloud_config layout (camelCase keys, shared with the console frontend)::

        {
            "stripe": {"customerId": "cus_...", "activeSubscriptionId": "sub_..."},
            "plan": "cloud:team",              # manual plan override, optional
            "billingCycleAnchor": "2026-01-15T00:00:00+00:00",
        }
    """

    __tablename__ = "organizations"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    name: str = Field(max_length=100, nullable=False)

    # Commercial state
    cloud_config: dict[str, Any] | None = Field(default=None, sa_column=Column(JSONB))
    credits: float = Field(
        default=0,
        sa_column=Column(Float, nullable=False, server_default=text("0")),
    )
    # Usage counter for the current cycle, refreshed by the metering pipeline
    cloud_current_cycle_usage: int | None = Field(
        default=None,
        sa_column=Column(Integer, nullable=True),
    )

    # Timestamps
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    updated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": text("now()")},
    )
    expired_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
