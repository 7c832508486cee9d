"""Usage models - per-organization meters and their append-only records."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, Relationship, SQLModel


class UsageMeterType(str, Enum):
    """Capabilities a meter can count."""

    AI = "AI"
    STORAGE = "STORAGE"
    NETWORK = "NETWORK"
    NETWORK_EGRESS = "NETWORK_EGRESS"
    GPU = "GPU"
    CPU = "CPU"
    MEMORY = "MEMORY"
    CREDITS = "CREDITS"  # Credit purchases, one record per payment event


class UsageAggregationMethod(str, Enum):
    """How a meter folds new records into its current value."""

    SUM = "SUM"
    AVERAGE = "AVERAGE"
    MAX = "MAX"
    MIN = "MIN"
    LAST = "LAST"


class UsageMeter(SQLModel, table=True):
    """
    Usage meter - a named counter for one organization.

    Created lazily on the first usage event for a meter name. Reset at billing
    cycle boundaries by the metering pipeline, which stamps last_reset_at.
    """

    __tablename__ = "usage_meters"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_usage_meter_org_name"),
    )

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    organization_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str = Field(max_length=100, nullable=False)
    type: str = Field(
        default=UsageMeterType.AI.value,
        sa_column=Column(String(20), nullable=False),
    )
    unit: str = Field(default="units", max_length=50, nullable=False)
    aggregation_method: str = Field(
        default=UsageAggregationMethod.SUM.value,
        sa_column=Column(String(20), nullable=False, server_default="SUM"),
    )
    current_value: float = Field(
        default=0,
        sa_column=Column(Float, nullable=False, server_default=text("0")),
    )
    last_reset_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    updated_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )

    records: list["UsageRecord"] = Relationship(back_populates="meter")


class UsageRecord(SQLModel, table=True):
    """
    Usage record - one immutable event attributed to a meter.

    payment_event_id is set for records created by a processor payment
    confirmation. The unique constraint on it is what makes credit purchases
    idempotent: a replayed webhook cannot append a second record.
    """

    __tablename__ = "usage_records"
    __table_args__ = (
        Index("ix_usage_records_meter_timestamp", "usage_meter_id", "timestamp"),
    )

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    organization_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    usage_meter_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("usage_meters.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    value: float = Field(sa_column=Column(Float, nullable=False))
    timestamp: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    # "metadata" is reserved on declarative classes
    record_metadata: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column("metadata", JSONB, nullable=True),
    )
    payment_event_id: str | None = Field(
        default=None,
        sa_column=Column(String(255), nullable=True, unique=True),
    )
    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )

    meter: Optional["UsageMeter"] = Relationship(back_populates="records")
