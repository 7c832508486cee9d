"""Audit log model - immutable record of every billing mutation."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Column, DateTime, ForeignKey, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class AuditLog(SQLModel, table=True):
    """
    Audit log entry.

    Write-once: this service appends rows and never updates or deletes them.
    before/after typically hold the organization's cloud_config around the
    mutation; after is {"source": "commerce"} when the processor owns the
    resulting state.
    """

    __tablename__ = "audit_logs"

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

    # Actor (session user, or "system" for processor-driven changes)
    user_id: str = Field(max_length=255, nullable=False)
    user_email: str | None = Field(default=None, max_length=255, nullable=True)

    resource_type: str = Field(sa_column=Column(String(50), nullable=False))
    resource_id: str = Field(sa_column=Column(String(255), nullable=False))
    action: str = Field(sa_column=Column(String(100), nullable=False, index=True))

    before: dict[str, Any] | None = Field(default=None, sa_column=Column(JSONB, nullable=True))
    after: dict[str, Any] | None = Field(default=None, sa_column=Column(JSONB, nullable=True))

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
