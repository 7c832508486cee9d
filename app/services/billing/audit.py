"""
Audit emitter - fire-and-forget append of billing mutations.

record() schedules the write as an independent task with its own database
session and returns immediately, so the primary operation never waits on (or
fails because of) the audit write. Failed writes are logged with traceback.

Inside a deferred() block, records are held and only scheduled once the block
exits cleanly. The billing service wraps each unit of work together with its
commit, so an entry is never written for a change that was rolled back.
"""

import asyncio
import logging
import uuid as uuid_pkg
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from functools import partial
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.audit_operations import audit_ops
from app.schemas.billing import Actor

logger = logging.getLogger(__name__)

# Marker stored as "after" when the processor owns the resulting state
PROCESSOR_OWNED: dict[str, Any] = {"source": "commerce"}

_held: ContextVar[list[Callable[[], Any]] | None] = ContextVar("held_audit", default=None)


@contextmanager
def deferred() -> Iterator[None]:
    """Hold audit records made in this block until it exits without raising."""
    held: list[Callable[[], Any]] = []
    token = _held.set(held)
    try:
        yield
    finally:
        _held.reset(token)
    for schedule in held:
        schedule()


class AuditEmitter:
    """Schedules audit writes outside the request's transaction."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task[None]] = set()

    def record(
        self,
        actor: Actor,
        organization_id: uuid_pkg.UUID,
        resource_type: str,
        resource_id: str,
        action: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> asyncio.Task[None] | None:
        """Schedule one audit write. Returns None while held by deferred()."""
        schedule = partial(
            self._schedule,
            actor,
            organization_id,
            resource_type,
            resource_id,
            action,
            before,
            after,
        )
        held = _held.get()
        if held is not None:
            held.append(schedule)
            return None
        return schedule()

    def _schedule(
        self,
        actor: Actor,
        organization_id: uuid_pkg.UUID,
        resource_type: str,
        resource_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(
            self._write(actor, organization_id, resource_type, resource_id, action, before, after),
            name=f"audit-{action}-{organization_id}",
        )
        # Hold a reference until done so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _write(
        self,
        actor: Actor,
        organization_id: uuid_pkg.UUID,
        resource_type: str,
        resource_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                await audit_ops.append(
                    session,
                    organization_id=organization_id,
                    user_id=actor.user_id,
                    user_email=actor.email,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    action=action,
                    before=before,
                    after=after,
                )
                await session.commit()
            logger.debug(f"[audit] {action} recorded for org {organization_id}")
        except Exception as e:
            logger.error(
                f"[audit] Failed to record {action} for org {organization_id}: {e}",
                exc_info=True,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for scheduled writes to finish. Called on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
