"""Identity and database session dependencies."""

from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import UnauthenticatedError
from app.schemas.billing import Actor


async def get_current_actor(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
) -> Actor:
    """
    Identity of the caller, as forwarded by the upstream auth gateway.

    The gateway authenticates the session and sets X-User-Id / X-User-Email;
    this service only uses them for audit attribution and idempotency scoping.
    """
    if not x_user_id:
        raise UnauthenticatedError()
    return Actor(user_id=x_user_id, email=x_user_email)


DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
