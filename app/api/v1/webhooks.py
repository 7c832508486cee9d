"""Processor webhook endpoint."""

import logging

from fastapi import APIRouter, Request

from app.api.deps import Billing, DbSession
from app.config import settings
from app.core.exceptions import ValidationError
from app.services.billing.events import SIGNATURE_HEADER, construct_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/commerce")
async def handle_commerce_webhook(
    request: Request,
    db: DbSession,
    billing: Billing,
) -> dict[str, str]:
    """
    Handle commerce webhook events.

    No session authentication: the payload is verified by its HMAC signature.
    Handlers are idempotent, so redeliveries are acknowledged without effect.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")

    try:
        event = construct_event(payload, signature, settings.commerce_webhook_secret)
    except ValueError as e:
        raise ValidationError(str(e)) from None

    status = await billing.handle_event(db, event)
    return {"status": status}
