"""Billing service dependency."""

from typing import Annotated

from fastapi import Depends, Request

from app.services.billing import BillingService


def get_billing_service(request: Request) -> BillingService:
    """The process-wide BillingService built in the app lifespan."""
    billing: BillingService = request.app.state.billing
    return billing


Billing = Annotated[BillingService, Depends(get_billing_service)]
