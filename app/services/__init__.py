# Services package

from app.services.billing import BillingService, create_billing_service
from app.services.processor import CommerceClient

__all__ = [
    # Billing reconciliation
    "BillingService",
    "create_billing_service",
    # Processor adapter
    "CommerceClient",
]
