"""Processor adapter - typed client for the commerce backend."""

from app.services.processor.client import ORG_HEADER, CommerceClient
from app.services.processor.exceptions import (
    BillingError,
    ErrorKind,
    PreconditionError,
    ProcessorConfigurationError,
    ProcessorError,
    kind_for_status,
)

__all__ = [
    "ORG_HEADER",
    "CommerceClient",
    "BillingError",
    "ErrorKind",
    "PreconditionError",
    "ProcessorConfigurationError",
    "ProcessorError",
    "kind_for_status",
]
