from app.domain.audit_operations import audit_ops
from app.domain.credit_operations import credit_ops
from app.domain.organization_operations import organization_ops
from app.domain.usage_operations import usage_ops

__all__ = [
    "organization_ops",
    "usage_ops",
    "credit_ops",
    "audit_ops",
]
