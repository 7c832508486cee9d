from app.models.audit_log import AuditLog
from app.models.organization import Organization
from app.models.usage import (
    UsageAggregationMethod,
    UsageMeter,
    UsageMeterType,
    UsageRecord,
)

__all__ = [
    "AuditLog",
    "Organization",
    "UsageMeter",
    "UsageMeterType",
    "UsageAggregationMethod",
    "UsageRecord",
]
