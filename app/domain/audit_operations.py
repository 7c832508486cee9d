"""Domain operations for the append-only audit log."""

import uuid as uuid_pkg
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.base_operations import BaseOperations
from app.models.audit_log import AuditLog


class AuditOperations(BaseOperations[AuditLog]):
    """Append-only access to AuditLog (no update or delete)."""

    def __init__(self) -> None:
        super().__init__(AuditLog)

    async def append(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
        user_id: str,
        resource_type: str,
        resource_id: str,
        action: str,
        user_email: str | None = None,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Write one audit entry."""
        return await self.create(
            db,
            {
                "organization_id": organization_id,
                "user_id": user_id,
                "user_email": user_email,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "action": action,
                "before": before,
                "after": after,
            },
        )


audit_ops = AuditOperations()
