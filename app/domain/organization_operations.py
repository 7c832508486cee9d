"""Domain operations for Organization model."""

import uuid as uuid_pkg

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.organization import Organization
from app.schemas.billing import CloudConfig


class OrganizationOperations:
    """Reads and the few writes this service makes to Organization."""

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Organization | None:
        """Get an organization by ID."""
        statement = select(Organization).where(Organization.id == id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_for_update(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Organization | None:
        """
        Get an organization with a row lock held until the transaction ends.

        populate_existing makes the locked read overwrite any copy already in
        the session, so callers see writes committed since their first load.
        """
        statement = (
            select(Organization)
            .where(Organization.id == id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    @staticmethod
    def parse_cloud_config(org: Organization) -> CloudConfig:
        """Parse the cloud_config JSONB document (None means an empty config)."""
        return CloudConfig.model_validate(org.cloud_config or {})

    async def update_cloud_config(
        self,
        db: AsyncSession,
        org: Organization,
        config: CloudConfig,
    ) -> Organization:
        """
        Replace the organization's cloud_config document.

        Callers only write fields the processor has already confirmed.
        """
        org.cloud_config = config.to_document()
        db.add(org)
        await db.flush()
        await db.refresh(org)
        return org

    async def get_credits(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> float | None:
        """Current credit balance, or None if the organization does not exist."""
        statement = select(Organization.credits).where(Organization.id == id)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def increment_credits(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
        amount: float,
    ) -> float:
        """
        Atomically add to the credit balance and return the new balance.

        Done as a single UPDATE ... RETURNING so concurrent increments never
        lose an update.
        """
        statement = (
            update(Organization)
            .where(Organization.id == id)
            .values(credits=Organization.credits + amount)
            .returning(Organization.credits)
        )
        result = await db.execute(statement)
        return float(result.scalar_one())


organization_ops = OrganizationOperations()
