"""
Entitlement Repository

The entitlement store: the only place access checks read from.

Merge rules for concurrent or reordered writes:
- expires_at: the later of the stored and incoming values wins
- is_active: the write carrying the newer gateway event time wins
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.membership import Entitlement, utcnow
from app.infrastructure.db.models.entitlement import EntitlementModel
from app.infrastructure.db.models.product import ProductModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class EntitlementRepository(BaseRepository[EntitlementModel]):
    """Repository for (account, product) access windows."""

    def __init__(self, session: AsyncSession):
        super().__init__(EntitlementModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get(self, account_id: UUID, product_id: UUID) -> Optional[Entitlement]:
        """Entitlement row for the pair regardless of state."""
        stmt = (
            select(EntitlementModel)
            .where(
                EntitlementModel.account_id == account_id,
                EntitlementModel.product_id == product_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return Entitlement.model_validate(model) if model else None

    async def get_active_entitlement(
        self,
        account_id: UUID,
        product_id: UUID,
        now: Optional[datetime] = None,
    ) -> Optional[Entitlement]:
        """Entitlement for the pair if it currently grants access."""
        entitlement = await self.get(account_id, product_id)
        if entitlement and entitlement.grants_access(now):
            return entitlement
        return None

    async def list_active_entitlements(
        self,
        account_id: UUID,
        now: Optional[datetime] = None,
    ) -> List[Entitlement]:
        now = now or utcnow()
        stmt = (
            select(EntitlementModel)
            .where(
                EntitlementModel.account_id == account_id,
                EntitlementModel.is_active.is_(True),
                or_(
                    EntitlementModel.expires_at.is_(None),
                    EntitlementModel.expires_at > now,
                ),
            )
            .order_by(EntitlementModel.package_code)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return [Entitlement.model_validate(m) for m in result.scalars().all()]

    async def has_active_access(
        self,
        account_id: UUID,
        product_code: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Read contract for every access-gated surface."""
        now = now or utcnow()
        stmt = (
            select(EntitlementModel.id)
            .join(ProductModel, ProductModel.id == EntitlementModel.product_id)
            .where(
                EntitlementModel.account_id == account_id,
                ProductModel.code == product_code,
                EntitlementModel.is_active.is_(True),
                or_(
                    EntitlementModel.expires_at.is_(None),
                    EntitlementModel.expires_at > now,
                ),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def upsert_entitlement(
        self,
        account_id: UUID,
        product_id: UUID,
        package_code: str,
        is_active: bool,
        expires_at: Optional[datetime],
        event_at: Optional[datetime] = None,
    ) -> Entitlement:
        """
        Atomically create or merge the entitlement for (account, product).

        A single INSERT ... ON CONFLICT DO UPDATE, so concurrent workers
        cannot create two rows or interleave a read-modify-write.

        Args:
            account_id: Account receiving access
            product_id: Product granted
            package_code: Product code recorded on the row
            is_active: Desired active flag
            expires_at: Candidate expiry; never shortens a later stored one
            event_at: Gateway event time; older events do not override
                      the active flag set by newer ones
        """
        now = utcnow()
        event_at = event_at or now
        table = EntitlementModel.__table__

        stmt = self._insert().values(
            id=uuid4(),
            account_id=account_id,
            product_id=product_id,
            package_code=package_code,
            is_active=is_active,
            started_at=event_at,
            expires_at=expires_at,
            status_event_at=event_at,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded

        incoming_is_newer = or_(
            table.c.status_event_at.is_(None),
            table.c.status_event_at <= excluded.status_event_at,
        )
        incoming_expires_later = or_(
            table.c.expires_at.is_(None),
            excluded.expires_at > table.c.expires_at,
        )
        reactivated = and_(
            incoming_is_newer,
            excluded.is_active.is_(True),
            table.c.is_active.is_(False),
        )

        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "product_id"],
            set_={
                "is_active": case((incoming_is_newer, excluded.is_active), else_=table.c.is_active),
                "package_code": case((incoming_is_newer, excluded.package_code), else_=table.c.package_code),
                "status_event_at": case(
                    (incoming_is_newer, excluded.status_event_at),
                    else_=table.c.status_event_at,
                ),
                "started_at": case((reactivated, excluded.started_at), else_=table.c.started_at),
                "expires_at": case((incoming_expires_later, excluded.expires_at), else_=table.c.expires_at),
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)

        entitlement = await self.get(account_id, product_id)
        logger.info(
            f"Entitlement {account_id}/{package_code}: active={entitlement.is_active} "
            f"expires_at={entitlement.expires_at}"
        )
        return entitlement

    async def set_active(
        self,
        account_id: UUID,
        product_id: UUID,
        is_active: bool,
        event_at: Optional[datetime] = None,
    ) -> bool:
        """
        Change only the active flag, keeping expires_at for audit.

        Returns:
            True if the row was updated, False if it is missing or a newer
            event already decided its state
        """
        event_at = event_at or utcnow()
        stmt = (
            update(EntitlementModel)
            .where(
                EntitlementModel.account_id == account_id,
                EntitlementModel.product_id == product_id,
                or_(
                    EntitlementModel.status_event_at.is_(None),
                    EntitlementModel.status_event_at <= event_at,
                ),
            )
            .values(is_active=is_active, status_event_at=event_at, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
