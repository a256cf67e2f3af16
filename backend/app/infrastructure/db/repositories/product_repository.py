"""
Product Repository

Data access for membership packages and their Stripe identifiers.
"""

import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.catalog import Catalog
from app.domain.membership import Product, utcnow
from app.infrastructure.db.models.product import ProductModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class ProductRepository(BaseRepository[ProductModel]):
    """Repository for products and catalog snapshots."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProductModel, session)

    async def get_by_code(self, code: str) -> Optional[ProductModel]:
        stmt = (
            select(ProductModel)
            .where(ProductModel.code == code)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self) -> List[ProductModel]:
        stmt = (
            select(ProductModel)
            .where(ProductModel.is_active.is_(True))
            .order_by(ProductModel.name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def load_catalog(self) -> Catalog:
        """Snapshot of every product, active or not."""
        stmt = select(ProductModel).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return Catalog.from_products(
            Product.model_validate(row) for row in result.scalars().all()
        )

    async def upsert_by_code(
        self,
        code: str,
        name: str,
        price_monthly: Decimal,
        price_yearly: Decimal,
        currency: str = "DKK",
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> ProductModel:
        """
        Create or update a product keyed by its stable code.

        Stripe identifiers are left untouched on update.
        """
        now = utcnow()
        stmt = self._insert().values(
            id=uuid4(),
            code=code,
            name=name,
            description=description,
            price_monthly=price_monthly,
            price_yearly=price_yearly,
            currency=currency.upper(),
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["code"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "price_monthly": stmt.excluded.price_monthly,
                "price_yearly": stmt.excluded.price_yearly,
                "currency": stmt.excluded.currency,
                "is_active": stmt.excluded.is_active,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        return await self.get_by_code(code)

    async def set_gateway_ids(
        self,
        product_id: UUID,
        stripe_product_id: str,
        stripe_price_monthly_id: Optional[str],
        stripe_price_yearly_id: Optional[str],
    ) -> None:
        """Persist the identifiers returned by the catalog synchronizer."""
        stmt = (
            update(ProductModel)
            .where(ProductModel.id == product_id)
            .values(
                stripe_product_id=stripe_product_id,
                stripe_price_monthly_id=stripe_price_monthly_id,
                stripe_price_yearly_id=stripe_price_yearly_id,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        await self.session.execute(stmt)
