"""
Gift Code Repository

Lookup, administration and guarded redemption of gift codes.
"""

import logging
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.membership import GiftCode, GiftCodeCreate, utcnow
from app.infrastructure.db.models.gift_code import GiftCodeModel, GiftCodeUsageModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class RedemptionOutcome(str, Enum):
    """Result of recording a gift code redemption."""
    REDEEMED = "redeemed"
    ALREADY_REDEEMED = "already_redeemed"
    EXHAUSTED = "exhausted"


class GiftCodeRepository(BaseRepository[GiftCodeModel]):
    """Repository for gift codes and their usage rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(GiftCodeModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_code(self, code: str) -> Optional[GiftCodeModel]:
        stmt = (
            select(GiftCodeModel)
            .where(GiftCodeModel.code == code.strip().upper())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find(self, identifier: str) -> Optional[GiftCode]:
        """
        Resolve a gift code by id or by code string.

        Args:
            identifier: UUID of the code, or the code itself (case-insensitive)

        Returns:
            GiftCode domain entity or None
        """
        model = None
        try:
            code_id = UUID(identifier)
        except (TypeError, ValueError):
            model = await self.get_by_code(identifier)
        else:
            model = await self.session.get(
                GiftCodeModel, code_id, populate_existing=True
            )

        return GiftCode.model_validate(model) if model else None

    async def list_codes(self, skip: int = 0, limit: int = 100) -> List[GiftCodeModel]:
        stmt = (
            select(GiftCodeModel)
            .order_by(GiftCodeModel.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_usages(self, gift_code_id: UUID) -> int:
        stmt = (
            select(func.count())
            .select_from(GiftCodeUsageModel)
            .where(GiftCodeUsageModel.gift_code_id == gift_code_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def create(self, data: GiftCodeCreate) -> GiftCodeModel:
        """Create a gift code from an admin request."""
        now = utcnow()
        model = GiftCodeModel(
            code=data.code,
            kind=data.kind.value,
            discount_percentage=data.discount_percentage,
            discount_amount=data.discount_amount,
            product_code=data.product_code,
            valid_from=data.valid_from or now,
            valid_to=data.valid_to,
            usage_limit=data.usage_limit,
            used_count=0,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        model = await self.add(model)
        logger.info(f"Created gift code {model.code} ({model.kind}, limit {model.usage_limit})")
        return model

    async def set_active(self, gift_code_id: UUID, is_active: bool) -> Optional[GiftCodeModel]:
        model = await self.get_by_id(gift_code_id)
        if model is None:
            return None
        model.is_active = is_active
        model.updated_at = utcnow()
        await self.session.flush()
        return model

    async def redeem(
        self,
        gift_code_id: UUID,
        account_id: UUID,
        payment_id: UUID,
    ) -> RedemptionOutcome:
        """
        Record one redemption for a payment.

        The usage row is keyed by payment, so a retried delivery cannot add a
        second row. The counter only moves while used_count < usage_limit;
        if that guard fails the usage row is removed again in the same
        transaction, keeping usage rows and used_count within the limit.
        """
        usage = (
            self._insert(GiftCodeUsageModel)
            .values(
                id=uuid4(),
                gift_code_id=gift_code_id,
                account_id=account_id,
                payment_id=payment_id,
                used_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["payment_id"])
            .returning(GiftCodeUsageModel.id)
        )
        result = await self.session.execute(usage)
        usage_id = result.scalar_one_or_none()
        if usage_id is None:
            return RedemptionOutcome.ALREADY_REDEEMED

        increment = (
            update(GiftCodeModel)
            .where(
                GiftCodeModel.id == gift_code_id,
                GiftCodeModel.used_count < GiftCodeModel.usage_limit,
            )
            .values(used_count=GiftCodeModel.used_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(increment)
        if result.rowcount != 1:
            await self.session.execute(
                delete(GiftCodeUsageModel).where(GiftCodeUsageModel.id == usage_id)
            )
            return RedemptionOutcome.EXHAUSTED

        return RedemptionOutcome.REDEEMED
