"""
Account Repository

Purchaser accounts, looked up or created by email during reconciliation.
"""

import logging
from typing import Optional, Tuple
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.membership import utcnow
from app.infrastructure.db.models.account import AccountModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountRepository(BaseRepository[AccountModel]):
    """Repository for purchaser accounts."""

    def __init__(self, session: AsyncSession):
        super().__init__(AccountModel, session)

    async def get_by_email(self, email: str) -> Optional[AccountModel]:
        stmt = select(AccountModel).where(AccountModel.email == normalize_email(email))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_by_email(
        self,
        email: str,
        full_name: Optional[str] = None,
        relation_to_product: Optional[str] = None,
    ) -> Tuple[AccountModel, bool]:
        """
        Get the account for an email, creating it if absent.

        Concurrent deliveries racing on the same email both end up with the
        single row; the unique index turns the losing insert into a no-op.

        Returns:
            (account, created)
        """
        email = normalize_email(email)
        now = utcnow()

        stmt = (
            self._insert()
            .values(
                id=uuid4(),
                email=email,
                full_name=full_name or email.split("@")[0],
                relation_to_product=relation_to_product or "unknown",
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["email"])
            .returning(AccountModel.id)
        )
        result = await self.session.execute(stmt)
        created = result.scalar_one_or_none() is not None

        account = await self.get_by_email(email)
        if created:
            logger.info(f"Created account {account.id} for {email}")
        return account, created
