"""
Dependency Injection Providers for Membership Billing

Provides FastAPI dependencies for database sessions and repositories.
Every repository built for one request shares that request's session.
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.database import get_session
from app.infrastructure.db.repositories import (
    EntitlementRepository,
    GiftCodeRepository,
    WebhookEventRepository,
)


# Type alias for session dependency
SessionDep = Annotated[AsyncSession, Depends(get_session)]


async def get_gift_code_repository(
    session: SessionDep,
) -> AsyncGenerator[GiftCodeRepository, None]:
    """
    Dependency provider for GiftCodeRepository.

    Usage:
        @router.get("/gift-codes")
        async def list_gift_codes(repo: GiftCodeRepoDep):
            ...
    """
    yield GiftCodeRepository(session)


async def get_entitlement_repository(
    session: SessionDep,
) -> AsyncGenerator[EntitlementRepository, None]:
    yield EntitlementRepository(session)


async def get_webhook_event_repository(
    session: SessionDep,
) -> AsyncGenerator[WebhookEventRepository, None]:
    yield WebhookEventRepository(session)


# Type aliases for repository dependencies
GiftCodeRepoDep = Annotated[GiftCodeRepository, Depends(get_gift_code_repository)]
EntitlementRepoDep = Annotated[
    EntitlementRepository,
    Depends(get_entitlement_repository)
]
WebhookEventRepoDep = Annotated[
    WebhookEventRepository,
    Depends(get_webhook_event_repository)
]
