"""
Entitlement Routes

Read-only access checks backed by the entitlement store.
"""

from uuid import UUID

from fastapi import APIRouter

from app.domain.membership import AccessCheckResponse, EntitlementResponse
from app.infrastructure.db.dependencies import EntitlementRepoDep


router = APIRouter()


@router.get("/entitlements/{account_id}", response_model=list[EntitlementResponse])
async def list_entitlements(account_id: UUID, repo: EntitlementRepoDep):
    """Currently active, unexpired entitlements for an account."""
    entitlements = await repo.list_active_entitlements(account_id)
    return [EntitlementResponse.model_validate(e.model_dump()) for e in entitlements]


@router.get("/entitlements/{account_id}/{product_code}", response_model=AccessCheckResponse)
async def check_access(account_id: UUID, product_code: str, repo: EntitlementRepoDep):
    has_access = await repo.has_active_access(account_id, product_code)
    return AccessCheckResponse(
        account_id=account_id,
        product_code=product_code,
        has_access=has_access,
    )
