"""
Admin Routes for Catalog and Reconciliation Operations

Gift code administration, catalog synchronization with Stripe and the
operator queue of unprocessable webhook events.
Protected by API key authentication.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.dependencies import get_payment_gateway, verify_admin_api_key
from app.domain.membership import (
    CatalogSyncResult,
    GiftCodeCreate,
    GiftCodeRead,
    GiftCodeUpdate,
    UnprocessedEventRead,
    WebhookAck,
)
from app.infrastructure.db.dependencies import GiftCodeRepoDep, SessionDep, WebhookEventRepoDep
from app.infrastructure.exceptions import DuplicateError, NotFoundError
from app.infrastructure.payments.stripe_service import StripeService
from app.infrastructure.services.catalog_sync_service import CatalogSyncService
from app.infrastructure.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_api_key)]  # Protect ALL admin routes
)


# =============================================================================
# Gift codes
# =============================================================================

@router.post(
    "/gift-codes",
    response_model=GiftCodeRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_gift_code(
    body: GiftCodeCreate,
    repo: GiftCodeRepoDep,
    session: SessionDep,
):
    """Create a gift code. Codes are stored upper-cased."""
    if await repo.get_by_code(body.code):
        raise DuplicateError(
            f"Gift code {body.code} already exists",
            operation="create",
            table="gift_codes",
        )

    model = await repo.create(body)
    await session.commit()
    return GiftCodeRead.model_validate(model)


@router.get("/gift-codes", response_model=list[GiftCodeRead])
async def list_gift_codes(
    repo: GiftCodeRepoDep,
    skip: int = 0,
    limit: int = 100,
):
    return [GiftCodeRead.model_validate(m) for m in await repo.list_codes(skip, limit)]


@router.patch("/gift-codes/{gift_code_id}", response_model=GiftCodeRead)
async def update_gift_code(
    gift_code_id: UUID,
    body: GiftCodeUpdate,
    repo: GiftCodeRepoDep,
    session: SessionDep,
):
    """Activate or deactivate a gift code."""
    model = await repo.set_active(gift_code_id, body.is_active)
    if model is None:
        raise NotFoundError(f"Gift code {gift_code_id} not found", table="gift_codes")

    await session.commit()
    logger.info(f"Gift code {model.code} is_active={model.is_active}")
    return GiftCodeRead.model_validate(model)


# =============================================================================
# Catalog synchronization
# =============================================================================

@router.post("/catalog/sync", response_model=CatalogSyncResult)
async def sync_catalog(
    session: SessionDep,
    stripe_service: StripeService = Depends(get_payment_gateway),
):
    """
    Push active products to Stripe.

    This endpoint:
    1. Finds or creates the Stripe product for each active product code
    2. Finds or creates its monthly and yearly prices
    3. Stores the Stripe ids on the product rows

    Per-product failures are reported in the results without aborting.
    """
    result = await CatalogSyncService(session, stripe_service).sync_all()
    await session.commit()
    return result


# =============================================================================
# Operator queue
# =============================================================================

@router.get("/webhooks/unprocessed", response_model=list[UnprocessedEventRead])
async def list_unprocessed_events(
    repo: WebhookEventRepoDep,
    include_resolved: bool = False,
    limit: int = 100,
):
    items = await repo.list_unprocessed(include_resolved=include_resolved, limit=limit)
    return [UnprocessedEventRead.model_validate(item) for item in items]


@router.post("/webhooks/unprocessed/{item_id}/replay", response_model=WebhookAck)
async def replay_unprocessed_event(
    item_id: UUID,
    repo: WebhookEventRepoDep,
    session: SessionDep,
):
    """
    Run a queued event through the processor again.

    The queue entry is resolved when the replay is processed; otherwise it
    stays open with its attempt count increased.
    """
    item = await repo.get_unprocessed(item_id)
    if item is None:
        raise NotFoundError(f"Queued event {item_id} not found", table="unprocessed_webhook_events")
    if item.resolved_at is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Queued event already resolved",
        )

    payload = dict(item.payload)
    ack = await WebhookProcessor(session).process(payload, replay=True)

    if ack.status in ("processed", "already_processed", "ignored"):
        await repo.mark_resolved(item)
        logger.info(f"Resolved queued event {item.event_id} by replay")

    await session.commit()
    return ack
