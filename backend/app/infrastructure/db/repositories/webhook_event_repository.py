"""
Webhook Event Repository

Processed-event markers and the operator queue of unprocessable events.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.membership import WebhookOutcome, utcnow
from app.infrastructure.db.models.webhook_event import (
    ProcessedWebhookEventModel,
    UnprocessedWebhookEventModel,
)
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class WebhookEventRepository(BaseRepository[ProcessedWebhookEventModel]):
    """Repository for webhook bookkeeping."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProcessedWebhookEventModel, session)

    # =========================================================================
    # Processed markers
    # =========================================================================

    async def is_processed(self, event_id: str) -> bool:
        stmt = select(ProcessedWebhookEventModel.event_id).where(
            ProcessedWebhookEventModel.event_id == event_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def mark_processed(
        self,
        event_id: str,
        event_type: str,
        outcome: WebhookOutcome,
    ) -> None:
        """Record the outcome for an event id; a replay overwrites it."""
        now = utcnow()
        stmt = self._insert().values(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome.value,
            processed_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["event_id"],
            set_={"outcome": stmt.excluded.outcome, "processed_at": now},
        )
        await self.session.execute(stmt)

    # =========================================================================
    # Operator queue
    # =========================================================================

    async def enqueue_unprocessed(
        self,
        event_id: str,
        event_type: str,
        reason: str,
        payload: Dict[str, Any],
    ) -> UnprocessedWebhookEventModel:
        """
        Queue an event for operator attention.

        A redelivery of an event that is already queued bumps its attempt
        count instead of adding a second entry.
        """
        existing = await self.get_open_for_event(event_id)
        if existing:
            existing.attempts += 1
            existing.reason = reason
            await self.session.flush()
            return existing

        item = UnprocessedWebhookEventModel(
            id=uuid4(),
            event_id=event_id,
            event_type=event_type,
            reason=reason,
            payload=payload,
            attempts=1,
            created_at=utcnow(),
        )
        return await self.add(item)

    async def get_open_for_event(self, event_id: str) -> Optional[UnprocessedWebhookEventModel]:
        stmt = select(UnprocessedWebhookEventModel).where(
            UnprocessedWebhookEventModel.event_id == event_id,
            UnprocessedWebhookEventModel.resolved_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_unprocessed(self, item_id: UUID) -> Optional[UnprocessedWebhookEventModel]:
        return await self.session.get(UnprocessedWebhookEventModel, item_id)

    async def list_unprocessed(
        self,
        include_resolved: bool = False,
        limit: int = 100,
    ) -> List[UnprocessedWebhookEventModel]:
        stmt = select(UnprocessedWebhookEventModel)
        if not include_resolved:
            stmt = stmt.where(UnprocessedWebhookEventModel.resolved_at.is_(None))
        stmt = stmt.order_by(UnprocessedWebhookEventModel.created_at).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_resolved(self, item: UnprocessedWebhookEventModel) -> None:
        item.resolved_at = utcnow()
        await self.session.flush()
