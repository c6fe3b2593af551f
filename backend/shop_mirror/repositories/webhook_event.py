"""
Webhook event repository - delivery deduplication.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from shop_mirror.models.webhook_event import WebhookEvent, WebhookEventStatus
from shop_mirror.repositories.base import BaseRepository


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    model = WebhookEvent

    async def get_by_webhook_id(self, webhook_id: str) -> Optional[WebhookEvent]:
        stmt = select(WebhookEvent).where(WebhookEvent.webhook_id == webhook_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def record(
        self,
        *,
        webhook_id: Optional[str],
        topic: str,
        shop_domain: Optional[str],
        payload: dict[str, Any],
    ) -> Optional[WebhookEvent]:
        """
        Store a delivery.

        Returns None when a delivery with the same webhook id was already
        stored (Shopify redelivers on slow acknowledgements).
        """
        if webhook_id and await self.get_by_webhook_id(webhook_id):
            return None

        event = WebhookEvent(
            webhook_id=webhook_id,
            topic=topic,
            shop_domain=shop_domain.strip().lower() if shop_domain else None,
            payload=payload,
            status=WebhookEventStatus.RECEIVED.value,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(event)
                await self.session.flush()
        except IntegrityError:
            # Concurrent delivery of the same id won the insert.
            return None
        return event

    async def mark(self, event: WebhookEvent, status: WebhookEventStatus) -> None:
        event.status = status.value
        event.processed_at = datetime.now(timezone.utc)
        await self.session.flush()
