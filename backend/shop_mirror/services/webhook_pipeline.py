"""
Webhook pipeline - product webhook ingestion and fan-out to target shops.

Ingestion stores each delivery once (keyed by X-Shopify-Webhook-Id).
Dispatch resolves the source shop and enqueues one replication job per
active connected target, with a deterministic job id so a repeated
dispatch cannot queue the same (event, target) twice.
"""
from typing import Any, Callable, Optional
from uuid import UUID

from arq.connections import ArqRedis
from sqlalchemy.ext.asyncio import AsyncSession

from shop_mirror.core.logging import get_logger
from shop_mirror.models.shop import Shop
from shop_mirror.models.webhook_event import WebhookEvent, WebhookEventStatus
from shop_mirror.repositories.shop import ShopRepository
from shop_mirror.repositories.webhook_event import WebhookEventRepository
from shop_mirror.services.shopify_client import ShopifyAPIError, ShopifyGraphQLClient

logger = get_logger(__name__)

PRODUCT_TOPICS = {
    "products/create": "replicate_create_job",
    "products/update": "replicate_update_job",
}


def replication_job_id(topic: str, delivery_id: str, target_shop_id: UUID) -> str:
    return f"replicate:{topic}:{delivery_id}:{target_shop_id}"


class WebhookPipeline:
    """Ingests validated product webhooks and fans them out."""

    def __init__(
        self,
        session: AsyncSession,
        queue: Optional[ArqRedis] = None,
        client_factory: Optional[Callable[[Shop], ShopifyGraphQLClient]] = None,
        *,
        loop_guard: bool = True,
        gate_enabled: bool = False,
        gate_backoff_seconds: int = 60,
    ) -> None:
        self.session = session
        self.queue = queue
        self.client_factory = client_factory
        self.loop_guard = loop_guard
        self.gate_enabled = gate_enabled
        self.gate_backoff_seconds = gate_backoff_seconds
        self.events = WebhookEventRepository(session)
        self.shops = ShopRepository(session)

    async def ingest(
        self,
        *,
        topic: str,
        shop_domain: Optional[str],
        webhook_id: Optional[str],
        payload: dict[str, Any],
    ) -> Optional[WebhookEvent]:
        """
        Persist one delivery.

        Returns None for a duplicate delivery.
        """
        if topic not in PRODUCT_TOPICS:
            raise ValueError(f"Unsupported topic: {topic}")

        event = await self.events.record(
            webhook_id=webhook_id,
            topic=topic,
            shop_domain=shop_domain,
            payload=payload,
        )
        if event is None:
            logger.info("Duplicate webhook delivery ignored", topic=topic, webhook_id=webhook_id)
        else:
            logger.info(
                "Webhook received",
                topic=topic,
                shop=shop_domain,
                webhook_id=webhook_id,
                product_id=payload.get("id"),
            )
        return event

    async def dispatch(self, event_id: UUID) -> dict[str, Any]:
        """Resolve the source shop and enqueue replication for every active target."""
        if self.queue is None:
            raise RuntimeError("WebhookPipeline.dispatch needs a job queue")

        event = await self.events.get_by_id(event_id)
        if event is None:
            logger.error("Webhook event not found", event_id=str(event_id))
            return {"dispatched": 0, "reason": "event_not_found"}
        if event.status != WebhookEventStatus.RECEIVED.value:
            return {"dispatched": 0, "reason": f"already_{event.status}"}

        source = await self.shops.get_source_by_domain(event.shop_domain or "")
        if source is None:
            logger.info("Webhook from unknown or non-source shop ignored", shop=event.shop_domain)
            await self.events.mark(event, WebhookEventStatus.IGNORED)
            return {"dispatched": 0, "reason": "unknown_source"}

        payload = event.payload or {}
        product_id = payload.get("id")
        if not product_id:
            logger.warning("Product webhook without product id", shop=source.domain, topic=event.topic)
            await self.events.mark(event, WebhookEventStatus.IGNORED)
            return {"dispatched": 0, "reason": "missing_product_id"}

        job_name = PRODUCT_TOPICS[event.topic]
        delivery_id = event.webhook_id or str(event.id)
        targets = await self.shops.list_active_targets(source.id)

        for target in targets:
            await self.queue.enqueue_job(
                job_name,
                str(source.id),
                str(target.id),
                payload,
                _job_id=replication_job_id(event.topic, delivery_id, target.id),
            )

        if event.topic == "products/update" and self.loop_guard:
            await self._reset_trigger_metafield(source, payload)

        if targets and self.gate_enabled:
            await self.queue.enqueue_job(
                "coordinate_source_media_job",
                str(source.id),
                int(product_id),
                True,
                _job_id=f"gate:{source.id}:{product_id}:{delivery_id}",
                _defer_by=self.gate_backoff_seconds,
            )

        await self.events.mark(event, WebhookEventStatus.DISPATCHED)
        logger.info(
            "Webhook fanned out",
            topic=event.topic,
            source_shop=source.domain,
            product_id=product_id,
            targets=[target.domain for target in targets],
        )
        return {"dispatched": len(targets), "targets": [target.domain for target in targets]}

    async def _reset_trigger_metafield(self, source: Shop, payload: dict[str, Any]) -> None:
        """Set custom.trigger back to false on the source so our own writes do not echo."""
        if self.client_factory is None:
            return
        product_gid = payload.get("admin_graphql_api_id") or f"gid://shopify/Product/{payload.get('id')}"
        try:
            await self.client_factory(source).set_metafields(
                [
                    {
                        "ownerId": product_gid,
                        "namespace": "custom",
                        "key": "trigger",
                        "type": "boolean",
                        "value": "false",
                    }
                ]
            )
        except ShopifyAPIError as e:
            logger.warning("Resetting source trigger metafield failed", shop=source.domain, error=str(e))
