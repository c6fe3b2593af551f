"""
ARQ Job Queue Service - Redis-backed background jobs for replication.

Provides:
- Webhook fan-out
- Per-target create/update replication with tiered retry backoff
- Coordination gate polling via deferred re-enqueue
- Source media hand-off once the gate releases
- Snapshot refresh
"""
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings

from shop_mirror.core.config import settings
from shop_mirror.core.database import get_db_context
from shop_mirror.core.logging import bind_replication_context, configure_logging, get_logger
from shop_mirror.models.media_process import MediaProcessStatus
from shop_mirror.models.shop import Shop
from shop_mirror.repositories.media_process import MediaProcessRepository
from shop_mirror.services.coordination import CoordinationGateService
from shop_mirror.services.notification_service import notification_service
from shop_mirror.services.replication import (
    MirrorNotFoundError,
    ReplicationOptions,
    ReplicationOrchestrator,
)
from shop_mirror.services.shopify_client import ShopifyGraphQLClient
from shop_mirror.services.snapshot_refresher import SnapshotRefresher, SourceProductNotFoundError
from shop_mirror.services.webhook_pipeline import WebhookPipeline

logger = get_logger(__name__)


def get_redis_settings() -> RedisSettings:
    """Get Redis connection settings from config."""
    redis_url = str(settings.redis_url) if settings.redis_url else "redis://localhost:6379"
    return RedisSettings.from_dsn(redis_url)


def shopify_client_for(shop: Shop) -> ShopifyGraphQLClient:
    """Admin API client for a shop, tuned from settings."""
    return ShopifyGraphQLClient.for_shop(
        shop,
        default_api_version=settings.shopify_api_version,
        timeout=settings.shopify_timeout_seconds,
        max_retries=settings.shopify_max_retries,
    )


def retry_delay(job_try: int) -> int:
    """Backoff tier for a failed try (1-based), the last tier repeating."""
    tiers = settings.replication_backoff or [60]
    return tiers[min(max(job_try, 1) - 1, len(tiers) - 1)]


async def _load_pair(session: Any, source_shop_id: str, target_shop_id: str) -> tuple[Optional[Shop], Optional[Shop]]:
    source = await session.get(Shop, UUID(source_shop_id))
    target = await session.get(Shop, UUID(target_shop_id))
    return source, target


# ============================================
# JOB FUNCTIONS
# ============================================

async def process_webhook_job(ctx: dict, event_id: str) -> dict[str, Any]:
    """Fan a stored product webhook out to every active connected target."""
    async with get_db_context() as session:
        pipeline = WebhookPipeline(
            session,
            ctx["redis"],
            shopify_client_for,
            loop_guard=settings.webhook_loop_guard,
            gate_enabled=settings.source_media_gate_enabled,
            gate_backoff_seconds=settings.gate_backoff_seconds,
        )
        return await pipeline.dispatch(UUID(event_id))


async def replicate_create_job(
    ctx: dict,
    source_shop_id: str,
    target_shop_id: str,
    payload: dict[str, Any],
) -> dict[str, Any]:
    """
    Create a source product on one target shop.

    Failures are retried with the configured backoff tiers; once tries are
    exhausted operators are notified and the error is re-raised.
    """
    job_try = ctx.get("job_try", 1)
    source_product_id = payload.get("id")
    names = {"source": source_shop_id, "target": target_shop_id}
    bind_replication_context(
        job="replicate_create",
        job_try=job_try,
        source_product_id=source_product_id,
    )

    try:
        async with get_db_context() as session:
            source, target = await _load_pair(session, source_shop_id, target_shop_id)
            if source is None or target is None or not target.is_active:
                logger.warning("Replication pair missing or inactive, skipping", **names)
                return {"skipped": True}
            names = {"source": source.domain, "target": target.domain}

            orchestrator = ReplicationOrchestrator(
                session,
                source_shop=source,
                target_shop=target,
                target_client=shopify_client_for(target),
                source_client=shopify_client_for(source),
                options=ReplicationOptions.from_settings(settings),
            )
            report = await orchestrator.replicate_create(payload)
            return {"target_product_gid": report.target_product_gid, "ok": report.ok}

    except Exception as e:
        logger.error(
            "Product replication failed",
            source_shop=names["source"],
            target_shop=names["target"],
            error=str(e),
            job_try=job_try,
        )
        if job_try < settings.replication_max_tries:
            raise Retry(defer=timedelta(seconds=retry_delay(job_try))) from e

        await notification_service.notify_replication_failure(
            source_shop=names["source"],
            target_shop=names["target"],
            source_product_id=int(source_product_id or 0),
            error=str(e),
            attempts=job_try,
            alert_email=settings.ops_alert_email,
            webhook_url=settings.ops_webhook_url,
            webhook_secret=settings.ops_webhook_secret,
        )
        raise


async def replicate_update_job(
    ctx: dict,
    source_shop_id: str,
    target_shop_id: str,
    payload: dict[str, Any],
) -> dict[str, Any]:
    """Converge one target with a source product update (best-effort per step)."""
    job_try = ctx.get("job_try", 1)
    bind_replication_context(
        job="replicate_update",
        job_try=job_try,
        source_product_id=payload.get("id"),
    )

    try:
        async with get_db_context() as session:
            source, target = await _load_pair(session, source_shop_id, target_shop_id)
            if source is None or target is None or not target.is_active:
                logger.warning(
                    "Replication pair missing or inactive, skipping",
                    source=source_shop_id,
                    target=target_shop_id,
                )
                return {"skipped": True}

            orchestrator = ReplicationOrchestrator(
                session,
                source_shop=source,
                target_shop=target,
                target_client=shopify_client_for(target),
                source_client=shopify_client_for(source),
                options=ReplicationOptions.from_settings(settings),
            )
            report = await orchestrator.replicate_update(payload)
            return {"ok": report.ok, "failed": len(report.failed)}

    except MirrorNotFoundError as e:
        # Retrying cannot produce a mirror that does not exist.
        logger.warning("Update skipped", reason=str(e))
        return {"skipped": True, "reason": "mirror_not_found"}
    except Exception as e:
        logger.error("Product update replication failed", error=str(e), job_try=job_try)
        if job_try < settings.replication_max_tries:
            raise Retry(defer=timedelta(seconds=retry_delay(job_try))) from e
        raise


async def coordinate_source_media_job(
    ctx: dict,
    source_shop_id: str,
    source_product_id: int,
    fresh: bool = False,
) -> dict[str, Any]:
    """
    Wait until every target finished image processing, then hand off source media.

    Instead of sleeping, the job re-enqueues itself with a delay.
    """
    async with get_db_context() as session:
        source = await session.get(Shop, UUID(source_shop_id))
        if source is None:
            logger.warning("Gate source shop not found", source_shop_id=source_shop_id)
            return {"skipped": True}

        gate = CoordinationGateService(
            session,
            max_attempts=settings.gate_max_attempts,
            backoff_seconds=settings.gate_backoff_seconds,
            ignored_domains=settings.gate_ignored_domains,
        )
        decision = await gate.evaluate(source, int(source_product_id), fresh=fresh)

    redis: ArqRedis = ctx["redis"]
    if not decision.proceed:
        await redis.enqueue_job(
            "coordinate_source_media_job",
            source_shop_id,
            source_product_id,
            False,
            _job_id=f"gate:{source_shop_id}:{source_product_id}:attempt-{decision.attempts + 1}",
            _defer_by=timedelta(seconds=decision.defer_seconds or settings.gate_backoff_seconds),
        )
        return {"action": decision.action.value, "attempts": decision.attempts}

    await redis.enqueue_job(
        "dispatch_source_media_job",
        source_shop_id,
        source_product_id,
        _job_id=f"source-media:{source_shop_id}:{source_product_id}:{decision.attempts}",
    )
    return {"action": decision.action.value, "attempts": decision.attempts}


async def dispatch_source_media_job(
    ctx: dict,
    source_shop_id: str,
    source_product_id: int,
) -> dict[str, Any]:
    """
    Hand the source product's images to the image processor.

    Runs once the coordination gate released (or timed out). Records a
    pending media process for the source product and, when a processor
    webhook is configured, posts the image list to it.
    """
    product_id = int(source_product_id)
    async with get_db_context() as session:
        source = await session.get(Shop, UUID(source_shop_id))
        if source is None:
            logger.warning("Source media dispatch: shop not found", source_shop_id=source_shop_id)
            return {"skipped": True}
        shop_domain = source.domain

        payload = await shopify_client_for(source).fetch_rest_product(product_id)
        if not payload:
            logger.warning("Source media dispatch: product not found", shop=shop_domain, product_id=product_id)
            return {"skipped": True, "reason": "source_product_not_found"}

        images = [
            {"id": image.get("id"), "src": image.get("src"), "position": image.get("position")}
            for image in payload.get("images") or []
            if image.get("src")
        ]
        status = MediaProcessStatus.PENDING if images else MediaProcessStatus.SKIPPED
        await MediaProcessRepository(session).upsert_status(
            shop_domain,
            product_id,
            status,
            shop_id=source.id,
            product_gid=payload.get("admin_graphql_api_id"),
            images_count=len(images),
        )

    notified = False
    if images and settings.media_processor_webhook_url:
        notified = await notification_service.send_webhook(
            url=settings.media_processor_webhook_url,
            payload={
                "event": "source_media.ready",
                "shop": shop_domain,
                "product_id": product_id,
                "product_gid": payload.get("admin_graphql_api_id"),
                "handle": payload.get("handle"),
                "title": payload.get("title"),
                "images": images,
            },
            secret=settings.media_processor_webhook_secret,
        )

    logger.info(
        "Source media handed off",
        shop=shop_domain,
        product_id=product_id,
        images=len(images),
        notified=notified,
    )
    return {"status": status.value, "images": len(images), "notified": notified}


async def refresh_snapshot_job(
    ctx: dict,
    source_shop_id: str,
    source_product_id: int,
) -> dict[str, Any]:
    """Reset mirror baselines of one source product from the live source."""
    async with get_db_context() as session:
        refresher = SnapshotRefresher(
            session,
            shopify_client_for,
            ReplicationOptions.from_settings(settings),
        )
        try:
            return await refresher.refresh(UUID(source_shop_id), int(source_product_id))
        except SourceProductNotFoundError as e:
            logger.warning("Snapshot refresh skipped", reason=str(e))
            return {"skipped": True, "reason": str(e)}


async def startup(ctx: dict) -> None:
    configure_logging()
    logger.info("Replication worker started")


# ============================================
# WORKER SETTINGS
# ============================================

class WorkerSettings:
    """ARQ worker configuration."""

    functions = [
        process_webhook_job,
        replicate_create_job,
        replicate_update_job,
        coordinate_source_media_job,
        dispatch_source_media_job,
        refresh_snapshot_job,
    ]

    on_startup = startup
    redis_settings = get_redis_settings()

    # Worker settings
    max_jobs = 10
    job_timeout = 600  # 10 minutes
    keep_result = 3600  # 1 hour
    retry_jobs = True
    max_tries = settings.replication_max_tries


async def create_queue_pool() -> ArqRedis:
    """Create ARQ Redis connection pool."""
    return await create_pool(get_redis_settings())
