"""
Shopify product webhook endpoints.

Authenticates the delivery, stores it once and hands it to the worker.
"""
import json
from typing import Annotated, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from shop_mirror.core.database import get_db_session
from shop_mirror.core.logging import get_logger
from shop_mirror.core.security import verify_shopify_hmac
from shop_mirror.routers.deps import JobQueue
from shop_mirror.schemas.mirror import WebhookAcceptedResponse
from shop_mirror.services.webhook_pipeline import WebhookPipeline

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/products/{action}",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_product_webhook(
    action: Literal["create", "update"],
    request: Request,
    queue: JobQueue,
    session: Annotated[AsyncSession, Depends(get_db_session)],
    x_shopify_hmac_sha256: Annotated[Optional[str], Header()] = None,
    x_shopify_shop_domain: Annotated[Optional[str], Header()] = None,
    x_shopify_webhook_id: Annotated[Optional[str], Header()] = None,
) -> WebhookAcceptedResponse:
    """Accept products/create and products/update deliveries."""
    body = await request.body()
    if not verify_shopify_hmac(x_shopify_hmac_sha256, body):
        logger.warning("Webhook HMAC verification failed", shop=x_shopify_shop_domain)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid HMAC")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expected a JSON object")

    pipeline = WebhookPipeline(session)
    event = await pipeline.ingest(
        topic=f"products/{action}",
        shop_domain=x_shopify_shop_domain,
        webhook_id=x_shopify_webhook_id,
        payload=payload,
    )
    if event is None:
        return WebhookAcceptedResponse(status="duplicate")

    # The worker must see the stored event.
    await session.commit()
    await queue.enqueue_job(
        "process_webhook_job",
        str(event.id),
        _job_id=f"webhook:{event.webhook_id or event.id}",
    )
    return WebhookAcceptedResponse(status="queued", event_id=event.id)
