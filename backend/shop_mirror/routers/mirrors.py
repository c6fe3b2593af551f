"""
Mirror inspection, snapshot refresh and media process status routes.
"""
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shop_mirror.core.database import get_db_session
from shop_mirror.core.logging import get_logger
from shop_mirror.models.mirror import ProductMirror
from shop_mirror.repositories.media_process import MediaProcessRepository
from shop_mirror.repositories.shop import ShopRepository
from shop_mirror.routers.deps import AdminGuard, JobQueue
from shop_mirror.schemas.media_process import MediaProcessResponse, MediaProcessUpdate
from shop_mirror.schemas.mirror import ProductMirrorResponse, RefreshRequestResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["mirrors"], dependencies=[AdminGuard])


@router.get(
    "/mirrors/{source_shop_id}/{product_id}",
    response_model=list[ProductMirrorResponse],
)
async def get_product_mirrors(
    source_shop_id: UUID,
    product_id: int,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> list[ProductMirrorResponse]:
    """Every target mirror of one source product, with its variant rows."""
    stmt = (
        select(ProductMirror)
        .options(selectinload(ProductMirror.variants))
        .where(
            ProductMirror.source_shop_id == source_shop_id,
            ProductMirror.source_product_id == product_id,
        )
    )
    result = await session.execute(stmt)
    return [ProductMirrorResponse.model_validate(mirror) for mirror in result.scalars().all()]


@router.post(
    "/mirrors/{source_shop_id}/{product_id}/refresh",
    response_model=RefreshRequestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def refresh_snapshot(
    source_shop_id: UUID,
    product_id: int,
    queue: JobQueue,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> RefreshRequestResponse:
    """Queue a snapshot refresh from the live source product."""
    source = await ShopRepository(session).get_by_id(source_shop_id)
    if not source or not source.is_source:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Source shop not found")

    job = await queue.enqueue_job(
        "refresh_snapshot_job",
        str(source_shop_id),
        product_id,
        _job_id=f"refresh:{source_shop_id}:{product_id}",
    )
    logger.info("Snapshot refresh queued", source_shop=source.domain, product_id=product_id)
    return RefreshRequestResponse(
        message="Refresh queued" if job else "Refresh already queued",
        job_id=job.job_id if job else None,
        queued=job is not None,
    )


@router.get(
    "/media-processes/{shop_domain}/{product_id}",
    response_model=MediaProcessResponse,
)
async def get_media_process(
    shop_domain: str,
    product_id: int,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> MediaProcessResponse:
    process = await MediaProcessRepository(session).get(shop_domain, product_id)
    if not process:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Media process not found")
    return MediaProcessResponse.model_validate(process)


@router.put(
    "/media-processes/{shop_domain}/{product_id}",
    response_model=MediaProcessResponse,
)
async def update_media_process(
    shop_domain: str,
    product_id: int,
    update: MediaProcessUpdate,
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> MediaProcessResponse:
    """Record image-processing progress; the coordination gate reads it."""
    shop = await ShopRepository(session).get_by_domain(shop_domain)
    process = await MediaProcessRepository(session).upsert_status(
        shop_domain,
        product_id,
        update.status,
        shop_id=shop.id if shop else None,
        product_gid=update.product_gid,
        images_count=update.images_count,
        processed_count=update.processed_count,
        last_error=update.last_error,
    )
    logger.info(
        "Media process updated",
        shop=shop_domain,
        product_id=product_id,
        status=update.status.value,
    )
    return MediaProcessResponse.model_validate(process)
