"""
Product media process repository.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select

from shop_mirror.models.media_process import MediaProcessStatus, ProductMediaProcess
from shop_mirror.repositories.base import BaseRepository


class MediaProcessRepository(BaseRepository[ProductMediaProcess]):
    model = ProductMediaProcess

    async def get(self, shop_domain: str, product_id: int) -> Optional[ProductMediaProcess]:
        stmt = select(ProductMediaProcess).where(
            ProductMediaProcess.shop_domain == shop_domain.strip().lower(),
            ProductMediaProcess.product_id == product_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_status(
        self,
        shop_domain: str,
        product_id: int,
        status: MediaProcessStatus,
        *,
        shop_id: Optional[UUID] = None,
        product_gid: Optional[str] = None,
        images_count: Optional[int] = None,
        processed_count: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> ProductMediaProcess:
        """Record the latest image-processing status for a (shop, product)."""
        now = datetime.now(timezone.utc)
        process = await self.get(shop_domain, product_id)
        if process is None:
            process = ProductMediaProcess(
                shop_domain=shop_domain.strip().lower(),
                product_id=product_id,
                attempts=0,
                images_count=0,
                processed_count=0,
            )
            self.session.add(process)

        process.status = status.value
        if shop_id is not None:
            process.shop_id = shop_id
        if product_gid is not None:
            process.product_gid = product_gid
        if images_count is not None:
            process.images_count = images_count
        if processed_count is not None:
            process.processed_count = processed_count

        if status == MediaProcessStatus.PROCESSING:
            process.attempts = (process.attempts or 0) + 1
            process.started_at = now
        elif status in (MediaProcessStatus.COMPLETED, MediaProcessStatus.SKIPPED):
            process.completed_at = now
            process.last_error = None
        elif status == MediaProcessStatus.FAILED:
            process.last_error = last_error

        await self.session.flush()
        return process
