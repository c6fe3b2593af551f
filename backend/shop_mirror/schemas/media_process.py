"""
Product media process schemas.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from shop_mirror.models.media_process import MediaProcessStatus


class MediaProcessUpdate(BaseModel):
    """Progress report from an image processor."""

    status: MediaProcessStatus
    product_gid: Optional[str] = Field(None, alias="productGid")
    images_count: Optional[int] = Field(None, ge=0, alias="imagesCount")
    processed_count: Optional[int] = Field(None, ge=0, alias="processedCount")
    last_error: Optional[str] = Field(None, alias="lastError")

    model_config = ConfigDict(populate_by_name=True)


class MediaProcessResponse(BaseModel):
    shop_domain: str = Field(alias="shopDomain")
    product_id: int = Field(alias="productId")
    product_gid: Optional[str] = Field(None, alias="productGid")
    status: str
    images_count: int = Field(0, alias="imagesCount")
    processed_count: int = Field(0, alias="processedCount")
    attempts: int = 0
    last_error: Optional[str] = Field(None, alias="lastError")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )
