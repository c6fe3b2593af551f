"""
Mirror and webhook schemas.
"""
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class VariantMirrorResponse(BaseModel):
    source_variant_id: Optional[int] = Field(None, alias="sourceVariantId")
    source_options_key: str = Field(alias="sourceOptionsKey")
    target_variant_gid: Optional[str] = Field(None, alias="targetVariantGid")
    variant_fingerprint: Optional[str] = Field(None, alias="variantFingerprint")
    inventory_fingerprint: Optional[str] = Field(None, alias="inventoryFingerprint")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ProductMirrorResponse(BaseModel):
    id: UUID
    source_product_id: int = Field(alias="sourceProductId")
    target_shop_id: UUID = Field(alias="targetShopId")
    target_product_gid: Optional[str] = Field(None, alias="targetProductGid")
    last_snapshot: Optional[dict[str, Any]] = Field(None, alias="lastSnapshot")
    variants: list[VariantMirrorResponse] = []

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class RefreshRequestResponse(BaseModel):
    """Response for a queued snapshot refresh."""

    message: str
    job_id: Optional[str] = Field(None, alias="jobId")
    queued: bool

    model_config = ConfigDict(populate_by_name=True)


class WebhookAcceptedResponse(BaseModel):
    status: str
    event_id: Optional[UUID] = Field(None, alias="eventId")

    model_config = ConfigDict(populate_by_name=True)
