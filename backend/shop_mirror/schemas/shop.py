"""
Shop and connection Pydantic schemas for request/response validation.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ShopBase(BaseModel):
    """Base shop schema with common fields."""

    domain: str = Field(..., min_length=1, max_length=255)

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, value: str) -> str:
        return value.strip().lower()


class ShopCreate(ShopBase):
    """Schema for provisioning a shop or rotating its credentials."""

    name: Optional[str] = None
    access_token: str = Field(..., min_length=1, alias="accessToken")
    api_version: Optional[str] = Field(None, alias="apiVersion")
    is_source: bool = Field(False, alias="isSource")
    location_legacy_id: Optional[int] = Field(None, alias="locationId")

    model_config = ConfigDict(populate_by_name=True)


class ShopUpdate(BaseModel):
    """Schema for toggling a shop in or out of replication."""

    is_active: Optional[bool] = Field(None, alias="isActive")
    name: Optional[str] = None
    api_version: Optional[str] = Field(None, alias="apiVersion")
    location_legacy_id: Optional[int] = Field(None, alias="locationId")

    model_config = ConfigDict(populate_by_name=True)


class ShopResponse(ShopBase):
    """Schema for shop API responses. Never exposes the token."""

    id: UUID
    name: Optional[str] = None
    api_version: Optional[str] = Field(None, alias="apiVersion")
    is_source: bool = Field(alias="isSource")
    is_active: bool = Field(alias="isActive")
    location_legacy_id: Optional[int] = Field(None, alias="locationId")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class ConnectionCreate(BaseModel):
    """Connect one source shop to one or more targets."""

    source_domain: str = Field(..., alias="sourceDomain")
    target_domains: list[str] = Field(..., min_length=1, alias="targetDomains")

    model_config = ConfigDict(populate_by_name=True)


class ConnectionResponse(BaseModel):
    id: UUID
    source_shop_id: UUID = Field(alias="sourceShopId")
    target_shop_id: UUID = Field(alias="targetShopId")
    created: bool = False

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class ConnectionListResponse(BaseModel):
    source_domain: str = Field(alias="sourceDomain")
    targets: list[ShopResponse]

    model_config = ConfigDict(populate_by_name=True)
