"""
Pydantic schemas package.
"""
from shop_mirror.schemas.media_process import MediaProcessResponse, MediaProcessUpdate
from shop_mirror.schemas.mirror import (
    ProductMirrorResponse,
    RefreshRequestResponse,
    VariantMirrorResponse,
    WebhookAcceptedResponse,
)
from shop_mirror.schemas.shop import (
    ConnectionCreate,
    ConnectionListResponse,
    ConnectionResponse,
    ShopBase,
    ShopCreate,
    ShopResponse,
    ShopUpdate,
)

__all__ = [
    # Shop
    "ShopBase",
    "ShopCreate",
    "ShopUpdate",
    "ShopResponse",
    "ConnectionCreate",
    "ConnectionResponse",
    "ConnectionListResponse",
    # Mirrors
    "ProductMirrorResponse",
    "VariantMirrorResponse",
    "RefreshRequestResponse",
    "WebhookAcceptedResponse",
    # Media processes
    "MediaProcessUpdate",
    "MediaProcessResponse",
]
