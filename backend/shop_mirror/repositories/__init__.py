"""
Repository package for data access layer.
"""
from shop_mirror.repositories.base import BaseRepository
from shop_mirror.repositories.coordination import CoordinationGateRepository
from shop_mirror.repositories.media_process import MediaProcessRepository
from shop_mirror.repositories.mirror import ProductMirrorRepository, VariantMirrorRepository
from shop_mirror.repositories.shop import ShopRepository
from shop_mirror.repositories.webhook_event import WebhookEventRepository

__all__ = [
    "BaseRepository",
    "ShopRepository",
    "ProductMirrorRepository",
    "VariantMirrorRepository",
    "MediaProcessRepository",
    "WebhookEventRepository",
    "CoordinationGateRepository",
]
