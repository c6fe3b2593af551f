"""
SQLAlchemy models package.
All models are imported here for easy access and Alembic discovery.
"""
from shop_mirror.models.coordination import CoordinationGate, GateStatus
from shop_mirror.models.media_process import MediaProcessStatus, ProductMediaProcess
from shop_mirror.models.mirror import ProductMirror, VariantMirror
from shop_mirror.models.shop import Shop, ShopConnection
from shop_mirror.models.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "Shop",
    "ShopConnection",
    "ProductMirror",
    "VariantMirror",
    "ProductMediaProcess",
    "MediaProcessStatus",
    "WebhookEvent",
    "WebhookEventStatus",
    "CoordinationGate",
    "GateStatus",
]
