"""
API routers package.
"""
from shop_mirror.routers.health import router as health_router
from shop_mirror.routers.mirrors import router as mirrors_router
from shop_mirror.routers.shops import router as shops_router
from shop_mirror.routers.webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "shops_router",
    "webhooks_router",
    "mirrors_router",
]
