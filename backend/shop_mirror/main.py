"""
Shop Mirror API - Main Application Entry Point.

Receives product webhooks from a source Shopify shop, queues replication
to connected target shops and exposes the admin provisioning API.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from redis.exceptions import RedisError

from shop_mirror.core.config import settings
from shop_mirror.core.database import close_db, init_db
from shop_mirror.core.logging import configure_logging, get_logger
from shop_mirror.middleware import ErrorHandlerMiddleware, RequestIdMiddleware
from shop_mirror.routers import (
    health_router,
    mirrors_router,
    shops_router,
    webhooks_router,
)
from shop_mirror.services.job_queue import create_queue_pool

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Opens the database and job queue connections.
    """
    logger.info(
        "Starting application",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
    )

    await init_db()

    app.state.queue = None
    try:
        app.state.queue = await create_queue_pool()
        logger.info("Job queue connected")
    except (RedisError, OSError) as e:
        logger.warning("Job queue unavailable, webhooks will be rejected", error=str(e))

    if settings.sentry_dsn:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
        )
        logger.info("Sentry initialized")

    yield

    logger.info("Shutting down application")
    if app.state.queue is not None:
        await app.state.queue.aclose()
    await close_db()


def create_app() -> FastAPI:
    """
    Application factory function.
    Creates and configures the FastAPI application.
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Shopify product catalog replication service",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Order matters - last added = outermost
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(shops_router)
    app.include_router(mirrors_router)

    logger.info("Application created", routes=len(app.routes))

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "shop_mirror.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
