"""
Global error handling middleware.

Pure ASGI so that yield dependencies like get_db_session() keep working.
"""
import json

from fastapi import HTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shop_mirror.core.logging import get_logger
from shop_mirror.services.shopify_client import ShopifyAPIError

logger = get_logger(__name__)


class ErrorHandlerMiddleware:
    """
    Turns unhandled exceptions into JSON responses.

    HTTPException passes through to FastAPI. Errors from the Shopify Admin
    API map to 502, everything else to 500.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except HTTPException:
            raise
        except Exception as e:
            path = scope.get("path", "unknown")
            if response_started:
                logger.exception("Unhandled exception after response started", error=str(e), path=path)
                raise

            if isinstance(e, ShopifyAPIError):
                status_code, detail = 502, "Shopify API error"
                logger.error("Shopify API error", error=str(e), status=e.status_code, path=path)
            else:
                status_code, detail = 500, "Internal server error"
                logger.exception("Unhandled exception", error=str(e), path=path)

            body = json.dumps({
                "detail": detail,
                "type": type(e).__name__,
                "request_id": scope.get("state", {}).get("request_id"),
            }).encode("utf-8")

            await send({
                "type": "http.response.start",
                "status": status_code,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode()),
                ],
            })
            await send({
                "type": "http.response.body",
                "body": body,
            })
