"""
Request context middleware for tracing.

Pure ASGI so that yield dependencies like get_db_session() keep working.
"""
import uuid

import structlog
from starlette.types import ASGIApp, Message, Receive, Scope, Send

# Inbound headers copied into the log context when present.
_CONTEXT_HEADERS = {
    b"x-shopify-shop-domain": "shop",
    b"x-shopify-topic": "topic",
    b"x-shopify-webhook-id": "webhook_id",
}


class RequestIdMiddleware:
    """
    Binds a request id (taken from X-Request-ID or generated) plus any
    Shopify delivery headers to the structlog context of the request,
    and echoes the id back in the response headers.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = None
        context: dict[str, str] = {}
        for header_name, header_value in scope.get("headers", []):
            if header_name == b"x-request-id":
                request_id = header_value.decode("latin-1")
            elif header_name in _CONTEXT_HEADERS:
                context[_CONTEXT_HEADERS[header_name]] = header_value.decode("latin-1")

        request_id = request_id or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, **context)

        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_request_id)
