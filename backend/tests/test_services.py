"""
Tests for service layer components.
"""
import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from shop_mirror.middleware import ErrorHandlerMiddleware, RequestIdMiddleware
from shop_mirror.repositories.mirror import ProductMirrorRepository, VariantMirrorRepository
from shop_mirror.services.notification_service import NotificationService
from shop_mirror.services.replication import ReplicationOptions
from shop_mirror.services.shopify_client import ShopifyAPIError
from shop_mirror.services.snapshot_refresher import SnapshotRefresher, SourceProductNotFoundError


class TestNotificationService:
    """Tests for NotificationService."""

    @pytest.fixture
    def requests(self) -> list[httpx.Request]:
        return []

    @pytest.fixture
    def service(self, requests) -> NotificationService:
        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "email_123"})

        return NotificationService(
            resend_api_key="re_test_key",
            sender="Shop Mirror <alerts@example.com>",
            transport=httpx.MockTransport(handler),
        )

    async def test_send_email(self, service: NotificationService, requests):
        result = await service.send_email(
            to="ops@example.com",
            subject="Test Subject",
            html_content="<p>Test</p>",
        )

        assert result is True
        assert requests[0].headers["Authorization"] == "Bearer re_test_key"
        body = json.loads(requests[0].content)
        assert body["to"] == ["ops@example.com"]
        assert body["from"] == "Shop Mirror <alerts@example.com>"

    async def test_send_email_without_key(self):
        service = NotificationService(resend_api_key="")

        assert await service.send_email(to="ops@example.com", subject="x", html_content="x") is False

    async def test_send_email_failure_status(self):
        service = NotificationService(
            resend_api_key="re_test_key",
            transport=httpx.MockTransport(lambda request: httpx.Response(422, text="invalid")),
        )

        assert await service.send_email(to="ops@example.com", subject="x", html_content="x") is False

    async def test_send_webhook_signs_body(self, service: NotificationService, requests):
        payload = {"event": "replication.failed"}

        result = await service.send_webhook(url="https://hooks.example.com/ops", payload=payload, secret="s3cret")

        assert result is True
        expected = hmac.new(b"s3cret", requests[0].content, hashlib.sha256).hexdigest()
        assert requests[0].headers["X-Webhook-Signature"] == f"sha256={expected}"

    async def test_send_webhook_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = NotificationService(transport=httpx.MockTransport(handler))

        assert await service.send_webhook(url="https://hooks.example.com/ops", payload={}) is False

    async def test_notify_replication_failure(self, service: NotificationService, requests):
        channels = await service.notify_replication_failure(
            source_shop="source.myshopify.com",
            target_shop="target.myshopify.com",
            source_product_id=1001,
            error="<boom>",
            attempts=5,
            alert_email="ops@example.com",
            webhook_url="https://hooks.example.com/ops",
        )

        assert channels == ["email", "webhook"]
        email = json.loads(requests[0].content)
        assert "&lt;boom&gt;" in email["html"]
        webhook = json.loads(requests[1].content)
        assert webhook["event"] == "replication.failed"
        assert webhook["source_product_id"] == 1001

    async def test_notify_without_channels(self, service: NotificationService, requests):
        channels = await service.notify_replication_failure(
            source_shop="s",
            target_shop="t",
            source_product_id=1,
            error="x",
            attempts=1,
        )

        assert channels == []
        assert requests == []


class TestSnapshotRefresher:
    """Tests for SnapshotRefresher."""

    async def test_realigns_every_mirror(self, session, connected_shops, multi_variant_payload: dict):
        source, target = connected_shops
        mirror = await ProductMirrorRepository(session).upsert(
            source_shop_id=source.id,
            source_product_id=1001,
            target_shop_id=target.id,
            target_product_gid="gid://shopify/Product/9001",
        )
        source_client = AsyncMock()
        source_client.fetch_rest_product.return_value = multi_variant_payload
        target_client = AsyncMock()
        target_client.fetch_variants.return_value = [
            {
                "id": "gid://shopify/ProductVariant/71",
                "selectedOptions": [{"name": "Size", "value": "S"}],
                "inventoryItem": {"id": "gid://shopify/InventoryItem/81", "tracked": True},
            },
            {
                "id": "gid://shopify/ProductVariant/72",
                "selectedOptions": [{"name": "Size", "value": "M"}],
                "inventoryItem": {"id": "gid://shopify/InventoryItem/82", "tracked": True},
            },
        ]
        clients = {source.id: source_client, target.id: target_client}
        refresher = SnapshotRefresher(session, lambda shop: clients[shop.id], ReplicationOptions())

        summary = await refresher.refresh(source.id, 1001)

        assert summary["mirror_count"] == 1
        assert summary["targets"][0]["status"] == "snapshot_and_variants_refreshed"
        assert mirror.last_snapshot["title"] == "Linen Shirt"
        rows = await VariantMirrorRepository(session).map_for(mirror.id)
        assert rows["size=m"].target_variant_gid == "gid://shopify/ProductVariant/72"
        # Fingerprints are cleared so the next event re-sends economics.
        assert rows["size=m"].variant_fingerprint is None

    async def test_variant_fetch_failure_keeps_snapshot(self, session, connected_shops, multi_variant_payload: dict):
        source, target = connected_shops
        mirror = await ProductMirrorRepository(session).upsert(
            source_shop_id=source.id,
            source_product_id=1001,
            target_shop_id=target.id,
            target_product_gid="gid://shopify/Product/9001",
        )
        source_client = AsyncMock()
        source_client.fetch_rest_product.return_value = multi_variant_payload
        target_client = AsyncMock()
        target_client.fetch_variants.side_effect = ShopifyAPIError("down")
        clients = {source.id: source_client, target.id: target_client}

        summary = await SnapshotRefresher(session, lambda shop: clients[shop.id], ReplicationOptions()).refresh(
            source.id, 1001
        )

        assert summary["targets"][0]["status"] == "snapshot_refreshed_variant_sync_failed"
        assert mirror.last_snapshot["id"] == 1001

    async def test_missing_source_product(self, session, connected_shops):
        source, _ = connected_shops
        source_client = AsyncMock()
        source_client.fetch_rest_product.return_value = None

        with pytest.raises(SourceProductNotFoundError):
            await SnapshotRefresher(session, lambda shop: source_client, ReplicationOptions()).refresh(source.id, 1001)


class TestErrorHandlerMiddleware:
    """Unhandled errors become JSON responses."""

    @pytest.fixture
    def failing_client(self) -> TestClient:
        test_app = FastAPI()
        test_app.add_middleware(ErrorHandlerMiddleware)
        test_app.add_middleware(RequestIdMiddleware)

        @test_app.get("/shopify")
        async def shopify_failure():
            raise ShopifyAPIError("HTTP error: 503", status_code=503)

        @test_app.get("/crash")
        async def crash():
            raise RuntimeError("unexpected")

        return TestClient(test_app)

    def test_shopify_error_maps_to_502(self, failing_client: TestClient):
        response = failing_client.get("/shopify", headers={"X-Request-ID": "req-1"})

        assert response.status_code == 502
        assert response.json() == {"detail": "Shopify API error", "type": "ShopifyAPIError", "request_id": "req-1"}

    def test_other_errors_map_to_500(self, failing_client: TestClient):
        response = failing_client.get("/crash")

        assert response.status_code == 500
        assert response.json()["type"] == "RuntimeError"
        assert response.headers["x-request-id"]
