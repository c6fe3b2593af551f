"""
Tests for arq job functions.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from arq import Retry

from shop_mirror.core.config import settings
from shop_mirror.models.media_process import MediaProcessStatus
from shop_mirror.repositories.media_process import MediaProcessRepository
from shop_mirror.services import job_queue
from shop_mirror.services.replication import MirrorNotFoundError, ReplicationReport
from shop_mirror.services.webhook_pipeline import WebhookPipeline


@pytest.fixture
def patched_db(db_context):
    with patch("shop_mirror.services.job_queue.get_db_context", new=db_context):
        yield


@pytest.fixture
def orchestrator_cls():
    with patch("shop_mirror.services.job_queue.ReplicationOrchestrator") as cls, patch(
        "shop_mirror.services.job_queue.shopify_client_for", return_value=AsyncMock()
    ):
        yield cls


class TestRetryDelay:
    def test_tiers(self):
        tiers = settings.replication_backoff
        assert job_queue.retry_delay(1) == tiers[0]
        assert job_queue.retry_delay(2) == tiers[1]
        assert job_queue.retry_delay(50) == tiers[-1]
        assert job_queue.retry_delay(0) == tiers[0]


class TestReplicateCreateJob:
    async def test_success(self, patched_db, orchestrator_cls, connected_shops, multi_variant_payload):
        source, target = connected_shops
        orchestrator_cls.return_value.replicate_create = AsyncMock(
            return_value=ReplicationReport(
                target_shop=target.domain,
                source_product_id=1001,
                target_product_gid="gid://shopify/Product/9001",
            )
        )

        result = await job_queue.replicate_create_job(
            {"job_try": 1}, str(source.id), str(target.id), multi_variant_payload
        )

        assert result == {"target_product_gid": "gid://shopify/Product/9001", "ok": True}

    async def test_failure_is_retried_with_backoff(
        self, patched_db, orchestrator_cls, connected_shops, multi_variant_payload
    ):
        source, target = connected_shops
        orchestrator_cls.return_value.replicate_create = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(Retry) as exc_info:
            await job_queue.replicate_create_job(
                {"job_try": 1}, str(source.id), str(target.id), multi_variant_payload
            )

        assert exc_info.value.defer_score == job_queue.retry_delay(1) * 1000

    async def test_last_try_notifies_and_raises(
        self, patched_db, orchestrator_cls, connected_shops, multi_variant_payload
    ):
        source, target = connected_shops
        orchestrator_cls.return_value.replicate_create = AsyncMock(side_effect=RuntimeError("boom"))

        with patch.object(
            job_queue.notification_service, "notify_replication_failure", new=AsyncMock(return_value=[])
        ) as notify:
            with pytest.raises(RuntimeError):
                await job_queue.replicate_create_job(
                    {"job_try": settings.replication_max_tries},
                    str(source.id),
                    str(target.id),
                    multi_variant_payload,
                )

        kwargs = notify.await_args.kwargs
        assert kwargs["source_shop"] == source.domain
        assert kwargs["target_shop"] == target.domain
        assert kwargs["source_product_id"] == 1001
        assert kwargs["attempts"] == settings.replication_max_tries

    async def test_missing_pair_is_skipped(self, patched_db, orchestrator_cls, multi_variant_payload):
        result = await job_queue.replicate_create_job(
            {"job_try": 1}, str(uuid4()), str(uuid4()), multi_variant_payload
        )

        assert result == {"skipped": True}
        orchestrator_cls.assert_not_called()


class TestReplicateUpdateJob:
    async def test_missing_mirror_is_not_retried(
        self, patched_db, orchestrator_cls, connected_shops, multi_variant_payload
    ):
        source, target = connected_shops
        orchestrator_cls.return_value.replicate_update = AsyncMock(side_effect=MirrorNotFoundError("none"))

        result = await job_queue.replicate_update_job(
            {"job_try": 1}, str(source.id), str(target.id), multi_variant_payload
        )

        assert result == {"skipped": True, "reason": "mirror_not_found"}

    async def test_unexpected_error_is_retried(
        self, patched_db, orchestrator_cls, connected_shops, multi_variant_payload
    ):
        source, target = connected_shops
        orchestrator_cls.return_value.replicate_update = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(Retry):
            await job_queue.replicate_update_job(
                {"job_try": 2}, str(source.id), str(target.id), multi_variant_payload
            )


class TestCoordinateSourceMediaJob:
    async def test_waiting_gate_requeues_itself(self, patched_db, connected_shops, queue):
        source, _ = connected_shops

        result = await job_queue.coordinate_source_media_job({"redis": queue}, str(source.id), 1001, True)

        assert result == {"action": "wait", "attempts": 1}
        jobs = queue.named("coordinate_source_media_job")
        assert len(jobs) == 1
        assert jobs[0]["args"] == (str(source.id), 1001, False)
        assert jobs[0]["defer_by"] == timedelta(seconds=settings.gate_backoff_seconds)

    async def test_release_dispatches_source_media(self, patched_db, source_shop, session, queue):
        await session.commit()

        result = await job_queue.coordinate_source_media_job({"redis": queue}, str(source_shop.id), 1001)

        assert result["action"] == "release"
        dispatched = queue.named("dispatch_source_media_job")
        assert dispatched[0]["args"] == (str(source_shop.id), 1001)
        registered = {function.__name__ for function in job_queue.WorkerSettings.functions}
        assert dispatched[0]["function"] in registered

    async def test_timeout_still_dispatches_source_media(self, patched_db, connected_shops, queue):
        source, _ = connected_shops

        with patch.object(settings, "gate_max_attempts", 1):
            result = await job_queue.coordinate_source_media_job({"redis": queue}, str(source.id), 1001, True)

        assert result == {"action": "timeout", "attempts": 1}
        assert queue.named("coordinate_source_media_job") == []
        assert len(queue.named("dispatch_source_media_job")) == 1

    async def test_unknown_source(self, patched_db, queue):
        result = await job_queue.coordinate_source_media_job({"redis": queue}, str(uuid4()), 1001)

        assert result == {"skipped": True}
        assert queue.jobs == []


class TestDispatchSourceMediaJob:
    @pytest.fixture
    def source_client(self, multi_variant_payload):
        client = AsyncMock()
        client.fetch_rest_product.return_value = multi_variant_payload
        with patch("shop_mirror.services.job_queue.shopify_client_for", return_value=client):
            yield client

    async def test_records_pending_process_and_notifies_processor(
        self, patched_db, source_shop, session, source_client
    ):
        await session.commit()
        send_webhook = AsyncMock(return_value=True)

        with patch.object(settings, "media_processor_webhook_url", "https://images.example.com/jobs"), patch.object(
            job_queue.notification_service, "send_webhook", send_webhook
        ):
            result = await job_queue.dispatch_source_media_job({}, str(source_shop.id), 1001)

        assert result == {"status": "pending", "images": 2, "notified": True}
        process = await MediaProcessRepository(session).get("source-store.myshopify.com", 1001)
        assert process.status == MediaProcessStatus.PENDING.value
        assert process.images_count == 2
        payload = send_webhook.await_args.kwargs["payload"]
        assert payload["event"] == "source_media.ready"
        assert [image["position"] for image in payload["images"]] == [1, 2]

    async def test_product_without_images_is_skipped(
        self, patched_db, source_shop, session, source_client, multi_variant_payload
    ):
        await session.commit()
        source_client.fetch_rest_product.return_value = {**multi_variant_payload, "images": []}

        result = await job_queue.dispatch_source_media_job({}, str(source_shop.id), 1001)

        assert result == {"status": "skipped", "images": 0, "notified": False}
        process = await MediaProcessRepository(session).get("source-store.myshopify.com", 1001)
        assert process.status == MediaProcessStatus.SKIPPED.value

    async def test_missing_source_product(self, patched_db, source_shop, session, source_client):
        await session.commit()
        source_client.fetch_rest_product.return_value = None

        result = await job_queue.dispatch_source_media_job({}, str(source_shop.id), 1001)

        assert result == {"skipped": True, "reason": "source_product_not_found"}


class TestProcessWebhookJob:
    async def test_dispatches_stored_event(self, patched_db, session, connected_shops, queue, multi_variant_payload):
        event = await WebhookPipeline(session).ingest(
            topic="products/create",
            shop_domain="source-store.myshopify.com",
            webhook_id="delivery-9",
            payload=multi_variant_payload,
        )
        await session.commit()

        with patch("shop_mirror.services.job_queue.shopify_client_for", return_value=MagicMock()):
            result = await job_queue.process_webhook_job({"redis": queue}, str(event.id))

        assert result["dispatched"] == 1
        assert len(queue.named("replicate_create_job")) == 1


class TestRefreshSnapshotJob:
    async def test_missing_source_product_is_skipped(self, patched_db, connected_shops):
        source, _ = connected_shops
        source_client = AsyncMock()
        source_client.fetch_rest_product.return_value = None

        with patch("shop_mirror.services.job_queue.shopify_client_for", return_value=source_client):
            result = await job_queue.refresh_snapshot_job({}, str(source.id), 1001)

        assert result["skipped"] is True


def test_worker_settings_register_every_job():
    names = {function.__name__ for function in job_queue.WorkerSettings.functions}

    assert names == {
        "process_webhook_job",
        "replicate_create_job",
        "replicate_update_job",
        "coordinate_source_media_job",
        "dispatch_source_media_job",
        "refresh_snapshot_job",
    }
    assert job_queue.WorkerSettings.max_tries == settings.replication_max_tries
