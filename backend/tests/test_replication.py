"""
Tests for the replication orchestrator.

The target Admin API is an AsyncMock; the mirror store is a real
SQLite database.
"""
import copy

import pytest

from shop_mirror.models.media_process import MediaProcessStatus
from shop_mirror.models.mirror import ProductMirror
from shop_mirror.repositories.media_process import MediaProcessRepository
from shop_mirror.repositories.mirror import ProductMirrorRepository, VariantMirrorRepository
from shop_mirror.services.normalization import normalize_product
from shop_mirror.services.replication import (
    MirrorNotFoundError,
    ReplicationOptions,
    ReplicationOrchestrator,
)
from shop_mirror.services.shopify_client import ShopifyAPIError

PRODUCT_GID = "gid://shopify/Product/9001"
LOCATION_GID = "gid://shopify/Location/555"

MUTATIONS = (
    "create_product",
    "update_product",
    "create_options",
    "set_options",
    "bulk_create_variants",
    "bulk_update_variants",
    "delete_variant",
    "set_variant_identity",
    "delete_media",
    "create_media",
    "set_inventory_quantities",
    "set_inventory_tracked",
)


def created_variant_nodes() -> list[dict]:
    return [
        {
            "id": "gid://shopify/ProductVariant/71",
            "legacyResourceId": "71",
            "selectedOptions": [{"name": "Size", "value": "S"}],
            "inventoryItem": {"id": "gid://shopify/InventoryItem/81"},
        },
        {
            "id": "gid://shopify/ProductVariant/72",
            "legacyResourceId": "72",
            "selectedOptions": [{"name": "Size", "value": "M"}],
            "inventoryItem": {"id": "gid://shopify/InventoryItem/82"},
        },
    ]


@pytest.fixture
def orchestrator(session, source_shop, target_shop, target_client):
    target_client.bulk_create_variants.return_value = created_variant_nodes()
    return ReplicationOrchestrator(
        session,
        source_shop=source_shop,
        target_shop=target_shop,
        target_client=target_client,
    )


async def variant_rows(session, mirror: ProductMirror) -> dict:
    return await VariantMirrorRepository(session).map_for(mirror.id)


async def load_mirror(session, source_shop, target_shop, product_id: int) -> ProductMirror:
    return await ProductMirrorRepository(session).get_for(source_shop.id, product_id, target_shop.id)


class TestReplicateCreate:
    """Tests for the create path."""

    async def test_creates_product_variants_and_mirror(
        self,
        orchestrator: ReplicationOrchestrator,
        target_client,
        session,
        source_shop,
        target_shop,
        multi_variant_payload: dict,
    ):
        report = await orchestrator.replicate_create(multi_variant_payload)

        assert report.ok
        assert report.created
        assert report.target_product_gid == PRODUCT_GID

        product_input = target_client.create_product.await_args.args[0]
        assert product_input["title"] == "Linen Shirt"
        assert product_input["productOptions"] == [
            {"name": "Size", "position": 1, "values": [{"name": "S"}, {"name": "M"}]}
        ]

        media = target_client.create_media.await_args.args[1]
        assert [item["alt"] for item in media] == ["Front", "Back"]

        variants_input = target_client.bulk_create_variants.await_args.args[1]
        assert [v["optionValues"] for v in variants_input] == [
            [{"optionName": "Size", "name": "S"}],
            [{"optionName": "Size", "name": "M"}],
        ]
        assert variants_input[0]["inventoryItem"] == {"sku": "SHIRT-S", "tracked": True}

        target_client.set_inventory_quantities.assert_any_await("gid://shopify/InventoryItem/81", [LOCATION_GID], 5)
        target_client.set_inventory_quantities.assert_any_await("gid://shopify/InventoryItem/82", [LOCATION_GID], 3)

        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        assert mirror.target_product_gid == PRODUCT_GID
        assert mirror.target_product_id == 9001
        assert mirror.last_snapshot["title"] == "Linen Shirt"

        rows = await variant_rows(session, mirror)
        assert set(rows) == {"size=s", "size=m"}
        assert rows["size=s"].target_variant_gid == "gid://shopify/ProductVariant/71"
        assert rows["size=s"].last_snapshot == {"sku": "SHIRT-S", "barcode": None, "tracked": True}

        process = await MediaProcessRepository(session).get(target_shop.domain, 9001)
        assert process.status == MediaProcessStatus.COMPLETED.value
        assert process.images_count == 2

    async def test_default_product_reuses_platform_variant(
        self,
        orchestrator: ReplicationOrchestrator,
        target_client,
        session,
        source_shop,
        target_shop,
        default_variant_payload: dict,
    ):
        await orchestrator.replicate_create(default_variant_payload)

        target_client.bulk_create_variants.assert_not_awaited()
        assert "productOptions" not in target_client.create_product.await_args.args[0]

        update_input = target_client.bulk_update_variants.await_args.args[1][0]
        assert update_input["id"] == "gid://shopify/ProductVariant/7001"
        assert update_input["price"] == "25.00"
        assert update_input["inventoryItem"] == {"sku": "GIFT-25", "tracked": False}

        mirror = await load_mirror(session, source_shop, target_shop, 2002)
        rows = await variant_rows(session, mirror)
        assert list(rows) == ["title=default title"]

        process = await MediaProcessRepository(session).get(target_shop.domain, 9001)
        assert process.status == MediaProcessStatus.SKIPPED.value

    async def test_extra_tag_and_manual_collection(
        self,
        session,
        source_shop,
        target_shop,
        target_client,
        multi_variant_payload: dict,
    ):
        target_client.bulk_create_variants.return_value = created_variant_nodes()
        target_client.list_publication_ids.return_value = ["gid://shopify/Publication/1"]
        orchestrator = ReplicationOrchestrator(
            session,
            source_shop=source_shop,
            target_shop=target_shop,
            target_client=target_client,
            options=ReplicationOptions(
                extra_tag="mirrored",
                manual_collections={target_shop.domain: "gid://shopify/Collection/3"},
            ),
        )

        await orchestrator.replicate_create(multi_variant_payload)

        fields = target_client.update_product.await_args.args[1]
        assert fields["tags"] == ["linen", "summer", "mirrored"]
        assert fields["status"] == "ACTIVE"
        target_client.add_products_to_collection.assert_awaited_once_with("gid://shopify/Collection/3", [PRODUCT_GID])
        target_client.publish_product.assert_awaited_once_with(PRODUCT_GID, "gid://shopify/Publication/1")

    async def test_image_failure_does_not_abort_create(
        self,
        orchestrator: ReplicationOrchestrator,
        target_client,
        session,
        source_shop,
        target_shop,
        multi_variant_payload: dict,
    ):
        target_client.create_media.side_effect = ShopifyAPIError("media rejected")

        report = await orchestrator.replicate_create(multi_variant_payload)

        assert report.step_failed("images")
        target_client.bulk_create_variants.assert_awaited_once()
        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        assert mirror.last_snapshot["images"] == []
        process = await MediaProcessRepository(session).get(target_shop.domain, 9001)
        assert process.status == MediaProcessStatus.FAILED.value
        assert process.last_error == "media rejected"

    async def test_variant_failure_propagates(
        self,
        orchestrator: ReplicationOrchestrator,
        target_client,
        session,
        source_shop,
        target_shop,
        multi_variant_payload: dict,
    ):
        target_client.bulk_create_variants.side_effect = ShopifyAPIError("bad variant")

        with pytest.raises(ShopifyAPIError):
            await orchestrator.replicate_create(multi_variant_payload)

        # The product was created, so its mirror survives for the retry.
        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        assert mirror.target_product_gid == PRODUCT_GID

    async def test_retry_with_existing_mirror_does_not_duplicate(
        self,
        orchestrator: ReplicationOrchestrator,
        target_client,
        multi_variant_payload: dict,
    ):
        await orchestrator.replicate_create(multi_variant_payload)
        target_client.reset_mock()

        report = await orchestrator.replicate_create(multi_variant_payload)

        assert not report.created
        target_client.create_product.assert_not_awaited()

    async def test_payload_without_id(self, orchestrator: ReplicationOrchestrator):
        with pytest.raises(ValueError):
            await orchestrator.replicate_create({"title": "No id"})


class TestReplicateUpdate:
    """Tests for the update path."""

    @pytest.fixture
    async def replicated(self, orchestrator, target_client, multi_variant_payload):
        await orchestrator.replicate_create(multi_variant_payload)
        target_client.reset_mock()
        return copy.deepcopy(multi_variant_payload)

    async def test_repeated_payload_is_a_noop(self, orchestrator, target_client, replicated):
        report = await orchestrator.replicate_update(replicated)

        assert report.ok
        for name in MUTATIONS:
            getattr(target_client, name).assert_not_awaited()

    async def test_missing_mirror_raises(self, orchestrator, multi_variant_payload):
        with pytest.raises(MirrorNotFoundError):
            await orchestrator.replicate_update(multi_variant_payload)

    async def test_price_change_updates_one_variant(
        self, orchestrator, target_client, session, source_shop, target_shop, replicated
    ):
        replicated["variants"][0]["price"] = "12.00"

        await orchestrator.replicate_update(replicated)

        target_client.bulk_update_variants.assert_awaited_once()
        inputs = target_client.bulk_update_variants.await_args.args[1]
        assert inputs == [
            {
                "id": "gid://shopify/ProductVariant/71",
                "price": "12.00",
                "taxable": True,
                "inventoryPolicy": "DENY",
            }
        ]
        target_client.bulk_create_variants.assert_not_awaited()

        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        rows = await variant_rows(session, mirror)
        expected = normalize_product(replicated).variants["size=s"].variant_fingerprint
        assert rows["size=s"].variant_fingerprint == expected

    async def test_removed_variant_is_deleted(
        self, orchestrator, target_client, session, source_shop, target_shop, replicated
    ):
        replicated["variants"] = replicated["variants"][:1]

        report = await orchestrator.replicate_update(replicated)

        target_client.delete_variant.assert_awaited_once_with(PRODUCT_GID, "gid://shopify/ProductVariant/72")
        assert any(v.key == "size=m" and v.action == "delete" and v.ok for v in report.variants)
        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        assert set(await variant_rows(session, mirror)) == {"size=s"}

    async def test_failed_delete_keeps_row(
        self, orchestrator, target_client, session, source_shop, target_shop, replicated
    ):
        replicated["variants"] = replicated["variants"][:1]
        target_client.delete_variant.side_effect = ShopifyAPIError("in use")

        report = await orchestrator.replicate_update(replicated)

        assert not report.ok
        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        assert set(await variant_rows(session, mirror)) == {"size=s", "size=m"}

    async def test_renamed_value_keeps_row_until_old_variant_is_deleted(
        self, orchestrator, target_client, session, source_shop, target_shop, replicated
    ):
        replicated["options"][0]["values"] = ["Small", "M"]
        replicated["variants"][0]["option1"] = "Small"
        target_client.delete_variant.side_effect = ShopifyAPIError("in use")
        target_client.bulk_create_variants.return_value = [
            {
                "id": "gid://shopify/ProductVariant/79",
                "selectedOptions": [{"name": "Size", "value": "Small"}],
                "inventoryItem": {"id": "gid://shopify/InventoryItem/89"},
            }
        ]

        report = await orchestrator.replicate_update(replicated)

        assert not report.ok
        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        rows = await variant_rows(session, mirror)
        assert set(rows) == {"size=s", "size=m", "size=small"}
        assert rows["size=s"].target_variant_gid == "gid://shopify/ProductVariant/71"
        assert rows["size=s"].source_variant_id is None
        assert rows["size=small"].target_variant_gid == "gid://shopify/ProductVariant/79"
        assert rows["size=small"].source_variant_id == 11

        # The next event retries the delete of the old target variant.
        target_client.delete_variant.side_effect = None
        target_client.reset_mock()

        await orchestrator.replicate_update(replicated)

        target_client.delete_variant.assert_awaited_once_with(PRODUCT_GID, "gid://shopify/ProductVariant/71")
        target_client.bulk_create_variants.assert_not_awaited()
        assert set(await variant_rows(session, mirror)) == {"size=small", "size=m"}

    async def test_new_variant_is_created(
        self, orchestrator, target_client, session, source_shop, target_shop, replicated
    ):
        replicated["options"][0]["values"].append("L")
        replicated["variants"].append(
            {
                "id": 13,
                "option1": "L",
                "price": "11.00",
                "taxable": True,
                "inventory_policy": "deny",
                "inventory_management": "shopify",
                "inventory_quantity": 2,
                "sku": "SHIRT-L",
            }
        )
        target_client.fetch_options.return_value = [{"name": "Size", "values": ["S", "M"]}]
        target_client.bulk_create_variants.return_value = [
            {
                "id": "gid://shopify/ProductVariant/73",
                "selectedOptions": [{"name": "Size", "value": "L"}],
                "inventoryItem": {"id": "gid://shopify/InventoryItem/83"},
            }
        ]

        await orchestrator.replicate_update(replicated)

        target_client.set_options.assert_awaited_once()
        created_input = target_client.bulk_create_variants.await_args.args[1]
        assert [v["optionValues"] for v in created_input] == [[{"optionName": "Size", "name": "L"}]]
        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        rows = await variant_rows(session, mirror)
        assert rows["size=l"].target_variant_gid == "gid://shopify/ProductVariant/73"

    async def test_images_are_replaced(
        self, orchestrator, target_client, session, target_shop, replicated
    ):
        replicated["images"] = [{"id": 3, "src": "https://cdn.shopify.com/s/files/new.jpg", "alt": "New", "position": 1}]
        target_client.list_media.return_value = [
            {"id": "gid://shopify/MediaImage/1"},
            {"id": "gid://shopify/MediaImage/2"},
        ]

        await orchestrator.replicate_update(replicated)

        target_client.delete_media.assert_awaited_once_with(
            PRODUCT_GID, ["gid://shopify/MediaImage/1", "gid://shopify/MediaImage/2"]
        )
        target_client.create_media.assert_awaited_once_with(
            PRODUCT_GID,
            [{"mediaContentType": "IMAGE", "originalSource": "https://cdn.shopify.com/s/files/new.jpg", "alt": "New"}],
        )
        process = await MediaProcessRepository(session).get(target_shop.domain, 9001)
        assert process.status == MediaProcessStatus.COMPLETED.value
        assert process.images_count == 1

    async def test_product_patch_failure_is_best_effort(
        self, orchestrator, target_client, session, source_shop, target_shop, replicated
    ):
        replicated["title"] = "Linen Shirt v2"
        replicated["variants"][1]["price"] = "9.00"
        target_client.update_product.side_effect = ShopifyAPIError("title rejected")

        report = await orchestrator.replicate_update(replicated)

        assert report.step_failed("product")
        target_client.bulk_update_variants.assert_awaited_once()
        mirror = await load_mirror(session, source_shop, target_shop, 1001)
        # Old title stays in the snapshot so the next event retries the patch.
        assert mirror.last_snapshot["title"] == "Linen Shirt"

    async def test_inventory_change_sets_absolute_quantity(
        self, orchestrator, target_client, session, source_shop, target_shop, replicated
    ):
        replicated["variants"][0]["inventory_quantity"] = 8

        await orchestrator.replicate_update(replicated)

        target_client.set_inventory_quantities.assert_awaited_once_with(
            "gid://shopify/InventoryItem/8001", ["gid://shopify/Location/555"], 8
        )
        target_client.bulk_update_variants.assert_not_awaited()

    async def test_untracking_skips_quantity(self, orchestrator, target_client, replicated):
        replicated["variants"][0]["inventory_management"] = None
        replicated["variants"][0]["inventory_quantity"] = 0

        await orchestrator.replicate_update(replicated)

        target_client.set_inventory_tracked.assert_awaited_once_with("gid://shopify/InventoryItem/81", False)
        target_client.set_inventory_quantities.assert_not_awaited()

    async def test_sku_change_sends_every_variant(self, orchestrator, target_client, replicated):
        replicated["variants"][0]["sku"] = "SHIRT-S-NEW"

        await orchestrator.replicate_update(replicated)

        target_client.set_variant_identity.assert_awaited_once()
        variants = target_client.set_variant_identity.await_args.args[2]
        assert {v["id"] for v in variants} == {
            "gid://shopify/ProductVariant/71",
            "gid://shopify/ProductVariant/72",
        }
        assert {v["sku"] for v in variants} == {"SHIRT-S-NEW", "SHIRT-M"}


class TestDefaultProductGuard:
    """A default product never gets variants created on the target."""

    async def test_missing_variant_mirror_is_mapped_not_created(
        self,
        session,
        source_shop,
        target_shop,
        target_client,
        default_variant_payload: dict,
    ):
        mirror = await ProductMirrorRepository(session).upsert(
            source_shop_id=source_shop.id,
            source_product_id=2002,
            target_shop_id=target_shop.id,
            target_product_gid=PRODUCT_GID,
            target_product_id=9001,
        )
        await ProductMirrorRepository(session).save_snapshot(
            mirror, normalize_product(default_variant_payload).snapshot()
        )
        target_client.fetch_variants.return_value = [
            {
                "id": "gid://shopify/ProductVariant/7001",
                "selectedOptions": [{"name": "Title", "value": "Default Title"}],
                "inventoryItem": {"id": "gid://shopify/InventoryItem/8001", "tracked": False},
            }
        ]
        orchestrator = ReplicationOrchestrator(
            session,
            source_shop=source_shop,
            target_shop=target_shop,
            target_client=target_client,
            options=ReplicationOptions(bootstrap_enabled=False),
        )

        report = await orchestrator.replicate_update(default_variant_payload)

        target_client.bulk_create_variants.assert_not_awaited()
        assert any(v.action == "bootstrap" and v.ok for v in report.variants)
        rows = await variant_rows(session, mirror)
        assert rows["title=default title"].target_variant_gid == "gid://shopify/ProductVariant/7001"

    async def test_dry_run_maps_nothing(
        self,
        session,
        source_shop,
        target_shop,
        target_client,
        default_variant_payload: dict,
    ):
        mirror = await ProductMirrorRepository(session).upsert(
            source_shop_id=source_shop.id,
            source_product_id=2002,
            target_shop_id=target_shop.id,
            target_product_gid=PRODUCT_GID,
        )
        target_client.fetch_variants.return_value = [
            {"id": "gid://shopify/ProductVariant/7001", "selectedOptions": [], "inventoryItem": {}}
        ]
        orchestrator = ReplicationOrchestrator(
            session,
            source_shop=source_shop,
            target_shop=target_shop,
            target_client=target_client,
            options=ReplicationOptions(bootstrap_dry_run=True),
        )

        report = await orchestrator.replicate_update(default_variant_payload)

        target_client.bulk_create_variants.assert_not_awaited()
        assert await variant_rows(session, mirror) == {}
        assert [v.action for v in report.variants] == ["bootstrap_dry_run"]
        assert [v for v in report.variants if not v.ok] == []
