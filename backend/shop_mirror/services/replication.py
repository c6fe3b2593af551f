"""
Replication orchestrator.

Drives one (source product event, target shop) replication attempt:

    mirror resolved -> product patched -> options synced -> variants reconciled
    -> images synced -> inventory synced -> snapshot persisted

The create path lets exceptions propagate to the job retry mechanism. The
update path is best-effort: every sub-step records an outcome on the
report and a failing variant never blocks its siblings.
"""
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shop_mirror.core.logging import get_logger
from shop_mirror.models.media_process import MediaProcessStatus
from shop_mirror.models.mirror import ProductMirror, VariantMirror
from shop_mirror.models.shop import Shop
from shop_mirror.repositories.media_process import MediaProcessRepository
from shop_mirror.repositories.mirror import ProductMirrorRepository, VariantMirrorRepository
from shop_mirror.services.diff_engine import (
    compute_product_patch,
    compute_variant_diff,
    images_changed,
    options_changed,
)
from shop_mirror.services.normalization import (
    MAX_OPTIONS,
    NormalizedProduct,
    NormalizedVariant,
    canonical_key,
    key_from_selected_options,
    legacy_id_from_gid,
    normalize_product,
    original_option_values,
)
from shop_mirror.services.shopify_client import ShopifyAPIError, ShopifyGraphQLClient

logger = get_logger(__name__)

# Snapshot keys owned by each product-level step, restored when the step fails.
_PATCH_FIELDS = ("title", "body_html", "vendor", "product_type", "tags", "status")
_OPTION_FIELDS = ("options", "options_fingerprint")
_IMAGE_FIELDS = ("images", "images_fingerprint")


class MirrorNotFoundError(Exception):
    """No usable ProductMirror for an update event. Not retryable."""


@dataclass(frozen=True)
class ReplicationOptions:
    """Policy knobs injected into the orchestrator."""

    bootstrap_enabled: bool = True
    bootstrap_dry_run: bool = False
    extra_tag: Optional[str] = None
    manual_collections: Mapping[str, str] = field(default_factory=dict)
    publish_on_create: bool = True

    @classmethod
    def from_settings(cls, settings: Any) -> "ReplicationOptions":
        return cls(
            bootstrap_enabled=settings.mirror_bootstrap_enabled,
            bootstrap_dry_run=settings.mirror_bootstrap_dry_run,
            extra_tag=settings.create_extra_tag or None,
            manual_collections=settings.manual_collections,
            publish_on_create=settings.publish_on_create,
        )


@dataclass
class StepOutcome:
    step: str
    ok: bool = True
    skipped: bool = False
    detail: Optional[str] = None
    error: Optional[str] = None


@dataclass
class VariantOutcome:
    key: str
    action: str
    ok: bool = True
    error: Optional[str] = None


@dataclass
class ReplicationReport:
    """Aggregated result of one replication attempt; drives logging, never branching."""

    target_shop: str
    source_product_id: Optional[int]
    target_product_gid: Optional[str] = None
    created: bool = False
    steps: list[StepOutcome] = field(default_factory=list)
    variants: list[VariantOutcome] = field(default_factory=list)

    def step(self, name: str, **kwargs: Any) -> StepOutcome:
        outcome = StepOutcome(step=name, **kwargs)
        self.steps.append(outcome)
        return outcome

    def variant(self, key: str, action: str, **kwargs: Any) -> VariantOutcome:
        outcome = VariantOutcome(key=key, action=action, **kwargs)
        self.variants.append(outcome)
        return outcome

    def step_failed(self, name: str) -> bool:
        return any(s.step == name and not s.ok for s in self.steps)

    @property
    def failed(self) -> list[StepOutcome | VariantOutcome]:
        return [o for o in [*self.steps, *self.variants] if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "target_shop": self.target_shop,
            "source_product_id": self.source_product_id,
            "target_product_gid": self.target_product_gid,
            "created": self.created,
            "steps": {s.step: ("skipped" if s.skipped else "ok" if s.ok else "failed") for s in self.steps},
            "variant_actions": len(self.variants),
            "failures": [
                {"unit": getattr(o, "step", None) or getattr(o, "key", None), "error": o.error}
                for o in self.failed
            ],
        }


class ReplicationOrchestrator:
    """
    Replicates source product events onto a single target shop.

    The orchestrator is the only writer of ProductMirror and VariantMirror
    rows. It never reads global settings; policy arrives as ReplicationOptions.
    """

    def __init__(
        self,
        session: AsyncSession,
        source_shop: Shop,
        target_shop: Shop,
        target_client: ShopifyGraphQLClient,
        source_client: Optional[ShopifyGraphQLClient] = None,
        options: Optional[ReplicationOptions] = None,
    ) -> None:
        self.session = session
        self.source_shop = source_shop
        self.target_shop = target_shop
        self.target = target_client
        self.source = source_client
        self.options = options or ReplicationOptions()
        self.mirrors = ProductMirrorRepository(session)
        self.variant_mirrors = VariantMirrorRepository(session)
        self.media_processes = MediaProcessRepository(session)
        self.log = logger.bind(target_shop=target_shop.domain)

    # ============================================
    # CREATE PATH
    # ============================================

    async def replicate_create(self, payload: dict[str, Any]) -> ReplicationReport:
        """
        Create the product on the target and record its mirror.

        Raises on any remote failure; the caller owns retries. If the
        product was already created by an earlier attempt, the event is
        converged through the update path instead of creating a duplicate.
        """
        product = normalize_product(payload)
        if product.product_id is None:
            raise ValueError("Product payload has no id")

        existing = await self.mirrors.get_for(
            self.source_shop.id, product.product_id, self.target_shop.id
        )
        if existing is not None and existing.target_product_gid:
            self.log.info(
                "Product already mirrored, converging via update",
                source_product_id=product.product_id,
                target_product_gid=existing.target_product_gid,
            )
            return await self.replicate_update(payload)

        log = self.log.bind(source_product_id=product.product_id)
        report = ReplicationReport(
            target_shop=self.target_shop.domain,
            source_product_id=product.product_id,
            created=True,
        )

        meta_description = await self._source_meta_description(product.product_id)

        created = await self.target.create_product(self._product_create_input(product))
        product_gid = created["id"]
        report.target_product_gid = product_gid
        log = log.bind(target_product_gid=product_gid)

        mirror = await self.mirrors.upsert(
            source_shop_id=self.source_shop.id,
            source_product_id=product.product_id,
            target_shop_id=self.target_shop.id,
            target_product_gid=product_gid,
            target_product_id=_as_int(created.get("legacyResourceId")),
            source_product_gid=f"gid://shopify/Product/{product.product_id}",
        )
        # The remote product exists from here on; a retry must find its mirror.
        await self.session.commit()
        report.step("product_created")

        images_ok = await self._attach_images_on_create(mirror, product, report)

        await self._apply_create_fields(product_gid, product, meta_description)
        report.step("fields")

        default_nodes = ((created.get("variants") or {}).get("nodes")) or []
        if not product.is_default_product or len(product.variants) > 1:
            await self._create_all_variants(mirror, product, report)
        else:
            await self._update_default_variant(mirror, product, default_nodes, report)

        snapshot = product.snapshot()
        if not images_ok:
            snapshot["images"], snapshot["images_fingerprint"] = [], None
        await self.mirrors.save_snapshot(mirror, snapshot)
        report.step("snapshot")

        await self._attach_manual_collection(product_gid, report)
        if self.options.publish_on_create:
            await self._publish_everywhere(product_gid, report)

        log.info("Product replicated to target", **report.as_log_fields())
        return report

    def _product_create_input(self, product: NormalizedProduct) -> dict[str, Any]:
        product_input: dict[str, Any] = {
            "title": product.title or "Untitled",
            "descriptionHtml": product.body_html,
            "vendor": product.vendor,
            "productType": product.product_type,
        }
        if not product.is_default_product:
            product_input["productOptions"] = _product_options_input(product)
        return {k: v for k, v in product_input.items() if v not in (None, "", [])}

    async def _attach_images_on_create(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        report: ReplicationReport,
    ) -> bool:
        if not product.images:
            await self._record_media_process(mirror, MediaProcessStatus.SKIPPED, 0)
            report.step("images", skipped=True)
            return True
        try:
            await self.target.create_media(mirror.target_product_gid, _media_input(product))
        except ShopifyAPIError as e:
            self.log.error(
                "Attaching images failed",
                target_product_gid=mirror.target_product_gid,
                error=str(e),
            )
            await self._record_media_process(
                mirror, MediaProcessStatus.FAILED, len(product.images), error=str(e)
            )
            report.step("images", ok=False, error=str(e))
            return False
        await self._record_media_process(
            mirror, MediaProcessStatus.COMPLETED, len(product.images), len(product.images)
        )
        report.step("images", detail=f"{len(product.images)} created")
        return True

    async def _apply_create_fields(
        self,
        product_gid: str,
        product: NormalizedProduct,
        meta_description: Optional[str],
    ) -> None:
        tags = list(product.tags)
        if self.options.extra_tag and self.options.extra_tag not in tags:
            tags.append(self.options.extra_tag)

        patch: dict[str, Any] = {
            "tags": tags or None,
            "productType": product.product_type,
            "vendor": product.vendor,
            "status": product.status_enum,
            "seo": {"description": meta_description} if meta_description else None,
        }
        patch = {k: v for k, v in patch.items() if v is not None}
        if patch:
            await self.target.update_product(product_gid, patch)

        if meta_description:
            try:
                await self.target.set_metafields(
                    [
                        {
                            "ownerId": product_gid,
                            "namespace": "global",
                            "key": "description_tag",
                            "type": "single_line_text_field",
                            "value": meta_description,
                        }
                    ]
                )
            except ShopifyAPIError as e:
                self.log.warning("Setting description_tag metafield failed", error=str(e))

    async def _create_all_variants(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        report: ReplicationReport,
    ) -> None:
        variants_input = [
            self._variant_create_input(variant, product) for variant in product.variants.values()
        ]
        if not variants_input:
            self.log.warning("No variants to create", target_product_gid=mirror.target_product_gid)
            return

        created = await self.target.bulk_create_variants(mirror.target_product_gid, variants_input)
        await self._record_created_variants(mirror, product, created, report, raise_on_inventory=True)

    async def _update_default_variant(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        default_nodes: list[dict[str, Any]],
        report: ReplicationReport,
    ) -> None:
        """Single-variant products reuse the variant the platform created with the product."""
        variant = next(iter(product.variants.values()), None)
        if variant is None:
            return

        node = default_nodes[0] if default_nodes else None
        if node is None:
            nodes = await self.target.fetch_variants(mirror.target_product_gid)
            node = nodes[0] if nodes else None
        if node is None:
            raise ShopifyAPIError("Target product has no default variant")

        flags = await self._source_variant_flags(product.product_id)
        tracked = _desired_tracked(variant, flags.get("tracked"))
        requires_shipping = (
            variant.requires_shipping
            if variant.requires_shipping is not None
            else flags.get("requiresShipping")
        )

        variant_input = _economic_input(variant)
        if variant_input.get("inventoryPolicy") is None and flags.get("inventoryPolicy"):
            variant_input["inventoryPolicy"] = flags["inventoryPolicy"]
        variant_input["id"] = node["id"]
        if variant.barcode is not None:
            variant_input["barcode"] = variant.barcode
        item_input = _inventory_item_input(variant, tracked, requires_shipping)
        if item_input:
            variant_input["inventoryItem"] = item_input

        await self.target.bulk_update_variants(mirror.target_product_gid, [variant_input])

        inventory_item_gid = (node.get("inventoryItem") or {}).get("id")
        inventory_fp = None
        if variant.inventory_quantity is not None and inventory_item_gid:
            if self.target_shop.location_gid:
                await self.target.set_inventory_quantities(
                    inventory_item_gid, [self.target_shop.location_gid], variant.inventory_quantity
                )
                inventory_fp = variant.inventory_fingerprint
            else:
                self.log.warning("Inventory skipped, target shop has no location", key=variant.key)

        await self.variant_mirrors.upsert(
            mirror.id,
            key=variant.key,
            source_variant_id=variant.source_variant_id,
            target_variant_gid=node["id"],
            target_variant_id=_as_int(node.get("legacyResourceId")) or legacy_id_from_gid(node["id"]),
            inventory_item_gid=inventory_item_gid,
            variant_fingerprint=variant.variant_fingerprint,
            inventory_fingerprint=inventory_fp,
            last_snapshot={**variant.identity(), "tracked": tracked},
        )
        report.variant(variant.key, "update_default")

    async def _attach_manual_collection(self, product_gid: str, report: ReplicationReport) -> None:
        collection_gid = self.options.manual_collections.get(self.target_shop.domain.lower())
        if not collection_gid:
            return
        try:
            await self.target.add_products_to_collection(collection_gid, [product_gid])
            report.step("collection", detail=collection_gid)
        except ShopifyAPIError as e:
            self.log.warning("Manual collection attach failed", collection=collection_gid, error=str(e))
            report.step("collection", ok=False, error=str(e))

    async def _publish_everywhere(self, product_gid: str, report: ReplicationReport) -> None:
        try:
            publication_ids = await self.target.list_publication_ids()
        except ShopifyAPIError as e:
            self.log.warning("Publish to channels failed (non-fatal)", error=str(e))
            report.step("publish", ok=False, error=str(e))
            return

        failures = 0
        for publication_id in publication_ids:
            try:
                await self.target.publish_product(product_gid, publication_id)
            except ShopifyAPIError as e:
                failures += 1
                self.log.warning("Publish failed", publication=publication_id, error=str(e))
        report.step(
            "publish",
            ok=failures == 0,
            detail=f"{len(publication_ids) - failures}/{len(publication_ids)} publications",
        )

    # ============================================
    # UPDATE PATH
    # ============================================

    async def replicate_update(self, payload: dict[str, Any]) -> ReplicationReport:
        """
        Converge an existing target product with the source payload.

        Raises:
            MirrorNotFoundError: No mirror (or no target product) for this pair
        """
        product = normalize_product(payload)
        mirror = None
        if product.product_id is not None:
            mirror = await self.mirrors.get_for(
                self.source_shop.id, product.product_id, self.target_shop.id
            )
        if mirror is None or not mirror.target_product_gid:
            self.log.warning(
                "No product mirror for update, skipping target",
                source_product_id=product.product_id,
            )
            raise MirrorNotFoundError(
                f"No mirror for product {product.product_id} on {self.target_shop.domain}"
            )

        report = ReplicationReport(
            target_shop=self.target_shop.domain,
            source_product_id=product.product_id,
            target_product_gid=mirror.target_product_gid,
        )
        snapshot = dict(mirror.last_snapshot or {})

        await self._sync_product_fields(mirror, product, snapshot, report)
        await self._sync_options(mirror, product, snapshot, report)
        source_tracked = await self._reconcile_variants(mirror, product, report)
        await self._sync_images(mirror, product, snapshot, report)
        await self._sync_inventory(mirror, product, source_tracked, report)
        await self._persist_snapshot(mirror, product, snapshot, report)

        if report.ok:
            self.log.info("Product update replicated", **report.as_log_fields())
        else:
            self.log.warning("Product update replicated with failures", **report.as_log_fields())
        return report

    async def _sync_product_fields(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        snapshot: dict[str, Any],
        report: ReplicationReport,
    ) -> None:
        patch = compute_product_patch(product, snapshot)
        if not patch:
            report.step("product", skipped=True)
            return
        try:
            await self.target.update_product(mirror.target_product_gid, patch)
            report.step("product", detail=",".join(sorted(patch)))
        except ShopifyAPIError as e:
            self.log.error(
                "Product patch failed",
                target_product_gid=mirror.target_product_gid,
                fields=sorted(patch),
                error=str(e),
            )
            report.step("product", ok=False, error=str(e))

    async def _sync_options(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        snapshot: dict[str, Any],
        report: ReplicationReport,
    ) -> None:
        if not options_changed(product, snapshot):
            report.step("options", skipped=True)
            return
        if product.is_default_product:
            report.step("options", skipped=True, detail="default product")
            return

        options_input = _product_options_input(product)
        try:
            target_options = await self.target.fetch_options(mirror.target_product_gid)
            if _is_placeholder_options(target_options):
                await self.target.create_options(
                    mirror.target_product_gid, options_input, strategy="LEAVE_AS_IS"
                )
                report.step("options", detail="created")
            else:
                await self.target.set_options(
                    mirror.target_product_gid, options_input, strategy="LEAVE_AS_IS"
                )
                report.step("options", detail="set")
        except ShopifyAPIError as e:
            self.log.warning(
                "Options sync failed, continuing",
                target_product_gid=mirror.target_product_gid,
                error=str(e),
            )
            report.step("options", ok=False, error=str(e))

    async def _reconcile_variants(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        report: ReplicationReport,
    ) -> dict[str, bool]:
        """Deletes, creates, economic and identity updates. Returns the live source tracked map."""
        source_tracked = await self._source_tracked_map(product)
        target_variants = await self.ensure_variant_mirrors(mirror, product)

        mirror_map = await self.variant_mirrors.map_for(mirror.id)
        diff = compute_variant_diff(product, mirror_map)
        self.log.debug("Variant diff", target_product_gid=mirror.target_product_gid, **diff.summary())

        for key, row in diff.to_delete.items():
            await self._delete_variant(mirror, key, row, report)

        if diff.to_create:
            if product.is_default_product:
                await self._bootstrap_default_variant(mirror, product, diff.to_create, target_variants, report)
            else:
                await self._create_variants(mirror, product, diff.to_create, report)

        mirror_map = await self.variant_mirrors.map_for(mirror.id)
        await self._update_economics(mirror, product, mirror_map, report)
        await self._update_identities(mirror, product, mirror_map, report)
        return source_tracked

    async def ensure_variant_mirrors(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
    ) -> Optional[list[dict[str, Any]]]:
        """
        Backfill VariantMirror rows from the target's live variants.

        Target variants are matched to source variants by canonical options
        key. Returns the fetched target variants, or None when bootstrap is
        disabled or the fetch failed.
        """
        if not self.options.bootstrap_enabled:
            return None
        try:
            target_variants = await self.target.fetch_variants(mirror.target_product_gid)
        except ShopifyAPIError as e:
            self.log.warning("Fetching target variants failed, bootstrap skipped", error=str(e))
            return None

        existing = await self.variant_mirrors.map_for(mirror.id)
        by_target_gid = {row.target_variant_gid for row in existing.values()}
        option_names = product.option_names
        sole_source = next(iter(product.variants.values())) if len(product.variants) == 1 else None

        for node in target_variants:
            if node.get("id") in by_target_gid:
                continue
            key = key_from_selected_options(node.get("selectedOptions") or [], option_names)
            variant = product.variants.get(key)
            if variant is None and product.is_default_product and len(target_variants) == 1:
                variant = sole_source
            if variant is None or canonical_key(variant.key) in existing:
                continue

            if self.options.bootstrap_dry_run:
                self.log.info(
                    "Bootstrap would map variant",
                    key=variant.key,
                    target_variant_gid=node["id"],
                )
                continue

            row = await self.variant_mirrors.upsert(
                mirror.id,
                key=variant.key,
                source_variant_id=variant.source_variant_id,
                target_variant_gid=node["id"],
                target_variant_id=_as_int(node.get("legacyResourceId")) or legacy_id_from_gid(node["id"]),
                inventory_item_gid=(node.get("inventoryItem") or {}).get("id"),
                last_snapshot={"tracked": (node.get("inventoryItem") or {}).get("tracked")},
            )
            existing[canonical_key(variant.key)] = row
            self.log.info("Bootstrapped variant mirror", key=variant.key, target_variant_gid=node["id"])

        return target_variants

    async def _delete_variant(
        self,
        mirror: ProductMirror,
        key: str,
        row: VariantMirror,
        report: ReplicationReport,
    ) -> None:
        if not row.target_variant_gid:
            await self.variant_mirrors.delete(row)
            report.variant(key, "delete")
            return
        try:
            await self.target.delete_variant(mirror.target_product_gid, row.target_variant_gid)
        except ShopifyAPIError as e:
            self.log.error(
                "Variant delete failed",
                key=key,
                target_variant_gid=row.target_variant_gid,
                error=str(e),
            )
            report.variant(key, "delete", ok=False, error=str(e))
            return
        await self.variant_mirrors.delete(row)
        self.log.info("Variant deleted on target", key=key, target_variant_gid=row.target_variant_gid)
        report.variant(key, "delete")

    async def _bootstrap_default_variant(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        to_create: dict[str, NormalizedVariant],
        target_variants: Optional[list[dict[str, Any]]],
        report: ReplicationReport,
    ) -> None:
        """A default product never creates variants: map the one the target already has."""
        for key, variant in to_create.items():
            try:
                if target_variants is None:
                    target_variants = await self.target.fetch_variants(mirror.target_product_gid)
            except ShopifyAPIError as e:
                self.log.error("Default variant lookup failed", key=key, error=str(e))
                report.variant(key, "bootstrap", ok=False, error=str(e))
                continue

            if not target_variants:
                self.log.error("Target product has no default variant", key=key)
                report.variant(key, "bootstrap", ok=False, error="no target variant")
                continue

            node = target_variants[0]
            if self.options.bootstrap_dry_run:
                self.log.info("Bootstrap would map default variant", key=key, target_variant_gid=node["id"])
                report.variant(key, "bootstrap_dry_run")
                continue

            await self.variant_mirrors.upsert(
                mirror.id,
                key=variant.key,
                source_variant_id=variant.source_variant_id,
                target_variant_gid=node["id"],
                target_variant_id=_as_int(node.get("legacyResourceId")) or legacy_id_from_gid(node["id"]),
                inventory_item_gid=(node.get("inventoryItem") or {}).get("id"),
                last_snapshot={"tracked": (node.get("inventoryItem") or {}).get("tracked")},
            )
            report.variant(key, "bootstrap")

    async def _create_variants(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        to_create: dict[str, NormalizedVariant],
        report: ReplicationReport,
    ) -> None:
        variants_input = [self._variant_create_input(v, product) for v in to_create.values()]
        try:
            created = await self.target.bulk_create_variants(mirror.target_product_gid, variants_input)
        except ShopifyAPIError as e:
            self.log.error("Variant bulk create failed", keys=sorted(to_create), error=str(e))
            for key in to_create:
                report.variant(key, "create", ok=False, error=str(e))
            return
        await self._record_created_variants(mirror, product, created, report, raise_on_inventory=False)

    async def _record_created_variants(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        created: list[dict[str, Any]],
        report: ReplicationReport,
        *,
        raise_on_inventory: bool,
    ) -> None:
        """Persist a VariantMirror per created node and set its starting stock."""
        option_names = product.option_names
        location_gid = self.target_shop.location_gid

        for node in created:
            key = key_from_selected_options(node.get("selectedOptions") or [], option_names)
            variant = product.variants.get(key)
            if variant is None:
                self.log.warning("Created variant does not match any source key", key=key, target_variant_gid=node.get("id"))
                continue

            inventory_item_gid = (node.get("inventoryItem") or {}).get("id")
            inventory_fp = None
            if variant.inventory_quantity is not None and inventory_item_gid and location_gid:
                try:
                    await self.target.set_inventory_quantities(
                        inventory_item_gid, [location_gid], variant.inventory_quantity
                    )
                    inventory_fp = variant.inventory_fingerprint
                except ShopifyAPIError as e:
                    if raise_on_inventory:
                        raise
                    self.log.error("Initial stock failed", key=key, error=str(e))
                    report.variant(key, "inventory", ok=False, error=str(e))

            await self.variant_mirrors.upsert(
                mirror.id,
                key=variant.key,
                source_variant_id=variant.source_variant_id,
                target_variant_gid=node["id"],
                target_variant_id=_as_int(node.get("legacyResourceId")) or legacy_id_from_gid(node["id"]),
                inventory_item_gid=inventory_item_gid,
                variant_fingerprint=variant.variant_fingerprint,
                inventory_fingerprint=inventory_fp,
                last_snapshot={**variant.identity(), "tracked": _desired_tracked(variant, None)},
            )
            report.variant(key, "create")

    def _variant_create_input(self, variant: NormalizedVariant, product: NormalizedProduct) -> dict[str, Any]:
        variant_input = _economic_input(variant)
        variant_input["inventoryPolicy"] = variant.inventory_policy_enum or "DENY"
        variant_input["optionValues"] = [
            {"optionName": name, "name": value}
            for name, value in zip(product.option_names[:MAX_OPTIONS], variant.option_values)
            if value
        ]
        if variant.barcode is not None:
            variant_input["barcode"] = variant.barcode
        item_input = _inventory_item_input(
            variant, _desired_tracked(variant, None), variant.requires_shipping
        )
        if item_input:
            variant_input["inventoryItem"] = item_input
        return variant_input

    async def _update_economics(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        mirror_map: dict[str, VariantMirror],
        report: ReplicationReport,
    ) -> None:
        pending: list[tuple[NormalizedVariant, VariantMirror]] = []
        for key, variant in product.variants.items():
            row = mirror_map.get(canonical_key(key))
            if row is None or not row.target_variant_gid:
                # Already reported: a failed create/bootstrap, or a dry-run mapping.
                reported = any(
                    o.key == key and (not o.ok or o.action == "bootstrap_dry_run")
                    for o in report.variants
                )
                if not reported:
                    self.log.warning("No variant mirror for economic sync", key=key)
                    report.variant(key, "economic", ok=False, error="no variant mirror")
                continue
            if (row.variant_fingerprint or "") != variant.variant_fingerprint:
                pending.append((variant, row))

        if not pending:
            return

        inputs = [{"id": row.target_variant_gid, **_economic_input(variant)} for variant, row in pending]
        try:
            await self.target.bulk_update_variants(mirror.target_product_gid, inputs)
        except ShopifyAPIError as e:
            self.log.error(
                "Variant economic update failed",
                keys=[variant.key for variant, _ in pending],
                error=str(e),
            )
            for variant, _ in pending:
                report.variant(variant.key, "economic", ok=False, error=str(e))
            return

        for variant, row in pending:
            await self.variant_mirrors.set_fingerprints(
                row,
                variant_fingerprint=variant.variant_fingerprint,
                snapshot_updates={"source_variant_id": variant.source_variant_id},
            )
            report.variant(variant.key, "economic")

    async def _update_identities(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        mirror_map: dict[str, VariantMirror],
        report: ReplicationReport,
    ) -> None:
        """
        SKU/barcode through productSet.

        productSet needs the full option-value vector of every variant, so
        once any identity changed every mapped variant is sent.
        """
        changed: list[str] = []
        entries: list[tuple[NormalizedVariant, VariantMirror, dict[str, Any]]] = []
        for key, variant in product.variants.items():
            row = mirror_map.get(canonical_key(key))
            if row is None or not row.target_variant_gid:
                continue
            recorded = row.last_snapshot or {}
            identity: dict[str, Any] = {}
            if variant.sku_present:
                identity["sku"] = variant.sku
            elif "sku" in recorded:
                identity["sku"] = recorded["sku"]
            if variant.barcode_present:
                identity["barcode"] = variant.barcode or None
            elif "barcode" in recorded:
                identity["barcode"] = recorded["barcode"]

            if any(recorded.get(name, _MISSING) != value for name, value in identity.items()):
                changed.append(key)
            entries.append((variant, row, identity))

        if not changed:
            return

        variants_input = [
            {
                "id": row.target_variant_gid,
                "optionValues": original_option_values(canonical_key(variant.key), product.options),
                **identity,
            }
            for variant, row, identity in entries
        ]
        try:
            await self.target.set_variant_identity(
                mirror.target_product_gid,
                _product_options_input(product),
                variants_input,
            )
        except ShopifyAPIError as e:
            self.log.error("Variant identity update failed", keys=changed, error=str(e))
            for key in changed:
                report.variant(key, "identity", ok=False, error=str(e))
            return

        for variant, row, identity in entries:
            if variant.key in changed:
                await self.variant_mirrors.set_fingerprints(row, snapshot_updates=identity)
                report.variant(variant.key, "identity")

    async def _sync_images(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        snapshot: dict[str, Any],
        report: ReplicationReport,
    ) -> None:
        """Full replace: delete every remote media entry, then recreate in source order."""
        if not images_changed(product, snapshot):
            report.step("images", skipped=True)
            return
        try:
            media = await self.target.list_media(mirror.target_product_gid)
            await self.target.delete_media(
                mirror.target_product_gid, [node["id"] for node in media if node.get("id")]
            )
            await self.target.create_media(mirror.target_product_gid, _media_input(product))
        except ShopifyAPIError as e:
            self.log.error("Image sync failed", target_product_gid=mirror.target_product_gid, error=str(e))
            await self._record_media_process(
                mirror, MediaProcessStatus.FAILED, len(product.images), error=str(e)
            )
            report.step("images", ok=False, error=str(e))
            return

        count = len(product.images)
        await self._record_media_process(
            mirror,
            MediaProcessStatus.COMPLETED if count else MediaProcessStatus.SKIPPED,
            count,
            count,
        )
        report.step("images", detail=f"{len(media)} removed, {count} created")

    async def _sync_inventory(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        source_tracked: dict[str, bool],
        report: ReplicationReport,
    ) -> None:
        mirror_map = await self.variant_mirrors.map_for(mirror.id)
        for key, variant in product.variants.items():
            row = mirror_map.get(canonical_key(key))
            if row is None or not row.target_variant_gid:
                continue

            ckey = canonical_key(key)
            recorded = row.last_snapshot or {}
            wanted = source_tracked[ckey] if ckey in source_tracked else variant.tracked_from_payload

            if wanted is not None and recorded.get("tracked") != wanted:
                await self._set_tracked(row, key, wanted, report)

            effective_tracked = wanted if wanted is not None else recorded.get("tracked")
            if variant.inventory_quantity is None or effective_tracked is False:
                continue
            if (row.inventory_fingerprint or "") == variant.inventory_fingerprint:
                continue
            await self._set_quantity(row, variant, report)

    async def _set_tracked(
        self,
        row: VariantMirror,
        key: str,
        tracked: bool,
        report: ReplicationReport,
    ) -> None:
        try:
            item_gid = row.inventory_item_gid
            if not item_gid:
                item_gid, _ = await self.target.fetch_inventory_item_and_locations(row.target_variant_gid)
            if not item_gid:
                report.variant(key, "tracked", ok=False, error="no inventory item")
                return
            await self.target.set_inventory_tracked(item_gid, tracked)
        except ShopifyAPIError as e:
            self.log.error("Setting tracked state failed", key=key, tracked=tracked, error=str(e))
            report.variant(key, "tracked", ok=False, error=str(e))
            return
        row.inventory_item_gid = item_gid
        await self.variant_mirrors.set_fingerprints(row, snapshot_updates={"tracked": tracked})
        report.variant(key, "tracked")

    async def _set_quantity(
        self,
        row: VariantMirror,
        variant: NormalizedVariant,
        report: ReplicationReport,
    ) -> None:
        """Absolute quantity at every location the target variant is already stocked at."""
        try:
            item_gid, locations = await self.target.fetch_inventory_item_and_locations(
                row.target_variant_gid
            )
            if not locations and self.target_shop.location_gid:
                locations = [self.target_shop.location_gid]
            if not item_gid or not locations:
                self.log.warning(
                    "Inventory skipped, no item or location",
                    key=variant.key,
                    target_variant_gid=row.target_variant_gid,
                )
                report.variant(variant.key, "inventory", ok=False, error="no inventory item or location")
                return
            await self.target.set_inventory_quantities(item_gid, locations, variant.inventory_quantity)
        except ShopifyAPIError as e:
            self.log.error("Inventory update failed", key=variant.key, error=str(e))
            report.variant(variant.key, "inventory", ok=False, error=str(e))
            return
        row.inventory_item_gid = item_gid
        await self.variant_mirrors.set_fingerprints(
            row, inventory_fingerprint=variant.inventory_fingerprint
        )
        report.variant(variant.key, "inventory")

    async def _persist_snapshot(
        self,
        mirror: ProductMirror,
        product: NormalizedProduct,
        previous: dict[str, Any],
        report: ReplicationReport,
    ) -> None:
        """Store the new snapshot, keeping old values for parts whose step failed so they retry."""
        snapshot = product.snapshot()
        if report.step_failed("product"):
            for name in _PATCH_FIELDS:
                snapshot[name] = previous.get(name)
        if report.step_failed("options"):
            for name in _OPTION_FIELDS:
                snapshot[name] = previous.get(name)
        if report.step_failed("images"):
            for name in _IMAGE_FIELDS:
                snapshot[name] = previous.get(name)
        await self.mirrors.save_snapshot(mirror, snapshot)
        report.step("snapshot")

    # ============================================
    # SNAPSHOT REFRESH
    # ============================================

    async def realign(self, mirror: ProductMirror, payload: dict[str, Any]) -> str:
        """
        Reset the mirror baseline to the live source product.

        Stores the fresh snapshot and points VariantMirror rows at the
        variants the target currently has. Returns a status label.
        """
        product = normalize_product(payload)
        await self.mirrors.save_snapshot(mirror, product.snapshot())

        if not mirror.target_product_gid:
            self.log.warning(
                "Snapshot refreshed without target product mapping",
                source_product_id=mirror.source_product_id,
            )
            return "snapshot_refreshed_missing_target"

        try:
            target_variants = await self.target.fetch_variants(mirror.target_product_gid)
        except ShopifyAPIError as e:
            self.log.error("Snapshot refresh variant alignment failed", error=str(e))
            return "snapshot_refreshed_variant_sync_failed"

        live = {
            key_from_selected_options(node.get("selectedOptions") or [], product.option_names): node
            for node in target_variants
        }
        if product.is_default_product and len(target_variants) == 1 and len(product.variants) == 1:
            live = {next(iter(product.variants)): target_variants[0]}

        rows = await self.variant_mirrors.map_for(mirror.id)
        for key, variant in product.variants.items():
            node = live.get(key)
            row = rows.get(canonical_key(key))
            if node is None:
                self.log.info("Snapshot refresh: missing target variant for key", key=key)
                continue
            if row is not None and row.target_variant_gid == node["id"]:
                continue
            if self.options.bootstrap_dry_run:
                self.log.info("Refresh would realign variant", key=key, target_variant_gid=node["id"])
                continue
            await self.variant_mirrors.upsert(
                mirror.id,
                key=variant.key,
                source_variant_id=variant.source_variant_id,
                target_variant_gid=node["id"],
                target_variant_id=_as_int(node.get("legacyResourceId")) or legacy_id_from_gid(node["id"]),
                inventory_item_gid=(node.get("inventoryItem") or {}).get("id"),
                last_snapshot={"tracked": (node.get("inventoryItem") or {}).get("tracked")},
            )
        return "snapshot_and_variants_refreshed"

    # ============================================
    # SOURCE READS (best-effort)
    # ============================================

    async def _source_meta_description(self, product_id: int) -> Optional[str]:
        if self.source is None:
            return None
        try:
            return await self.source.fetch_product_seo_description(f"gid://shopify/Product/{product_id}")
        except ShopifyAPIError as e:
            self.log.warning("Source SEO description fetch failed", error=str(e))
            return None

    async def _source_variant_flags(self, product_id: Optional[int]) -> dict[str, Any]:
        if self.source is None or product_id is None:
            return {}
        try:
            nodes = await self.source.fetch_variants(f"gid://shopify/Product/{product_id}")
        except ShopifyAPIError as e:
            self.log.warning("Source variant flags fetch failed", error=str(e))
            return {}
        if not nodes:
            return {}
        item = nodes[0].get("inventoryItem") or {}
        return {
            "inventoryPolicy": nodes[0].get("inventoryPolicy"),
            "tracked": item.get("tracked"),
            "requiresShipping": item.get("requiresShipping"),
        }

    async def _source_tracked_map(self, product: NormalizedProduct) -> dict[str, bool]:
        """Live tracked state per canonical key, read from the source shop."""
        if self.source is None or product.product_id is None:
            return {}
        try:
            nodes = await self.source.fetch_variants(f"gid://shopify/Product/{product.product_id}")
        except ShopifyAPIError as e:
            self.log.warning("Source tracked fetch failed, using payload", error=str(e))
            return {}

        tracked: dict[str, bool] = {}
        for node in nodes:
            value = (node.get("inventoryItem") or {}).get("tracked")
            if value is None:
                continue
            key = key_from_selected_options(node.get("selectedOptions") or [], product.option_names)
            tracked[key] = bool(value)
        return tracked

    async def _record_media_process(
        self,
        mirror: ProductMirror,
        status: MediaProcessStatus,
        images_count: int,
        processed_count: int = 0,
        error: Optional[str] = None,
    ) -> None:
        product_id = mirror.target_product_id or legacy_id_from_gid(mirror.target_product_gid)
        if product_id is None:
            return
        await self.media_processes.upsert_status(
            self.target_shop.domain,
            product_id,
            status,
            shop_id=self.target_shop.id,
            product_gid=mirror.target_product_gid,
            images_count=images_count,
            processed_count=processed_count,
            last_error=error,
        )


# ---------------------------------------------------------------------------
# Input builders
# ---------------------------------------------------------------------------

_MISSING = object()


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _product_options_input(product: NormalizedProduct) -> list[dict[str, Any]]:
    """Option schema (max three) with values aggregated from the variants when the option lists none."""
    options: list[dict[str, Any]] = []
    for index, option in enumerate(product.options[:MAX_OPTIONS]):
        values = list(option.values)
        if not values:
            for variant in product.variants.values():
                if index < len(variant.option_values):
                    value = variant.option_values[index]
                    if value and value not in values:
                        values.append(value)
        options.append(
            {
                "name": option.name,
                "position": index + 1,
                "values": [{"name": value} for value in values if value != ""],
            }
        )
    return options


def _is_placeholder_options(target_options: list[dict[str, Any]]) -> bool:
    """Target still carries only the platform's implicit "Title: Default Title" option."""
    if not target_options:
        return True
    if len(target_options) != 1:
        return False
    option = target_options[0]
    values = [str(v).strip().lower() for v in option.get("values") or []]
    return str(option.get("name") or "").strip().lower() == "title" and values in ([], ["default title"])


def _media_input(product: NormalizedProduct) -> list[dict[str, Any]]:
    return [
        {"mediaContentType": "IMAGE", "originalSource": image.src, "alt": image.alt}
        for image in product.images
        if image.src
    ]


def _economic_input(variant: NormalizedVariant) -> dict[str, Any]:
    fields = {
        "price": variant.price,
        "compareAtPrice": variant.compare_at_price,
        "taxable": variant.taxable,
        "inventoryPolicy": variant.inventory_policy_enum,
    }
    return {k: v for k, v in fields.items() if v is not None}


def _desired_tracked(variant: NormalizedVariant, fallback: Optional[bool]) -> Optional[bool]:
    tracked = variant.tracked_from_payload
    if tracked is None:
        tracked = fallback
    if tracked is None and variant.inventory_quantity is not None:
        tracked = True
    return tracked


def _inventory_item_input(
    variant: NormalizedVariant,
    tracked: Optional[bool],
    requires_shipping: Optional[bool],
) -> dict[str, Any]:
    item: dict[str, Any] = {}
    if variant.sku is not None:
        item["sku"] = variant.sku
    if tracked is not None:
        item["tracked"] = tracked
    if requires_shipping is not None:
        item["requiresShipping"] = bool(requires_shipping)
    if variant.weight is not None and variant.weight_unit_enum:
        item["measurement"] = {"weight": {"value": variant.weight, "unit": variant.weight_unit_enum}}
    return item


__all__ = [
    "MirrorNotFoundError",
    "ReplicationOptions",
    "ReplicationOrchestrator",
    "ReplicationReport",
    "StepOutcome",
    "VariantOutcome",
]
