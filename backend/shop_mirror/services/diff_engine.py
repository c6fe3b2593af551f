"""
Diff engine - compares a normalized source product against the mirror store.

Pure functions only: no remote calls and no database access. The inputs
are the canonical product, the stored `last_snapshot` and the variant
mirror rows keyed by canonical options key.
"""
from dataclasses import dataclass, field
from typing import Any, Generic, Mapping, Optional, Protocol, TypeVar

from shop_mirror.services.normalization import (
    STATUS_ENUM,
    NormalizedProduct,
    NormalizedVariant,
    canonical_key,
    split_tags,
)


class FingerprintedRow(Protocol):
    variant_fingerprint: Optional[str]
    inventory_fingerprint: Optional[str]


RowT = TypeVar("RowT", bound=FingerprintedRow)


@dataclass
class VariantDiff(Generic[RowT]):
    """Variants classified by canonical key."""

    to_create: dict[str, NormalizedVariant] = field(default_factory=dict)
    to_update: dict[str, tuple[NormalizedVariant, RowT]] = field(default_factory=dict)
    to_delete: dict[str, RowT] = field(default_factory=dict)
    inventory_changed: set[str] = field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete or self.inventory_changed)

    def summary(self) -> dict[str, list[str]]:
        return {
            "to_create": sorted(self.to_create),
            "to_update": sorted(self.to_update),
            "to_delete": sorted(self.to_delete),
            "inventory_changed": sorted(self.inventory_changed),
        }


def compute_product_patch(
    product: NormalizedProduct,
    last_snapshot: Optional[Mapping[str, Any]],
) -> dict[str, Any]:
    """
    Changed top-level fields as a ProductUpdateInput fragment.

    Fields missing from the payload are never sent, so manual edits on the
    target for fields the source does not carry survive.
    """
    snapshot = last_snapshot or {}
    patch: dict[str, Any] = {}

    if product.title is not None and snapshot.get("title") != product.title:
        patch["title"] = product.title
    if product.body_html is not None and snapshot.get("body_html") != product.body_html:
        patch["descriptionHtml"] = product.body_html
    if product.vendor is not None and snapshot.get("vendor") != product.vendor:
        patch["vendor"] = product.vendor
    if product.product_type is not None and snapshot.get("product_type") != product.product_type:
        patch["productType"] = product.product_type

    if product.tags_present and product.tags != split_tags(snapshot.get("tags")):
        patch["tags"] = list(product.tags)

    if product.status_present:
        new_status = product.status_enum
        old_status = STATUS_ENUM.get(str(snapshot.get("status") or "").lower())
        if new_status and new_status != old_status:
            patch["status"] = new_status

    return patch


def options_changed(product: NormalizedProduct, last_snapshot: Optional[Mapping[str, Any]]) -> bool:
    return (last_snapshot or {}).get("options_fingerprint") != product.options_fingerprint


def images_changed(product: NormalizedProduct, last_snapshot: Optional[Mapping[str, Any]]) -> bool:
    return (last_snapshot or {}).get("images_fingerprint") != product.images_fingerprint


def compute_variant_diff(
    product: NormalizedProduct,
    mirror_map: Mapping[str, RowT],
) -> VariantDiff[RowT]:
    """
    Classify source variants against existing mirror rows.

    - key in source, not in mirror map -> to_create
    - key in both, variant fingerprint differs -> to_update
    - key in mirror map, not in source -> to_delete

    Inventory is tracked on its own and never moves a variant into
    to_create/to_update.
    """
    remaining = {canonical_key(key): row for key, row in mirror_map.items()}
    diff: VariantDiff[RowT] = VariantDiff()

    for key, variant in product.variants.items():
        ckey = canonical_key(key)
        row = remaining.pop(ckey, None)
        if row is None:
            diff.to_create[ckey] = variant
            continue
        if (row.variant_fingerprint or "") != variant.variant_fingerprint:
            diff.to_update[ckey] = (variant, row)
        if (row.inventory_fingerprint or "") != variant.inventory_fingerprint:
            diff.inventory_changed.add(ckey)

    diff.to_delete.update(remaining)
    return diff
