"""
Mirror store repositories - ProductMirror and VariantMirror persistence.
"""
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select

from shop_mirror.models.mirror import ProductMirror, VariantMirror
from shop_mirror.repositories.base import BaseRepository
from shop_mirror.services.normalization import canonical_key


class ProductMirrorRepository(BaseRepository[ProductMirror]):
    """Repository for ProductMirror rows, unique per (source shop, source product, target shop)."""

    model = ProductMirror

    async def get_for(
        self,
        source_shop_id: UUID,
        source_product_id: int,
        target_shop_id: UUID,
    ) -> Optional[ProductMirror]:
        stmt = select(ProductMirror).where(
            ProductMirror.source_shop_id == source_shop_id,
            ProductMirror.source_product_id == source_product_id,
            ProductMirror.target_shop_id == target_shop_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_source_product(
        self,
        source_shop_id: UUID,
        source_product_id: int,
    ) -> list[ProductMirror]:
        stmt = select(ProductMirror).where(
            ProductMirror.source_shop_id == source_shop_id,
            ProductMirror.source_product_id == source_product_id,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(
        self,
        *,
        source_shop_id: UUID,
        source_product_id: int,
        target_shop_id: UUID,
        target_product_gid: str,
        target_product_id: Optional[int] = None,
        source_product_gid: Optional[str] = None,
    ) -> ProductMirror:
        mirror = await self.get_for(source_shop_id, source_product_id, target_shop_id)
        if mirror is None:
            mirror = ProductMirror(
                source_shop_id=source_shop_id,
                source_product_id=source_product_id,
                target_shop_id=target_shop_id,
            )
            self.session.add(mirror)

        mirror.target_product_gid = target_product_gid
        if target_product_id is not None:
            mirror.target_product_id = target_product_id
        if source_product_gid is not None:
            mirror.source_product_gid = source_product_gid
        await self.session.flush()
        return mirror

    async def save_snapshot(self, mirror: ProductMirror, snapshot: dict[str, Any]) -> None:
        # Reassign so JSON change detection sees a new object.
        mirror.last_snapshot = dict(snapshot)
        await self.session.flush()


class VariantMirrorRepository(BaseRepository[VariantMirror]):
    """Repository for VariantMirror rows of one product mirror."""

    model = VariantMirror

    async def list_for(self, product_mirror_id: UUID) -> list[VariantMirror]:
        stmt = (
            select(VariantMirror)
            .where(VariantMirror.product_mirror_id == product_mirror_id)
            .order_by(VariantMirror.source_options_key)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def map_for(self, product_mirror_id: UUID) -> dict[str, VariantMirror]:
        """Rows keyed by canonical options key. Last row wins on a key collision."""
        return {
            canonical_key(row.source_options_key): row
            for row in await self.list_for(product_mirror_id)
        }

    async def find_by_source_variant(
        self,
        product_mirror_id: UUID,
        source_variant_id: int,
    ) -> Optional[VariantMirror]:
        stmt = select(VariantMirror).where(
            VariantMirror.product_mirror_id == product_mirror_id,
            VariantMirror.source_variant_id == source_variant_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_key(self, product_mirror_id: UUID, key: str) -> Optional[VariantMirror]:
        stmt = select(VariantMirror).where(
            VariantMirror.product_mirror_id == product_mirror_id,
            VariantMirror.source_options_key == canonical_key(key),
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def upsert(
        self,
        product_mirror_id: UUID,
        *,
        key: str,
        source_variant_id: Optional[int],
        target_variant_gid: Optional[str],
        target_variant_id: Optional[int] = None,
        inventory_item_gid: Optional[str] = None,
        variant_fingerprint: Optional[str] = None,
        inventory_fingerprint: Optional[str] = None,
        last_snapshot: Optional[dict[str, Any]] = None,
    ) -> VariantMirror:
        """
        Insert or update one variant mapping.

        Matches on canonical key only. A row under another key that still
        holds the same source variant id (a renamed value whose old target
        variant is not deleted yet) gives up the id but keeps its key and
        target variant, so a later delete can still find it.
        """
        key = canonical_key(key)
        row = await self.find_by_key(product_mirror_id, key)
        if source_variant_id is not None:
            holder = await self.find_by_source_variant(product_mirror_id, source_variant_id)
            if holder is not None and holder is not row:
                holder.source_variant_id = None
                await self.session.flush()
        if row is None:
            row = VariantMirror(product_mirror_id=product_mirror_id)
            self.session.add(row)

        row.source_options_key = key
        if source_variant_id is not None:
            row.source_variant_id = source_variant_id
        if target_variant_gid is not None:
            row.target_variant_gid = target_variant_gid
        if target_variant_id is not None:
            row.target_variant_id = target_variant_id
        if inventory_item_gid is not None:
            row.inventory_item_gid = inventory_item_gid
        row.variant_fingerprint = variant_fingerprint
        row.inventory_fingerprint = inventory_fingerprint
        if last_snapshot is not None:
            row.last_snapshot = dict(last_snapshot)
        await self.session.flush()
        return row

    async def set_fingerprints(
        self,
        row: VariantMirror,
        *,
        variant_fingerprint: Optional[str] = None,
        inventory_fingerprint: Optional[str] = None,
        snapshot_updates: Optional[dict[str, Any]] = None,
    ) -> None:
        if variant_fingerprint is not None:
            row.variant_fingerprint = variant_fingerprint
        if inventory_fingerprint is not None:
            row.inventory_fingerprint = inventory_fingerprint
        if snapshot_updates:
            row.last_snapshot = {**(row.last_snapshot or {}), **snapshot_updates}
        await self.session.flush()
