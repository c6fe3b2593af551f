"""
Snapshot refresher - rebuilds mirror baselines from the live source product.
"""
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from shop_mirror.core.logging import get_logger
from shop_mirror.models.shop import Shop
from shop_mirror.repositories.mirror import ProductMirrorRepository
from shop_mirror.repositories.shop import ShopRepository
from shop_mirror.services.replication import ReplicationOptions, ReplicationOrchestrator
from shop_mirror.services.shopify_client import ShopifyGraphQLClient

logger = get_logger(__name__)

ClientFactory = Callable[[Shop], ShopifyGraphQLClient]


class SourceProductNotFoundError(LookupError):
    """The source shop or product no longer exists."""


class SnapshotRefresher:
    """Stores the live source product as the snapshot of every mirror of that product."""

    def __init__(
        self,
        session: AsyncSession,
        client_factory: ClientFactory,
        options: ReplicationOptions,
    ) -> None:
        self.session = session
        self.client_factory = client_factory
        self.options = options
        self.shops = ShopRepository(session)
        self.mirrors = ProductMirrorRepository(session)

    async def refresh(self, source_shop_id: UUID, source_product_id: int) -> dict[str, Any]:
        source_shop = await self.shops.get_by_id(source_shop_id)
        if source_shop is None:
            raise SourceProductNotFoundError(f"Source shop {source_shop_id} not found")

        source_client = self.client_factory(source_shop)
        payload = await source_client.fetch_rest_product(source_product_id)
        if not payload:
            logger.warning(
                "Snapshot refresh: source product not found",
                shop=source_shop.domain,
                product_id=source_product_id,
            )
            raise SourceProductNotFoundError(
                f"Source product {source_product_id} not found on {source_shop.domain}"
            )

        mirrors = await self.mirrors.list_for_source_product(source_shop.id, source_product_id)
        targets: list[dict[str, Any]] = []
        for mirror in mirrors:
            target_shop = await self.shops.get_by_id(mirror.target_shop_id)
            if target_shop is None:
                targets.append(
                    {
                        "product_mirror_id": str(mirror.id),
                        "target_shop_id": str(mirror.target_shop_id),
                        "status": "target_shop_missing",
                    }
                )
                continue

            orchestrator = ReplicationOrchestrator(
                self.session,
                source_shop=source_shop,
                target_shop=target_shop,
                target_client=self.client_factory(target_shop),
                source_client=source_client,
                options=self.options,
            )
            status = await orchestrator.realign(mirror, payload)
            targets.append(
                {
                    "product_mirror_id": str(mirror.id),
                    "target_shop_id": str(mirror.target_shop_id),
                    "target_product_gid": mirror.target_product_gid,
                    "status": status,
                }
            )

        logger.info(
            "Snapshot refreshed",
            source_shop=source_shop.domain,
            source_product_id=source_product_id,
            mirror_count=len(mirrors),
        )
        return {
            "source_shop_id": str(source_shop.id),
            "source_product_id": source_product_id,
            "mirror_count": len(mirrors),
            "targets": targets,
        }
