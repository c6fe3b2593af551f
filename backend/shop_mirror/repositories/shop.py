"""
Shop repository - replication topology access.
"""
from typing import Optional
from uuid import UUID

from sqlalchemy import select

from shop_mirror.models.shop import Shop, ShopConnection
from shop_mirror.repositories.base import BaseRepository


class ShopRepository(BaseRepository[Shop]):
    """Repository for Shop and ShopConnection operations."""

    model = Shop

    async def get_by_domain(self, domain: str) -> Optional[Shop]:
        """Get a shop by its myshopify domain (case-insensitive)."""
        stmt = select(Shop).where(Shop.domain == domain.strip().lower())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_source_by_domain(self, domain: str) -> Optional[Shop]:
        """Active source shop for an inbound webhook domain."""
        shop = await self.get_by_domain(domain)
        if shop is None or not shop.is_source or not shop.is_active:
            return None
        return shop

    async def create_or_update(
        self,
        domain: str,
        access_token_encrypted: str,
        *,
        name: Optional[str] = None,
        api_version: Optional[str] = None,
        is_source: bool = False,
        location_legacy_id: Optional[int] = None,
    ) -> tuple[Shop, bool]:
        """
        Create a new shop or update the existing one.
        Returns (shop, created) tuple.
        """
        domain = domain.strip().lower()
        existing = await self.get_by_domain(domain)

        if existing:
            existing.access_token_encrypted = access_token_encrypted
            existing.is_source = is_source
            existing.is_active = True
            if name is not None:
                existing.name = name
            if api_version is not None:
                existing.api_version = api_version
            if location_legacy_id is not None:
                existing.location_legacy_id = location_legacy_id
            await self.session.flush()
            return existing, False

        shop = Shop(
            domain=domain,
            name=name,
            access_token_encrypted=access_token_encrypted,
            api_version=api_version,
            is_source=is_source,
            is_active=True,
            location_legacy_id=location_legacy_id,
        )
        self.session.add(shop)
        await self.session.flush()
        return shop, True

    async def list_active_targets(self, source_shop_id: UUID) -> list[Shop]:
        """Active shops connected as targets of a source, ordered by domain."""
        stmt = (
            select(Shop)
            .join(ShopConnection, ShopConnection.target_shop_id == Shop.id)
            .where(
                ShopConnection.source_shop_id == source_shop_id,
                Shop.is_active.is_(True),
            )
            .order_by(Shop.domain)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_connection(
        self,
        source_shop_id: UUID,
        target_shop_id: UUID,
    ) -> Optional[ShopConnection]:
        stmt = select(ShopConnection).where(
            ShopConnection.source_shop_id == source_shop_id,
            ShopConnection.target_shop_id == target_shop_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def connect(self, source: Shop, target: Shop) -> tuple[ShopConnection, bool]:
        """
        Connect a source shop to a target shop.
        Returns (connection, created) tuple.
        """
        if source.id == target.id:
            raise ValueError("A shop cannot replicate to itself")
        if not source.is_source:
            raise ValueError(f"{source.domain} is not a source shop")

        existing = await self.get_connection(source.id, target.id)
        if existing:
            return existing, False

        connection = ShopConnection(source_shop_id=source.id, target_shop_id=target.id)
        self.session.add(connection)
        await self.session.flush()
        return connection, True

    async def disconnect(self, source_shop_id: UUID, target_shop_id: UUID) -> bool:
        connection = await self.get_connection(source_shop_id, target_shop_id)
        if connection is None:
            return False
        await self.session.delete(connection)
        await self.session.flush()
        return True
