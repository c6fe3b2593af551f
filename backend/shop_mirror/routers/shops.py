"""
Shop provisioning API routes (admin only).
"""
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from shop_mirror.core.database import get_db_session
from shop_mirror.core.logging import get_logger
from shop_mirror.core.security import encrypt_token
from shop_mirror.repositories.shop import ShopRepository
from shop_mirror.routers.deps import AdminGuard
from shop_mirror.schemas.shop import (
    ConnectionCreate,
    ConnectionListResponse,
    ConnectionResponse,
    ShopCreate,
    ShopResponse,
    ShopUpdate,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/shops", tags=["shops"], dependencies=[AdminGuard])


async def get_shop_repository(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ShopRepository:
    """Dependency to get shop repository."""
    return ShopRepository(session)


@router.post("", response_model=ShopResponse, status_code=status.HTTP_201_CREATED)
async def create_shop(
    shop_data: ShopCreate,
    repo: Annotated[ShopRepository, Depends(get_shop_repository)],
) -> ShopResponse:
    """
    Add a shop or rotate its credentials.

    The access token is encrypted before it is stored.
    """
    shop, created = await repo.create_or_update(
        domain=shop_data.domain,
        access_token_encrypted=encrypt_token(shop_data.access_token),
        name=shop_data.name,
        api_version=shop_data.api_version,
        is_source=shop_data.is_source,
        location_legacy_id=shop_data.location_legacy_id,
    )

    action = "Created" if created else "Updated"
    logger.info(f"{action} shop", domain=shop.domain, is_source=shop.is_source)

    return ShopResponse.model_validate(shop)


@router.get("", response_model=list[ShopResponse])
async def list_shops(
    repo: Annotated[ShopRepository, Depends(get_shop_repository)],
) -> list[ShopResponse]:
    shops = await repo.get_all(limit=500)
    return [ShopResponse.model_validate(shop) for shop in shops]


@router.get("/{shop_domain}", response_model=ShopResponse)
async def get_shop(
    shop_domain: str,
    repo: Annotated[ShopRepository, Depends(get_shop_repository)],
) -> ShopResponse:
    """Get shop details by domain."""
    shop = await repo.get_by_domain(shop_domain)
    if not shop:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Shop not found",
        )
    return ShopResponse.model_validate(shop)


@router.patch("/{shop_domain}", response_model=ShopResponse)
async def update_shop(
    shop_domain: str,
    shop_update: ShopUpdate,
    repo: Annotated[ShopRepository, Depends(get_shop_repository)],
) -> ShopResponse:
    """Update shop settings (activation, location, API version)."""
    shop = await repo.get_by_domain(shop_domain)
    if not shop:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Shop not found",
        )

    update_data = shop_update.model_dump(exclude_unset=True, by_alias=False)
    shop = await repo.update(shop, update_data)

    logger.info("Updated shop settings", domain=shop_domain, fields=sorted(update_data))
    return ShopResponse.model_validate(shop)


@router.post("/connections", response_model=list[ConnectionResponse], status_code=status.HTTP_201_CREATED)
async def connect_shops(
    payload: ConnectionCreate,
    repo: Annotated[ShopRepository, Depends(get_shop_repository)],
) -> list[ConnectionResponse]:
    """Connect a source shop to one or more targets. Existing edges are kept."""
    source = await repo.get_by_domain(payload.source_domain)
    if not source:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Source shop {payload.source_domain} not found")
    if not source.is_source:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=f"{source.domain} is not a source shop")

    responses: list[ConnectionResponse] = []
    for domain in payload.target_domains:
        target = await repo.get_by_domain(domain)
        if not target:
            raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Target shop {domain} not found")
        try:
            connection, created = await repo.connect(source, target)
        except ValueError as e:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

        logger.info("Shops connected" if created else "Connection exists", source=source.domain, target=target.domain)
        responses.append(
            ConnectionResponse(
                id=connection.id,
                source_shop_id=connection.source_shop_id,
                target_shop_id=connection.target_shop_id,
                created=created,
            )
        )
    return responses


@router.get("/{shop_domain}/connections", response_model=ConnectionListResponse)
async def list_connections(
    shop_domain: str,
    repo: Annotated[ShopRepository, Depends(get_shop_repository)],
) -> ConnectionListResponse:
    """Active targets of a source shop."""
    source = await repo.get_by_domain(shop_domain)
    if not source:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Shop not found")
    targets = await repo.list_active_targets(source.id)
    return ConnectionListResponse(
        source_domain=source.domain,
        targets=[ShopResponse.model_validate(target) for target in targets],
    )


@router.delete("/{shop_domain}/connections/{target_domain}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_shops(
    shop_domain: str,
    target_domain: str,
    repo: Annotated[ShopRepository, Depends(get_shop_repository)],
) -> None:
    source = await repo.get_by_domain(shop_domain)
    target = await repo.get_by_domain(target_domain)
    if not source or not target or not await repo.disconnect(source.id, target.id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Connection not found")
    logger.info("Shops disconnected", source=source.domain, target=target.domain)
