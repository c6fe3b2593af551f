"""
Tests for shop provisioning endpoints.
"""
from httpx import AsyncClient
from sqlalchemy import select

from shop_mirror.core.security import decrypt_token
from shop_mirror.models.shop import Shop


async def create_shop(client: AsyncClient, headers: dict, domain: str, **extra) -> dict:
    response = await client.post(
        "/api/shops",
        json={"domain": domain, "accessToken": f"shpat_{domain}", **extra},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


async def test_admin_key_required(async_client: AsyncClient, sample_shop_data: dict):
    """Requests without the admin key are refused."""
    response = await async_client.post("/api/shops", json=sample_shop_data)
    assert response.status_code == 403

    response = await async_client.get("/api/shops", headers={"X-Admin-Key": "wrong-key-wrong-key"})
    assert response.status_code == 403


async def test_create_shop(async_client: AsyncClient, admin_headers: dict, sample_shop_data: dict, session_factory):
    """Test creating a new shop; the token is stored encrypted."""
    response = await async_client.post("/api/shops", json=sample_shop_data, headers=admin_headers)

    assert response.status_code == 201
    data = response.json()
    assert data["domain"] == sample_shop_data["domain"]
    assert data["isSource"] is True
    assert data["isActive"] is True
    assert "accessToken" not in data

    async with session_factory() as db_session:
        shop = (await db_session.execute(select(Shop))).scalar_one()
    assert shop.access_token_encrypted != sample_shop_data["accessToken"]
    assert decrypt_token(shop.access_token_encrypted) == sample_shop_data["accessToken"]


async def test_create_shop_twice_rotates_token(async_client: AsyncClient, admin_headers: dict, sample_shop_data: dict):
    """Creating a shop with an existing domain updates it."""
    first = await async_client.post("/api/shops", json=sample_shop_data, headers=admin_headers)
    rotated = {**sample_shop_data, "accessToken": "shpat_rotated", "domain": "SOURCE-store.myshopify.com"}
    second = await async_client.post("/api/shops", json=rotated, headers=admin_headers)

    assert second.status_code == 201
    assert first.json()["id"] == second.json()["id"]


async def test_get_shop_not_found(async_client: AsyncClient, admin_headers: dict):
    response = await async_client.get("/api/shops/non-existent.myshopify.com", headers=admin_headers)

    assert response.status_code == 404


async def test_update_shop(async_client: AsyncClient, admin_headers: dict, sample_shop_data: dict):
    """Deactivating a shop and setting its location."""
    await async_client.post("/api/shops", json=sample_shop_data, headers=admin_headers)

    response = await async_client.patch(
        f"/api/shops/{sample_shop_data['domain']}",
        json={"isActive": False, "locationId": 555},
        headers=admin_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["isActive"] is False
    assert data["locationId"] == 555


async def test_connect_and_list_targets(async_client: AsyncClient, admin_headers: dict):
    await create_shop(async_client, admin_headers, "source.myshopify.com", isSource=True)
    await create_shop(async_client, admin_headers, "b-target.myshopify.com")
    await create_shop(async_client, admin_headers, "a-target.myshopify.com")

    response = await async_client.post(
        "/api/shops/connections",
        json={
            "sourceDomain": "source.myshopify.com",
            "targetDomains": ["b-target.myshopify.com", "a-target.myshopify.com"],
        },
        headers=admin_headers,
    )
    assert response.status_code == 201
    assert all(connection["created"] for connection in response.json())

    again = await async_client.post(
        "/api/shops/connections",
        json={"sourceDomain": "source.myshopify.com", "targetDomains": ["a-target.myshopify.com"]},
        headers=admin_headers,
    )
    assert again.json()[0]["created"] is False

    listing = await async_client.get("/api/shops/source.myshopify.com/connections", headers=admin_headers)
    assert listing.status_code == 200
    assert [target["domain"] for target in listing.json()["targets"]] == [
        "a-target.myshopify.com",
        "b-target.myshopify.com",
    ]


async def test_self_connection_rejected(async_client: AsyncClient, admin_headers: dict):
    await create_shop(async_client, admin_headers, "source.myshopify.com", isSource=True)

    response = await async_client.post(
        "/api/shops/connections",
        json={"sourceDomain": "source.myshopify.com", "targetDomains": ["source.myshopify.com"]},
        headers=admin_headers,
    )

    assert response.status_code == 400


async def test_non_source_cannot_fan_out(async_client: AsyncClient, admin_headers: dict):
    await create_shop(async_client, admin_headers, "plain.myshopify.com")
    await create_shop(async_client, admin_headers, "target.myshopify.com")

    response = await async_client.post(
        "/api/shops/connections",
        json={"sourceDomain": "plain.myshopify.com", "targetDomains": ["target.myshopify.com"]},
        headers=admin_headers,
    )

    assert response.status_code == 400


async def test_disconnect(async_client: AsyncClient, admin_headers: dict):
    await create_shop(async_client, admin_headers, "source.myshopify.com", isSource=True)
    await create_shop(async_client, admin_headers, "target.myshopify.com")
    await async_client.post(
        "/api/shops/connections",
        json={"sourceDomain": "source.myshopify.com", "targetDomains": ["target.myshopify.com"]},
        headers=admin_headers,
    )

    response = await async_client.delete(
        "/api/shops/source.myshopify.com/connections/target.myshopify.com", headers=admin_headers
    )
    assert response.status_code == 204

    missing = await async_client.delete(
        "/api/shops/source.myshopify.com/connections/target.myshopify.com", headers=admin_headers
    )
    assert missing.status_code == 404
