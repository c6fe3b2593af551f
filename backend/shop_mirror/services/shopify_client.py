"""
Shopify Admin API client for catalog replication.
Handles auth headers, rate limiting, pagination and error surfacing.
"""
import asyncio
from typing import TYPE_CHECKING, Any, Optional

import httpx

from shop_mirror.core.logging import get_logger
from shop_mirror.core.security import decrypt_token

if TYPE_CHECKING:
    from shop_mirror.models.shop import Shop

logger = get_logger(__name__)


class ShopifyAPIError(Exception):
    """Transport, HTTP status or top-level GraphQL error."""

    def __init__(self, message: str | list, status_code: Optional[int] = None) -> None:
        if isinstance(message, list):
            message = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in message)
        super().__init__(message)
        self.status_code = status_code


class ShopifyUserError(ShopifyAPIError):
    """A mutation was accepted but rejected on content (payload-embedded userErrors)."""

    def __init__(self, operation: str, user_errors: list[dict[str, Any]]) -> None:
        self.operation = operation
        self.user_errors = user_errors
        details = "; ".join(
            f"{'.'.join(str(part) for part in (error.get('field') or []))}: {error.get('message')}"
            if error.get("field")
            else str(error.get("message"))
            for error in user_errors
        )
        super().__init__(f"{operation} userErrors: {details}")


# ============================================
# GRAPHQL DOCUMENTS
# ============================================

PRODUCT_CREATE = """
mutation productCreate($product: ProductCreateInput!) {
  productCreate(product: $product) {
    product {
      id
      legacyResourceId
      variants(first: 1) {
        nodes { id legacyResourceId inventoryItem { id } }
      }
    }
    userErrors { field message }
  }
}
"""

PRODUCT_UPDATE = """
mutation productUpdate($product: ProductUpdateInput!, $media: [CreateMediaInput!]) {
  productUpdate(product: $product, media: $media) {
    product { id }
    userErrors { field message }
  }
}
"""

PRODUCT_OPTIONS_CREATE = """
mutation createOptions($productId: ID!, $options: [OptionCreateInput!]!, $variantStrategy: ProductOptionCreateVariantStrategy) {
  productOptionsCreate(productId: $productId, options: $options, variantStrategy: $variantStrategy) {
    product { id }
    userErrors { field message code }
  }
}
"""

PRODUCT_OPTIONS_SET = """
mutation setOptions($productId: ID!, $options: [ProductOptionInput!]!, $variantStrategy: ProductOptionSetVariantStrategy) {
  productOptionsSet(productId: $productId, options: $options, variantStrategy: $variantStrategy) {
    product { id }
    userErrors { field message code }
  }
}
"""

VARIANTS_BULK_CREATE = """
mutation createVariants($productId: ID!, $variants: [ProductVariantsBulkInput!]!, $strategy: ProductVariantsBulkCreateStrategy) {
  productVariantsBulkCreate(productId: $productId, variants: $variants, strategy: $strategy) {
    productVariants {
      id
      legacyResourceId
      selectedOptions { name value }
      inventoryItem { id }
    }
    userErrors { field message }
  }
}
"""

VARIANTS_BULK_UPDATE = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id inventoryItem { id } }
    userErrors { field message code }
  }
}
"""

VARIANTS_BULK_DELETE = """
mutation productVariantsBulkDelete($productId: ID!, $variantsIds: [ID!]!) {
  productVariantsBulkDelete(productId: $productId, variantsIds: $variantsIds) {
    product { id }
    userErrors { field message }
  }
}
"""

PRODUCT_SET = """
mutation productSet($input: ProductSetInput!) {
  productSet(input: $input) {
    product { id }
    userErrors { field message code }
  }
}
"""

PRODUCT_MEDIA = """
query productMedia($id: ID!, $after: String) {
  product(id: $id) {
    media(first: 250, after: $after) {
      nodes {
        id
        mediaContentType
        ... on MediaImage { image { url altText } }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

PRODUCT_DELETE_MEDIA = """
mutation productDeleteMedia($productId: ID!, $mediaIds: [ID!]!) {
  productDeleteMedia(productId: $productId, mediaIds: $mediaIds) {
    deletedMediaIds
    mediaUserErrors { field message }
  }
}
"""

PRODUCT_VARIANTS = """
query productVariants($id: ID!, $after: String) {
  product(id: $id) {
    variants(first: 250, after: $after) {
      nodes {
        id
        legacyResourceId
        inventoryPolicy
        selectedOptions { name value }
        inventoryItem { id tracked requiresShipping }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

PRODUCT_OPTIONS = """
query productOptions($id: ID!) {
  product(id: $id) {
    options { id name position values }
  }
}
"""

PRODUCT_SEO = """
query productSeo($id: ID!) {
  product(id: $id) {
    seo { description }
    metafield(namespace: "global", key: "description_tag") { value }
  }
}
"""

VARIANT_INVENTORY = """
query variantInventory($id: ID!) {
  productVariant(id: $id) {
    id
    inventoryItem {
      id
      tracked
      inventoryLevels(first: 50) {
        nodes { location { id } }
      }
    }
  }
}
"""

INVENTORY_SET_QUANTITIES = """
mutation inventorySetQuantities($input: InventorySetQuantitiesInput!) {
  inventorySetQuantities(input: $input) {
    inventoryAdjustmentGroup { id }
    userErrors { field message code }
  }
}
"""

INVENTORY_ITEM_UPDATE = """
mutation inventoryItemUpdate($id: ID!, $input: InventoryItemInput!) {
  inventoryItemUpdate(id: $id, input: $input) {
    inventoryItem { id tracked }
    userErrors { field message }
  }
}
"""

METAFIELDS_SET = """
mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { id }
    userErrors { field message }
  }
}
"""

COLLECTION_ADD_PRODUCTS = """
mutation collectionAddProducts($id: ID!, $productIds: [ID!]!) {
  collectionAddProducts(id: $id, productIds: $productIds) {
    collection { id }
    userErrors { field message }
  }
}
"""

PUBLICATIONS = """
query publications($after: String) {
  publications(first: 250, after: $after) {
    nodes { id name }
    pageInfo { hasNextPage endCursor }
  }
}
"""

PUBLISHABLE_PUBLISH = """
mutation publishablePublish($id: ID!, $input: [PublicationInput!]!) {
  publishablePublish(id: $id, input: $input) {
    userErrors { field message }
  }
}
"""


class ShopifyGraphQLClient:
    """
    Async Shopify Admin API client.

    Features:
    - Automatic token decryption
    - Throttle handling (HTTP 429 and GraphQL THROTTLED) with exponential backoff
    - Cursor pagination for list queries
    - userErrors surfaced as ShopifyUserError
    """

    GRAPHQL_ENDPOINT = "https://{domain}/admin/api/{version}/graphql.json"
    REST_ENDPOINT = "https://{domain}/admin/api/{version}"
    DEFAULT_API_VERSION = "2025-01"
    MAX_RETRIES = 3

    def __init__(
        self,
        access_token_encrypted: str,
        shop_domain: str,
        api_version: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.access_token = decrypt_token(access_token_encrypted)
        self.shop_domain = shop_domain
        self.api_version = api_version or self.DEFAULT_API_VERSION
        self.endpoint = self.GRAPHQL_ENDPOINT.format(domain=shop_domain, version=self.api_version)
        self.rest_base = self.REST_ENDPOINT.format(domain=shop_domain, version=self.api_version)
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._transport = transport

    @classmethod
    def for_shop(
        cls,
        shop: "Shop",
        *,
        default_api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
        max_retries: int = MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ShopifyGraphQLClient":
        return cls(
            access_token_encrypted=shop.access_token_encrypted,
            shop_domain=shop.domain,
            api_version=shop.api_version or default_api_version,
            timeout=timeout,
            max_retries=max_retries,
            transport=transport,
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self.access_token,
        }

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def execute_query(
        self,
        query: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Execute a GraphQL document against the Admin API.

        Args:
            query: GraphQL query or mutation
            variables: Optional variables

        Returns:
            The `data` object of the response

        Raises:
            ShopifyAPIError: On transport, HTTP or top-level GraphQL errors
        """
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        async with self._http() as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(
                        self.endpoint,
                        json=payload,
                        headers=self._headers,
                    )
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    if e.response.status_code == 429 and attempt < self.max_retries - 1:
                        # Rate limited - back off and retry
                        await asyncio.sleep(2 ** attempt)
                        continue
                    logger.error(
                        "Shopify HTTP error",
                        shop=self.shop_domain,
                        status=e.response.status_code,
                        body=e.response.text[:500],
                    )
                    raise ShopifyAPIError(
                        f"HTTP error: {e.response.status_code}",
                        status_code=e.response.status_code,
                    ) from e
                except httpx.RequestError as e:
                    logger.error("Shopify request failed", shop=self.shop_domain, error=str(e))
                    raise ShopifyAPIError(f"Request failed: {str(e)}") from e

                data = response.json()
                errors = data.get("errors")
                if errors:
                    if _is_throttled(errors) and attempt < self.max_retries - 1:
                        await asyncio.sleep(2 ** attempt)
                        continue
                    logger.error(
                        "Shopify GraphQL errors",
                        errors=errors,
                        shop=self.shop_domain,
                    )
                    raise ShopifyAPIError(errors)

                return data.get("data") or {}

        raise ShopifyAPIError("Max retries exceeded")

    async def _mutate(
        self,
        operation: str,
        query: str,
        variables: dict[str, Any],
    ) -> dict[str, Any]:
        """Run a mutation and raise on its userErrors."""
        data = await self.execute_query(query, variables)
        result = data.get(operation) or {}
        user_errors = result.get("userErrors") or result.get("mediaUserErrors") or []
        if user_errors:
            logger.error(
                "Shopify userErrors",
                operation=operation,
                shop=self.shop_domain,
                user_errors=user_errors,
            )
            raise ShopifyUserError(operation, user_errors)
        return result

    async def _paginate(
        self,
        query: str,
        variables: dict[str, Any],
        path: tuple[str, ...],
    ) -> list[dict[str, Any]]:
        """Follow pageInfo cursors and collect every node at `path`."""
        nodes: list[dict[str, Any]] = []
        after: Optional[str] = None
        while True:
            data = await self.execute_query(query, {**variables, "after": after})
            connection: Any = data
            for part in path:
                connection = (connection or {}).get(part)
            if not connection:
                break
            nodes.extend(connection.get("nodes") or [])
            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            after = page_info.get("endCursor")
        return nodes

    # ============================================
    # PRODUCTS
    # ============================================

    async def create_product(self, product: dict[str, Any]) -> dict[str, Any]:
        """productCreate -> product node with id, legacyResourceId and the default variant."""
        result = await self._mutate("productCreate", PRODUCT_CREATE, {"product": product})
        created = result.get("product") or {}
        if not created.get("id"):
            raise ShopifyAPIError("productCreate returned no product id")
        return created

    async def update_product(self, product_gid: str, patch: dict[str, Any]) -> None:
        await self._mutate(
            "productUpdate",
            PRODUCT_UPDATE,
            {"product": {"id": product_gid, **patch}},
        )

    async def fetch_product_seo_description(self, product_gid: str) -> Optional[str]:
        """SEO description, falling back to the global.description_tag metafield."""
        data = await self.execute_query(PRODUCT_SEO, {"id": product_gid})
        product = data.get("product") or {}
        seo = ((product.get("seo") or {}).get("description") or "").strip()
        if seo:
            return seo
        meta = ((product.get("metafield") or {}).get("value") or "").strip()
        return meta or None

    async def fetch_rest_product(self, product_id: int) -> Optional[dict[str, Any]]:
        """REST product payload (same shape as the product webhooks), None on 404."""
        url = f"{self.rest_base}/products/{product_id}.json"
        async with self._http() as client:
            try:
                response = await client.get(url, headers=self._headers)
            except httpx.RequestError as e:
                raise ShopifyAPIError(f"Request failed: {str(e)}") from e
        if response.status_code == 404:
            return None
        if response.is_error:
            raise ShopifyAPIError(
                f"HTTP error: {response.status_code}",
                status_code=response.status_code,
            )
        return response.json().get("product")

    # ============================================
    # OPTIONS
    # ============================================

    async def fetch_options(self, product_gid: str) -> list[dict[str, Any]]:
        data = await self.execute_query(PRODUCT_OPTIONS, {"id": product_gid})
        return (data.get("product") or {}).get("options") or []

    async def create_options(
        self,
        product_gid: str,
        options: list[dict[str, Any]],
        strategy: str = "LEAVE_AS_IS",
    ) -> None:
        await self._mutate(
            "productOptionsCreate",
            PRODUCT_OPTIONS_CREATE,
            {"productId": product_gid, "options": options, "variantStrategy": strategy},
        )

    async def set_options(
        self,
        product_gid: str,
        options: list[dict[str, Any]],
        strategy: str = "LEAVE_AS_IS",
    ) -> None:
        """Rename/reorder/add/remove options. Not available on every API version."""
        await self._mutate(
            "productOptionsSet",
            PRODUCT_OPTIONS_SET,
            {"productId": product_gid, "options": options, "variantStrategy": strategy},
        )

    # ============================================
    # VARIANTS
    # ============================================

    async def fetch_variants(self, product_gid: str) -> list[dict[str, Any]]:
        """id, selectedOptions and inventory item state of every variant."""
        return await self._paginate(PRODUCT_VARIANTS, {"id": product_gid}, ("product", "variants"))

    async def bulk_create_variants(
        self,
        product_gid: str,
        variants: list[dict[str, Any]],
        strategy: str = "REMOVE_STANDALONE_VARIANT",
    ) -> list[dict[str, Any]]:
        result = await self._mutate(
            "productVariantsBulkCreate",
            VARIANTS_BULK_CREATE,
            {"productId": product_gid, "variants": variants, "strategy": strategy},
        )
        return result.get("productVariants") or []

    async def bulk_update_variants(
        self,
        product_gid: str,
        variants: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        result = await self._mutate(
            "productVariantsBulkUpdate",
            VARIANTS_BULK_UPDATE,
            {"productId": product_gid, "variants": variants},
        )
        return result.get("productVariants") or []

    async def delete_variant(self, product_gid: str, variant_gid: str) -> None:
        await self._mutate(
            "productVariantsBulkDelete",
            VARIANTS_BULK_DELETE,
            {"productId": product_gid, "variantsIds": [variant_gid]},
        )

    async def set_variant_identity(
        self,
        product_gid: str,
        product_options: list[dict[str, Any]],
        variants: list[dict[str, Any]],
    ) -> None:
        """Batched SKU/barcode write; every variant needs its full optionValues vector."""
        await self._mutate(
            "productSet",
            PRODUCT_SET,
            {
                "input": {
                    "id": product_gid,
                    "productOptions": product_options,
                    "variants": variants,
                }
            },
        )

    # ============================================
    # MEDIA
    # ============================================

    async def list_media(self, product_gid: str) -> list[dict[str, Any]]:
        return await self._paginate(PRODUCT_MEDIA, {"id": product_gid}, ("product", "media"))

    async def delete_media(self, product_gid: str, media_ids: list[str]) -> list[str]:
        if not media_ids:
            return []
        result = await self._mutate(
            "productDeleteMedia",
            PRODUCT_DELETE_MEDIA,
            {"productId": product_gid, "mediaIds": media_ids},
        )
        return result.get("deletedMediaIds") or []

    async def create_media(self, product_gid: str, media: list[dict[str, Any]]) -> None:
        if not media:
            return
        await self._mutate(
            "productUpdate",
            PRODUCT_UPDATE,
            {"product": {"id": product_gid}, "media": media},
        )

    # ============================================
    # INVENTORY
    # ============================================

    async def fetch_inventory_item_and_locations(
        self,
        variant_gid: str,
    ) -> tuple[Optional[str], list[str]]:
        data = await self.execute_query(VARIANT_INVENTORY, {"id": variant_gid})
        item = (data.get("productVariant") or {}).get("inventoryItem") or {}
        levels = (item.get("inventoryLevels") or {}).get("nodes") or []
        locations = [
            level["location"]["id"]
            for level in levels
            if (level.get("location") or {}).get("id")
        ]
        return item.get("id"), locations

    async def set_inventory_quantities(
        self,
        inventory_item_gid: str,
        location_gids: list[str],
        quantity: int,
        reason: str = "correction",
    ) -> None:
        """Absolute `available` quantity at each location."""
        if not inventory_item_gid or not location_gids:
            return
        await self._mutate(
            "inventorySetQuantities",
            INVENTORY_SET_QUANTITIES,
            {
                "input": {
                    "reason": reason,
                    "name": "available",
                    "ignoreCompareQuantity": True,
                    "quantities": [
                        {
                            "inventoryItemId": inventory_item_gid,
                            "locationId": location_gid,
                            "quantity": quantity,
                        }
                        for location_gid in location_gids
                    ],
                }
            },
        )

    async def update_inventory_item(self, inventory_item_gid: str, item_input: dict[str, Any]) -> None:
        if not item_input:
            return
        await self._mutate(
            "inventoryItemUpdate",
            INVENTORY_ITEM_UPDATE,
            {"id": inventory_item_gid, "input": item_input},
        )

    async def set_inventory_tracked(self, inventory_item_gid: str, tracked: bool) -> None:
        await self.update_inventory_item(inventory_item_gid, {"tracked": tracked})

    # ============================================
    # METAFIELDS, COLLECTIONS, PUBLICATIONS
    # ============================================

    async def set_metafields(self, metafields: list[dict[str, Any]]) -> None:
        await self._mutate("metafieldsSet", METAFIELDS_SET, {"metafields": metafields})

    async def add_products_to_collection(self, collection_gid: str, product_gids: list[str]) -> None:
        await self._mutate(
            "collectionAddProducts",
            COLLECTION_ADD_PRODUCTS,
            {"id": collection_gid, "productIds": product_gids},
        )

    async def list_publication_ids(self) -> list[str]:
        nodes = await self._paginate(PUBLICATIONS, {}, ("publications",))
        return [node["id"] for node in nodes if node.get("id")]

    async def publish_product(self, product_gid: str, publication_gid: str) -> None:
        await self._mutate(
            "publishablePublish",
            PUBLISHABLE_PUBLISH,
            {"id": product_gid, "input": [{"publicationId": publication_gid}]},
        )


def _is_throttled(errors: Any) -> bool:
    if not isinstance(errors, list):
        return False
    return any(
        isinstance(error, dict) and (error.get("extensions") or {}).get("code") == "THROTTLED"
        for error in errors
    )
