"""
Normalization and fingerprinting of source product payloads.

Every shape a product can arrive in (REST webhook body, refreshed REST
product, media-only payloads) is reduced here to one canonical
`NormalizedProduct`. The diff engine and the orchestrator only ever see
the canonical form.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit

STATUS_ENUM = {
    "active": "ACTIVE",
    "draft": "DRAFT",
    "archived": "ARCHIVED",
}

WEIGHT_UNITS = {
    "g": "GRAMS",
    "gram": "GRAMS",
    "grams": "GRAMS",
    "kg": "KILOGRAMS",
    "kilogram": "KILOGRAMS",
    "kilograms": "KILOGRAMS",
    "lb": "POUNDS",
    "lbs": "POUNDS",
    "pound": "POUNDS",
    "pounds": "POUNDS",
    "oz": "OUNCES",
    "ounce": "OUNCES",
    "ounces": "OUNCES",
}

MAX_OPTIONS = 3


@dataclass(frozen=True)
class CanonicalImage:
    src: Optional[str]
    src_canon: Optional[str]
    alt: str
    position: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "src": self.src,
            "src_canon": self.src_canon,
            "alt": self.alt,
            "position": self.position,
        }


@dataclass(frozen=True)
class CanonicalOption:
    name: str
    position: int
    values: tuple[str, ...]

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "position": self.position, "values": list(self.values)}


@dataclass
class NormalizedVariant:
    """A source variant reduced to the fields replication acts on."""

    key: str
    option_values: tuple[str, ...]
    source_variant_id: Optional[int] = None
    sku: Optional[str] = None
    sku_present: bool = False
    barcode: Optional[str] = None
    barcode_present: bool = False
    price: Optional[str] = None
    compare_at_price: Optional[str] = None
    taxable: Optional[bool] = None
    weight: Optional[float] = None
    weight_unit: Optional[str] = None
    requires_shipping: Optional[bool] = None
    inventory_policy: Optional[str] = None
    inventory_management: Optional[str] = None
    inventory_management_present: bool = False
    inventory_quantity: Optional[int] = None
    image_src_canon: Optional[str] = None
    variant_fingerprint: str = ""
    inventory_fingerprint: str = ""

    @property
    def inventory_policy_enum(self) -> Optional[str]:
        if self.inventory_policy is None:
            return None
        return "CONTINUE" if self.inventory_policy.lower() == "continue" else "DENY"

    @property
    def tracked_from_payload(self) -> Optional[bool]:
        """Tracked state implied by the payload, or None when the payload is silent."""
        if not self.inventory_management_present:
            return None
        return (self.inventory_management or "").lower() == "shopify"

    @property
    def weight_unit_enum(self) -> Optional[str]:
        if not self.weight_unit:
            return None
        return WEIGHT_UNITS.get(self.weight_unit.lower())

    def identity(self) -> dict[str, Any]:
        """SKU/barcode as recorded on the variant mirror snapshot."""
        return {"sku": self.sku, "barcode": self.barcode or None}


@dataclass
class NormalizedProduct:
    """Canonical view of a source product."""

    product_id: Optional[int]
    title: Optional[str] = None
    body_html: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    tags_present: bool = False
    status: Optional[str] = None
    status_present: bool = False
    images: list[CanonicalImage] = field(default_factory=list)
    options: list[CanonicalOption] = field(default_factory=list)
    variants: dict[str, NormalizedVariant] = field(default_factory=dict)
    images_fingerprint: str = ""
    options_fingerprint: str = ""

    @property
    def option_names(self) -> list[str]:
        return [option.name for option in self.options]

    @property
    def is_default_product(self) -> bool:
        return is_default_product(self.options)

    @property
    def status_enum(self) -> Optional[str]:
        if self.status is None:
            return None
        return STATUS_ENUM.get(self.status.lower())

    def snapshot(self) -> dict[str, Any]:
        """The JSON object stored as ProductMirror.last_snapshot."""
        return {
            "id": self.product_id,
            "title": self.title,
            "body_html": self.body_html,
            "vendor": self.vendor,
            "product_type": self.product_type,
            "tags": list(self.tags),
            "status": self.status,
            "images": [image.as_dict() for image in self.images],
            "images_fingerprint": self.images_fingerprint,
            "options": [option.as_dict() for option in self.options],
            "options_fingerprint": self.options_fingerprint,
        }


# ---------------------------------------------------------------------------
# Canonical primitives
# ---------------------------------------------------------------------------


def canon_option_name(name: Any) -> str:
    return str(name if name is not None else "").strip().lower()


def canon_option_value(value: Any) -> str:
    return str(value if value is not None else "").strip().lower()


def canonical_key(raw_key: str) -> str:
    """Re-canonicalize an options key: trims and lowercases every name and value."""
    if not raw_key:
        return ""
    parts = []
    for pair in raw_key.split("|"):
        name, _, value = pair.partition("=")
        parts.append(f"{canon_option_name(name)}={canon_option_value(value)}")
    return "|".join(parts)


def variant_key(option_names: Iterable[str], values: Iterable[Any]) -> str:
    """Join key for a variant: `name=value` pairs in product option order."""
    return "|".join(
        f"{canon_option_name(name)}={canon_option_value(value)}"
        for name, value in zip(option_names, values)
    )


def key_from_selected_options(
    selected_options: Iterable[dict[str, Any]],
    option_names: list[str],
) -> str:
    """Build the canonical key of a remote variant from its selectedOptions."""
    by_name = {
        canon_option_name(selected.get("name")): canon_option_value(selected.get("value"))
        for selected in selected_options or []
    }
    return variant_key(
        option_names,
        [by_name.get(canon_option_name(name), "") for name in option_names],
    )


def canonical_url(url: Optional[str]) -> Optional[str]:
    """scheme + lowercased host + path. Query strings (CDN cache busters) are dropped."""
    if not url:
        return None
    parts = urlsplit(url)
    if not parts.netloc or not parts.path:
        return url
    scheme = "http" if parts.scheme == "http" else "https"
    return f"{scheme}://{parts.netloc.lower()}{parts.path}"


def split_tags(tags: Any) -> list[str]:
    """Tags as a sorted, de-duplicated list. Accepts a comma string or a list."""
    if tags is None:
        return []
    if isinstance(tags, str):
        items = tags.split(",")
    else:
        items = [str(tag) for tag in tags]
    cleaned = {item.strip() for item in items if item and item.strip()}
    return sorted(cleaned, key=lambda tag: (tag.lower(), tag))


def fingerprint(payload: str) -> str:
    return "sha1:" + hashlib.sha1(payload.encode("utf-8")).hexdigest()


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def images_fingerprint(images: Iterable[CanonicalImage]) -> str:
    return fingerprint("||".join(f"{image.src_canon or ''}|{image.alt or ''}" for image in images))


def options_fingerprint(options: Iterable[CanonicalOption]) -> str:
    return fingerprint(
        "||".join(f"{option.name.lower()}:{'|'.join(option.values)}" for option in options)
    )


def variant_fingerprint(
    price: Any,
    compare_at_price: Any,
    taxable: Any,
    inventory_policy: Any,
) -> str:
    return fingerprint(
        "|".join(_scalar(part) for part in (price, compare_at_price, taxable, inventory_policy))
    )


def inventory_fingerprint(quantity: Any) -> str:
    return fingerprint(_scalar(quantity))


def is_default_product(options: list[CanonicalOption]) -> bool:
    """No real options: either none at all or the platform's single "Title" pseudo-option."""
    if not options:
        return True
    return len(options) == 1 and options[0].name.lower() == "title"


def legacy_id_from_gid(gid: Optional[str]) -> Optional[int]:
    """gid://shopify/Product/123 -> 123"""
    if not gid or "/" not in gid:
        return None
    tail = gid.rsplit("/", 1)[1]
    return int(tail) if tail.isdigit() else None


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------


def extract_images(payload: dict[str, Any]) -> list[CanonicalImage]:
    """Images from `images[]`, falling back to IMAGE entries of `media[]`."""
    images: list[CanonicalImage] = []
    raw_images = payload.get("images")
    raw_media = payload.get("media")

    if isinstance(raw_images, list) and raw_images:
        for index, image in enumerate(raw_images):
            src = image.get("src")
            images.append(
                CanonicalImage(
                    src=src,
                    src_canon=canonical_url(src),
                    alt=image.get("alt") or "",
                    position=int(image.get("position") or index + 1),
                )
            )
    elif isinstance(raw_media, list) and raw_media:
        for index, media in enumerate(raw_media):
            if media.get("media_content_type") != "IMAGE":
                continue
            src = (media.get("preview_image") or {}).get("src")
            images.append(
                CanonicalImage(
                    src=src,
                    src_canon=canonical_url(src),
                    alt=media.get("alt") or "",
                    position=int(media.get("position") or index + 1),
                )
            )

    return sorted(images, key=lambda image: image.position)


def extract_options(payload: dict[str, Any]) -> list[CanonicalOption]:
    raw_options = payload.get("options")
    if not isinstance(raw_options, list):
        return []

    ordered = sorted(raw_options, key=lambda option: int(option.get("position") or 0))
    options: list[CanonicalOption] = []
    for option in ordered:
        name = str(option.get("name") or "").strip()
        if not name:
            continue
        values: list[str] = []
        for value in option.get("values") or []:
            text = str(value)
            if text not in values:
                values.append(text)
        options.append(
            CanonicalOption(name=name, position=len(options) + 1, values=tuple(values))
        )
    return options


def _image_src_for_variant(variant: dict[str, Any], payload: dict[str, Any]) -> Optional[str]:
    image_id = variant.get("image_id")
    if not image_id:
        return None
    for image in payload.get("images") or []:
        if image.get("id") == image_id:
            return canonical_url(image.get("src"))
    return None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def normalize_variant(
    variant: dict[str, Any],
    option_names: list[str],
    payload: dict[str, Any],
) -> NormalizedVariant:
    raw_values = [variant.get(f"option{index + 1}") for index in range(len(option_names))]
    option_values = tuple("" if value is None else str(value).strip() for value in raw_values)

    weight = _optional_float(variant.get("weight"))
    weight_unit = variant.get("weight_unit")
    if weight is None and variant.get("grams") is not None:
        weight, weight_unit = float(variant["grams"]), "g"

    normalized = NormalizedVariant(
        key=variant_key(option_names, option_values),
        option_values=option_values,
        source_variant_id=_optional_int(variant.get("id")),
        sku=_optional_str(variant.get("sku")),
        sku_present="sku" in variant,
        barcode=_optional_str(variant.get("barcode")),
        barcode_present="barcode" in variant,
        price=_optional_str(variant.get("price")),
        compare_at_price=_optional_str(variant.get("compare_at_price")),
        taxable=variant.get("taxable"),
        weight=weight,
        weight_unit=weight_unit,
        requires_shipping=variant.get("requires_shipping"),
        inventory_policy=variant.get("inventory_policy"),
        inventory_management=variant.get("inventory_management"),
        inventory_management_present="inventory_management" in variant,
        inventory_quantity=_optional_int(variant.get("inventory_quantity")),
        image_src_canon=_image_src_for_variant(variant, payload),
    )
    normalized.variant_fingerprint = variant_fingerprint(
        normalized.price,
        normalized.compare_at_price,
        normalized.taxable,
        normalized.inventory_policy,
    )
    normalized.inventory_fingerprint = inventory_fingerprint(normalized.inventory_quantity)
    return normalized


def normalize_product(payload: dict[str, Any]) -> NormalizedProduct:
    """Reduce a raw source product payload to its canonical form."""
    images = extract_images(payload)
    options = extract_options(payload)
    option_names = [option.name for option in options]

    variants: dict[str, NormalizedVariant] = {}
    for raw_variant in payload.get("variants") or []:
        variant = normalize_variant(raw_variant, option_names, payload)
        variants[variant.key] = variant

    return NormalizedProduct(
        product_id=_optional_int(payload.get("id")),
        title=payload.get("title"),
        body_html=payload.get("body_html"),
        vendor=payload.get("vendor"),
        product_type=payload.get("product_type"),
        tags=split_tags(payload.get("tags")),
        tags_present="tags" in payload,
        status=payload.get("status"),
        status_present="status" in payload,
        images=images,
        options=options,
        variants=variants,
        images_fingerprint=images_fingerprint(images),
        options_fingerprint=options_fingerprint(options),
    )


def original_option_values(
    key: str,
    options: list[CanonicalOption],
) -> list[dict[str, str]]:
    """
    Recover display casing for a canonical key.

    "color=red|size=m" with options [Color: Red, Size: M] ->
    [{"optionName": "Color", "name": "Red"}, {"optionName": "Size", "name": "M"}]
    """
    by_name = {canon_option_name(option.name): option for option in options}
    result: list[dict[str, str]] = []
    for pair in filter(None, key.split("|")):
        name, _, value = pair.partition("=")
        option = by_name.get(canon_option_name(name))
        display_name = option.name if option else name
        display_value = value
        if option:
            for candidate in option.values:
                if canon_option_value(candidate) == canon_option_value(value):
                    display_value = candidate
                    break
        result.append({"optionName": display_name, "name": display_value})
    return result
