"""Commerce payload normalization.

The storefront search and recommendation endpoints return products in
several shapes: flat price fields, ``priceRange`` objects, variant lists and
GraphQL ``edges``/``node`` connections.  Every shape guess lives here so the
rest of the package only ever sees :class:`Product`.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from quizrec.models import Product

_MISSING = object()

_IMAGE_PATHS: tuple[tuple[Any, ...], ...] = (
    ("featuredImage", "url"),
    ("images", "edges", 0, "node", "url"),
    ("images", 0, "url"),
    ("images", 0),
)

_PRICE_PATHS: tuple[tuple[Any, ...], ...] = (
    ("priceRange", "minVariantPrice", "amount"),
    ("priceRangeV2", "minVariantPrice", "amount"),
    ("minPrice",),
    ("price", "amount"),
    ("price",),
    ("variants", 0, "price", "amount"),
    ("variants", "edges", 0, "node", "price", "amount"),
)

_CURRENCY_PATHS: tuple[tuple[Any, ...], ...] = (
    ("priceRange", "minVariantPrice", "currencyCode"),
    ("priceRangeV2", "minVariantPrice", "currencyCode"),
    ("currency",),
    ("price", "currencyCode"),
    ("variants", 0, "price", "currencyCode"),
    ("variants", "edges", 0, "node", "price", "currencyCode"),
)

_VENDOR_PATHS: tuple[tuple[Any, ...], ...] = (
    ("vendor",),
    ("vendorName",),
    ("brand",),
    ("merchant", "name"),
    ("store", "name"),
)

_URL_PATHS: tuple[tuple[Any, ...], ...] = (
    ("onlineStoreUrl",),
    ("url",),
    ("webUrl",),
)


def _dig(obj: Any, path: tuple[Any, ...]) -> Any:
    """Follow *path* through nested mappings and sequences."""
    current = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, (list, tuple)) or len(current) <= key:
                return _MISSING
            current = current[key]
        else:
            if not isinstance(current, dict) or key not in current:
                return _MISSING
            current = current[key]
        if current is None:
            return _MISSING
    return current


def _first(obj: Any, paths: Iterable[tuple[Any, ...]], *, scalar: bool = True) -> Any:
    for path in paths:
        value = _dig(obj, path)
        if value is _MISSING:
            continue
        if scalar and isinstance(value, (dict, list)):
            continue
        # Empty strings fall through like a missing field.
        if scalar and value == "":
            continue
        return value
    return None


def _image_list(raw: dict[str, Any]) -> list[str]:
    images = raw.get("images")
    if isinstance(images, dict):
        edges = images.get("edges") or []
        urls = [(edge.get("node") or {}).get("url") for edge in edges if isinstance(edge, dict)]
    elif isinstance(images, list):
        urls = [img.get("url") if isinstance(img, dict) else img for img in images]
    else:
        return []
    return [str(url) for url in urls if url]


def _product_url(raw: dict[str, Any]) -> str | None:
    url = _first(raw, _URL_PATHS)
    if url:
        return str(url)
    handle = raw.get("handle")
    domain = _dig(raw, ("store", "domain"))
    if handle and domain is not _MISSING and domain:
        return f"https://{domain}/products/{handle}"
    return None


def normalize(raw: Any) -> Product:
    """Map one commerce payload to a :class:`Product`.

    Pure: the same input always yields an equal record.  A payload without
    ``id``/``product_id`` yields an empty ``product_id``; callers drop those
    before accumulating.
    """
    if not isinstance(raw, dict):
        return Product(product_id="", raw=raw)

    product_id = _first(raw, (("id",), ("product_id",)))
    image = _first(raw, _IMAGE_PATHS)
    title = _first(raw, (("title",), ("name",)))

    return Product(
        product_id=product_id if product_id is not None else "",
        title=str(title) if title is not None else "",
        vendor=str(_first(raw, _VENDOR_PATHS) or "Unknown"),
        price=_first(raw, _PRICE_PATHS),
        currency=str(_first(raw, _CURRENCY_PATHS) or "USD"),
        url=_product_url(raw),
        thumbnail_url=str(image) if image else None,
        images=_image_list(raw),
        raw=raw,
    )


def normalize_many(raws: Iterable[Any]) -> list[Product]:
    """Normalize a batch, dropping records without an identity."""
    products = (normalize(raw) for raw in raws)
    return [product for product in products if product.product_id]
