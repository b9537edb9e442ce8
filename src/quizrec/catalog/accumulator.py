"""Deduplicating product accumulator."""

from __future__ import annotations

from collections.abc import Iterable

from quizrec.models import Product


def merge(existing: Iterable[Product], incoming: Iterable[Product]) -> list[Product]:
    """Merge two batches keeping the first occurrence of each ``product_id``.

    Scans *existing* then *incoming*; records with an empty id are dropped.
    The result is always a new list so callers can swap it into state
    without mutating the previous snapshot.
    """
    seen: set[str] = set()
    merged: list[Product] = []
    for batch in (existing, incoming):
        for product in batch:
            if not product.product_id or product.product_id in seen:
                continue
            seen.add(product.product_id)
            merged.append(product)
    return merged


def index_by_id(products: Iterable[Product]) -> dict[str, Product]:
    """Map ``product_id`` to product, first occurrence wins."""
    index: dict[str, Product] = {}
    for product in products:
        if product.product_id and product.product_id not in index:
            index[product.product_id] = product
    return index
