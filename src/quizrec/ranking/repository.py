"""Ranking repository.

Holds collected products and versioned ranking rows per (user, date).
``InMemoryRankingRepository`` is the process-local adapter; it is built once
per process and injected wherever rankings are read or written.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from dataclasses import dataclass
from typing import Protocol

from quizrec.models import Product, ProductSource, RankedProduct


@dataclass
class _StoredProduct:
    product: Product
    source: ProductSource


class RankingRepository(Protocol):
    """Storage the local ranking service depends on."""

    async def store_products(
        self,
        user_id: str,
        response_date: str,
        source: ProductSource,
        products: Iterable[Product],
    ) -> int: ...

    async def products_excluding(
        self,
        user_id: str,
        response_date: str,
        exclude_ids: Collection[str],
    ) -> list[Product]: ...

    async def store_ranked(
        self,
        user_id: str,
        response_date: str,
        ranked: Iterable[RankedProduct],
    ) -> None: ...

    async def clear_ranked(self, user_id: str, response_date: str) -> None: ...

    async def max_context_version(self, user_id: str, response_date: str) -> int: ...

    async def max_rank(
        self,
        user_id: str,
        response_date: str,
        context_version: int | None = None,
    ) -> int: ...

    async def ranked(
        self,
        user_id: str,
        response_date: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RankedProduct]: ...


class InMemoryRankingRepository:
    """Dict-backed repository; last write wins per key."""

    def __init__(self) -> None:
        self._products: dict[tuple[str, str], dict[str, _StoredProduct]] = {}
        self._ranked: dict[tuple[str, str], dict[tuple[int, str], RankedProduct]] = {}

    async def store_products(
        self,
        user_id: str,
        response_date: str,
        source: ProductSource,
        products: Iterable[Product],
    ) -> int:
        bucket = self._products.setdefault((user_id, response_date), {})
        stored = 0
        for product in products:
            if not product.product_id:
                continue
            bucket[product.product_id] = _StoredProduct(product=product, source=source)
            stored += 1
        return stored

    async def products_excluding(
        self,
        user_id: str,
        response_date: str,
        exclude_ids: Collection[str],
    ) -> list[Product]:
        excluded = set(exclude_ids)
        bucket = self._products.get((user_id, response_date), {})
        return [row.product for pid, row in bucket.items() if pid not in excluded]

    async def store_ranked(
        self,
        user_id: str,
        response_date: str,
        ranked: Iterable[RankedProduct],
    ) -> None:
        bucket = self._ranked.setdefault((user_id, response_date), {})
        for item in ranked:
            bucket[(item.context_version, item.product_id)] = item

    async def clear_ranked(self, user_id: str, response_date: str) -> None:
        self._ranked.pop((user_id, response_date), None)

    async def max_context_version(self, user_id: str, response_date: str) -> int:
        bucket = self._ranked.get((user_id, response_date), {})
        return max((version for version, _ in bucket), default=0)

    async def max_rank(
        self,
        user_id: str,
        response_date: str,
        context_version: int | None = None,
    ) -> int:
        bucket = self._ranked.get((user_id, response_date), {})
        return max(
            (
                item.rank
                for (version, _), item in bucket.items()
                if context_version is None or version == context_version
            ),
            default=0,
        )

    async def ranked(
        self,
        user_id: str,
        response_date: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RankedProduct]:
        """Rows of the newest context version ordered by rank."""
        latest = await self.max_context_version(user_id, response_date)
        bucket = self._ranked.get((user_id, response_date), {})
        rows = sorted(
            (item for (version, _), item in bucket.items() if version == latest),
            key=lambda item: item.rank,
        )
        return rows[offset : offset + limit]
