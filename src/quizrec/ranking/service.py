"""Per-session ranking service: initial build and the replenish protocol.

``LocalRankingService`` ranks in-process against a :class:`RankingRepository`
and owns the context-version bookkeeping.  ``RemoteRankingService`` delegates
the same two operations to the backend's ``/ranking`` endpoints.

Replenish never reorders what is already shown: each pass gets the next
context version and ranks that continue after the highest rank handed out
so far.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import structlog

from quizrec.catalog.accumulator import index_by_id
from quizrec.models import (
    Product,
    ProductSource,
    RankedProduct,
    RankingOutcome,
    ReplenishResult,
)
from quizrec.protocols.backend_client import BackendClient
from quizrec.ranking.rankers import Ranker, hydrate
from quizrec.ranking.repository import RankingRepository

logger = structlog.get_logger(__name__)


class RankingService(Protocol):
    """Ranking operations bound to one (user, date) session."""

    async def build(
        self,
        pool: Sequence[Product],
        answers: Mapping[str, Any],
    ) -> RankingOutcome: ...

    async def replenish(self, exclude_ids: Sequence[str]) -> ReplenishResult: ...


class LocalRankingService:
    """In-process ranking over a repository and a :class:`Ranker` policy."""

    def __init__(
        self,
        ranker: Ranker,
        repository: RankingRepository,
        user_id: str,
        response_date: str,
    ) -> None:
        self._ranker = ranker
        self._repository = repository
        self._user_id = user_id
        self._response_date = response_date
        self._answers: dict[str, Any] = {}

    async def build(
        self,
        pool: Sequence[Product],
        answers: Mapping[str, Any],
    ) -> RankingOutcome:
        """Rank *pool* as context version 1, replacing any earlier build."""
        self._answers = dict(answers)
        await self._repository.store_products(
            self._user_id, self._response_date, ProductSource.SEARCH, pool
        )
        entries = await self._ranker.rank(pool, self._answers)
        ranked = hydrate(entries, pool, base_rank=1, context_version=1)

        await self._repository.clear_ranked(self._user_id, self._response_date)
        await self._repository.store_ranked(self._user_id, self._response_date, ranked)

        logger.info(
            "ranking_built",
            user_id=self._user_id,
            pool=len(pool),
            ranked=len(ranked),
        )
        return RankingOutcome(ranked=ranked, has_more=len(ranked) < len(pool))

    async def replenish(self, exclude_ids: Sequence[str]) -> ReplenishResult:
        """Rank unseen products and record them as a new context version.

        An empty candidate pool is a successful no-op.  Ranker failures
        propagate and nothing is recorded.
        """
        excluded = set(exclude_ids)
        candidates = await self._repository.products_excluding(
            self._user_id, self._response_date, excluded
        )
        current_version = await self._repository.max_context_version(
            self._user_id, self._response_date
        )
        if not candidates:
            logger.info("replenish_exhausted", user_id=self._user_id, excluded=len(excluded))
            return ReplenishResult(added=0, context_version=current_version or None)

        next_version = current_version + 1
        entries = await self._ranker.rank(candidates, self._answers, excluded)
        entries = [e for e in entries if e.product_id not in excluded]

        base_rank = await self._base_rank(next_version, len(excluded))
        ranked = hydrate(entries, candidates, base_rank=base_rank, context_version=next_version)
        await self._repository.store_ranked(self._user_id, self._response_date, ranked)

        logger.info(
            "ranking_replenished",
            user_id=self._user_id,
            added=len(ranked),
            context_version=next_version,
            base_rank=base_rank,
        )
        return ReplenishResult(added=len(ranked), products=ranked, context_version=next_version)

    async def _base_rank(self, next_version: int, shown: int) -> int:
        # Continue after everything already handed out, even when the previous
        # version has no rows of its own.
        previous = await self._repository.max_rank(
            self._user_id, self._response_date, next_version - 1
        )
        overall = await self._repository.max_rank(self._user_id, self._response_date)
        return max(previous, overall, shown) + 1


class RemoteRankingService:
    """Ranking delegated to the backend's ``/ranking`` endpoints."""

    def __init__(
        self,
        client: BackendClient,
        user_id: str,
        response_date: str,
        page_size: int = 20,
        past_days: int = 5,
    ) -> None:
        self._client = client
        self._user_id = user_id
        self._response_date = response_date
        self._page_size = page_size
        self._past_days = past_days
        self._cache: dict[str, Product] = {}

    async def build(
        self,
        pool: Sequence[Product],
        answers: Mapping[str, Any],
    ) -> RankingOutcome:
        """Build the ranking server-side, then fetch and hydrate the first page.

        An empty first page falls back to the top rows the build returned.
        """
        self._cache.update(index_by_id(pool))
        top = await self._client.build_ranking(self._user_id, self._response_date, self._past_days)
        page = await self._client.get_ranking(
            self._user_id, self._response_date, limit=self._page_size, offset=0
        )
        if not page.products and top:
            # The build reply already carries the top rows.
            logger.info("ranking_page_empty_using_build_top", top=len(top))
            return RankingOutcome(ranked=hydrate(top, pool, base_rank=1, context_version=1))
        ranked = self._hydrate_rows(page.products, base_rank=1, context_version=page.context_version)
        return RankingOutcome(ranked=ranked, has_more=page.has_more)

    async def replenish(self, exclude_ids: Sequence[str]) -> ReplenishResult:
        excluded = set(exclude_ids)
        added = await self._client.replenish_ranking(
            self._user_id, self._response_date, list(exclude_ids), self._past_days
        )
        if added == 0:
            return ReplenishResult(added=0)

        page = await self._client.get_ranking(
            self._user_id,
            self._response_date,
            limit=max(added, self._page_size),
            offset=0,
        )
        rows = [row for row in page.products if str(row.get("product_id", "")) not in excluded]
        ranked = self._hydrate_rows(
            rows,
            base_rank=len(excluded) + 1,
            context_version=page.context_version,
        )
        return ReplenishResult(
            added=len(ranked),
            products=ranked,
            context_version=page.context_version,
        )

    def _hydrate_rows(
        self,
        rows: Sequence[Mapping[str, Any]],
        *,
        base_rank: int,
        context_version: int,
    ) -> list[RankedProduct]:
        """Merge backend rows with cached product data.

        Ranks are reassigned densely from *base_rank* in row order.
        """
        ranked: list[RankedProduct] = []
        for row in rows:
            product_id = str(row.get("product_id") or "")
            if not product_id:
                continue
            cached = self._cache.get(product_id)
            fields: dict[str, Any] = (
                {**cached.model_dump(), "raw": cached.raw}
                if cached is not None
                else {
                    key: row[key]
                    for key in ("title", "vendor", "price", "currency", "url", "thumbnail_url")
                    if row.get(key) is not None
                }
            )
            fields["product_id"] = product_id
            score = min(1.0, max(0.0, float(row.get("score") or 0.0)))
            ranked.append(
                RankedProduct(
                    **fields,
                    rank=base_rank + len(ranked),
                    score=score,
                    reason=row.get("reason") or "",
                    context_version=context_version,
                )
            )
        return ranked
