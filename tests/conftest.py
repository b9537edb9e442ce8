"""Shared test fixtures for the quiz recommendation client."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from quizrec.config import Settings
from quizrec.models import (
    Product,
    ProductSource,
    Question,
    QuizAnswer,
    RankingOutcome,
    ReplenishResult,
)
from quizrec.ranking.rankers import PassThroughRanker, hydrate


def raw_product(product_id: str, title: str | None = None, price: str = "10.00") -> dict[str, Any]:
    """A storefront payload in the GraphQL-ish shape the search API returns."""
    return {
        "id": product_id,
        "title": title or f"Product {product_id}",
        "vendor": "Acme",
        "priceRange": {"minVariantPrice": {"amount": price, "currencyCode": "USD"}},
        "featuredImage": {"url": f"https://cdn.test/{product_id}.jpg"},
    }


def make_product(product_id: str, **kwargs: Any) -> Product:
    return Product(product_id=product_id, title=kwargs.pop("title", f"Product {product_id}"), **kwargs)


# ---------------------------------------------------------------------------
# Paged sources
# ---------------------------------------------------------------------------


class FakeSource:
    """Scripted paged source; each ``fetch_more`` settles the next page."""

    def __init__(
        self,
        pages: Sequence[Any],
        *,
        fail_at: int | None = None,
        stall: bool = False,
    ) -> None:
        self._pages = list(pages)
        self._index = 0
        self._fail_at = fail_at
        self.fetch_more_calls = 0
        self.items: Any = None
        self.error: BaseException | None = None
        self.has_next_page = False
        self.loading = True
        if not stall:
            self._settle()

    def _settle(self) -> None:
        if self._fail_at is not None and self._index == self._fail_at:
            self.error = RuntimeError(f"page {self._index} failed")
            self.loading = False
            return
        self.items = self._pages[self._index] if self._index < len(self._pages) else []
        self.has_next_page = self._index + 1 < len(self._pages)
        self.loading = False

    async def fetch_more(self) -> None:
        self.fetch_more_calls += 1
        self._index += 1
        self.loading = True
        await asyncio.sleep(0)
        self._settle()


class FakeSources:
    """Source factory keyed by query; records call order."""

    def __init__(
        self,
        search: Mapping[str, Sequence[Any]] | None = None,
        recommended: Sequence[Any] = (),
        *,
        failing_queries: Sequence[str] = (),
        recommended_fails: bool = False,
    ) -> None:
        self._search = dict(search or {})
        self._recommended = list(recommended)
        self._failing = set(failing_queries)
        self._recommended_fails = recommended_fails
        self.search_calls: list[str] = []
        self.recommended_calls = 0
        self.sources: list[FakeSource] = []

    def search(self, query: str, page_size: int) -> FakeSource:
        self.search_calls.append(query)
        fail_at = 0 if query in self._failing else None
        source = FakeSource(self._search.get(query, [[]]), fail_at=fail_at)
        self.sources.append(source)
        return source

    def recommended(self, page_size: int) -> FakeSource:
        self.recommended_calls += 1
        fail_at = 0 if self._recommended_fails else None
        source = FakeSource(self._recommended or [[]], fail_at=fail_at)
        self.sources.append(source)
        return source


# ---------------------------------------------------------------------------
# Backend and ranking
# ---------------------------------------------------------------------------


class FakeBackend:
    """In-memory stand-in for the quiz backend REST client."""

    def __init__(
        self,
        questions: Sequence[Question] = (),
        queries: Sequence[str] = (),
        *,
        fail_questions: bool = False,
        fail_submit: bool = False,
        fail_store: bool = False,
        fail_vision: bool = False,
    ) -> None:
        self.questions = list(questions)
        self.queries = list(queries)
        self.fail_questions = fail_questions
        self.fail_submit = fail_submit
        self.fail_store = fail_store
        self.fail_vision = fail_vision
        self.submitted: list[list[QuizAnswer]] = []
        self.stored: list[tuple[ProductSource, list[str]]] = []
        self.vision_calls: list[list[str]] = []

    async def get_questions(self) -> list[Question]:
        if self.fail_questions:
            raise RuntimeError("questions unavailable")
        return list(self.questions)

    async def submit_responses(self, user_id: str, response_date: str, answers: list[QuizAnswer]) -> bool:
        if self.fail_submit:
            raise RuntimeError("responses rejected")
        self.submitted.append(list(answers))
        return True

    async def generate_queries(self, user_id: str, response_date: str) -> list[str]:
        return list(self.queries)

    async def store_products(
        self,
        user_id: str,
        response_date: str,
        source: ProductSource,
        products: list[Product],
    ) -> int:
        if self.fail_store:
            raise RuntimeError("store failed")
        self.stored.append((source, [p.product_id for p in products]))
        return len(products)

    async def process_vision(self, user_id: str, response_date: str, products: list[Product]) -> int:
        self.vision_calls.append([p.product_id for p in products])
        if self.fail_vision:
            raise RuntimeError("vision down")
        return len(products)


class FakeRankingService:
    """Ranking service returning pass-through order unless told to fail."""

    def __init__(
        self,
        *,
        fail_build: bool = False,
        replenish_result: ReplenishResult | None = None,
        fail_replenish: bool = False,
        has_more: bool = True,
    ) -> None:
        self.fail_build = fail_build
        self.fail_replenish = fail_replenish
        self.replenish_result = replenish_result or ReplenishResult(added=0)
        self.has_more = has_more
        self.build_calls: list[list[str]] = []
        self.replenish_calls: list[list[str]] = []

    async def build(self, pool: Sequence[Product], answers: Mapping[str, Any]) -> RankingOutcome:
        self.build_calls.append([p.product_id for p in pool])
        if self.fail_build:
            raise RuntimeError("ranking backend exploded")
        entries = await PassThroughRanker(reason="Ranked").rank(pool, answers)
        ranked = hydrate([e.model_copy(update={"score": 0.5}) for e in entries], pool)
        return RankingOutcome(ranked=ranked, has_more=self.has_more)

    async def replenish(self, exclude_ids: Sequence[str]) -> ReplenishResult:
        self.replenish_calls.append(list(exclude_ids))
        if self.fail_replenish:
            raise RuntimeError("replenish failed")
        return self.replenish_result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Create test settings with short fetch timeouts."""
    return Settings(
        environment="testing",
        openai_api_key="",
        anthropic_api_key="",
        ranking_policy="passthrough",
        fetch_stall_timeout=0.2,
        fetch_poll_interval=0.001,
    )


@pytest.fixture
def questions():
    return [
        Question(id=1, prompt="Pick a style", type="single_choice", options=["casual", "formal"]),
        Question(id=2, prompt="Budget", type="slider"),
    ]
