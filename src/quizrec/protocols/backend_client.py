"""REST client for the quiz backend.

Covers questions, quiz responses, query generation, product persistence,
ranking build/fetch/replenish and best-effort vision enrichment.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import httpx
import structlog

from quizrec.config import Settings
from quizrec.models import (
    Product,
    ProductSource,
    Question,
    QuizAnswer,
    RankingEntry,
    RankingPage,
)
from quizrec.protocols.http import HttpClientError, JsonHttpClient

logger = structlog.get_logger(__name__)


class BackendClientError(HttpClientError):
    """Raised when a backend call fails after retries."""


def _product_payload(product: Product) -> dict[str, Any]:
    payload = product.model_dump()
    payload["raw"] = product.raw
    return payload


class BackendClient(JsonHttpClient):
    """Async client for the quiz backend REST contract."""

    error_class = BackendClientError

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url,
            timeout=timeout,
            max_retries=max_retries,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> BackendClient:
        return cls(
            settings.api_base_url,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Quiz
    # ------------------------------------------------------------------

    async def get_questions(self) -> list[Question]:
        data = await self._request("GET", "/questions")
        return [Question.model_validate(q) for q in data.get("questions", [])]

    async def submit_responses(
        self,
        user_id: str,
        response_date: str,
        answers: Iterable[QuizAnswer],
    ) -> bool:
        body = {
            "user_id": user_id,
            "response_date": response_date,
            "answers": [{"qid": a.question_id, "answer": a.value} for a in answers],
        }
        data = await self._request("POST", "/responses", json_body=body)
        return bool(data.get("ok", True))

    async def generate_queries(
        self,
        user_id: str,
        response_date: str,
        buyer_attributes: dict[str, Any] | None = None,
        gender_affinity: str | None = None,
    ) -> list[str]:
        """Ask the backend to turn today's answers into search queries."""
        body: dict[str, Any] = {"user_id": user_id, "response_date": response_date}
        if buyer_attributes is not None:
            body["buyer_attributes"] = buyer_attributes
        if gender_affinity is not None:
            body["gender_affinity"] = gender_affinity
        data = await self._request("POST", "/queries/generate", json_body=body)
        return [str(q) for q in data.get("queries", []) if q]

    # ------------------------------------------------------------------
    # Product persistence
    # ------------------------------------------------------------------

    async def store_products(
        self,
        user_id: str,
        response_date: str,
        source: ProductSource,
        products: list[Product],
    ) -> int:
        """Persist a collected batch; returns how many rows were stored.

        Search batches go to ``/products/store`` and recommended batches to
        ``/products/recommended/store``.
        """
        path = (
            "/products/recommended/store"
            if source is ProductSource.RECOMMENDED
            else "/products/store"
        )
        body = {
            "user_id": user_id,
            "response_date": response_date,
            "source": source.value,
            "results": [_product_payload(p) for p in products],
        }
        data = await self._request("POST", path, json_body=body)
        return int(data.get("stored", 0))

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    async def build_ranking(
        self,
        user_id: str,
        response_date: str,
        past_days: int = 5,
    ) -> list[RankingEntry]:
        body = {"user_id": user_id, "response_date": response_date, "past_days": past_days}
        data = await self._request("POST", "/ranking/build", json_body=body)
        entries: list[RankingEntry] = []
        for row in data.get("top", []):
            if not row.get("product_id"):
                continue
            entries.append(
                RankingEntry(
                    product_id=str(row["product_id"]),
                    score=min(1.0, max(0.0, float(row.get("score") or 0.0))),
                    reason=row.get("reason") or "",
                )
            )
        return entries

    async def get_ranking(
        self,
        user_id: str,
        response_date: str,
        limit: int = 20,
        offset: int = 0,
    ) -> RankingPage:
        params = {
            "user_id": user_id,
            "response_date": response_date,
            "limit": limit,
            "offset": offset,
        }
        data = await self._request("GET", "/ranking", params=params)
        return RankingPage(
            products=data.get("products") or [],
            total=data.get("total", 0),
            limit=data.get("limit", limit),
            offset=data.get("offset", offset),
            context_version=data.get("context_version") or 1,
        )

    async def replenish_ranking(
        self,
        user_id: str,
        response_date: str,
        exclude_product_ids: list[str],
        past_days: int = 5,
    ) -> int:
        body = {
            "user_id": user_id,
            "response_date": response_date,
            "exclude_product_ids": exclude_product_ids,
            "past_days": past_days,
        }
        data = await self._request("POST", "/ranking/replenish", json_body=body)
        return int(data.get("added", 0))

    # ------------------------------------------------------------------
    # Vision
    # ------------------------------------------------------------------

    async def process_vision(
        self,
        user_id: str,
        response_date: str,
        products: list[Product],
    ) -> int:
        """Kick off caption enrichment for products that have an image."""
        items = []
        for product in products:
            image_url = product.thumbnail_url or (product.images[0] if product.images else None)
            if image_url:
                items.append({"product_id": product.product_id, "image_url": image_url})
        if not items:
            logger.debug("vision_skipped_no_images", products=len(products))
            return 0
        body = {"user_id": user_id, "response_date": response_date, "products": items}
        data = await self._request("POST", "/vision/process", json_body=body)
        return int(data.get("processed", 0))
