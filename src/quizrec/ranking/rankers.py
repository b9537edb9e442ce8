"""Ranking policies.

A ranker turns a product pool plus quiz answers into an ordered list of
:class:`RankingEntry`.  Two policies live here:

pass-through -- every surviving product, score 1.0, input order kept
LLM          -- a chat model scores the pool; malformed output falls back to
                the first ``limit`` products with descending synthetic scores

``hydrate`` attaches dense ranks and the full product records.
"""

from __future__ import annotations

import json
import re
from collections.abc import Collection, Mapping, Sequence
from typing import Any, Protocol

import structlog

from quizrec.catalog.accumulator import index_by_id
from quizrec.config import Settings
from quizrec.models import Product, RankedProduct, RankingEntry

logger = structlog.get_logger(__name__)

PASS_THROUGH_REASON = "Search result"
FALLBACK_REASON = "Default fallback"
DEFAULT_LIMIT = 20

_SYSTEM_PROMPT = """\
You are a personalized ecommerce ranking model.

Return EXACTLY {limit} items as a JSON array of:
[
  {{ "product_id": "string", "score": number (0..1), "reason": "string" }}
]

Output policy:
- JSON ONLY. No prose, no code fences.
- Only use product_id values present in "products".
- Exclude any products whose IDs are provided in "exclude_product_ids".
"""


class RankingError(Exception):
    """Raised when a ranking policy cannot produce a result."""


class Ranker(Protocol):
    """Orders a product pool for one user."""

    async def rank(
        self,
        products: Sequence[Product],
        answers: Mapping[str, Any],
        exclude_ids: Collection[str] = (),
    ) -> list[RankingEntry]: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def fallback_entries(products: Sequence[Product], limit: int = DEFAULT_LIMIT) -> list[RankingEntry]:
    """Deterministic stand-in for an unusable model answer."""
    return [
        RankingEntry(
            product_id=product.product_id,
            score=max(0.0, 1 - i / limit),
            reason=FALLBACK_REASON,
        )
        for i, product in enumerate(products[:limit])
    ]


def _clamp_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return min(1.0, max(0.0, score))


def clean_entries(
    rows: Sequence[Any],
    *,
    exclude_ids: Collection[str] = (),
    known_ids: Collection[str] | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[RankingEntry]:
    """Dedupe, drop excluded or unknown ids, clamp to *limit* and to [0, 1]."""
    excluded = set(exclude_ids)
    seen: set[str] = set()
    entries: list[RankingEntry] = []
    for row in rows:
        if not isinstance(row, dict) or not row.get("product_id"):
            continue
        product_id = str(row["product_id"])
        if product_id in seen or product_id in excluded:
            continue
        if known_ids is not None and product_id not in known_ids:
            continue
        seen.add(product_id)
        reason = row.get("reason")
        entries.append(
            RankingEntry(
                product_id=product_id,
                score=_clamp_score(row.get("score")),
                reason=reason if isinstance(reason, str) else "",
            )
        )
        if len(entries) >= limit:
            break
    return entries


def parse_json_payload(text: str) -> Any:
    """Parse JSON from model output that may be fenced or wrapped in prose."""
    if not text or not text.strip():
        raise ValueError("Empty output from model")

    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text, re.IGNORECASE)
    candidate = (fenced.group(1) if fenced else text).strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    for pattern in (r"\[[\s\S]*\]", r"\{[\s\S]*\}"):
        match = re.search(pattern, text)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                continue
    raise ValueError("No valid JSON found in model output")


def hydrate(
    entries: Sequence[RankingEntry],
    pool: Sequence[Product],
    *,
    base_rank: int = 1,
    context_version: int = 1,
) -> list[RankedProduct]:
    """Attach full product data and dense ranks starting at *base_rank*.

    Ids missing from *pool* become bare records so the rank sequence stays
    dense.
    """
    cache = index_by_id(pool)
    ranked: list[RankedProduct] = []
    for offset, entry in enumerate(entries):
        rank = base_rank + offset
        product = cache.get(entry.product_id)
        fields: dict[str, Any] = (
            {**product.model_dump(), "raw": product.raw}
            if product is not None
            else {"product_id": entry.product_id}
        )
        ranked.append(
            RankedProduct(
                **fields,
                rank=rank,
                score=entry.score,
                reason=entry.reason,
                context_version=context_version,
            )
        )
    return ranked


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class PassThroughRanker:
    """Keeps collection order; every product scores 1.0."""

    def __init__(self, reason: str = PASS_THROUGH_REASON) -> None:
        self._reason = reason

    async def rank(
        self,
        products: Sequence[Product],
        answers: Mapping[str, Any],
        exclude_ids: Collection[str] = (),
    ) -> list[RankingEntry]:
        excluded = set(exclude_ids)
        seen: set[str] = set()
        entries: list[RankingEntry] = []
        for product in products:
            if not product.product_id or product.product_id in excluded:
                continue
            if product.product_id in seen:
                continue
            seen.add(product.product_id)
            entries.append(RankingEntry(product_id=product.product_id, score=1.0, reason=self._reason))
        return entries


class LLMRanker:
    """Scores a pool with a chat model (OpenAI first, then Anthropic)."""

    def __init__(self, settings: Settings, limit: int | None = None) -> None:
        self._settings = settings
        self._limit = limit or settings.ranking_limit
        self._openai_client: object | None = None
        self._anthropic_client: object | None = None

    async def rank(
        self,
        products: Sequence[Product],
        answers: Mapping[str, Any],
        exclude_ids: Collection[str] = (),
    ) -> list[RankingEntry]:
        """Rank *products*; raises :class:`RankingError` if no provider answers."""
        excluded = set(exclude_ids)
        candidates = [p for p in products if p.product_id and p.product_id not in excluded]
        if not candidates:
            return []

        system = _SYSTEM_PROMPT.format(limit=self._limit)
        prompt = json.dumps(
            {
                "today_responses": dict(answers),
                "products": [
                    p.model_dump(include={"product_id", "title", "vendor", "price", "currency", "url"})
                    for p in candidates
                ],
                "exclude_product_ids": sorted(excluded),
            },
            default=str,
        )

        raw = await self._complete(system, prompt)

        try:
            parsed = parse_json_payload(raw)
        except ValueError as exc:
            logger.warning("ranking_parse_failed", error=str(exc), raw_snippet=raw[:200])
            return fallback_entries(candidates, self._limit)

        rows = parsed.get("items") if isinstance(parsed, dict) else parsed
        if not isinstance(rows, list):
            logger.warning("ranking_payload_not_a_list", raw_snippet=raw[:200])
            return fallback_entries(candidates, self._limit)

        entries = clean_entries(
            rows,
            exclude_ids=excluded,
            known_ids={p.product_id for p in candidates},
            limit=self._limit,
        )
        logger.info("llm_ranking_complete", candidates=len(candidates), ranked=len(entries))
        return entries

    async def _complete(self, system: str, prompt: str) -> str:
        if self._settings.openai_api_key:
            try:
                return await self._complete_with_openai(system, prompt)
            except Exception:
                logger.warning("openai_ranking_failed", exc_info=True)

        if self._settings.anthropic_api_key:
            try:
                return await self._complete_with_anthropic(system, prompt)
            except Exception:
                logger.warning("anthropic_ranking_failed", exc_info=True)

        raise RankingError("No LLM provider could rank the products.")

    async def _complete_with_openai(self, system: str, prompt: str) -> str:
        from openai import AsyncOpenAI

        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(api_key=self._settings.openai_api_key)

        client: AsyncOpenAI = self._openai_client  # type: ignore[assignment]
        response = await client.chat.completions.create(
            model=self._settings.default_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=0.2,
            max_tokens=2048,
        )
        return response.choices[0].message.content or ""

    async def _complete_with_anthropic(self, system: str, prompt: str) -> str:
        from anthropic import AsyncAnthropic

        if self._anthropic_client is None:
            self._anthropic_client = AsyncAnthropic(api_key=self._settings.anthropic_api_key)

        client: AsyncAnthropic = self._anthropic_client  # type: ignore[assignment]
        response = await client.messages.create(
            model=self._settings.anthropic_model,
            max_tokens=2048,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text if response.content else ""


def create_ranker(settings: Settings) -> Ranker:
    """Pick the in-process ranking policy named by ``settings.ranking_policy``."""
    if settings.ranking_policy == "llm":
        return LLMRanker(settings)
    return PassThroughRanker()
