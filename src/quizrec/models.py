"""Pydantic models for the quiz recommendation client.

Covers quiz questions and answers, normalized products, ranking entries and
ranked products, backend ranking pages, replenish results and progress
events.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


AnswerValue = Union[int, float, str, list[str]]


# ---------------------------------------------------------------------------
# Quiz
# ---------------------------------------------------------------------------


class Question(BaseModel):
    """A quiz question served by the backend."""

    id: str
    prompt: str
    type: Literal["single_choice", "multi_choice", "slider"] = "single_choice"
    options: list[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        # The backend numbers its questions; the store keys answers by string.
        return str(value)


class QuizAnswer(BaseModel):
    """One answer per question, last write wins."""

    question_id: str
    value: AnswerValue


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


class ProductSource(str, enum.Enum):
    """Where a batch of products was collected from."""

    SEARCH = "search"
    RECOMMENDED = "recommended"


class Product(BaseModel):
    """A commerce item in canonical form."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    title: str = ""
    vendor: str = "Unknown"
    price: str = "0"
    currency: str = "USD"
    url: str | None = None
    thumbnail_url: str | None = None
    images: list[str] = Field(default_factory=list)
    raw: Any = Field(default=None, exclude=True)

    @field_validator("product_id", mode="before")
    @classmethod
    def _coerce_product_id(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> str:
        return "0" if value is None else str(value)


class RankedProduct(Product):
    """A product with its position, score and rationale."""

    rank: int = Field(ge=1)
    score: float = Field(default=1.0, ge=0.0, le=1.0)
    reason: str = ""
    context_version: int = Field(default=1, ge=1)


class RankingEntry(BaseModel):
    """Output of a ranking policy before ranks are assigned."""

    product_id: str
    score: float = Field(ge=0.0, le=1.0)
    reason: str = ""


class RankingOutcome(BaseModel):
    """Result of the initial ranking build."""

    ranked: list[RankedProduct] = Field(default_factory=list)
    has_more: bool = False


class RankingPage(BaseModel):
    """A page of ``GET /ranking``."""

    products: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    limit: int = 20
    offset: int = 0
    context_version: int = 1

    @property
    def has_more(self) -> bool:
        return len(self.products) >= self.limit > 0


class ReplenishResult(BaseModel):
    """Products appended by one replenish pass."""

    added: int = 0
    products: list[RankedProduct] = Field(default_factory=list)
    context_version: int | None = None


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


class ProgressEvent(BaseModel):
    """Server-Sent Event pushed while a collection run progresses."""

    event_type: str
    session_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
