"""Session state held by the store.

``AppState`` is immutable; every transition produces a new instance through
``quizrec.store.reducer.reduce``.
"""

from __future__ import annotations

import enum
from datetime import date

from pydantic import BaseModel, ConfigDict, Field

from quizrec.models import AnswerValue, Question, RankedProduct


class Screen(str, enum.Enum):
    """Which view the client should mount."""

    QUIZ = "quiz"
    LOADING = "loading"
    CARD = "card"
    FAN = "fan"
    RESULTS = "results"


# quiz -> loading -> results views; the results views are interchangeable.
SCREEN_STAGE: dict[Screen, int] = {
    Screen.QUIZ: 0,
    Screen.LOADING: 1,
    Screen.CARD: 2,
    Screen.FAN: 2,
    Screen.RESULTS: 2,
}


class LoadingKey(str, enum.Enum):
    """One flag per asynchronous operation."""

    QUESTIONS = "questions"
    SUBMIT_ANSWERS = "submit_answers"
    GENERATE_QUERIES = "generate_queries"
    SEARCH = "search"
    RECOMMENDED = "recommended"
    STORE = "store"
    BUILD_RANKING = "build_ranking"
    FETCH_RANKING = "fetch_ranking"
    REPLENISH = "replenish"


def _idle_flags() -> dict[LoadingKey, bool]:
    return {key: False for key in LoadingKey}


def today() -> str:
    return date.today().isoformat()


class AppState(BaseModel):
    """Single source of truth for one user session."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    session_date: str = Field(default_factory=today)
    generation: int = 0

    questions: list[Question] = Field(default_factory=list)
    answers: dict[str, AnswerValue] = Field(default_factory=dict)
    generated_queries: list[str] = Field(default_factory=list)

    ranked: list[RankedProduct] = Field(default_factory=list)
    frozen_ids: frozenset[str] = Field(default_factory=frozenset)
    offset: int = 0
    has_more: bool = False

    loading: dict[LoadingKey, bool] = Field(default_factory=_idle_flags)
    error: str | None = None
    current_screen: Screen = Screen.QUIZ

    @property
    def seen_product_ids(self) -> frozenset[str]:
        return frozenset(item.product_id for item in self.ranked)

    def is_loading(self, *keys: LoadingKey) -> bool:
        return any(self.loading.get(key, False) for key in keys)
