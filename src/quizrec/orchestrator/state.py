"""LangGraph state schema for the collection workflow.

``CollectionGraphState`` carries everything a run needs between nodes,
including the transient accumulated product pool that never reaches the
store.
"""

from __future__ import annotations

import enum
from typing import Any, TypedDict

from quizrec.models import Product, RankedProduct


class Phase(str, enum.Enum):
    """Collection phases, strictly in this order."""

    SEARCH = "search"
    RECOMMENDED = "recommended"
    RANKING = "ranking"
    DONE = "done"


class CollectionGraphState(TypedDict, total=False):
    """Typed dictionary describing the full state flowing through the graph."""

    # --- Input ----------------------------------------------------------------
    session_id: str
    user_id: str
    response_date: str
    queries: list[str]
    answers: dict[str, Any]

    # --- Progress -------------------------------------------------------------
    phase: Phase
    q_index: int

    # --- Collection -----------------------------------------------------------
    accumulated: list[Product]

    # --- Result ---------------------------------------------------------------
    ranked: list[RankedProduct]
    has_more: bool
    error: str | None
