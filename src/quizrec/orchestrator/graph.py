"""LangGraph StateGraph for the collection workflow.

Nodes
-----
search       -- run one generated query through the paged search source
recommended  -- run the recommended-items source once
rank         -- rank the accumulated pool and publish it to the store

Edges (with conditional routing)
------
search -> search (more queries left) | recommended | end (session reset)
recommended -> rank | end (session reset)
rank -> end

Queries run strictly one after another so at most one external search is
in flight.  Search and recommended failures are logged and skipped; a
ranking failure falls back to pass-through order, surfaces an error and
still moves the user to the results screen.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

import structlog
from langgraph.graph import END, StateGraph

from quizrec.catalog.accumulator import merge
from quizrec.catalog.normalizer import normalize_many
from quizrec.catalog.paging import SourceFactory, run_paged
from quizrec.config import Settings
from quizrec.models import Product, ProductSource
from quizrec.orchestrator.state import CollectionGraphState, Phase
from quizrec.ranking.rankers import PassThroughRanker, hydrate
from quizrec.ranking.service import RankingService
from quizrec.store import actions as a
from quizrec.store.state import LoadingKey, Screen
from quizrec.store.store import Dispatch, Store
from quizrec.streaming import (
    EVENT_QUERY_DONE,
    EVENT_RANKED,
    EVENT_RANKING,
    EVENT_RECOMMENDING,
    EVENT_SEARCHING,
    ProgressEventStream,
)

logger = structlog.get_logger(__name__)

RANKING_FAILED_MESSAGE = "Failed to build recommendations. Please try again."


class CollectionBackend(Protocol):
    """Backend calls the collection run makes besides ranking."""

    async def store_products(
        self,
        user_id: str,
        response_date: str,
        source: ProductSource,
        products: list[Product],
    ) -> int: ...

    async def process_vision(
        self,
        user_id: str,
        response_date: str,
        products: list[Product],
    ) -> int: ...


class _Collaborators:
    """Everything the nodes share for one run."""

    def __init__(
        self,
        settings: Settings,
        sources: SourceFactory,
        ranking: RankingService,
        dispatch: Dispatch,
        stream: ProgressEventStream,
        backend: CollectionBackend | None,
        is_current: Callable[[], bool],
    ) -> None:
        self.settings = settings
        self.sources = sources
        self.ranking = ranking
        self.dispatch = dispatch
        self.stream = stream
        self.backend = backend
        self.is_current = is_current

    def loading(self, key: LoadingKey, value: bool) -> None:
        self.dispatch(a.SetLoading(key=key, value=value))

    async def emit(self, session_id: str, event_type: str, **kwargs: Any) -> None:
        if self.is_current():
            await self.stream.emit(session_id, event_type, **kwargs)

    async def fetch(self, source_role: str, make_source: Callable[[], Any], page_cap: int) -> list[Product]:
        """Drain one paged source; any failure yields whatever was collected."""
        try:
            outcome = await run_paged(
                make_source(),
                page_cap,
                stall_timeout=self.settings.fetch_stall_timeout,
                poll_interval=self.settings.fetch_poll_interval,
            )
        except Exception:
            logger.exception("paged_fetch_failed", role=source_role)
            return []
        return normalize_many(outcome.items)

    async def persist(self, state: CollectionGraphState, source: ProductSource, products: list[Product]) -> None:
        if not products or self.backend is None:
            return
        self.loading(LoadingKey.STORE, True)
        try:
            stored = await self.backend.store_products(
                state.get("user_id", ""),
                state.get("response_date", ""),
                source,
                products,
            )
            logger.info("products_stored", source=source.value, stored=stored)
        except Exception as exc:
            logger.warning("store_products_failed", source=source.value, error=str(exc))
        finally:
            self.loading(LoadingKey.STORE, False)


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_search_node(ctx: _Collaborators):
    """Create the *search* node: one query per invocation."""

    async def search_node(state: CollectionGraphState) -> CollectionGraphState:
        session_id = state.get("session_id", "")
        queries = state.get("queries", [])
        q_index = state.get("q_index", 0)

        if q_index >= len(queries):
            return {**state, "phase": Phase.RECOMMENDED}

        query = queries[q_index]
        # The flag spans every query step; it is cleared after the last one
        # or as soon as a step fails.
        finished = True
        ctx.loading(LoadingKey.SEARCH, True)
        try:
            await ctx.emit(
                session_id,
                EVENT_SEARCHING,
                data={"query": query, "index": q_index + 1, "total": len(queries)},
                message=f'Searching for "{query}"... ({q_index + 1}/{len(queries)})',
            )

            batch = await ctx.fetch(
                "search",
                lambda: ctx.sources.search(query, ctx.settings.search_page_size),
                ctx.settings.search_page_cap,
            )
            accumulated = merge(state.get("accumulated", []), batch)
            next_index = q_index + 1

            logger.info(
                "search_query_done",
                query=query,
                items=len(batch),
                accumulated=len(accumulated),
            )
            await ctx.emit(
                session_id,
                EVENT_QUERY_DONE,
                data={"query": query, "items": len(batch), "accumulated": len(accumulated)},
            )
            finished = next_index >= len(queries)
        finally:
            if finished:
                ctx.loading(LoadingKey.SEARCH, False)

        update: CollectionGraphState = {**state, "accumulated": accumulated, "q_index": next_index}
        if next_index >= len(queries):
            await ctx.persist(state, ProductSource.SEARCH, accumulated)
            update["phase"] = Phase.RECOMMENDED
        return update

    return search_node


def _make_recommended_node(ctx: _Collaborators):
    """Create the *recommended* node."""

    async def recommended_node(state: CollectionGraphState) -> CollectionGraphState:
        session_id = state.get("session_id", "")
        ctx.loading(LoadingKey.RECOMMENDED, True)
        try:
            await ctx.emit(
                session_id,
                EVENT_RECOMMENDING,
                message="Getting personalized recommendations...",
            )

            batch = await ctx.fetch(
                "recommended",
                lambda: ctx.sources.recommended(ctx.settings.recommended_page_size),
                ctx.settings.recommended_page_cap,
            )
            accumulated = merge(state.get("accumulated", []), batch)
            await ctx.persist(state, ProductSource.RECOMMENDED, batch)
        finally:
            ctx.loading(LoadingKey.RECOMMENDED, False)

        logger.info("recommended_done", items=len(batch), accumulated=len(accumulated))
        return {**state, "accumulated": accumulated, "phase": Phase.RANKING}

    return recommended_node


def _make_rank_node(ctx: _Collaborators):
    """Create the *rank* node; it always leaves the user on a results screen."""

    async def rank_node(state: CollectionGraphState) -> CollectionGraphState:
        session_id = state.get("session_id", "")
        pool = state.get("accumulated", [])
        answers = state.get("answers", {})

        ctx.loading(LoadingKey.BUILD_RANKING, True)
        try:
            ctx.dispatch(a.SetError(error=None))
            await ctx.emit(
                session_id,
                EVENT_RANKING,
                data={"pool": len(pool)},
                message="Building your personalized collection...",
            )

            if ctx.settings.vision_enabled and ctx.backend is not None and pool:
                try:
                    processed = await ctx.backend.process_vision(
                        state.get("user_id", ""), state.get("response_date", ""), pool
                    )
                    logger.info("vision_processed", processed=processed)
                except Exception as exc:
                    logger.warning("vision_processing_failed", error=str(exc))

            error: str | None = None
            ctx.loading(LoadingKey.FETCH_RANKING, True)
            try:
                outcome = await ctx.ranking.build(pool, answers)
                ranked, has_more = outcome.ranked, outcome.has_more
            except Exception:
                logger.exception("ranking_build_failed", pool=len(pool))
                entries = await PassThroughRanker().rank(pool, answers)
                ranked, has_more = hydrate(entries, pool), False
                error = RANKING_FAILED_MESSAGE
            finally:
                ctx.loading(LoadingKey.FETCH_RANKING, False)

            ctx.dispatch(a.SetRanked(ranked=ranked))
            ctx.dispatch(a.SetOffset(offset=len(ranked)))
            ctx.dispatch(a.SetHasMore(has_more=has_more))
            if error:
                ctx.dispatch(a.SetError(error=error))
            ctx.dispatch(a.SetScreen(screen=Screen.CARD))
        finally:
            ctx.loading(LoadingKey.BUILD_RANKING, False)

        await ctx.emit(
            session_id,
            EVENT_RANKED,
            data={"count": len(ranked), "has_more": has_more, "error": error},
            message=error or f"Ranked {len(ranked)} product(s).",
        )
        return {
            **state,
            "ranked": ranked,
            "has_more": has_more,
            "error": error,
            "phase": Phase.DONE,
        }

    return rank_node


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_collection_graph(
    settings: Settings,
    sources: SourceFactory,
    ranking: RankingService,
    dispatch: Dispatch,
    stream: ProgressEventStream,
    backend: CollectionBackend | None = None,
    is_current: Callable[[], bool] = lambda: True,
) -> StateGraph:
    """Construct the collection workflow.

    Parameters
    ----------
    dispatch:
        Store dispatcher, normally bound to the generation the run started in.
    is_current:
        Checked between phases; once it returns ``False`` the run stops.

    Returns
    -------
    StateGraph
        An uncompiled graph.  Call ``.compile()`` before invoking.
    """
    ctx = _Collaborators(settings, sources, ranking, dispatch, stream, backend, is_current)

    def after_search(state: CollectionGraphState) -> str:
        if not is_current():
            return "stop"
        if state.get("phase") == Phase.RECOMMENDED:
            return "recommended"
        return "search"

    def after_recommended(state: CollectionGraphState) -> str:
        return "rank" if is_current() else "stop"

    graph = StateGraph(CollectionGraphState)

    graph.add_node("search", _make_search_node(ctx))
    graph.add_node("recommended", _make_recommended_node(ctx))
    graph.add_node("rank", _make_rank_node(ctx))

    graph.set_entry_point("search")

    graph.add_conditional_edges(
        "search",
        after_search,
        {"search": "search", "recommended": "recommended", "stop": END},
    )
    graph.add_conditional_edges(
        "recommended",
        after_recommended,
        {"rank": "rank", "stop": END},
    )
    graph.add_edge("rank", END)

    return graph


def recursion_limit_for(queries: list[str]) -> int:
    """One graph step per query plus recommended and rank, with headroom."""
    return len(queries) + 10


class CollectionOrchestrator:
    """Runs the collection graph against a store.

    Each ``run`` binds its dispatcher to the store generation current when
    the run starts, so a reset during the run leaves the new session alone.
    """

    def __init__(
        self,
        settings: Settings,
        sources: SourceFactory,
        ranking: RankingService,
        store: Store,
        stream: ProgressEventStream,
        backend: CollectionBackend | None = None,
        session_id: str = "",
    ) -> None:
        self._settings = settings
        self._sources = sources
        self._ranking = ranking
        self._store = store
        self._stream = stream
        self._backend = backend
        self._session_id = session_id

    async def run(self) -> CollectionGraphState:
        state = self._store.state
        generation = state.generation
        queries = list(state.generated_queries)

        graph = build_collection_graph(
            self._settings,
            self._sources,
            self._ranking,
            self._store.bind(generation),
            self._stream,
            backend=self._backend,
            is_current=lambda: self._store.generation == generation,
        ).compile()

        initial: CollectionGraphState = {
            "session_id": self._session_id,
            "user_id": state.user_id,
            "response_date": state.session_date,
            "queries": queries,
            "answers": dict(state.answers),
            "phase": Phase.SEARCH,
            "q_index": 0,
            "accumulated": [],
            "ranked": [],
            "has_more": False,
            "error": None,
        }

        logger.info(
            "collection_started",
            session_id=self._session_id,
            queries=len(queries),
            generation=generation,
        )
        final = await graph.ainvoke(
            initial, config={"recursion_limit": recursion_limit_for(queries)}
        )
        logger.info(
            "collection_finished",
            session_id=self._session_id,
            phase=final.get("phase"),
            pool=len(final.get("accumulated", [])),
            ranked=len(final.get("ranked", [])),
        )
        return final
