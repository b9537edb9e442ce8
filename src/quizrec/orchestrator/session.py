"""Session controller: the user-facing operations of one quiz session.

Wraps a :class:`Store` with the async flows around it: loading questions,
submitting answers, running the collection graph, replenishing and the
synchronous freeze/reshuffle/reset transitions.  Every async flow binds
its dispatcher to the store generation it started in.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any, Protocol

import structlog

from quizrec.catalog.commerce_client import CommerceClient, CommerceSources
from quizrec.catalog.paging import SourceFactory
from quizrec.config import Settings
from quizrec.models import AnswerValue, Question, QuizAnswer
from quizrec.orchestrator.graph import CollectionBackend, CollectionOrchestrator
from quizrec.orchestrator.state import CollectionGraphState
from quizrec.protocols.backend_client import BackendClient
from quizrec.ranking.rankers import create_ranker
from quizrec.ranking.repository import InMemoryRankingRepository
from quizrec.ranking.service import LocalRankingService, RankingService, RemoteRankingService
from quizrec.store import actions as a
from quizrec.store.state import AppState, LoadingKey, Screen
from quizrec.store.store import Store
from quizrec.streaming import EVENT_REPLENISHED, ProgressEventStream

logger = structlog.get_logger(__name__)

QUESTIONS_FAILED_MESSAGE = "Failed to load questions. Please try again."
SUBMIT_FAILED_MESSAGE = "Failed to submit responses. Please try again."
LOAD_MORE_FAILED_MESSAGE = "Failed to load more products"

RankingFactory = Callable[[str, str], RankingService]


class QuizBackend(CollectionBackend, Protocol):
    """Backend calls a session makes."""

    async def get_questions(self) -> list[Question]: ...

    async def submit_responses(
        self,
        user_id: str,
        response_date: str,
        answers: list[QuizAnswer],
    ) -> bool: ...

    async def generate_queries(self, user_id: str, response_date: str) -> list[str]: ...


class SessionController:
    """Drives one user session from quiz to ranked results."""

    def __init__(
        self,
        settings: Settings,
        backend: QuizBackend,
        sources: SourceFactory,
        ranking_factory: RankingFactory,
        store: Store | None = None,
        stream: ProgressEventStream | None = None,
        session_id: str | None = None,
    ) -> None:
        self.settings = settings
        self.session_id = session_id or uuid.uuid4().hex
        self.store = store or Store()
        self.stream = stream or ProgressEventStream()
        self._backend = backend
        self._sources = sources
        self._ranking_factory = ranking_factory
        self._ranking = self._new_ranking()

    @property
    def state(self) -> AppState:
        return self.store.state

    def _new_ranking(self) -> RankingService:
        state = self.store.state
        return self._ranking_factory(state.user_id, state.session_date)

    # ------------------------------------------------------------------
    # Quiz
    # ------------------------------------------------------------------

    async def load_questions(self) -> list[Question]:
        dispatch = self.store.bind()
        dispatch(a.SetError(error=None))
        dispatch(a.SetLoading(key=LoadingKey.QUESTIONS, value=True))
        try:
            questions = await self._backend.get_questions()
        except Exception as exc:
            logger.warning("questions_load_failed", error=str(exc))
            dispatch(a.SetError(error=QUESTIONS_FAILED_MESSAGE))
            return []
        finally:
            dispatch(a.SetLoading(key=LoadingKey.QUESTIONS, value=False))

        dispatch(a.SetQuestions(questions=questions))
        logger.info("questions_loaded", session_id=self.session_id, count=len(questions))
        return questions

    def answer(self, question_id: str, value: AnswerValue) -> None:
        self.store.dispatch(a.SetAnswer(question_id=question_id, value=value))

    async def submit_answers(self) -> bool:
        """Persist the answers, generate queries and move to the loading screen.

        On failure the session stays on the quiz with an error set.
        """
        state = self.store.state
        dispatch = self.store.bind(state.generation)
        answers = [
            QuizAnswer(question_id=question_id, value=value)
            for question_id, value in state.answers.items()
        ]

        dispatch(a.SetError(error=None))
        dispatch(a.SetLoading(key=LoadingKey.SUBMIT_ANSWERS, value=True))
        try:
            await self._backend.submit_responses(state.user_id, state.session_date, answers)
            dispatch(a.SetLoading(key=LoadingKey.GENERATE_QUERIES, value=True))
            queries = await self._backend.generate_queries(state.user_id, state.session_date)
        except Exception:
            logger.exception("submit_answers_failed", session_id=self.session_id)
            dispatch(a.SetError(error=SUBMIT_FAILED_MESSAGE))
            return False
        finally:
            dispatch(a.SetLoading(key=LoadingKey.SUBMIT_ANSWERS, value=False))
            dispatch(a.SetLoading(key=LoadingKey.GENERATE_QUERIES, value=False))

        dispatch(a.SetQueries(queries=queries))
        dispatch(a.SetScreen(screen=Screen.LOADING))
        logger.info(
            "answers_submitted",
            session_id=self.session_id,
            answers=len(answers),
            queries=len(queries),
        )
        return True

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect(self) -> CollectionGraphState:
        """Run search, recommended and ranking for the generated queries."""
        orchestrator = CollectionOrchestrator(
            self.settings,
            self._sources,
            self._ranking,
            self.store,
            self.stream,
            backend=self._backend,
            session_id=self.session_id,
        )
        return await orchestrator.run()

    async def submit_and_collect(self) -> CollectionGraphState | None:
        if not await self.submit_answers():
            return None
        return await self.collect()

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def toggle_freeze(self, product_id: str) -> None:
        self.store.dispatch(a.ToggleFreeze(product_id=product_id))

    def reshuffle(self) -> None:
        self.store.reshuffle()

    async def load_more(self) -> int:
        """Append the next batch of unseen ranked products.

        Returns the number of products appended.  A failure leaves the
        ranked list untouched and sets the error.
        """
        state = self.store.state
        if state.is_loading(LoadingKey.FETCH_RANKING, LoadingKey.REPLENISH):
            logger.debug("load_more_skipped", session_id=self.session_id)
            return 0

        dispatch = self.store.bind(state.generation)
        shown = [item.product_id for item in state.ranked]

        dispatch(a.SetError(error=None))
        dispatch(a.SetLoading(key=LoadingKey.REPLENISH, value=True))
        try:
            result = await self._ranking.replenish(shown)
        except Exception:
            logger.exception("replenish_failed", session_id=self.session_id, shown=len(shown))
            dispatch(a.SetError(error=LOAD_MORE_FAILED_MESSAGE))
            return 0
        finally:
            dispatch(a.SetLoading(key=LoadingKey.REPLENISH, value=False))

        if self.store.generation != state.generation:
            logger.info("load_more_discarded", session_id=self.session_id)
            return 0

        seen = self.store.state.seen_product_ids
        fresh = [item for item in result.products if item.product_id not in seen]
        if fresh:
            dispatch(a.AppendRanked(ranked=fresh))
        dispatch(a.SetOffset(offset=self.store.state.offset + len(fresh)))
        dispatch(a.SetHasMore(has_more=bool(fresh)))

        await self.stream.emit(
            self.session_id,
            EVENT_REPLENISHED,
            data={"added": len(fresh), "context_version": result.context_version},
            message=f"Loaded {len(fresh)} more product(s).",
        )
        logger.info(
            "load_more_done",
            session_id=self.session_id,
            added=len(fresh),
            context_version=result.context_version,
        )
        return len(fresh)

    def reset(self) -> None:
        """Start a fresh session for the same user; in-flight runs go stale."""
        self.store.reset()
        self._ranking = self._new_ranking()
        self.stream.clear(self.session_id)
        logger.info(
            "session_reset",
            session_id=self.session_id,
            generation=self.store.generation,
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def make_ranking_factory(settings: Settings, backend: BackendClient) -> RankingFactory:
    """Pick the ranking service implementation from ``settings.ranking_policy``."""
    if settings.ranking_policy == "backend":

        def remote(user_id: str, response_date: str) -> RankingService:
            return RemoteRankingService(
                backend,
                user_id,
                response_date,
                page_size=settings.ranking_page_size,
                past_days=settings.past_days,
            )

        return remote

    ranker = create_ranker(settings)
    repository = InMemoryRankingRepository()

    def local(user_id: str, response_date: str) -> RankingService:
        return LocalRankingService(ranker, repository, user_id, response_date)

    return local


def create_session_controller(
    settings: Settings,
    *,
    backend: BackendClient | None = None,
    sources: SourceFactory | None = None,
    stream: ProgressEventStream | None = None,
    **kwargs: Any,
) -> SessionController:
    """Wire a controller with the HTTP backend and commerce clients."""
    backend = backend or BackendClient.from_settings(settings)
    sources = sources or CommerceSources(CommerceClient.from_settings(settings))
    return SessionController(
        settings,
        backend,
        sources,
        make_ranking_factory(settings, backend),
        stream=stream,
        **kwargs,
    )
