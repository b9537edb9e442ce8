"""FastAPI application for the quiz recommendation client.

Exposes REST endpoints for:
- Session lifecycle (create, status, reset, delete)
- Quiz answers and submission
- SSE streaming of collection progress
- Result interactions (freeze, reshuffle, load more)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from common import ErrorResponse, HealthResponse

from quizrec.catalog.commerce_client import CommerceClient, CommerceSources
from quizrec.config import Settings
from quizrec.models import AnswerValue
from quizrec.orchestrator.session import SessionController, create_session_controller
from quizrec.protocols.backend_client import BackendClient
from quizrec.store.store import Store
from quizrec.streaming import EVENT_ERROR, ProgressEventStream

logger = structlog.get_logger(__name__)

ControllerFactory = Callable[..., SessionController]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    """Optional identity for a new session."""

    user_id: str | None = None
    load_questions: bool = True


class AnswerRequest(BaseModel):
    """One quiz answer."""

    value: AnswerValue


# ---------------------------------------------------------------------------
# Session registry (in-memory)
# ---------------------------------------------------------------------------


class SessionRegistry:
    """In-memory session controllers and their background collection tasks."""

    def __init__(self) -> None:
        self._controllers: dict[str, SessionController] = {}
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def add(self, controller: SessionController) -> None:
        self._controllers[controller.session_id] = controller

    def get(self, session_id: str) -> SessionController | None:
        return self._controllers.get(session_id)

    def remove(self, session_id: str) -> SessionController | None:
        self.cancel_task(session_id)
        return self._controllers.pop(session_id, None)

    def start_task(self, session_id: str, coro: Any) -> asyncio.Task[Any]:
        self.cancel_task(session_id)
        task = asyncio.create_task(coro)
        self._tasks[session_id] = task
        return task

    def task(self, session_id: str) -> asyncio.Task[Any] | None:
        return self._tasks.get(session_id)

    def cancel_task(self, session_id: str) -> None:
        task = self._tasks.pop(session_id, None)
        if task and not task.done():
            task.cancel()


# ---------------------------------------------------------------------------
# Application state container
# ---------------------------------------------------------------------------


class ServiceState:
    """Shared application state accessible from route handlers."""

    def __init__(self, settings: Settings, controller_factory: ControllerFactory | None) -> None:
        self.settings = settings
        self.registry = SessionRegistry()
        self.event_stream = ProgressEventStream()
        if controller_factory is None:
            backend = BackendClient.from_settings(settings)
            sources = CommerceSources(CommerceClient.from_settings(settings))

            def default_factory(settings: Settings, **kwargs: Any) -> SessionController:
                return create_session_controller(
                    settings, backend=backend, sources=sources, **kwargs
                )

            controller_factory = default_factory

        self.controller_factory = controller_factory

    def new_controller(self, user_id: str | None) -> SessionController:
        controller = self.controller_factory(
            self.settings,
            store=Store(user_id=user_id),
            stream=self.event_stream,
        )
        self.registry.add(controller)
        return controller


def session_view(controller: SessionController) -> dict[str, Any]:
    """JSON-ready snapshot of a session."""
    return {"session_id": controller.session_id, **controller.state.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    controller_factory: ControllerFactory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()

    app = FastAPI(
        title="Quiz Recommendations",
        description=(
            "Turns quiz answers into search queries, collects products from "
            "the storefront and serves a ranked, replenishable collection."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Shared state
    state = ServiceState(settings, controller_factory)
    app.state.service_state = state
    app.state.settings = settings

    def _controller(session_id: str) -> SessionController:
        controller = state.registry.get(session_id)
        if controller is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return controller

    async def _collect(controller: SessionController) -> None:
        """Run collection in the background, reporting crashes on the stream."""
        try:
            await controller.collect()
        except asyncio.CancelledError:
            logger.info("collection_cancelled", session_id=controller.session_id)
            raise
        except Exception as exc:
            logger.exception("collection_crashed", session_id=controller.session_id)
            await state.event_stream.emit(
                controller.session_id,
                EVENT_ERROR,
                data={"error": str(exc)},
                message="Collection failed.",
            )

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
        )

    # -------------------------------------------------------------------
    # Session endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/sessions", status_code=201, tags=["sessions"])
    async def create_session(req: CreateSessionRequest | None = None) -> dict[str, Any]:
        """Create a session and, by default, load the quiz questions."""
        req = req or CreateSessionRequest()
        controller = state.new_controller(req.user_id)
        if req.load_questions:
            await controller.load_questions()
        logger.info(
            "session_created",
            session_id=controller.session_id,
            user_id=controller.state.user_id,
        )
        return session_view(controller)

    @app.get("/api/v1/sessions/{session_id}", tags=["sessions"])
    async def get_session(session_id: str) -> dict[str, Any]:
        """Get the current state of a session."""
        return session_view(_controller(session_id))

    @app.delete("/api/v1/sessions/{session_id}", tags=["sessions"])
    async def delete_session(session_id: str) -> dict[str, Any]:
        """Drop a session and cancel its collection run."""
        controller = state.registry.remove(session_id)
        if controller is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        state.event_stream.clear(session_id)
        return {"session_id": session_id, "status": "deleted"}

    @app.post("/api/v1/sessions/{session_id}/reset", tags=["sessions"])
    async def reset_session(session_id: str) -> dict[str, Any]:
        """Start over for the same user; in-flight work is discarded."""
        controller = _controller(session_id)
        state.registry.cancel_task(session_id)
        controller.reset()
        return session_view(controller)

    # -------------------------------------------------------------------
    # Quiz endpoints
    # -------------------------------------------------------------------

    @app.put("/api/v1/sessions/{session_id}/answers/{question_id}", tags=["quiz"])
    async def put_answer(session_id: str, question_id: str, req: AnswerRequest) -> dict[str, Any]:
        """Record an answer; the last write for a question wins."""
        controller = _controller(session_id)
        controller.answer(question_id, req.value)
        return {"session_id": session_id, "answers": controller.state.answers}

    @app.post("/api/v1/sessions/{session_id}/submit", status_code=202, tags=["quiz"])
    async def submit_session(session_id: str) -> JSONResponse:
        """Submit the answers and start collecting in the background.

        Use the ``/stream`` endpoint to follow progress.
        """
        controller = _controller(session_id)
        if not await controller.submit_answers():
            return JSONResponse(
                status_code=200,
                content={
                    "session_id": session_id,
                    "status": "failed",
                    "error": controller.state.error,
                },
            )

        state.registry.start_task(session_id, _collect(controller))
        return JSONResponse(
            status_code=202,
            content={
                "session_id": session_id,
                "status": "collecting",
                "queries": controller.state.generated_queries,
                "stream_url": f"/api/v1/sessions/{session_id}/stream",
            },
        )

    @app.get("/api/v1/sessions/{session_id}/stream", tags=["quiz"])
    async def stream_session(session_id: str) -> EventSourceResponse:
        """SSE stream of collection progress events."""
        _controller(session_id)

        async def event_generator():  # type: ignore[no-untyped-def]
            async for event in state.event_stream.subscribe(session_id):
                yield {
                    "event": event.event_type,
                    "data": json.dumps(event.model_dump(), default=str),
                }

        return EventSourceResponse(event_generator())

    # -------------------------------------------------------------------
    # Result endpoints
    # -------------------------------------------------------------------

    @app.post("/api/v1/sessions/{session_id}/freeze/{product_id}", tags=["results"])
    async def toggle_freeze(session_id: str, product_id: str) -> dict[str, Any]:
        """Pin or unpin a product against reshuffles."""
        controller = _controller(session_id)
        controller.toggle_freeze(product_id)
        return {
            "session_id": session_id,
            "product_id": product_id,
            "frozen": product_id in controller.state.frozen_ids,
        }

    @app.post("/api/v1/sessions/{session_id}/reshuffle", tags=["results"])
    async def reshuffle(session_id: str) -> dict[str, Any]:
        """Shuffle every product that is not frozen."""
        controller = _controller(session_id)
        controller.reshuffle()
        return session_view(controller)

    @app.post("/api/v1/sessions/{session_id}/more", tags=["results"])
    async def load_more(session_id: str) -> dict[str, Any]:
        """Append the next batch of unseen ranked products."""
        controller = _controller(session_id)
        added = await controller.load_more()
        return {
            "session_id": session_id,
            "added": added,
            "total": len(controller.state.ranked),
            "has_more": controller.state.has_more,
            "error": controller.state.error,
        }

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "unhandled_exception", error=str(exc), path=request.url.path
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc),
                status_code=500,
            ).model_dump(),
        )

    return app
