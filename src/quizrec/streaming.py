"""Progress events for collection runs, consumed over SSE.

The orchestrator publishes one event per step (query started, query done,
recommended, ranking, ranked).  The API follows a session with
``subscribe``; late subscribers first get the events they missed.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import structlog

from quizrec.models import ProgressEvent

logger = structlog.get_logger(__name__)

EVENT_SEARCHING = "searching"
EVENT_QUERY_DONE = "query_done"
EVENT_RECOMMENDING = "recommending"
EVENT_RANKING = "ranking"
EVENT_RANKED = "ranked"
EVENT_REPLENISHED = "replenished"
EVENT_ERROR = "error"

# A collection run ends with exactly one of these.
TERMINAL_EVENTS = frozenset({EVENT_RANKED, EVENT_ERROR})

_CLOSED = None


class ProgressEventStream:
    """Per-session event log with live fan-out to subscriber queues."""

    def __init__(self, max_queue_size: int = 256) -> None:
        self._max_queue_size = max_queue_size
        self._log: dict[str, list[ProgressEvent]] = {}
        self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent | None]]] = {}

    async def emit(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        message: str = "",
    ) -> ProgressEvent:
        event = ProgressEvent(
            event_type=event_type,
            session_id=session_id,
            data=data or {},
            message=message,
            timestamp=datetime.now(tz=timezone.utc),
        )
        self._log.setdefault(session_id, []).append(event)

        subscribers = self._subscribers.get(session_id, set())
        for queue in subscribers:
            self._offer(queue, event)

        logger.debug(
            "progress_event",
            session_id=session_id,
            event_type=event_type,
            subscribers=len(subscribers),
        )
        return event

    @staticmethod
    def _offer(queue: asyncio.Queue[ProgressEvent | None], event: ProgressEvent | None) -> None:
        # A slow subscriber loses its oldest pending event, never the newest.
        if queue.full():
            queue.get_nowait()
            logger.warning("progress_subscriber_lagging", queue_size=queue.maxsize)
        queue.put_nowait(event)

    async def subscribe(self, session_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield past then live events until the run ends or the session closes."""
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(session_id, set()).add(queue)
        try:
            for event in self.get_history(session_id):
                yield event
                if event.event_type in TERMINAL_EVENTS:
                    return
            while True:
                event = await queue.get()
                if event is _CLOSED:
                    return
                yield event
                if event.event_type in TERMINAL_EVENTS:
                    return
        finally:
            self._subscribers.get(session_id, set()).discard(queue)

    def get_history(self, session_id: str) -> list[ProgressEvent]:
        return list(self._log.get(session_id, []))

    def close(self, session_id: str) -> None:
        """End every live subscription for *session_id*."""
        for queue in self._subscribers.pop(session_id, set()):
            self._offer(queue, _CLOSED)

    def clear(self, session_id: str) -> None:
        """Close subscriptions and forget the session's events."""
        self.close(session_id)
        self._log.pop(session_id, None)
