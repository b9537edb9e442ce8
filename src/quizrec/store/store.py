"""Process-wide store for one user session.

The store is the only place state changes.  Async flows get a dispatcher
bound to the store generation they started in; once the session is reset
those dispatchers silently drop whatever a late fetch tries to write.
"""

from __future__ import annotations

import random
import uuid
from collections.abc import Callable

import structlog

from quizrec.store import actions as a
from quizrec.store.reducer import reduce
from quizrec.store.state import AppState, today

logger = structlog.get_logger(__name__)

Listener = Callable[[AppState, a.Action], None]
Dispatch = Callable[[a.Action], bool]


class Store:
    """Holds the current :class:`AppState` and applies actions to it."""

    def __init__(self, user_id: str | None = None, session_date: str | None = None) -> None:
        self._state = AppState(
            user_id=user_id or f"shop_user_{uuid.uuid4().hex[:12]}",
            session_date=session_date or today(),
        )
        self._listeners: list[Listener] = []

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def generation(self) -> int:
        return self._state.generation

    def dispatch(self, action: a.Action) -> bool:
        self._state = reduce(self._state, action)
        for listener in list(self._listeners):
            try:
                listener(self._state, action)
            except Exception:
                logger.exception("store_listener_failed", action=action.type)
        return True

    def bind(self, generation: int | None = None) -> Dispatch:
        """Return a dispatcher that only writes while *generation* is current."""
        bound = self.generation if generation is None else generation

        def dispatch(action: a.Action) -> bool:
            if self.generation != bound:
                logger.debug(
                    "stale_dispatch_dropped",
                    action=action.type,
                    bound_generation=bound,
                    generation=self.generation,
                )
                return False
            return self.dispatch(action)

        return dispatch

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def reshuffle(self) -> None:
        self.dispatch(a.ReshuffleUnfrozen(seed=random.getrandbits(32)))

    def reset(self, session_date: str | None = None) -> None:
        self.dispatch(a.Reset(session_date=session_date or today()))
