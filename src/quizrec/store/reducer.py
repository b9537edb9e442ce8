"""Pure reducer over :class:`AppState`."""

from __future__ import annotations

import random
from collections.abc import Callable
from typing import Any

from quizrec.models import RankedProduct
from quizrec.store import actions as a
from quizrec.store.state import SCREEN_STAGE, AppState


def reshuffle_unfrozen(
    ranked: list[RankedProduct],
    frozen_ids: frozenset[str],
    rng: random.Random,
) -> list[RankedProduct]:
    """Shuffle unfrozen items; frozen items keep their exact index."""
    unfrozen = [item for item in ranked if item.product_id not in frozen_ids]

    # Fisher-Yates
    for i in range(len(unfrozen) - 1, 0, -1):
        j = rng.randint(0, i)
        unfrozen[i], unfrozen[j] = unfrozen[j], unfrozen[i]

    shuffled = iter(unfrozen)
    return [
        item if item.product_id in frozen_ids else next(shuffled)
        for item in ranked
    ]


def _update(state: AppState, **changes: Any) -> AppState:
    return state.model_copy(update=changes)


def _set_screen(state: AppState, action: a.SetScreen) -> AppState:
    if SCREEN_STAGE[action.screen] < SCREEN_STAGE[state.current_screen]:
        return state
    return _update(state, current_screen=action.screen)


def _toggle_freeze(state: AppState, action: a.ToggleFreeze) -> AppState:
    return _update(state, frozen_ids=state.frozen_ids ^ {action.product_id})


def _reshuffle(state: AppState, action: a.ReshuffleUnfrozen) -> AppState:
    ranked = reshuffle_unfrozen(state.ranked, state.frozen_ids, random.Random(action.seed))
    return _update(state, ranked=ranked)


def _reset(state: AppState, action: a.Reset) -> AppState:
    return AppState(
        user_id=state.user_id,
        session_date=action.session_date,
        generation=state.generation + 1,
    )


_HANDLERS: dict[type, Callable[[AppState, Any], AppState]] = {
    a.SetQuestions: lambda s, act: _update(s, questions=list(act.questions)),
    a.SetAnswer: lambda s, act: _update(s, answers={**s.answers, act.question_id: act.value}),
    a.SetQueries: lambda s, act: _update(s, generated_queries=list(act.queries)),
    a.SetRanked: lambda s, act: _update(s, ranked=list(act.ranked)),
    a.AppendRanked: lambda s, act: _update(s, ranked=[*s.ranked, *act.ranked]),
    a.ToggleFreeze: _toggle_freeze,
    a.SetLoading: lambda s, act: _update(s, loading={**s.loading, act.key: act.value}),
    a.SetError: lambda s, act: _update(s, error=act.error),
    a.SetScreen: _set_screen,
    a.SetOffset: lambda s, act: _update(s, offset=act.offset),
    a.SetHasMore: lambda s, act: _update(s, has_more=act.has_more),
    a.ReshuffleUnfrozen: _reshuffle,
    a.Reset: _reset,
}


def reduce(state: AppState, action: a.Action) -> AppState:
    """Apply *action* to *state*.  Unknown actions leave state untouched."""
    handler = _HANDLERS.get(type(action))
    if handler is None:
        return state
    return handler(state, action)
