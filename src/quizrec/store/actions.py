"""The closed set of store actions."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from quizrec.models import AnswerValue, Question, RankedProduct
from quizrec.store.state import LoadingKey, Screen


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True)


class SetQuestions(_Action):
    type: Literal["set_questions"] = "set_questions"
    questions: list[Question]


class SetAnswer(_Action):
    type: Literal["set_answer"] = "set_answer"
    question_id: str
    value: AnswerValue


class SetQueries(_Action):
    type: Literal["set_queries"] = "set_queries"
    queries: list[str]


class SetRanked(_Action):
    type: Literal["set_ranked"] = "set_ranked"
    ranked: list[RankedProduct]


class AppendRanked(_Action):
    type: Literal["append_ranked"] = "append_ranked"
    ranked: list[RankedProduct]


class ToggleFreeze(_Action):
    type: Literal["toggle_freeze"] = "toggle_freeze"
    product_id: str


class SetLoading(_Action):
    type: Literal["set_loading"] = "set_loading"
    key: LoadingKey
    value: bool


class SetError(_Action):
    type: Literal["set_error"] = "set_error"
    error: str | None = None


class SetScreen(_Action):
    type: Literal["set_screen"] = "set_screen"
    screen: Screen


class SetOffset(_Action):
    type: Literal["set_offset"] = "set_offset"
    offset: int = Field(ge=0)


class SetHasMore(_Action):
    type: Literal["set_has_more"] = "set_has_more"
    has_more: bool


class ReshuffleUnfrozen(_Action):
    """Shuffle every non-frozen item in place; *seed* makes it replayable."""

    type: Literal["reshuffle_unfrozen"] = "reshuffle_unfrozen"
    seed: int


class Reset(_Action):
    type: Literal["reset"] = "reset"
    session_date: str


Action = Annotated[
    Union[
        SetQuestions,
        SetAnswer,
        SetQueries,
        SetRanked,
        AppendRanked,
        ToggleFreeze,
        SetLoading,
        SetError,
        SetScreen,
        SetOffset,
        SetHasMore,
        ReshuffleUnfrozen,
        Reset,
    ],
    Field(discriminator="type"),
]
