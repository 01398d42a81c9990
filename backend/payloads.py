"""Request validation for the HTTP routes.

Each ``parse_*`` function takes the decoded JSON body (or query args) and
returns a typed payload, or raises ``InvalidPayloadError`` listing every bad
field.
"""
from __future__ import annotations

import typing as t
from dataclasses import dataclass

import bson
from bson import ObjectId

from backend.models import SessionConfig
from backend.session_store import MAX_LIST_LIMIT, SESSION_STATUSES
from buddy_ai.errors import InvalidPayloadError
from buddy_ai.gemini import GEMINI_MODEL_VALUES
from buddy_ai.schemas import DIFFICULTIES, QUESTION_TYPES, Choice, ProblemRequest, WorkingStep, parse_choices, parse_working

JsonDict = dict[str, t.Any]

DEFAULT_LIST_LIMIT = 20


@dataclass(frozen=True)
class CreateSessionPayload:
    config: SessionConfig
    problem: str
    answer: str
    working: list[WorkingStep]
    choices: list[Choice]


@dataclass(frozen=True)
class ListQuery:
    status: str
    difficulty: str | None
    limit: int


@dataclass(frozen=True)
class SubmissionPayload:
    student_answer: str
    problem: str | None = None
    correct_answer: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class FeedbackPayload:
    problem: str
    student_answer: str
    correct_answer: str
    model: str | None = None


@dataclass(frozen=True)
class HintPayload:
    problem: str
    working: list[WorkingStep]
    model: str | None = None


class _Fields:
    def __init__(self, data: t.Any) -> None:
        self.data: JsonDict = data if isinstance(data, dict) else {}
        self.errors: dict[str, str] = {}
        if not isinstance(data, dict):
            self.errors["body"] = "Expected a JSON object"

    def string(self, key: str, *, required: bool = True, allow_empty: bool = False) -> str | None:
        value = self.data.get(key)
        if value is None:
            if required:
                self.errors[key] = "Required"
            return None
        if not isinstance(value, str):
            self.errors[key] = "Expected a string"
            return None
        if not allow_empty and not value.strip():
            self.errors[key] = "Must not be empty"
            return None
        return value

    def choice(self, key: str, options: tuple[str, ...], *, default: str | None = None) -> str | None:
        value = self.data.get(key, default)
        if value is None:
            if default is None:
                self.errors[key] = "Required"
            return default
        if value not in options:
            self.errors[key] = f"Expected one of: {', '.join(options)}"
            return None
        return t.cast(str, value)

    def model(self, key: str = "model") -> str | None:
        value = self.data.get(key)
        if value is None:
            return None
        if value not in GEMINI_MODEL_VALUES:
            self.errors[key] = f"Expected one of: {', '.join(GEMINI_MODEL_VALUES)}"
            return None
        return t.cast(str, value)

    def working(self, key: str = "working") -> list[WorkingStep]:
        if key not in self.data:
            self.errors[key] = "Required"
            return []
        try:
            return parse_working(self.data[key])
        except ValueError as e:
            self.errors[key] = str(e)
            return []

    def choices(self, key: str = "choices") -> list[Choice]:
        try:
            return parse_choices(self.data.get(key))
        except ValueError as e:
            self.errors[key] = str(e)
            return []

    def check(self) -> None:
        if self.errors:
            raise InvalidPayloadError(self.errors)


def parse_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (bson.errors.InvalidId, TypeError):
        raise InvalidPayloadError({"id": "Invalid session id"}, message="Invalid session id") from None


def parse_problem_request(body: t.Any) -> ProblemRequest:
    f = _Fields(body)
    primary = f.string("primary")
    topic = f.string("topic")
    difficulty = f.choice("difficulty", DIFFICULTIES)
    question_type = f.choice("questionType", QUESTION_TYPES, default="subjective")
    model = f.model()
    f.check()
    return ProblemRequest(
        primary=t.cast(str, primary),
        topic=t.cast(str, topic),
        difficulty=t.cast(str, difficulty),
        question_type=t.cast(str, question_type),
        model=model,
    )


def parse_create_session(body: t.Any) -> CreateSessionPayload:
    f = _Fields(body)
    config = _Fields(f.data.get("config"))
    primary = config.string("primary")
    topic = config.string("topic")
    difficulty = config.choice("difficulty", DIFFICULTIES)
    question_type = config.choice("questionType", QUESTION_TYPES, default="subjective")
    model = config.model()
    f.errors.update({f"config.{k}": v for k, v in config.errors.items()})

    problem = f.string("problem")
    answer = f.string("answer")
    working = f.working()
    choices = f.choices()
    f.check()
    return CreateSessionPayload(
        config=SessionConfig(
            primary=primary,
            topic=topic,
            difficulty=difficulty,
            questionType=question_type,
            model=model,
        ),
        problem=t.cast(str, problem),
        answer=t.cast(str, answer),
        working=working,
        choices=choices,
    )


def parse_list_query(args: t.Mapping[str, str]) -> ListQuery:
    errors: dict[str, str] = {}

    status = args.get("status") or "all"
    if status not in SESSION_STATUSES:
        errors["status"] = f"Expected one of: {', '.join(SESSION_STATUSES)}"

    difficulty = args.get("difficulty") or None
    if difficulty is not None and difficulty not in DIFFICULTIES:
        errors["difficulty"] = f"Expected one of: {', '.join(DIFFICULTIES)}"

    limit = DEFAULT_LIST_LIMIT
    raw_limit = args.get("limit")
    if raw_limit:
        try:
            limit = int(raw_limit)
        except ValueError:
            errors["limit"] = "Expected an integer"
        else:
            if limit < 1 or limit > MAX_LIST_LIMIT:
                errors["limit"] = f"Expected 1 to {MAX_LIST_LIMIT}"

    if errors:
        raise InvalidPayloadError(errors, message="Invalid query parameters")
    return ListQuery(status=status, difficulty=difficulty, limit=limit)


def parse_submission(body: t.Any) -> SubmissionPayload:
    f = _Fields(body)
    student_answer = f.string("studentAnswer")
    problem = f.string("problem", required=False)
    correct_answer = f.string("correctAnswer", required=False)
    model = f.model()
    f.check()
    return SubmissionPayload(
        student_answer=t.cast(str, student_answer),
        problem=problem,
        correct_answer=correct_answer,
        model=model,
    )


def parse_feedback_request(body: t.Any) -> FeedbackPayload:
    f = _Fields(body)
    problem = f.string("problem")
    student_answer = f.string("studentAnswer")
    correct_answer = f.string("correctAnswer")
    model = f.model()
    f.check()
    return FeedbackPayload(
        problem=t.cast(str, problem),
        student_answer=t.cast(str, student_answer),
        correct_answer=t.cast(str, correct_answer),
        model=model,
    )


def parse_hint_request(body: t.Any) -> HintPayload:
    f = _Fields(body)
    problem = f.string("problem")
    working = f.working()
    model = f.model()
    f.check()
    return HintPayload(problem=t.cast(str, problem), working=working, model=model)


def parse_attach_hint(body: t.Any) -> str | None:
    """The hint to store, or None when the body carries no hint at all."""
    f = _Fields(body)
    hint = f.string("hint", required=False)
    f.check()
    return hint
