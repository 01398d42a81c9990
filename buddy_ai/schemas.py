from __future__ import annotations

import dataclasses
import math
import re
import typing as t

from buddy_ai.answers import answers_match, has_embedded_units, normalize_numeric_answer, numbers_match

JsonDict = dict[str, t.Any]

DIFFICULTIES = ("easy", "medium", "hard")
QUESTION_TYPES = ("subjective", "multipleChoice")
MULTIPLE_CHOICE_COUNT = 4

# "the answer is 16", "answer should be 3/4", "result: 25%".
_STATED_ANSWER_RE = re.compile(
    r"\b(?:answer|result|solution)\b"
    r"(?:\s+(?:is|was|should\s+be|would\s+be|will\s+be|equals|comes\s+to))?"
    r"\s*(?:[:=]\s*)?(?:(?:actually|exactly|just)\s+)?"
    r"(?<![\w.])([+-]?(?:\d[\d,]*(?:\.\d+)?|\.\d+)(?:\s*/\s*\d+)?%?)(?![\w/])",
    re.IGNORECASE,
)


@dataclasses.dataclass(frozen=True)
class WorkingStep:
    step: int
    explanation: str
    formula: str

    def to_dict(self) -> JsonDict:
        return dataclasses.asdict(self)

    @staticmethod
    def from_dict(data: t.Any) -> "WorkingStep":
        if not isinstance(data, dict):
            raise ValueError("working step must be an object")
        step = data.get("step")
        if isinstance(step, bool) or not isinstance(step, (int, float)) or not float(step).is_integer():
            raise ValueError(f"working step number must be an integer, got {step!r}")
        if step < 1:
            raise ValueError(f"working step number must be >= 1, got {step!r}")
        return WorkingStep(
            step=int(step),
            explanation=_require_str(data, "explanation"),
            formula=_require_str(data, "formula", allow_empty=True),
        )


@dataclasses.dataclass(frozen=True)
class Choice:
    id: str
    label: str
    value: str

    def to_dict(self) -> JsonDict:
        return dataclasses.asdict(self)

    @staticmethod
    def from_dict(data: t.Any) -> "Choice":
        if not isinstance(data, dict):
            raise ValueError("choice must be an object")
        value = data.get("value")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
            data = {**data, "value": value}
        return Choice(
            id=_require_str(data, "id"),
            label=_require_str(data, "label"),
            value=_require_str(data, "value"),
        )


@dataclasses.dataclass(frozen=True)
class ProblemRequest:
    primary: str
    topic: str
    difficulty: str
    question_type: str = "subjective"
    model: str | None = None

    def to_prompt_payload(self) -> JsonDict:
        return {
            "primary": self.primary,
            "topic": self.topic,
            "difficulty": self.difficulty,
            "questionType": self.question_type,
        }


@dataclasses.dataclass(frozen=True)
class GeneratedProblem:
    problem: str
    answer: str
    working: list[WorkingStep]
    choices: list[Choice]

    def to_json(self) -> JsonDict:
        return {
            "problem": self.problem,
            "answer": self.answer,
            "working": [w.to_dict() for w in self.working],
            "choices": [c.to_dict() for c in self.choices],
        }


@dataclasses.dataclass(frozen=True)
class FeedbackResult:
    feedback: str
    is_correct: bool
    used_fallback: bool = False


@dataclasses.dataclass(frozen=True)
class Evaluation:
    """Outcome of checking one student answer, before it is persisted."""

    is_correct: bool
    numeric_answer: float
    answer_source: t.Literal["deterministic", "fallback"]
    feedback: str
    used_fallback_feedback: bool


def _require_str(data: JsonDict, key: str, *, allow_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    value = value.strip()
    if not value and not allow_empty:
        raise ValueError(f"'{key}' must not be empty")
    return value


def parse_working(raw: t.Any) -> list[WorkingStep]:
    if not isinstance(raw, list):
        raise ValueError("'working' must be a list")
    steps = [WorkingStep.from_dict(item) for item in raw]
    for prev, cur in zip(steps, steps[1:]):
        if cur.step <= prev.step:
            raise ValueError(f"working steps out of order: {prev.step} then {cur.step}")
    return steps


def parse_choices(raw: t.Any) -> list[Choice]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("'choices' must be a list")
    choices = [Choice.from_dict(item) for item in raw]
    ids = [c.id for c in choices]
    if len(set(ids)) != len(ids):
        raise ValueError(f"duplicate choice ids: {ids}")
    return choices


def parse_generated_problem(out: JsonDict, payload: JsonDict) -> GeneratedProblem:
    problem = _require_str(out, "problem")

    raw_answer = out.get("answer")
    if isinstance(raw_answer, (int, float)) and not isinstance(raw_answer, bool):
        raw_answer = str(raw_answer)
    answer = _require_str({"answer": raw_answer}, "answer")
    if has_embedded_units(answer) or normalize_numeric_answer(answer) is None:
        raise ValueError(f"answer must be a bare number, got {answer!r}")

    working = parse_working(out.get("working"))
    if not working:
        raise ValueError("'working' must contain at least one step")

    choices = parse_choices(out.get("choices"))
    question_type = payload.get("questionType", "subjective")
    if question_type == "multipleChoice":
        if len(choices) != MULTIPLE_CHOICE_COUNT:
            raise ValueError(f"expected {MULTIPLE_CHOICE_COUNT} choices, got {len(choices)}")
        matching = [c for c in choices if answers_match(answer, c.value)]
        if len(matching) != 1:
            raise ValueError(f"exactly one choice must equal the answer, found {len(matching)}")
    elif choices:
        raise ValueError("subjective questions must not have choices")

    return GeneratedProblem(problem=problem, answer=answer, working=working, choices=choices)


def states_answer(text: str, value: float) -> bool:
    """True when ``text`` presents ``value`` as the answer ("the answer is 16").

    Numbers elsewhere in the text ("look again at step 2") do not count.
    """
    for token in _STATED_ANSWER_RE.findall(text):
        candidate = normalize_numeric_answer(token)
        if candidate is not None and numbers_match(candidate, value):
            return True
    return False


def parse_feedback(out: JsonDict, payload: JsonDict) -> str:
    feedback = _require_str(out, "feedback")
    if not payload.get("isCorrect"):
        correct_value = normalize_numeric_answer(str(payload.get("correctAnswer") or ""))
        if correct_value is not None and states_answer(feedback, correct_value):
            raise ValueError("feedback reveals the correct answer")
    return feedback


def _squash(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def parse_hint(out: JsonDict, payload: JsonDict) -> str:
    hint = _require_str(out, "hint")
    squashed = _squash(hint)
    for step in payload.get("working") or []:
        formula = _squash(str(step.get("formula") or ""))
        if len(formula) >= 3 and formula in squashed:
            raise ValueError(f"hint repeats the formula of step {step.get('step')}")
    return hint


def parse_numeric_extraction(out: JsonDict, payload: JsonDict) -> float | None:
    if "numericAnswer" not in out:
        raise ValueError("'numericAnswer' is missing")
    value = out["numericAnswer"]
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'numericAnswer' must be a number or null, got {value!r}")
    if not math.isfinite(value):
        raise ValueError("'numericAnswer' must be finite")
    return float(value)
