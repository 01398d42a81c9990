from __future__ import annotations

import datetime as dt
import typing as t
from dataclasses import dataclass, field

from bson import ObjectId

from buddy_ai.schemas import Choice, WorkingStep

JsonDict = dict[str, t.Any]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _iso(value: dt.datetime) -> str:
    return as_utc(value).isoformat()


@dataclass(frozen=True)
class SessionConfig:
    primary: str | None = None
    topic: str | None = None
    difficulty: str | None = None
    questionType: str | None = None
    model: str | None = None

    def to_dict(self) -> JsonDict:
        return {
            "primary": self.primary,
            "topic": self.topic,
            "difficulty": self.difficulty,
            "questionType": self.questionType,
            "model": self.model,
        }

    @staticmethod
    def from_dict(data: JsonDict | None) -> "SessionConfig":
        data = data or {}
        return SessionConfig(
            primary=data.get("primary"),
            topic=data.get("topic"),
            difficulty=data.get("difficulty"),
            questionType=data.get("questionType"),
            model=data.get("model"),
        )


@dataclass(frozen=True)
class Submission:
    id: ObjectId
    session_id: ObjectId
    created_at: dt.datetime
    user_answer: str
    is_correct: bool | None
    feedback: str | None
    numeric_answer: float | None = None
    answer_source: str | None = None

    def to_document(self) -> JsonDict:
        return {
            "_id": self.id,
            "session_id": self.session_id,
            "created_at": self.created_at,
            "user_answer": self.user_answer,
            "numeric_answer": self.numeric_answer,
            "answer_source": self.answer_source,
            "is_correct": self.is_correct,
            "feedback": self.feedback,
        }

    @staticmethod
    def from_document(doc: JsonDict) -> "Submission":
        user_answer = doc.get("user_answer")
        return Submission(
            id=doc["_id"],
            session_id=doc["session_id"],
            created_at=as_utc(doc["created_at"]),
            user_answer="" if user_answer is None else str(user_answer),
            is_correct=doc.get("is_correct"),
            feedback=doc.get("feedback"),
            numeric_answer=doc.get("numeric_answer"),
            answer_source=doc.get("answer_source"),
        )

    def to_json(self) -> JsonDict:
        return {
            "id": str(self.id),
            "createdAt": _iso(self.created_at),
            "userAnswer": self.user_answer,
            "feedback": self.feedback,
            "isCorrect": self.is_correct,
        }


def latest_submission(submissions: t.Iterable[Submission]) -> Submission | None:
    """The submission with the greatest ``created_at``; ties go to the larger id."""
    ordered = sorted(submissions, key=lambda s: (s.created_at, s.id))
    return ordered[-1] if ordered else None


@dataclass(frozen=True)
class ProblemSession:
    id: ObjectId
    created_at: dt.datetime
    config: SessionConfig
    problem: str
    answer: str
    correct_answer: float
    working: list[WorkingStep]
    choices: list[Choice] = field(default_factory=list)
    hint: str | None = None

    def to_document(self) -> JsonDict:
        return {
            "_id": self.id,
            "created_at": self.created_at,
            "config": self.config.to_dict(),
            "problem_text": self.problem,
            "answer_text": self.answer,
            "correct_answer": self.correct_answer,
            "working_steps": [w.to_dict() for w in self.working],
            "choices": [c.to_dict() for c in self.choices],
            "latest_hint": self.hint,
        }

    @staticmethod
    def from_document(doc: JsonDict) -> "ProblemSession":
        # Validated on insert; stored as written.
        working = [WorkingStep.from_dict(raw) for raw in doc.get("working_steps") or []]
        choices = [Choice.from_dict(raw) for raw in doc.get("choices") or []]
        correct_answer = doc.get("correct_answer")
        answer_text = doc.get("answer_text")
        return ProblemSession(
            id=doc["_id"],
            created_at=as_utc(doc["created_at"]),
            config=SessionConfig.from_dict(doc.get("config")),
            problem=str(doc.get("problem_text") or ""),
            answer=str(answer_text if answer_text is not None else correct_answer),
            correct_answer=float(correct_answer),
            working=working,
            choices=choices,
            hint=doc.get("latest_hint"),
        )

    def to_json(
        self,
        *,
        latest: Submission | None = None,
        submissions: list[Submission] | None = None,
    ) -> JsonDict:
        out: JsonDict = {
            "id": str(self.id),
            "createdAt": _iso(self.created_at),
            "config": self.config.to_dict(),
            "problem": self.problem,
            "answer": self.answer,
            "working": [w.to_dict() for w in self.working],
            "choices": [c.to_dict() for c in self.choices],
            "hint": self.hint,
            "latestSubmission": latest.to_json() if latest else None,
        }
        if submissions is not None:
            out["submissions"] = [s.to_json() for s in submissions]
        return out


@dataclass(frozen=True)
class SessionRecord:
    """A session as read back, with its derived latest submission."""

    session: ProblemSession
    latest: Submission | None
    submissions: list[Submission] | None = None

    def to_json(self) -> JsonDict:
        return self.session.to_json(latest=self.latest, submissions=self.submissions)
