from __future__ import annotations

import asyncio
import datetime as dt
import logging
import typing as t
from collections import defaultdict

from bson import ObjectId
from pymongo import DESCENDING

from backend.models import (
    ProblemSession,
    SessionConfig,
    SessionRecord,
    Submission,
    as_utc,
    latest_submission,
    utcnow,
)
from backend.mongo import SESSIONS, SUBMISSIONS
from buddy_ai.answers import normalize_numeric_answer
from buddy_ai.errors import NonNumericAnswerError, SessionNotFoundError
from buddy_ai.schemas import Choice, WorkingStep

logger = logging.getLogger(__name__)

SESSION_STATUSES = ("all", "correct", "incorrect", "pending")
MAX_LIST_LIMIT = 100


def _matches_status(status: str, latest: Submission | None) -> bool:
    if status == "all":
        return True
    if status == "pending":
        return latest is None
    if latest is None:
        return False
    if status == "correct":
        return latest.is_correct is True
    if status == "incorrect":
        return latest.is_correct is False
    raise ValueError(f"unknown status {status!r}")


class SessionStore:
    """Persistence for problem sessions and their append-only submissions.

    Wraps a synchronous ``pymongo`` database; every public operation is a
    coroutine that runs the blocking driver calls on a worker thread.
    Sessions are write-once apart from ``latest_hint``. Submissions are
    never updated or deleted, and the latest one is always derived by
    sorting on ``created_at``.
    """

    def __init__(self, db: t.Any, *, batch_size: int = 50) -> None:
        self.sessions = db[SESSIONS]
        self.submissions = db[SUBMISSIONS]
        self.batch_size = batch_size

    def _create_session(
        self,
        config: SessionConfig,
        problem: str,
        answer: str,
        working: list[WorkingStep],
        choices: list[Choice],
    ) -> ProblemSession:
        numeric_answer = normalize_numeric_answer(answer)
        if numeric_answer is None:
            raise NonNumericAnswerError(f"answer {answer!r} is not numeric")

        session = ProblemSession(
            id=ObjectId(),
            created_at=utcnow(),
            config=config,
            problem=problem,
            answer=answer,
            correct_answer=numeric_answer,
            working=list(working),
            choices=list(choices),
            hint=None,
        )
        self.sessions.insert_one(session.to_document())
        logger.info("Created session %s (topic=%s, difficulty=%s)", session.id, config.topic, config.difficulty)
        return session

    async def create_session(
        self,
        config: SessionConfig,
        problem: str,
        answer: str,
        working: list[WorkingStep],
        choices: list[Choice] | None = None,
    ) -> ProblemSession:
        return await asyncio.to_thread(self._create_session, config, problem, answer, working, choices or [])

    def _find_session(self, session_id: ObjectId) -> ProblemSession:
        doc = self.sessions.find_one({"_id": session_id})
        if not doc:
            raise SessionNotFoundError(f"no session {session_id}")
        return ProblemSession.from_document(doc)

    async def find_session(self, session_id: ObjectId) -> ProblemSession:
        return await asyncio.to_thread(self._find_session, session_id)

    def _append_submission(
        self,
        session_id: ObjectId,
        user_answer: str,
        is_correct: bool | None,
        feedback: str | None,
        numeric_answer: float | None,
        answer_source: str | None,
        created_at: dt.datetime | None,
    ) -> Submission:
        if not self.sessions.find_one({"_id": session_id}, {"_id": 1}):
            raise SessionNotFoundError(f"no session {session_id}")

        submission = Submission(
            id=ObjectId(),
            session_id=session_id,
            created_at=as_utc(created_at) if created_at else utcnow(),
            user_answer=user_answer,
            is_correct=is_correct,
            feedback=feedback,
            numeric_answer=numeric_answer,
            answer_source=answer_source,
        )
        self.submissions.insert_one(submission.to_document())
        logger.info(
            "Recorded submission %s for session %s (correct=%s, source=%s)",
            submission.id,
            session_id,
            is_correct,
            answer_source,
        )
        return submission

    async def append_submission(
        self,
        session_id: ObjectId,
        user_answer: str,
        is_correct: bool | None,
        feedback: str | None,
        *,
        numeric_answer: float | None = None,
        answer_source: str | None = None,
        created_at: dt.datetime | None = None,
    ) -> Submission:
        return await asyncio.to_thread(
            self._append_submission,
            session_id,
            user_answer,
            is_correct,
            feedback,
            numeric_answer,
            answer_source,
            created_at,
        )

    def _submissions_by_session(self, session_ids: list[ObjectId]) -> dict[ObjectId, list[Submission]]:
        grouped: dict[ObjectId, list[Submission]] = defaultdict(list)
        for doc in self.submissions.find({"session_id": {"$in": session_ids}}):
            sub = Submission.from_document(doc)
            grouped[sub.session_id].append(sub)
        return grouped

    def _collect(self, batch: list[dict[str, t.Any]], status: str, out: list[SessionRecord]) -> None:
        grouped = self._submissions_by_session([doc["_id"] for doc in batch])
        for doc in batch:
            latest = latest_submission(grouped.get(doc["_id"], []))
            if _matches_status(status, latest):
                out.append(SessionRecord(session=ProblemSession.from_document(doc), latest=latest))

    def _list_sessions(self, status: str, difficulty: str | None, limit: int) -> list[SessionRecord]:
        if status not in SESSION_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        limit = max(1, min(limit, MAX_LIST_LIMIT))

        query: dict[str, t.Any] = {}
        if difficulty:
            query["config.difficulty"] = difficulty
        cursor = self.sessions.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        if status == "all":
            cursor = cursor.limit(limit)

        results: list[SessionRecord] = []
        batch: list[dict[str, t.Any]] = []
        for doc in cursor:
            batch.append(doc)
            if len(batch) >= self.batch_size:
                self._collect(batch, status, results)
                batch = []
                if len(results) >= limit:
                    break
        if batch and len(results) < limit:
            self._collect(batch, status, results)
        return results[:limit]

    async def list_sessions(
        self,
        *,
        status: str = "all",
        difficulty: str | None = None,
        limit: int = 20,
    ) -> list[SessionRecord]:
        """Sessions newest-first, filtered by their latest submission.

        ``pending`` means no submissions; ``correct``/``incorrect`` look only
        at the latest submission.
        """
        return await asyncio.to_thread(self._list_sessions, status, difficulty, limit)

    def _get_session(self, session_id: ObjectId) -> SessionRecord:
        session = self._find_session(session_id)
        submissions = sorted(
            self._submissions_by_session([session_id]).get(session_id, []),
            key=lambda s: (s.created_at, s.id),
        )
        return SessionRecord(
            session=session,
            latest=submissions[-1] if submissions else None,
            submissions=submissions,
        )

    async def get_session(self, session_id: ObjectId) -> SessionRecord:
        return await asyncio.to_thread(self._get_session, session_id)

    def _attach_hint(self, session_id: ObjectId, hint: str) -> bool:
        result = self.sessions.update_one({"_id": session_id}, {"$set": {"latest_hint": hint}})
        if result.matched_count == 0:
            logger.info("Hint not stored: session %s does not exist", session_id)
            return False
        return True

    async def attach_hint(self, session_id: ObjectId, hint: str) -> bool:
        return await asyncio.to_thread(self._attach_hint, session_id, hint)

    def _score(self) -> dict[str, int]:
        return {
            "correct": self.submissions.count_documents({"is_correct": True}),
            "total": self.submissions.count_documents({}),
        }

    async def score(self) -> dict[str, int]:
        return await asyncio.to_thread(self._score)
