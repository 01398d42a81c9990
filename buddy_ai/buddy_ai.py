from __future__ import annotations

import logging
import typing as t

from buddy_ai import prompts
from buddy_ai.answers import answers_match, normalize_numeric_answer
from buddy_ai.errors import GenerationError, NotConfiguredError, UnparseableAnswerError
from buddy_ai.gemini import PromptRegistry
from buddy_ai.schemas import Evaluation, FeedbackResult, GeneratedProblem, ProblemRequest, WorkingStep

logger = logging.getLogger(__name__)

CORRECT_FEEDBACK = "Well done, that's correct! Great work."
INCORRECT_FEEDBACK = "Not quite. Have another look at your working and try again."


class BuddyAIUtil:
    """Generative side of the tutor: problems, feedback, hints and answer reading.

    Every call goes through the injected ``PromptRegistry`` so compiled
    prompts are shared across requests for the same model.
    """

    def __init__(self, *, registry: PromptRegistry | None = None) -> None:
        self.registry = registry or PromptRegistry()

    async def generate_problem(self, request: ProblemRequest) -> GeneratedProblem:
        compiled = self.registry.compile(prompts.GENERATE_PROBLEM, request.model)
        problem = await self.registry.invoke(compiled, request.to_prompt_payload())
        logger.info(
            "Generated %s problem (topic=%s, difficulty=%s, model=%s)",
            request.question_type,
            request.topic,
            request.difficulty,
            compiled.model,
        )
        return problem

    async def provide_feedback(
        self,
        *,
        problem: str,
        correct_answer: str,
        student_answer: str,
        is_correct: bool,
        model: str | None = None,
    ) -> FeedbackResult:
        """Feedback never fails: a backend problem yields canned text.

        The verdict is decided before this call and is not influenced by it.
        """
        payload = {
            "problem": problem,
            "correctAnswer": correct_answer,
            "studentAnswer": student_answer,
            "isCorrect": is_correct,
        }
        try:
            compiled = self.registry.compile(prompts.PROVIDE_FEEDBACK, model)
            feedback = await self.registry.invoke(compiled, payload)
        except (GenerationError, NotConfiguredError) as e:
            logger.warning("Feedback generation failed, using canned text: %s", e)
            return FeedbackResult(
                feedback=CORRECT_FEEDBACK if is_correct else INCORRECT_FEEDBACK,
                is_correct=is_correct,
                used_fallback=True,
            )
        return FeedbackResult(feedback=feedback, is_correct=is_correct)

    async def provide_hint(
        self,
        *,
        problem: str,
        working: list[WorkingStep],
        model: str | None = None,
    ) -> str:
        compiled = self.registry.compile(prompts.PROVIDE_HINT, model)
        return await self.registry.invoke(
            compiled,
            {"problem": problem, "working": [w.to_dict() for w in working]},
        )

    async def extract_numeric_answer(self, answer: str, *, model: str | None = None) -> float | None:
        compiled = self.registry.compile(prompts.EXTRACT_NUMERIC_ANSWER, model)
        return await self.registry.invoke(compiled, {"answer": answer})

    async def resolve_numeric_answer(
        self,
        answer: str,
        *,
        model: str | None = None,
    ) -> tuple[float, t.Literal["deterministic", "fallback"]]:
        value = normalize_numeric_answer(answer)
        if value is not None:
            return value, "deterministic"

        try:
            value = await self.extract_numeric_answer(answer, model=model)
        except (GenerationError, NotConfiguredError) as e:
            logger.warning("Numeric extraction fallback failed: %s", e)
            raise UnparseableAnswerError(f"fallback extraction failed for {answer!r}") from e
        if value is None:
            logger.info("Numeric extraction fallback found no number")
            raise UnparseableAnswerError(f"no numeric value in {answer!r}")
        logger.info("Numeric extraction fallback resolved answer to %s", value)
        return value, "fallback"

    async def evaluate_submission(
        self,
        *,
        problem: str,
        correct_answer: str,
        student_answer: str,
        model: str | None = None,
    ) -> Evaluation:
        numeric_answer, source = await self.resolve_numeric_answer(student_answer, model=model)
        is_correct = answers_match(correct_answer, repr(numeric_answer))
        result = await self.provide_feedback(
            problem=problem,
            correct_answer=correct_answer,
            student_answer=student_answer,
            is_correct=is_correct,
            model=model,
        )
        return Evaluation(
            is_correct=is_correct,
            numeric_answer=numeric_answer,
            answer_source=source,
            feedback=result.feedback,
            used_fallback_feedback=result.used_fallback,
        )
