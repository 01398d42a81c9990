import unittest

from buddy_ai.buddy_ai import CORRECT_FEEDBACK, INCORRECT_FEEDBACK, BuddyAIUtil
from buddy_ai.errors import GenerationError, UnparseableAnswerError
from buddy_ai.gemini import PromptRegistry
from buddy_ai.schemas import ProblemRequest, WorkingStep, parse_feedback, parse_hint
from tests.fakes import FRACTIONS_PROBLEM, FakeClientFactory

MODEL = "googleai/gemini-2.5-flash"

MC_PROBLEM = {
    "problem": "What is $\\frac{1}{2} + \\frac{1}{4}$?",
    "answer": "0.75",
    "working": [{"step": 1, "explanation": "Use quarters.", "formula": "\\frac{2}{4} + \\frac{1}{4} = \\frac{3}{4}"}],
    "choices": [
        {"id": "A", "label": "3/4", "value": "0.75"},
        {"id": "B", "label": "2/6", "value": "0.333"},
        {"id": "C", "label": "1/8", "value": "0.125"},
        {"id": "D", "label": "1", "value": "1"},
    ],
}

THREE_STEPS = [
    WorkingStep(step=1, explanation="Find a third of 24.", formula="24 \\div 3 = 8"),
    WorkingStep(step=2, explanation="Subtract from 24.", formula="24 - 8 = 16"),
    WorkingStep(step=3, explanation="State the answer.", formula="16"),
]


class BuddyAITestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.factory = FakeClientFactory()
        self.ai = BuddyAIUtil(registry=PromptRegistry(default_model_id=MODEL, client_factory=self.factory))


class TestGenerateProblem(BuddyAITestCase):
    async def test_subjective_problem(self):
        self.factory.routes["problem"] = FRACTIONS_PROBLEM
        problem = await self.ai.generate_problem(ProblemRequest("Primary5", "Fractions", "easy"))
        self.assertEqual(problem.answer, "0.5")
        self.assertEqual(problem.choices, [])
        sent = self.factory.requests_for("problem")[0]
        self.assertEqual(sent["topic"], "Fractions")
        self.assertEqual(sent["difficulty"], "easy")

    async def test_multiple_choice_problem(self):
        self.factory.routes["problem"] = MC_PROBLEM
        problem = await self.ai.generate_problem(
            ProblemRequest("Primary5", "Fractions", "medium", question_type="multipleChoice")
        )
        self.assertEqual([c.id for c in problem.choices], ["A", "B", "C", "D"])

    async def test_multiple_choice_needs_four_choices(self):
        self.factory.routes["problem"] = {**MC_PROBLEM, "choices": MC_PROBLEM["choices"][:3]}
        with self.assertRaises(GenerationError):
            await self.ai.generate_problem(
                ProblemRequest("Primary5", "Fractions", "medium", question_type="multipleChoice")
            )

    async def test_multiple_choice_needs_exactly_one_correct_choice(self):
        choices = [dict(c) for c in MC_PROBLEM["choices"]]
        choices[1]["value"] = "3/4"
        self.factory.routes["problem"] = {**MC_PROBLEM, "choices": choices}
        with self.assertRaises(GenerationError):
            await self.ai.generate_problem(
                ProblemRequest("Primary5", "Fractions", "medium", question_type="multipleChoice")
            )

    async def test_subjective_problem_must_not_have_choices(self):
        self.factory.routes["problem"] = MC_PROBLEM
        with self.assertRaises(GenerationError):
            await self.ai.generate_problem(ProblemRequest("Primary5", "Fractions", "easy"))

    async def test_answer_with_units_is_rejected(self):
        self.factory.routes["problem"] = {**FRACTIONS_PROBLEM, "answer": "12 cm"}
        with self.assertRaises(GenerationError):
            await self.ai.generate_problem(ProblemRequest("Primary5", "Measurement", "easy"))

    async def test_working_steps_must_increase(self):
        working = [dict(w) for w in FRACTIONS_PROBLEM["working"]]
        working[1]["step"] = 1
        self.factory.routes["problem"] = {**FRACTIONS_PROBLEM, "working": working}
        with self.assertRaises(GenerationError):
            await self.ai.generate_problem(ProblemRequest("Primary5", "Fractions", "easy"))


class TestFeedback(BuddyAITestCase):
    async def test_generated_feedback(self):
        self.factory.routes["feedback"] = {"feedback": "Great job splitting the pizza!"}
        result = await self.ai.provide_feedback(
            problem="p", correct_answer="0.5", student_answer="1/2", is_correct=True
        )
        self.assertEqual(result.feedback, "Great job splitting the pizza!")
        self.assertFalse(result.used_fallback)
        self.assertTrue(self.factory.requests_for("feedback")[0]["isCorrect"])

    async def test_backend_failure_uses_canned_text(self):
        self.factory.routes["feedback"] = GenerationError("boom")
        correct = await self.ai.provide_feedback(
            problem="p", correct_answer="0.5", student_answer="1/2", is_correct=True
        )
        wrong = await self.ai.provide_feedback(
            problem="p", correct_answer="0.5", student_answer="3", is_correct=False
        )
        self.assertEqual((correct.feedback, correct.used_fallback), (CORRECT_FEEDBACK, True))
        self.assertEqual((wrong.feedback, wrong.used_fallback), (INCORRECT_FEEDBACK, True))
        self.assertTrue(correct.is_correct)
        self.assertFalse(wrong.is_correct)

    async def test_feedback_revealing_the_answer_falls_back(self):
        self.factory.routes["feedback"] = {"feedback": "Close! The answer was 16."}
        result = await self.ai.provide_feedback(
            problem="p", correct_answer="16", student_answer="8", is_correct=False
        )
        self.assertEqual(result.feedback, INCORRECT_FEEDBACK)
        self.assertTrue(result.used_fallback)

    def test_reveal_check_only_applies_to_incorrect_answers(self):
        out = {"feedback": "Yes, the answer is 16."}
        self.assertEqual(parse_feedback(out, {"correctAnswer": "16", "isCorrect": True}), "Yes, the answer is 16.")
        with self.assertRaises(ValueError):
            parse_feedback(out, {"correctAnswer": "16", "isCorrect": False})

    def test_stated_answers_are_rejected(self):
        wrong = {"isCorrect": False}
        for text, correct in [
            ("The correct answer should be 3/4.", "0.75"),
            ("Answer: 25%", "0.25"),
            ("So the result is actually 1,200!", "1200"),
            ("The solution = 2", "2"),
        ]:
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    parse_feedback({"feedback": text}, {**wrong, "correctAnswer": correct})

    def test_other_numbers_in_feedback_are_allowed(self):
        wrong = {"isCorrect": False, "correctAnswer": "2"}
        for text in [
            "Look again at step 2 and check your subtraction.",
            "Check your answer, then look at step 2.",
            "You are 2 steps away. Your answer of 5 is close.",
            "The answer is 20 or so? Try again.",
        ]:
            with self.subTest(text=text):
                self.assertEqual(parse_feedback({"feedback": text}, wrong), text)


class TestHint(BuddyAITestCase):
    async def test_hint_for_three_step_problem(self):
        self.factory.routes["hint"] = {"hint": "How many pencils are in one of three equal groups?"}
        hint = await self.ai.provide_hint(problem="24 pencils...", working=THREE_STEPS)
        for step in THREE_STEPS:
            self.assertNotIn(step.formula, hint)
        sent = self.factory.requests_for("hint")[0]
        self.assertEqual(len(sent["working"]), 3)

    async def test_hint_repeating_a_formula_is_rejected(self):
        self.factory.routes["hint"] = {"hint": "Just compute 24 - 8 = 16 and you are done."}
        with self.assertRaises(GenerationError):
            await self.ai.provide_hint(problem="24 pencils...", working=THREE_STEPS)

    async def test_hint_failure_propagates(self):
        self.factory.routes["hint"] = GenerationError("no candidates")
        with self.assertRaises(GenerationError):
            await self.ai.provide_hint(problem="p", working=THREE_STEPS)

    def test_whitespace_differences_do_not_hide_a_formula(self):
        payload = {"working": [s.to_dict() for s in THREE_STEPS]}
        with self.assertRaises(ValueError):
            parse_hint({"hint": "Try 24   \\div 3 = 8"}, payload)


class TestAnswerResolution(BuddyAITestCase):
    async def test_fast_path_skips_the_model(self):
        value, source = await self.ai.resolve_numeric_answer("1/2")
        self.assertEqual((value, source), (0.5, "deterministic"))
        self.assertEqual(self.factory.created, 0)

    async def test_fallback_reads_words(self):
        self.factory.routes["numericAnswer"] = {"numericAnswer": 12}
        value, source = await self.ai.resolve_numeric_answer("twelve")
        self.assertEqual((value, source), (12.0, "fallback"))

    async def test_fallback_null_is_unparseable(self):
        self.factory.routes["numericAnswer"] = {"numericAnswer": None}
        with self.assertRaises(UnparseableAnswerError):
            await self.ai.resolve_numeric_answer("banana")

    async def test_fallback_failure_is_unparseable(self):
        self.factory.routes["numericAnswer"] = GenerationError("down")
        with self.assertRaises(UnparseableAnswerError) as ctx:
            await self.ai.resolve_numeric_answer("banana")
        self.assertEqual(ctx.exception.status_code, 422)

    async def test_fallback_non_number_is_unparseable(self):
        self.factory.routes["numericAnswer"] = {"numericAnswer": "twelve"}
        with self.assertRaises(UnparseableAnswerError):
            await self.ai.resolve_numeric_answer("twelve")


class TestEvaluateSubmission(BuddyAITestCase):
    async def test_correct_fraction_against_decimal(self):
        self.factory.routes["feedback"] = {"feedback": "Well done!"}
        evaluation = await self.ai.evaluate_submission(problem="p", correct_answer="0.5", student_answer="1/2")
        self.assertTrue(evaluation.is_correct)
        self.assertEqual(evaluation.numeric_answer, 0.5)
        self.assertEqual(evaluation.answer_source, "deterministic")
        self.assertEqual(evaluation.feedback, "Well done!")

    async def test_fallback_value_is_checked_against_answer(self):
        self.factory.routes["numericAnswer"] = {"numericAnswer": 3}
        self.factory.routes["feedback"] = GenerationError("down")
        evaluation = await self.ai.evaluate_submission(problem="p", correct_answer="16", student_answer="three")
        self.assertFalse(evaluation.is_correct)
        self.assertEqual(evaluation.answer_source, "fallback")
        self.assertEqual(evaluation.feedback, INCORRECT_FEEDBACK)
        self.assertTrue(evaluation.used_fallback_feedback)


if __name__ == "__main__":
    unittest.main()
