from __future__ import annotations

from buddy_ai.gemini import PromptSpec
from buddy_ai.schemas import (
    GeneratedProblem,
    parse_feedback,
    parse_generated_problem,
    parse_hint,
    parse_numeric_extraction,
)

_WORKING_STEP_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "step": {"type": "INTEGER"},
        "explanation": {"type": "STRING"},
        "formula": {"type": "STRING"},
    },
    "required": ["step", "explanation", "formula"],
}

GENERATE_PROBLEM: PromptSpec[GeneratedProblem] = PromptSpec(
    name="generateMathProblem",
    system_instruction=(
        "You are a math teacher writing word problems for primary school students. "
        "Write one word problem for the requested level, topic and difficulty. "
        "For any mathematical expression in the problem statement use LaTeX delimited by $, "
        "for example: What is the value of $x$ if $2x + 5 = 15$? "
        "Provide step-by-step working: each step has a plain text explanation and the LaTeX formula for that step. "
        "Use \\text{...} for words inside formulas. "
        "The answer MUST be a bare number with no units, words or symbols (e.g. 12, 0.75, 3/4). "
        "If questionType is multipleChoice, return exactly four choices with ids A, B, C, D; "
        "exactly one choice value must equal the answer and the others must be plausible mistakes. "
        "If questionType is subjective, return an empty choices list. "
        "Return JSON only."
    ),
    output_contract={
        "problem": "string",
        "answer": "string (bare number)",
        "working": "[{step: integer >= 1, explanation: string, formula: string}]",
        "choices": "[{id: string, label: string, value: string}]",
    },
    response_schema={
        "type": "OBJECT",
        "properties": {
            "problem": {"type": "STRING"},
            "answer": {"type": "STRING"},
            "working": {"type": "ARRAY", "items": _WORKING_STEP_SCHEMA},
            "choices": {
                "type": "ARRAY",
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "id": {"type": "STRING"},
                        "label": {"type": "STRING"},
                        "value": {"type": "STRING"},
                    },
                    "required": ["id", "label", "value"],
                },
            },
        },
        "required": ["problem", "answer", "working", "choices"],
    },
    parse_output=parse_generated_problem,
    few_shots=(
        (
            {"primary": "Primary5", "topic": "Fractions", "difficulty": "easy", "questionType": "subjective"},
            {
                "problem": "Mei Ling had $\\frac{3}{4}$ of a pizza. She ate $\\frac{1}{4}$ of the pizza. What fraction of the pizza is left?",
                "answer": "0.5",
                "working": [
                    {
                        "step": 1,
                        "explanation": "Subtract the fraction eaten from the fraction she had.",
                        "formula": "\\frac{3}{4} - \\frac{1}{4} = \\frac{2}{4}",
                    },
                    {
                        "step": 2,
                        "explanation": "Simplify the fraction.",
                        "formula": "\\frac{2}{4} = \\frac{1}{2}",
                    },
                ],
                "choices": [],
            },
        ),
    ),
    temperature=0.7,
    max_output_tokens=4096,
)

PROVIDE_FEEDBACK: PromptSpec[str] = PromptSpec(
    name="providePersonalizedFeedback",
    system_instruction=(
        "You are an encouraging and helpful math tutor for a primary school student. "
        "You are given the problem, the correct answer, the student's answer and whether it was judged correct. "
        "Write short, encouraging feedback. If the answer is correct, praise the student. "
        "If it is incorrect, gently point out where the mistake may be WITHOUT stating the correct answer, "
        "and encourage the student to try again. "
        "Return JSON only."
    ),
    output_contract={"feedback": "string"},
    response_schema={
        "type": "OBJECT",
        "properties": {"feedback": {"type": "STRING"}},
        "required": ["feedback"],
    },
    parse_output=parse_feedback,
    temperature=0.4,
    max_output_tokens=1024,
)

PROVIDE_HINT: PromptSpec[str] = PromptSpec(
    name="provideHint",
    system_instruction=(
        "You are a helpful math tutor. The student is stuck on a problem and needs a hint. "
        "You are given the problem and the solution steps. "
        "Give one short, guiding hint for the NEXT step the student should take. "
        "Do not perform the calculation and do not give the answer; do not copy any formula from the steps. "
        "Ask a question or suggest a general strategy instead. "
        "Return JSON only."
    ),
    output_contract={"hint": "string"},
    response_schema={
        "type": "OBJECT",
        "properties": {"hint": {"type": "STRING"}},
        "required": ["hint"],
    },
    parse_output=parse_hint,
    few_shots=(
        (
            {
                "problem": "A box holds 24 pencils. Sam gives away $\\frac{1}{3}$ of them. How many are left?",
                "working": [
                    {"step": 1, "explanation": "Find one third of 24."},
                    {"step": 2, "explanation": "Subtract from 24."},
                ],
            },
            {"hint": "What does it mean to split 24 pencils into 3 equal groups? How many would be in one group?"},
        ),
    ),
    temperature=0.4,
    max_output_tokens=1024,
)

EXTRACT_NUMERIC_ANSWER: PromptSpec[float | None] = PromptSpec(
    name="extractNumericAnswer",
    system_instruction=(
        "You are a math assistant. Read the student's answer and extract the final numeric value they are giving. "
        "If the student states a number with units (like cm^3 or metres), ignore the units and return just the number. "
        "Numbers written in words count (e.g. 'twelve' is 12). "
        "If there are multiple numbers, choose the one clearly presented as the final result. "
        "If there is no numeric value, or it is genuinely ambiguous, return null. "
        "Return JSON only."
    ),
    output_contract={"numericAnswer": "number | null"},
    response_schema={
        "type": "OBJECT",
        "properties": {"numericAnswer": {"type": "NUMBER", "nullable": True}},
        "required": ["numericAnswer"],
    },
    parse_output=parse_numeric_extraction,
    few_shots=(
        ({"answer": "The volume is twelve cubic centimetres"}, {"numericAnswer": 12}),
        ({"answer": "first I got 8 then I added 4 so it's 12"}, {"numericAnswer": 12}),
        ({"answer": "I don't know"}, {"numericAnswer": None}),
    ),
    temperature=0.0,
    max_output_tokens=256,
)
