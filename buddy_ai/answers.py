"""Deterministic answer normalization and correctness checks.

Free-text answers arrive from a rich-text editor, so they may carry HTML
markup, entities, thousands separators and trailing units. Everything here is
pure: no I/O and no model calls.

Known characteristics:

- Only patterns anchored at the start of the cleaned text are tried, so
  "12 apples and 3 pears" reads as 12. This is not a tokenizer.
- Alphabetic words separated from the number are treated as units and
  dropped, so "3 bananas" reads as 3.
- Commas are thousands separators: "1,5" reads as 15.
- Correctness uses a fixed absolute tolerance (``ANSWER_TOLERANCE``), which is
  strict near zero and lax for very large magnitudes.
"""
from __future__ import annotations

import math
import re

ANSWER_TOLERANCE = 0.001

_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

# Words not glued to a digit or decimal point. "12cm" keeps its unit (the
# numeric prefix still parses) and "1e3" keeps its exponent.
_UNIT_WORD_RE = re.compile(r"(?<![\d.])[A-Za-z]+")
_DEGREE_RE = re.compile(r"°")
_STRAY_PERCENT_RE = re.compile(r"(?<![\d\s])%")

_NUMBER = r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)"
_FRACTION_RE = re.compile(rf"^({_NUMBER})\s*/\s*({_NUMBER})")
_PERCENT_RE = re.compile(rf"^({_NUMBER})\s*%$")
_FLOAT_PREFIX_RE = re.compile(rf"^{_NUMBER}(?:[eE][+-]?\d+)?")


def strip_html(text: str) -> str:
    s = _STYLE_RE.sub("", text)
    s = _SCRIPT_RE.sub("", s)
    s = _TAG_RE.sub(" ", s)
    s = s.replace("&nbsp;", " ").replace("&amp;", "&")
    return s.strip()


def to_plain_text(text: str) -> str:
    """Strip markup and collapse whitespace."""
    return _WS_RE.sub(" ", strip_html(text or "")).strip()


def _strip_units(text: str) -> str:
    s = text.replace(",", "")
    s = _DEGREE_RE.sub(" ", s)
    s = _UNIT_WORD_RE.sub(" ", s)
    s = _STRAY_PERCENT_RE.sub(" ", s)
    return _WS_RE.sub(" ", s).strip()


def _finite(value: float) -> float | None:
    return value if math.isfinite(value) else None


def normalize_numeric_answer(raw: str | None) -> float | None:
    """Return the numeric value of a free-text answer, or None.

    Patterns are tried in order: fraction ``a/b``, percentage ``n%``, then a
    plain decimal/integer prefix. A fraction with a zero denominator is
    rejected outright rather than read as its numerator, and values that
    overflow to infinity ("1e999") have no reading.
    """
    if raw is None:
        return None
    cleaned = _strip_units(to_plain_text(str(raw)))
    if not cleaned:
        return None

    m = _FRACTION_RE.match(cleaned)
    if m:
        numerator = float(m.group(1))
        denominator = float(m.group(2))
        if denominator == 0:
            return None
        return _finite(numerator / denominator)

    m = _PERCENT_RE.match(cleaned)
    if m:
        return _finite(float(m.group(1)) / 100)

    m = _FLOAT_PREFIX_RE.match(cleaned)
    if m:
        return _finite(float(m.group(0)))
    return None


def has_embedded_units(text: str) -> bool:
    plain = to_plain_text(text)
    return bool(re.search(r"[A-Za-z%°]", plain))


def numbers_match(a: float, b: float) -> bool:
    return abs(a - b) < ANSWER_TOLERANCE


def answers_match(correct_answer: str, student_answer: str) -> bool:
    """Decide whether a student answer matches the canonical one.

    Both sides are normalized; numbers are compared with ``ANSWER_TOLERANCE``.
    If either side has no numeric reading the cleaned texts are compared
    case-insensitively.
    """
    plain_correct = to_plain_text(correct_answer).lower()
    plain_student = to_plain_text(student_answer).lower()

    numeric_correct = normalize_numeric_answer(plain_correct)
    numeric_student = normalize_numeric_answer(plain_student)
    if numeric_correct is not None and numeric_student is not None:
        return numbers_match(numeric_correct, numeric_student)
    return plain_correct == plain_student
