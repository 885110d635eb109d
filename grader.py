# grader.py
# -----------------------------------------------------------------------------
# Quiz grading: answers (ordered by question position) -> result dict.
# Pure functions only; persistence lives in stores.py.
# Unanswered sentinel is None. -1, "", null, bools and junk all coerce to None.
# -----------------------------------------------------------------------------

import json
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

NO_ANSWER_TEXT = "No answer selected"

# (threshold, grade, message), highest first; thresholds are inclusive
GRADE_BANDS: List[Tuple[int, str, str]] = [
    (90, "Excellent!", "Outstanding performance! You've mastered these concepts."),
    (80, "Great Job!", "Very good understanding of the material."),
    (70, "Good Work!", "You've shown solid understanding of the concepts."),
    (60, "Fair", "You have basic understanding, but there's room for improvement."),
]
FALLBACK_BAND = ("Needs Improvement", "Consider reviewing the material and trying again.")


# positions and indexes beyond this are treated as junk
MAX_POSITIONS = 1000
_MAX_DIGITS = 9


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _digits(s: str) -> Optional[int]:
    """Plain ASCII digit string -> int, None for anything else (or absurdly long)."""
    s = s.strip()
    if not s or len(s) > _MAX_DIGITS or not (s.isascii() and s.isdigit()):
        return None
    try:
        return int(s)
    except ValueError:
        return None


def coerce_answer(raw: Any) -> Optional[int]:
    """
    Coerce one submitted answer to an option index, or None when unanswered.

    Strings must be whole ASCII integers: "1.5", "2abc", "²" and "-1" are all
    unanswered rather than truncated to a leading number.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        if not raw.is_integer():
            return None
        value = int(raw)
    elif isinstance(raw, str):
        value = _digits(raw)
    else:
        return None
    return value if value is not None and value >= 0 else None


def _valid_index(value: Any, options: Sequence[Any]) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < len(options)


def normalize_answers(answers: Optional[Sequence[Any]], total: int) -> List[Optional[int]]:
    """Exactly `total` coerced entries: extras dropped, missing ones unanswered."""
    answers = list(answers or [])
    out: List[Optional[int]] = []
    for i in range(max(0, total)):
        out.append(coerce_answer(answers[i]) if i < len(answers) else None)
    return out


def grade_band(percentage: float) -> Tuple[str, str]:
    for threshold, grade, message in GRADE_BANDS:
        if percentage >= threshold:
            return grade, message
    return FALLBACK_BAND


def score_class(percentage: Any) -> str:
    try:
        p = float(percentage or 0)
    except (TypeError, ValueError):
        p = 0.0
    if p >= 90:
        return "excellent"
    if p >= 75:
        return "good"
    if p >= 60:
        return "average"
    return "poor"


def grade_quiz(questions: Sequence[Dict[str, Any]],
               answers: Optional[Sequence[Any]],
               time_spent: Any = None) -> Dict[str, Any]:
    """
    Grade one submission.

    `questions` are normalised question dicts (id, text, options, correctAnswer,
    explanation); `answers` is aligned by position. `time_spent` is passed
    through untouched. Never raises for malformed answers.
    """
    questions = list(questions or [])
    answers = list(answers or [])
    correct_count = 0
    question_results: List[Dict[str, Any]] = []

    for index, q in enumerate(questions):
        options = list(q.get("options") or [])
        correct = q.get("correctAnswer")
        raw = answers[index] if index < len(answers) else None
        user_answer = coerce_answer(raw)
        if user_answer is not None and not _valid_index(user_answer, options):
            user_answer = None

        is_correct = user_answer is not None and user_answer == correct
        if is_correct:
            correct_count += 1

        question_results.append({
            "question_index": index,
            "id": q.get("id") if q.get("id") is not None else index + 1,
            "question": q.get("text") or "",
            "options": options,
            "user_answer": user_answer,
            "correct_answer": correct,
            "is_correct": is_correct,
            "user_answer_text": options[user_answer] if user_answer is not None else NO_ANSWER_TEXT,
            "correct_answer_text": options[correct] if _valid_index(correct, options) else "",
            "explanation": q.get("explanation") or "",
        })

    total = len(questions)
    percentage = round_half_up(correct_count / total * 100) if total else 0
    grade, message = grade_band(percentage)

    return {
        "total_questions": total,
        "correct_count": correct_count,
        "incorrect_count": total - correct_count,
        "percentage": percentage,
        "grade": grade,
        "message": message,
        "time_spent": time_spent,
        "question_results": question_results,
    }


# ------------------------------- request parsing ------------------------------
def _by_position(indexed: Dict[int, Any], limit: int) -> List[Any]:
    kept = [pos for pos in indexed if pos < limit]
    if not kept:
        return []
    return [indexed.get(i) for i in range(max(kept) + 1)]


def parse_answers_payload(data: Any, total: Optional[int] = None) -> List[Any]:
    """
    Pull the ordered answers list out of a form or JSON body.
    Accepts `answersArray` (JSON string or list), `answers` (list, JSON string,
    or dict keyed by position) and flat form fields `answers[0]`, `answers[1]`...
    Positions at or past `total` (MAX_POSITIONS when unknown) are dropped.
    """
    limit = MAX_POSITIONS if total is None else max(0, min(int(total), MAX_POSITIONS))
    if data is None:
        return []
    if isinstance(data, (list, tuple)):
        return list(data[:limit])

    raw = None
    if hasattr(data, "get"):
        raw = data.get("answersArray")
        if raw in (None, ""):
            raw = data.get("answers")

    if raw in (None, "") and hasattr(data, "keys"):
        indexed: Dict[int, Any] = {}
        for key in data.keys():
            if isinstance(key, str) and key.startswith("answers[") and key.endswith("]"):
                pos = _digits(key[len("answers["):-1])
                if pos is not None:
                    indexed[pos] = data.get(key)
        return _by_position(indexed, limit)

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return [raw][:limit]
    if isinstance(raw, dict):
        indexed = {}
        for key, value in raw.items():
            pos = _digits(str(key))
            if pos is not None:
                indexed[pos] = value
        return _by_position(indexed, limit)
    if isinstance(raw, (list, tuple)):
        return list(raw[:limit])
    return []


def parse_time_spent(value: Any) -> Optional[int]:
    """'MM:SS' / 'H:MM:SS' / seconds -> seconds, None when unparseable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        return max(0, int(value))
    s = str(value).strip()
    if not s:
        return None
    seconds = _digits(s)
    if seconds is not None:
        return seconds
    parts = [_digits(p) for p in s.split(":")]
    if len(parts) not in (2, 3) or any(p is None for p in parts):
        return None
    total = 0
    for p in parts:
        total = total * 60 + p
    return total


def format_seconds_label(seconds: Optional[int]) -> str:
    """Seconds -> 'MM:SS' (used to pass step-flow elapsed time to the grader)."""
    secs = max(0, int(seconds or 0))
    m, s = divmod(secs, 60)
    return f"{m:02d}:{s:02d}"


__all__ = [
    "NO_ANSWER_TEXT",
    "MAX_POSITIONS",
    "coerce_answer",
    "normalize_answers",
    "grade_band",
    "grade_quiz",
    "score_class",
    "parse_answers_payload",
    "parse_time_spent",
    "format_seconds_label",
    "round_half_up",
]
