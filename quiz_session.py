# quiz_session.py
# -----------------------------------------------------------------------------
# One-question-per-page quiz flow as an explicit state object + reducer.
#
# State (plain dict, stored in the Flask session between requests):
#   quiz_key, total, current, answers[total], phases[total], started_at, submitted
# Per-question phase: awaiting_selection -> answer_selected -> submitted
# Answers are kept in an ordered list indexed by question position.
# -----------------------------------------------------------------------------

import time
from typing import Any, Dict, Optional

from grader import coerce_answer, format_seconds_label

AWAITING_SELECTION = "awaiting_selection"
ANSWER_SELECTED = "answer_selected"
SUBMITTED = "submitted"

ACTIONS = ("select", "clear", "next", "prev", "goto", "submit")


class QuizSessionError(Exception):
    pass


def new_state(quiz_key: str, total: int, started_at: Optional[float] = None) -> Dict[str, Any]:
    total = max(0, int(total))
    return {
        "quiz_key": quiz_key,
        "total": total,
        "current": 0,
        "answers": [None] * total,
        "phases": [AWAITING_SELECTION] * total,
        "started_at": float(started_at if started_at is not None else time.time()),
        "submitted": False,
    }


def is_valid_state(state: Any, quiz_key: str, total: int) -> bool:
    if not isinstance(state, dict):
        return False
    if state.get("quiz_key") != quiz_key or state.get("total") != total:
        return False
    answers, phases = state.get("answers"), state.get("phases")
    return (isinstance(answers, list) and isinstance(phases, list)
            and len(answers) == total and len(phases) == total
            and isinstance(state.get("current"), int) and 0 <= state["current"] < max(total, 1))


def _copy(state: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(state)
    out["answers"] = list(state["answers"])
    out["phases"] = list(state["phases"])
    return out


def reduce(state: Dict[str, Any], action: str, payload: Any = None,
           option_count: Optional[int] = None) -> Dict[str, Any]:
    """
    Apply one user action and return the new state (the input is not modified).

    select  payload=option index (needs option_count of the current question)
    clear   drop the current selection
    next    move forward; only from answer_selected
    prev    move back
    goto    payload=question position
    submit  lock every question; only from the last question with an answer selected
    """
    if action not in ACTIONS:
        raise QuizSessionError(f"unknown action '{action}'")
    if state.get("submitted"):
        raise QuizSessionError("quiz already submitted")
    if not state.get("total"):
        raise QuizSessionError("quiz has no questions")

    s = _copy(state)
    cur = s["current"]
    last = s["total"] - 1

    if action == "select":
        idx = coerce_answer(payload)
        if idx is None or (option_count is not None and idx >= option_count):
            raise QuizSessionError(f"invalid option {payload!r}")
        s["answers"][cur] = idx
        s["phases"][cur] = ANSWER_SELECTED
    elif action == "clear":
        s["answers"][cur] = None
        s["phases"][cur] = AWAITING_SELECTION
    elif action == "next":
        if s["phases"][cur] != ANSWER_SELECTED:
            raise QuizSessionError("select an answer before moving on")
        if cur >= last:
            raise QuizSessionError("already at the last question")
        s["current"] = cur + 1
    elif action == "prev":
        if cur <= 0:
            raise QuizSessionError("already at the first question")
        s["current"] = cur - 1
    elif action == "goto":
        target = coerce_answer(payload)
        if target is None or target > last:
            raise QuizSessionError(f"invalid question {payload!r}")
        s["current"] = target
    elif action == "submit":
        if cur != last or s["phases"][cur] != ANSWER_SELECTED:
            raise QuizSessionError("answer the last question before submitting")
        s["phases"] = [SUBMITTED] * s["total"]
        s["submitted"] = True
    return s


def elapsed_seconds(state: Dict[str, Any], now: Optional[float] = None) -> int:
    now = time.time() if now is None else now
    return max(0, int(now - float(state.get("started_at") or now)))


def elapsed_label(state: Dict[str, Any], now: Optional[float] = None) -> str:
    return format_seconds_label(elapsed_seconds(state, now))


def progress_percent(state: Dict[str, Any]) -> int:
    total = state.get("total") or 0
    return int((state.get("current", 0) + 1) / total * 100) if total else 0


__all__ = [
    "AWAITING_SELECTION",
    "ANSWER_SELECTED",
    "SUBMITTED",
    "QuizSessionError",
    "new_state",
    "is_valid_state",
    "reduce",
    "elapsed_seconds",
    "elapsed_label",
    "progress_percent",
]
