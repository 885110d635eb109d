# attempts.py
# Attempt lifecycle: in_progress -> completed (terminal).
# Retries are new attempts; a completed attempt is never touched again.

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from grader import normalize_answers

IN_PROGRESS = "in_progress"
COMPLETED = "completed"


class AttemptStateError(Exception):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_attempt(user_id: Any, quiz_row: Dict[str, Any], attempt_number: int,
                answers: Optional[Sequence[Any]] = None,
                quiz_key: Optional[str] = None,
                started_at: Optional[datetime] = None) -> Dict[str, Any]:
    total = int(quiz_row.get("total_questions") or 0)
    if attempt_number < 1:
        raise AttemptStateError(f"attempt_number must be >= 1 (got {attempt_number})")
    return {
        "user_id": user_id,
        "quiz_id": quiz_row["id"],
        "quiz_key": quiz_key,
        "attempt_number": int(attempt_number),
        "answers": normalize_answers(answers, total),
        "total_questions": total,
        "correct_answers": None,
        "score_percentage": None,
        "time_spent_seconds": None,
        "is_completed": False,
        "status": IN_PROGRESS,
        "created_at": started_at or _now(),
        "completed_at": None,
        "review_json": None,
    }


def complete_attempt(attempt: Dict[str, Any], result: Dict[str, Any],
                     time_spent_seconds: Optional[int] = None,
                     completed_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Return the completed copy of an in-progress attempt with its score fixed."""
    if attempt.get("status") != IN_PROGRESS or attempt.get("is_completed"):
        raise AttemptStateError(
            f"attempt {attempt.get('id') or attempt.get('attempt_number')} is already {attempt.get('status')}"
        )
    total = int(result.get("total_questions") or 0)
    answers = [qr.get("user_answer") for qr in result.get("question_results") or []]
    done = dict(attempt)
    done.update({
        "answers": normalize_answers(answers, total),
        "total_questions": total,
        "correct_answers": int(result.get("correct_count") or 0),
        "score_percentage": int(result.get("percentage") or 0),
        "time_spent_seconds": time_spent_seconds,
        "is_completed": True,
        "status": COMPLETED,
        "completed_at": completed_at or _now(),
        "review_json": result,
    })
    return done


__all__ = ["IN_PROGRESS", "COMPLETED", "AttemptStateError", "new_attempt", "complete_attempt"]
