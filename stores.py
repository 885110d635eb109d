# stores.py
# -----------------------------------------------------------------------------
# Persistence boundary for attempts, module summaries and the quiz catalogue.
# Each store wraps the shared DB helpers (fetch_one / fetch_all /
# execute_returning from main.py). Database failures surface as
# PersistenceError; nothing in here retries.
# -----------------------------------------------------------------------------

import json
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

import psycopg
from psycopg import errors as pg_errors


class PersistenceError(Exception):
    pass


class AttemptConflictError(PersistenceError):
    """Another attempt already holds this (user, quiz, attempt_number)."""


@contextmanager
def _db_errors(what: str):
    try:
        yield
    except pg_errors.UniqueViolation as e:
        raise AttemptConflictError(f"{what}: {e}") from e
    except psycopg.Error as e:
        raise PersistenceError(f"{what}: {e}") from e


def _json_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _load_json(value: Any) -> Any:
    if isinstance(value, str) and value.strip():
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


# ================================ Attempts ====================================
_ATTEMPT_COLUMNS = """
    id, user_id, quiz_id, quiz_key, attempt_number, answers, total_questions,
    correct_answers, score_percentage, time_spent_seconds, is_completed,
    status, created_at, completed_at, review_json
"""


class AttemptStore:
    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute_returning: Callable):
        self._fetch_one = fetch_one
        self._fetch_all = fetch_all
        self._execute_returning = execute_returning

    @staticmethod
    def _row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not row:
            return None
        row = dict(row)
        row["answers"] = _load_json(row.get("answers")) or []
        row["review_json"] = _load_json(row.get("review_json"))
        return row

    def next_attempt_number(self, user_id: Any, quiz_id: Any) -> int:
        with _db_errors("attempt number lookup"):
            row = self._fetch_one("""
                SELECT COALESCE(MAX(attempt_number), 0) AS n
                  FROM public.quiz_attempts
                 WHERE user_id = %s AND quiz_id = %s;
            """, (user_id, quiz_id))
        return int((row or {}).get("n") or 0) + 1

    def insert(self, attempt: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a fully scored attempt in one statement and return the stored row."""
        with _db_errors("attempt insert"):
            rows = self._execute_returning(f"""
                INSERT INTO public.quiz_attempts
                    (user_id, quiz_id, quiz_key, attempt_number, answers, total_questions,
                     correct_answers, score_percentage, time_spent_seconds, is_completed,
                     status, created_at, completed_at, review_json)
                VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
                RETURNING {_ATTEMPT_COLUMNS};
            """, (
                attempt["user_id"], attempt["quiz_id"], attempt.get("quiz_key"),
                attempt["attempt_number"], _json_or_none(attempt.get("answers") or []),
                attempt.get("total_questions"), attempt.get("correct_answers"),
                attempt.get("score_percentage"), attempt.get("time_spent_seconds"),
                bool(attempt.get("is_completed")), attempt.get("status"),
                attempt.get("created_at"), attempt.get("completed_at"),
                _json_or_none(attempt.get("review_json")),
            ))
        if not rows:
            raise PersistenceError("attempt insert returned no row")
        return self._row(rows[0])

    def get(self, attempt_id: Any) -> Optional[Dict[str, Any]]:
        with _db_errors("attempt fetch"):
            row = self._fetch_one(f"""
                SELECT {_ATTEMPT_COLUMNS}
                  FROM public.quiz_attempts
                 WHERE id = %s;
            """, (attempt_id,))
        return self._row(row)

    def list_completed_by_user_and_module(self, user_id: Any, module_id: Any) -> List[Dict[str, Any]]:
        with _db_errors("module attempts fetch"):
            rows = self._fetch_all("""
                SELECT qa.id, qa.quiz_id, qa.attempt_number, qa.score_percentage,
                       qa.time_spent_seconds, qa.created_at, qa.is_completed
                  FROM public.quiz_attempts qa
                  JOIN public.quizzes q ON q.id = qa.quiz_id
                 WHERE qa.user_id = %s
                   AND q.module_id = %s
                   AND qa.is_completed IS TRUE
                 ORDER BY qa.created_at ASC, qa.id ASC;
            """, (user_id, module_id))
        return [dict(r) for r in rows or []]

    def list_by_user(self, user_id: Any) -> List[Dict[str, Any]]:
        """User's attempts newest first, joined with quiz and module names."""
        with _db_errors("user attempts fetch"):
            rows = self._fetch_all("""
                SELECT qa.id, qa.quiz_id, qa.quiz_key, qa.attempt_number, qa.score_percentage,
                       qa.time_spent_seconds, qa.created_at, qa.is_completed,
                       q.title AS quiz_title, q.quiz_number, q.module_id,
                       m.name AS module_name, m.display_name AS module_display_name
                  FROM public.quiz_attempts qa
                  JOIN public.quizzes q ON q.id = qa.quiz_id
                  LEFT JOIN public.modules m ON m.id = q.module_id
                 WHERE qa.user_id = %s
                 ORDER BY qa.created_at DESC, qa.id DESC;
            """, (user_id,))
        return [dict(r) for r in rows or []]

    def list_all(self) -> List[Dict[str, Any]]:
        with _db_errors("attempts fetch"):
            rows = self._fetch_all("""
                SELECT id, user_id, quiz_id, score_percentage, time_spent_seconds, created_at
                  FROM public.quiz_attempts
                 WHERE is_completed IS TRUE
                 ORDER BY created_at ASC, id ASC;
            """)
        return [dict(r) for r in rows or []]


# ============================ Module summaries ================================
class SummaryStore:
    def __init__(self, fetch_all: Callable, execute_returning: Callable):
        self._fetch_all = fetch_all
        self._execute_returning = execute_returning

    def upsert(self, summary: Dict[str, Any]) -> Dict[str, Any]:
        """Create or fully overwrite the (user_id, module_id) row."""
        with _db_errors("progress upsert"):
            rows = self._execute_returning("""
                INSERT INTO public.user_progress
                    (user_id, module_id, quizzes_completed, total_quizzes,
                     best_score_percentage, average_score_percentage, total_attempts,
                     total_time_spent_seconds, last_activity, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, now())
                ON CONFLICT (user_id, module_id) DO UPDATE SET
                    quizzes_completed        = EXCLUDED.quizzes_completed,
                    total_quizzes            = EXCLUDED.total_quizzes,
                    best_score_percentage    = EXCLUDED.best_score_percentage,
                    average_score_percentage = EXCLUDED.average_score_percentage,
                    total_attempts           = EXCLUDED.total_attempts,
                    total_time_spent_seconds = EXCLUDED.total_time_spent_seconds,
                    last_activity            = EXCLUDED.last_activity,
                    updated_at               = EXCLUDED.updated_at
                RETURNING user_id, module_id;
            """, (
                summary["user_id"], summary["module_id"],
                summary["quizzes_completed"], summary["total_quizzes"],
                summary["best_score_percentage"], summary["average_score_percentage"],
                summary["total_attempts"], summary["total_time_spent_seconds"],
                summary.get("last_activity"),
            ))
        if not rows:
            raise PersistenceError("progress upsert returned no row")
        return summary

    def list_by_user(self, user_id: Any) -> List[Dict[str, Any]]:
        with _db_errors("progress fetch"):
            rows = self._fetch_all("""
                SELECT * FROM public.user_progress WHERE user_id = %s;
            """, (user_id,))
        return [dict(r) for r in rows or []]

    def list_all(self) -> List[Dict[str, Any]]:
        with _db_errors("progress fetch"):
            rows = self._fetch_all("SELECT * FROM public.user_progress;")
        return [dict(r) for r in rows or []]


# ============================== Quiz catalogue ================================
class CatalogStore:
    """modules / quizzes tables, mirrored from the JSON files on disk."""

    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute_returning: Callable):
        self._fetch_one = fetch_one
        self._fetch_all = fetch_all
        self._execute_returning = execute_returning

    def ensure_module(self, module: Dict[str, Any]) -> Dict[str, Any]:
        with _db_errors("module upsert"):
            rows = self._execute_returning("""
                INSERT INTO public.modules (name, display_name, icon, color, sort_order)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (name) DO UPDATE SET
                    display_name = EXCLUDED.display_name,
                    icon         = EXCLUDED.icon,
                    color        = EXCLUDED.color,
                    sort_order   = EXCLUDED.sort_order
                RETURNING id, name, display_name, icon, color, sort_order;
            """, (
                module["name"], module.get("display_name") or module["name"],
                module.get("icon"), module.get("color"), module.get("sort_order"),
            ))
        if not rows:
            raise PersistenceError(f"module upsert for {module['name']} returned no row")
        return dict(rows[0])

    def ensure_quiz(self, module_id: Any, quiz: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert the quiz row; total_questions always follows the file."""
        with _db_errors("quiz upsert"):
            rows = self._execute_returning("""
                INSERT INTO public.quizzes
                    (module_id, quiz_number, title, total_questions, difficulty_level, passing_score, is_active)
                VALUES (%s, %s, %s, %s, 'medium', 60, TRUE)
                ON CONFLICT (module_id, quiz_number) DO UPDATE SET
                    title           = EXCLUDED.title,
                    total_questions = EXCLUDED.total_questions
                RETURNING id, module_id, quiz_number, title, total_questions, is_active;
            """, (module_id, str(quiz["quiz_number"]), quiz.get("title"), int(quiz["total_questions"])))
        if not rows:
            raise PersistenceError(f"quiz upsert for {quiz.get('quiz_key')} returned no row")
        return dict(rows[0])

    def module_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        with _db_errors("module lookup"):
            row = self._fetch_one("""
                SELECT id, name, display_name, icon, color, sort_order
                  FROM public.modules WHERE name = %s;
            """, (name,))
        return dict(row) if row else None

    def list_modules(self) -> List[Dict[str, Any]]:
        with _db_errors("modules fetch"):
            rows = self._fetch_all("""
                SELECT m.id, m.name, m.display_name, m.icon, m.color, m.sort_order,
                       (SELECT COUNT(*) FROM public.quizzes q
                         WHERE q.module_id = m.id AND q.is_active IS TRUE) AS total_quizzes
                  FROM public.modules m
                 ORDER BY m.sort_order NULLS LAST, m.name;
            """)
        return [dict(r) for r in rows or []]

    def count_active_quizzes(self, module_id: Any) -> int:
        with _db_errors("quiz count"):
            row = self._fetch_one("""
                SELECT COUNT(*) AS n FROM public.quizzes
                 WHERE module_id = %s AND is_active IS TRUE;
            """, (module_id,))
        return int((row or {}).get("n") or 0)


__all__ = [
    "PersistenceError",
    "AttemptConflictError",
    "AttemptStore",
    "SummaryStore",
    "CatalogStore",
]
