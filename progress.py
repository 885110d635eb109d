# progress.py
# -----------------------------------------------------------------------------
# Aggregations over quiz attempts.
#   - summarize_module(): per (user, module) summary, every attempt counts
#   - leaderboard():      first attempt per (user, quiz) only
#   - dashboard_overview(): view-model for the dashboard page
# Everything except recompute_module_progress() is pure.
# -----------------------------------------------------------------------------

from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from grader import score_class


def _num(x: Any) -> float:
    if x is None or isinstance(x, bool):
        return 0.0
    try:
        return float(x)
    except (TypeError, ValueError):
        return 0.0


def _int(x: Any) -> int:
    return int(_num(x))


def _clean(x: float) -> Any:
    """Whole floats as int so equal inputs always serialise the same way."""
    x = round(float(x), 2)
    return int(x) if x.is_integer() else x


def _as_datetime(v: Any) -> Optional[datetime]:
    if v is None:
        return None
    if isinstance(v, datetime):
        dt = v
    elif isinstance(v, date):
        dt = datetime(v.year, v.month, v.day)
    else:
        try:
            dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ============================ Module summary ==================================
def summarize_module(attempts: Iterable[Dict[str, Any]],
                     total_quizzes_in_module: Any = 0,
                     user_id: Any = None,
                     module_id: Any = None) -> Dict[str, Any]:
    """
    Recompute the (user, module) progress summary from the full attempt set.

    Attempts flagged is_completed=False are skipped; a missing flag counts as
    completed. With no attempts every number is 0 and last_activity is None.
    """
    rows = [a for a in (attempts or []) if a.get("is_completed", True) is not False]

    scores = [_num(a.get("score_percentage")) for a in rows]
    quiz_ids = {str(a.get("quiz_id")) for a in rows if a.get("quiz_id") is not None}
    times = [_int(a.get("time_spent_seconds")) for a in rows]
    stamps = [dt for dt in (_as_datetime(a.get("created_at")) for a in rows) if dt is not None]

    return {
        "user_id": user_id,
        "module_id": module_id,
        "quizzes_completed": len(quiz_ids),
        "total_quizzes": max(0, _int(total_quizzes_in_module)),
        "best_score_percentage": _clean(max(scores)) if scores else 0,
        "average_score_percentage": _clean(sum(scores) / len(scores)) if scores else 0,
        "total_attempts": len(rows),
        "total_time_spent_seconds": sum(times),
        "last_activity": max(stamps) if stamps else None,
    }


def recompute_module_progress(attempt_store, summary_store, user_id: Any, module_id: Any,
                              total_quizzes: Any) -> Dict[str, Any]:
    """Read every completed attempt for (user, module), summarise, upsert. Errors propagate."""
    attempts = attempt_store.list_completed_by_user_and_module(user_id, module_id)
    summary = summarize_module(attempts, total_quizzes, user_id=user_id, module_id=module_id)
    summary_store.upsert(summary)
    return summary


# =============================== Formatting ===================================
def format_time_spent(total_sec: Any) -> str:
    secs = _int(total_sec)
    if secs <= 0:
        return "0m"
    h, rem = divmod(secs, 3600)
    m = rem // 60
    return f"{h}h {m}m" if h else f"{m}m"


def format_duration_short(total_sec: Any) -> str:
    secs = _int(total_sec)
    if secs <= 0:
        return ""
    m, s = divmod(secs, 60)
    return f"{m}m {s}s"


def last_active_label(when: Any, now: datetime) -> str:
    dt = _as_datetime(when)
    if dt is None:
        return ""
    hours = (now - dt).total_seconds() / 3600.0
    if hours < 1:
        return "Just now"
    if hours < 24:
        return f"{int(hours)} hours ago"
    return f"{int(hours // 24)} days ago"


def activity_streak(stamps: Iterable[Any], today: date) -> int:
    """Consecutive days with at least one attempt, ending today or yesterday."""
    days = {dt.date() for dt in (_as_datetime(s) for s in stamps) if dt is not None}
    if not days:
        return 0
    cursor = today if today in days else today - timedelta(days=1)
    streak = 0
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


# ============================== Leaderboard ===================================
def first_attempts(attempts: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Earliest attempt per (user, quiz), by created_at then id."""
    def _key(a):
        dt = _as_datetime(a.get("created_at")) or datetime.max.replace(tzinfo=timezone.utc)
        return (dt, _num(a.get("id")))

    seen: Dict[str, Dict[str, Any]] = {}
    for a in sorted(attempts or [], key=_key):
        k = f"{a.get('user_id')}|{a.get('quiz_id')}"
        if k not in seen:
            seen[k] = a
    return list(seen.values())


def leaderboard(users: Sequence[Dict[str, Any]],
                attempts: Iterable[Dict[str, Any]],
                now: datetime,
                avatar_url: Callable[[Optional[str]], str] = lambda u: u or "") -> List[Dict[str, Any]]:
    """
    Rank users by the sum of their first-attempt scores (time spent breaks ties,
    less is better). Users without attempts are listed with zeros.
    """
    stats: Dict[str, Dict[str, Any]] = {}
    for a in first_attempts(attempts):
        s = stats.setdefault(str(a.get("user_id")), {"marks": 0.0, "time": 0, "scores": [], "last": None})
        score = _num(a.get("score_percentage"))
        s["marks"] += score
        s["time"] += _int(a.get("time_spent_seconds"))
        s["scores"].append(score)
        dt = _as_datetime(a.get("created_at"))
        if dt is not None and (s["last"] is None or dt > s["last"]):
            s["last"] = dt

    board = []
    for u in users or []:
        s = stats.get(str(u.get("id"))) or {}
        scores = s.get("scores") or []
        last = s.get("last")
        board.append({
            "user_id": u.get("id"),
            "name": u.get("full_name") or u.get("username") or "User",
            "avatar": avatar_url(u.get("avatar_url")),
            "marks": _clean(s.get("marks") or 0),
            "time": s.get("time") or 0,
            "quizzes_completed": len(scores),
            "average_score": round(sum(scores) / len(scores), 1) if scores else 0,
            "last_active": last_active_label(last, now) if last else "",
            "last_active_hours": round((now - last).total_seconds() / 3600.0, 2) if last else None,
        })
    board.sort(key=lambda r: (-_num(r["marks"]), r["time"]))
    for rank, row in enumerate(board, start=1):
        row["rank"] = rank
    return board


# =============================== Dashboard ====================================
def _mean_rounded(values: List[float]) -> int:
    return int(round(sum(values) / len(values))) if values else 0


def dashboard_overview(modules: Sequence[Dict[str, Any]],
                       progress_rows: Sequence[Dict[str, Any]],
                       attempts: Sequence[Dict[str, Any]],
                       all_progress: Sequence[Dict[str, Any]],
                       today: Optional[date] = None) -> Dict[str, Any]:
    """Dashboard view-model. `attempts` are the user's attempts, newest first."""
    by_module = {str(p.get("module_id")): p for p in progress_rows or []}

    module_cards = []
    for m in modules or []:
        p = by_module.get(str(m.get("id"))) or {}
        completed = _int(p.get("quizzes_completed"))
        total = _int(p.get("total_quizzes")) or _int(m.get("total_quizzes"))
        module_cards.append({
            "id": m.get("id"),
            "name": m.get("display_name") or m.get("name"),
            "code": m.get("name"),
            "icon": m.get("icon") or "fas fa-book",
            "progress": int(round(completed / total * 100)) if total > 0 else 0,
            "completed_quizzes": completed,
            "total_quizzes": total,
            "average_score": int(round(_num(p.get("average_score_percentage")))),
            "best_score": int(round(_num(p.get("best_score_percentage")))),
            "time_spent": format_time_spent(p.get("total_time_spent_seconds")),
        })

    averages = [_num(p.get("average_score_percentage")) for p in progress_rows or []]
    stats = {
        "total_quizzes": sum(_int(p.get("quizzes_completed")) for p in progress_rows or []),
        "average_score": _mean_rounded(averages),
        "total_modules": len(modules or []),
        "streak": activity_streak([a.get("created_at") for a in attempts or []],
                                  today or datetime.now(timezone.utc).date()),
    }

    grouped: Dict[str, Dict[str, Any]] = {}
    for a in attempts or []:
        module_key = a.get("module_name") or "unknown"
        group_key = f"{module_key}__{a.get('quiz_id')}"
        grp = grouped.setdefault(group_key, {
            "module": module_key,
            "module_name": a.get("module_display_name") or "Module",
            "quiz_number": a.get("quiz_number") or a.get("quiz_id"),
            "quiz_name": a.get("quiz_title") or "Quiz",
            "attempts": [],
        })
        created = _as_datetime(a.get("created_at"))
        grp["attempts"].append({
            "id": a.get("id"),
            "attempt_number": a.get("attempt_number") or len(grp["attempts"]) + 1,
            "date": created.date().isoformat() if created else "",
            "marks": _clean(_num(a.get("score_percentage"))),
            "score_class": score_class(a.get("score_percentage")),
            "duration": format_duration_short(a.get("time_spent_seconds")),
            "quiz_id": a.get("quiz_id"),
            "attempt_id": a.get("id"),
        })

    user_analytics = {
        "total_quizzes": stats["total_quizzes"],
        "total_time": sum(_int(p.get("total_time_spent_seconds")) for p in progress_rows or []),
        "total_time_label": format_time_spent(
            sum(_int(p.get("total_time_spent_seconds")) for p in progress_rows or [])),
        "avg_score": _mean_rounded(averages),
        "best_score": _clean(max([_num(p.get("best_score_percentage")) for p in progress_rows or []] or [0])),
    }

    module_analytics = []
    for m in modules or []:
        rows = [p for p in all_progress or [] if str(p.get("module_id")) == str(m.get("id"))]
        module_analytics.append({
            "module": m.get("display_name") or m.get("name"),
            "avg_score": _mean_rounded([_num(p.get("average_score_percentage")) for p in rows]),
            "best_score": int(round(max([_num(p.get("best_score_percentage")) for p in rows] or [0]))),
            "total_attempts": sum(_int(p.get("total_attempts")) for p in rows),
        })

    return {
        "stats": stats,
        "modules": module_cards,
        "grouped_recent_attempts": list(grouped.values()),
        "user_analytics": user_analytics,
        "module_analytics": module_analytics,
    }


__all__ = [
    "summarize_module",
    "recompute_module_progress",
    "first_attempts",
    "leaderboard",
    "dashboard_overview",
    "format_time_spent",
    "format_duration_short",
    "last_active_label",
    "activity_streak",
]
