# dashboard.py
# -----------------------------------------------------------------------------
# Per-user dashboard + global leaderboard.
# The dashboard view-model is cached per user (TTLCache, DASHBOARD_CACHE_TTL);
# quiz submission drops the entry, so a fresh attempt always shows up.
# -----------------------------------------------------------------------------

from datetime import datetime, timezone
from typing import Any, Dict, Callable

import psycopg
from flask import Blueprint, render_template, jsonify, g

from cache import dashboard_key
from progress import dashboard_overview, leaderboard, recompute_module_progress
from stores import PersistenceError


def create_dashboard_blueprint(base_path: str, deps: Dict[str, Any], name: str = "dashboard") -> Blueprint:
    """
    Registers:
      GET /dashboard, GET /leaderboard
      GET /api/dashboard/modules, GET /api/dashboard/analytics
    Required deps: fetch_all, attempt_store, summary_store, catalog_store, cache
    Optional deps: avatar_url (stored avatar -> public URL)
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    fetch_all: Callable = deps["fetch_all"]
    attempt_store = deps["attempt_store"]
    summary_store = deps["summary_store"]
    catalog_store = deps["catalog_store"]
    cache = deps["cache"]
    avatar_url: Callable = deps.get("avatar_url") or (lambda u: u or "")

    def _overview(user_id: Any) -> Dict[str, Any]:
        key = dashboard_key(user_id)
        cached = cache.get(key)
        if cached is not None:
            return cached

        modules = catalog_store.list_modules()
        for m in modules:
            try:
                recompute_module_progress(attempt_store, summary_store, user_id, m["id"], m.get("total_quizzes"))
            except PersistenceError as e:
                print(f"[dashboard] progress refresh failed for module {m.get('name')}: {e}")

        overview = dashboard_overview(
            modules,
            summary_store.list_by_user(user_id),
            attempt_store.list_by_user(user_id),
            summary_store.list_all(),
        )
        cache.set(key, overview)
        return overview

    def _unavailable(e: Exception, api: bool = False):
        print(f"[dashboard] load failed for user={getattr(g, 'user_id', None)}: {e}")
        if api:
            return jsonify({"ok": False, "error": "dashboard unavailable"}), 500
        return render_template("error.html", title="Dashboard unavailable",
                               message="We couldn't load your progress right now. Please try again."), 500

    @bp.get("/dashboard")
    def dashboard():
        try:
            overview = _overview(g.user_id)
        except PersistenceError as e:
            return _unavailable(e)
        return render_template("dashboard.html", title="Dashboard", **overview)

    @bp.get("/api/dashboard/modules")
    def api_modules():
        try:
            overview = _overview(g.user_id)
        except PersistenceError as e:
            return _unavailable(e, api=True)
        return jsonify({"ok": True, "stats": overview["stats"], "modules": overview["modules"]})

    @bp.get("/api/dashboard/analytics")
    def api_analytics():
        try:
            overview = _overview(g.user_id)
        except PersistenceError as e:
            return _unavailable(e, api=True)
        return jsonify({
            "ok": True,
            "user": overview["user_analytics"],
            "modules": overview["module_analytics"],
            "recent": overview["grouped_recent_attempts"],
        })

    @bp.get("/leaderboard")
    def leaderboard_page():
        try:
            users = fetch_all("""
                SELECT id, email, full_name, avatar_url
                  FROM public.users
                 WHERE is_active IS TRUE;
            """)
            attempts = attempt_store.list_all()
        except (psycopg.Error, PersistenceError) as e:
            print(f"[dashboard] leaderboard load failed: {e}")
            return render_template("error.html", title="Leaderboard unavailable",
                                   message="The leaderboard could not be loaded right now."), 500

        board = leaderboard(users, attempts, datetime.now(timezone.utc), avatar_url=avatar_url)
        me = str(getattr(g, "user_id", ""))
        for row in board:
            row["is_me"] = str(row["user_id"]) == me
        return render_template("leaderboard.html", title="Leaderboard", board=board)

    return bp


__all__ = ["create_dashboard_blueprint"]
