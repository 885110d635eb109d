import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from flask import Flask, g
from psycopg import OperationalError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import dashboard  # noqa: E402
from cache import TTLCache, dashboard_key  # noqa: E402
from dashboard import create_dashboard_blueprint  # noqa: E402
from stores import PersistenceError  # noqa: E402

CREATED = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeStores:
    def __init__(self):
        self.calls = {"list_modules": 0, "recompute": 0}
        self.attempts = [
            {"id": 1, "user_id": "u1", "quiz_id": 10, "attempt_number": 1, "score_percentage": 80,
             "time_spent_seconds": 120, "created_at": CREATED, "is_completed": True,
             "module_name": "os", "module_display_name": "Operating Systems", "quiz_number": "1",
             "quiz_title": "OS Quiz 1"},
        ]
        self.summaries = {}
        self.fail = None

    # catalog
    def list_modules(self):
        self.calls["list_modules"] += 1
        if self.fail:
            raise self.fail
        return [{"id": 1, "name": "os", "display_name": "Operating Systems", "icon": "fas fa-desktop",
                 "total_quizzes": 2}]

    # attempts
    def list_completed_by_user_and_module(self, user_id, module_id):
        self.calls["recompute"] += 1
        return [a for a in self.attempts if a["user_id"] == user_id]

    def list_by_user(self, user_id):
        return [a for a in self.attempts if a["user_id"] == user_id]

    def list_all(self):
        return list(self.attempts)

    # summaries
    def upsert(self, summary):
        self.summaries[(summary["user_id"], summary["module_id"])] = summary
        return summary


class FakeSummaryStore:
    def __init__(self, stores):
        self._s = stores

    def upsert(self, summary):
        return self._s.upsert(summary)

    def list_by_user(self, user_id):
        return [v for (u, _), v in self._s.summaries.items() if u == user_id]

    def list_all(self):
        return list(self._s.summaries.values())


@pytest.fixture
def env(monkeypatch):
    rendered = []

    def fake_render(template_name, **context):
        rendered.append((template_name, context))
        return f"rendered {template_name}"

    monkeypatch.setattr(dashboard, "render_template", fake_render)

    stores = FakeStores()
    cache = TTLCache(default_ttl=60)
    users = [
        {"id": "u1", "email": "a@example.com", "full_name": "Ada", "avatar_url": None},
        {"id": "u2", "email": "b@example.com", "full_name": "Bo", "avatar_url": None},
    ]
    db = {"fail": None}

    def fetch_all(sql, params=()):
        if db["fail"]:
            raise db["fail"]
        assert "FROM public.users" in sql
        return users

    app = Flask(__name__)
    app.testing = True

    @app.before_request
    def _set_user():
        g.user_id = "u1"

    app.register_blueprint(create_dashboard_blueprint("", {
        "fetch_all": fetch_all,
        "attempt_store": stores,
        "summary_store": FakeSummaryStore(stores),
        "catalog_store": stores,
        "cache": cache,
        "avatar_url": lambda u: u or "/static/images/avatar.svg",
    }))
    return {"client": app.test_client(), "stores": stores, "cache": cache, "rendered": rendered, "db": db}


def test_dashboard_recomputes_then_serves_from_cache(env):
    resp = env["client"].get("/dashboard")
    assert resp.status_code == 200
    name, ctx = env["rendered"][-1]
    assert name == "dashboard.html"
    assert ctx["stats"]["total_quizzes"] == 1
    assert ctx["modules"][0]["progress"] == 50
    assert ctx["modules"][0]["best_score"] == 80
    assert env["stores"].calls == {"list_modules": 1, "recompute": 1}

    env["client"].get("/dashboard")
    assert env["stores"].calls == {"list_modules": 1, "recompute": 1}

    env["cache"].invalidate(dashboard_key("u1"))
    env["client"].get("/dashboard")
    assert env["stores"].calls == {"list_modules": 2, "recompute": 2}


def test_dashboard_api_endpoints(env):
    modules = env["client"].get("/api/dashboard/modules").get_json()
    assert modules["ok"] is True
    assert modules["modules"][0]["code"] == "os"

    analytics = env["client"].get("/api/dashboard/analytics").get_json()
    assert analytics["user"]["best_score"] == 80
    assert analytics["modules"][0]["total_attempts"] == 1
    assert analytics["recent"][0]["attempts"][0]["marks"] == 80


def test_dashboard_store_failure_is_500(env):
    env["stores"].fail = PersistenceError("db down")
    assert env["client"].get("/dashboard").status_code == 500
    assert env["rendered"][-1][0] == "error.html"
    api = env["client"].get("/api/dashboard/modules")
    assert api.status_code == 500
    assert api.get_json()["ok"] is False


def test_leaderboard_marks_current_user(env):
    resp = env["client"].get("/leaderboard")
    assert resp.status_code == 200
    name, ctx = env["rendered"][-1]
    assert name == "leaderboard.html"
    first, second = ctx["board"]
    assert first["user_id"] == "u1" and first["is_me"] is True
    assert first["marks"] == 80
    assert second["marks"] == 0 and second["is_me"] is False
    assert second["avatar"] == "/static/images/avatar.svg"


def test_leaderboard_db_failure_is_500(env):
    env["db"]["fail"] = OperationalError("connection refused")
    assert env["client"].get("/leaderboard").status_code == 500
