import sys
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import quiz  # noqa: E402
from cache import TTLCache, dashboard_key  # noqa: E402
from quiz import create_quiz_blueprint  # noqa: E402
from stores import AttemptConflictError, PersistenceError  # noqa: E402

QUESTIONS = [
    {"position": 0, "id": 1, "text": "Q1", "options": ["a", "b", "c"], "correctAnswer": 1, "explanation": ""},
    {"position": 1, "id": 2, "text": "Q2", "options": ["a", "b", "c"], "correctAnswer": 2, "explanation": ""},
    {"position": 2, "id": 3, "text": "Q3", "options": ["first", "second", "third"], "correctAnswer": 0,
     "explanation": "why"},
]
QUIZ = {"module": "os", "quiz_number": "1", "quiz_key": "os/1", "title": "Operating Systems Quiz 1",
        "questions": QUESTIONS, "total_questions": 3}
MODULE = {"name": "os", "display_name": "Operating Systems", "icon": "fas fa-desktop"}


class FakeAttempts:
    def __init__(self):
        self.rows = []
        self.fail = None
        self.conflicts = 0

    def next_attempt_number(self, user_id, quiz_id):
        mine = [r["attempt_number"] for r in self.rows if r["user_id"] == user_id and r["quiz_id"] == quiz_id]
        return max(mine, default=0) + 1

    def insert(self, attempt):
        if self.fail:
            raise self.fail
        if self.conflicts:
            self.conflicts -= 1
            raise AttemptConflictError("duplicate attempt number")
        row = dict(attempt, id=len(self.rows) + 1)
        self.rows.append(row)
        return row

    def get(self, attempt_id):
        return next((r for r in self.rows if r["id"] == attempt_id), None)

    def list_completed_by_user_and_module(self, user_id, module_id):
        return [r for r in self.rows if r["user_id"] == user_id and r["is_completed"]]


class FakeSummaries:
    def __init__(self):
        self.upserts = []
        self.fail = None

    def upsert(self, summary):
        if self.fail:
            raise self.fail
        self.upserts.append(summary)
        return summary


class FakeCatalog:
    def ensure_module(self, module):
        return {"id": 1, "name": module["name"]}

    def ensure_quiz(self, module_id, quiz_def):
        return {"id": 10, "module_id": module_id, "quiz_number": quiz_def["quiz_number"],
                "total_questions": quiz_def["total_questions"]}

    def count_active_quizzes(self, module_id):
        return 2


@pytest.fixture
def env(monkeypatch):
    rendered = []

    def fake_render(template_name, **context):
        rendered.append((template_name, context))
        return f"rendered {template_name}"

    monkeypatch.setattr(quiz, "render_template", fake_render)

    attempts, summaries, cache = FakeAttempts(), FakeSummaries(), TTLCache(default_ttl=60)
    who = {"id": "u1"}

    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test"

    @app.before_request
    def _set_user():
        g.user_id = who["id"]

    app.register_blueprint(create_quiz_blueprint("", {
        "attempt_store": attempts,
        "summary_store": summaries,
        "catalog_store": FakeCatalog(),
        "cache": cache,
        "get_module": lambda name: MODULE if name == "os" else None,
        "load_quiz": lambda m, n: QUIZ if (m, str(n)) == ("os", "1") else None,
        "list_modules": lambda: [MODULE],
        "list_quiz_numbers": lambda name: ["1"] if name == "os" else [],
    }))

    return {"client": app.test_client(), "attempts": attempts, "summaries": summaries,
            "cache": cache, "rendered": rendered, "who": who}


def _form(*answers, time_spent="01:05"):
    data = {f"answers[{i}]": str(a) for i, a in enumerate(answers) if a is not None}
    data["timeSpent"] = time_spent
    return data


def test_submit_grades_persists_aggregates_and_invalidates(env):
    env["cache"].set(dashboard_key("u1"), {"stale": True})

    resp = env["client"].post("/quiz/os/1/submit", data=_form(1, 2, 1))

    assert resp.status_code == 200
    (row,) = env["attempts"].rows
    assert row["score_percentage"] == 67
    assert row["correct_answers"] == 2
    assert row["answers"] == [1, 2, 1]
    assert row["time_spent_seconds"] == 65
    assert row["attempt_number"] == 1
    assert row["status"] == "completed"

    (summary,) = env["summaries"].upserts
    assert summary["best_score_percentage"] == 67
    assert summary["total_quizzes"] == 2
    assert env["cache"].get(dashboard_key("u1")) is None

    name, ctx = env["rendered"][-1]
    assert name == "results.html"
    third = ctx["result"]["question_results"][2]
    assert third["user_answer_text"] == "second"
    assert third["correct_answer_text"] == "first"


def test_retake_creates_a_new_attempt(env):
    env["client"].post("/quiz/os/1/submit", data=_form(1, 2, 0))
    env["client"].post("/quiz/os/1/submit", data=_form(0))

    first, second = env["attempts"].rows
    assert (first["attempt_number"], first["score_percentage"]) == (1, 100)
    assert (second["attempt_number"], second["score_percentage"]) == (2, 0)
    assert second["answers"] == [0, None, None]
    assert env["summaries"].upserts[-1]["average_score_percentage"] == 50


def test_persistence_failure_is_not_reported_as_success(env):
    env["cache"].set(dashboard_key("u1"), {"cached": True})
    env["attempts"].fail = PersistenceError("insert failed")

    resp = env["client"].post("/quiz/os/1/submit", data=_form(1, 2, 0))

    assert resp.status_code == 500
    assert env["rendered"][-1][0] == "error.html"
    assert env["summaries"].upserts == []
    assert env["cache"].get(dashboard_key("u1")) == {"cached": True}


def test_summary_failure_keeps_the_saved_attempt(env):
    env["summaries"].fail = PersistenceError("upsert failed")
    env["cache"].set(dashboard_key("u1"), {"cached": True})

    resp = env["client"].post("/quiz/os/1/submit", data=_form(1, 2, 0))

    assert resp.status_code == 200
    assert len(env["attempts"].rows) == 1
    assert env["cache"].get(dashboard_key("u1")) is None


def test_attempt_number_conflict_is_retried_without_regrading(env, monkeypatch):
    calls = []
    real_grade = quiz.grade_quiz

    def counting_grade(*args, **kwargs):
        calls.append(1)
        return real_grade(*args, **kwargs)

    monkeypatch.setattr(quiz, "grade_quiz", counting_grade)
    env["attempts"].conflicts = 1

    resp = env["client"].post("/quiz/os/1/submit", data=_form(1, 2, 0))

    assert resp.status_code == 200
    assert len(env["attempts"].rows) == 1
    assert len(calls) == 1


def test_unknown_quiz_is_404(env):
    assert env["client"].get("/quiz/os/9").status_code == 404
    assert env["client"].post("/quiz/nope/1/submit", data=_form(1)).status_code == 404


def test_review_is_owner_only(env):
    env["client"].post("/quiz/os/1/submit", data=_form(1, 2, 0))
    attempt_id = env["attempts"].rows[0]["id"]

    resp = env["client"].get(f"/review/{attempt_id}")
    assert resp.status_code == 200
    name, ctx = env["rendered"][-1]
    assert name == "results.html"
    assert ctx["review"] is True
    assert ctx["result"]["percentage"] == 100

    env["who"]["id"] = "u2"
    assert env["client"].get(f"/review/{attempt_id}").status_code == 403
    assert env["client"].get("/review/999").status_code == 404


def test_results_redirects_to_latest_review(env):
    fresh = env["client"].get("/quiz/os/1/results")
    assert fresh.status_code == 302
    assert fresh.headers["Location"].endswith("/quiz/os/1")

    env["client"].post("/quiz/os/1/submit", data=_form(1, 2, 0))
    resp = env["client"].get("/quiz/os/1/results")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/review/1")


def test_api_submit(env):
    resp = env["client"].post("/api/quiz/submit", json={
        "module": "os", "quizId": "1", "answersArray": "[1, 2, -1]", "timeSpent": "00:30",
    })
    body = resp.get_json()

    assert resp.status_code == 200
    assert body["ok"] is True
    assert body["attempt_number"] == 1
    assert body["result"]["percentage"] == 67
    assert env["attempts"].rows[0]["answers"] == [1, 2, None]

    assert env["client"].post("/api/quiz/submit", json={"module": "os"}).status_code == 400
    assert env["client"].post("/api/quiz/submit", json={"module": "os", "quizId": "7"}).status_code == 404

    env["attempts"].fail = PersistenceError("down")
    failed = env["client"].post("/api/quiz/submit", json={"module": "os", "quizId": "1", "answers": [1]})
    assert failed.status_code == 500
    assert failed.get_json()["ok"] is False


def test_step_flow_walks_to_submission(env):
    client = env["client"]
    assert client.get("/quiz/os/1/step").status_code == 200
    name, ctx = env["rendered"][-1]
    assert name == "quiz_step.html"
    assert ctx["state"]["current"] == 0

    client.post("/quiz/os/1/step", data={"action": "next"})
    with client.session_transaction() as sess:
        assert sess["quiz_state"]["current"] == 0

    for option in (1, 2):
        client.post("/quiz/os/1/step", data={"action": "select", "option": str(option)})
        client.post("/quiz/os/1/step", data={"action": "next"})
    client.post("/quiz/os/1/step", data={"action": "select", "option": "0"})
    resp = client.post("/quiz/os/1/step", data={"action": "submit"})

    assert resp.status_code == 200
    assert env["rendered"][-1][0] == "results.html"
    (row,) = env["attempts"].rows
    assert row["answers"] == [1, 2, 0]
    assert row["score_percentage"] == 100
    with client.session_transaction() as sess:
        assert "quiz_state" not in sess


def test_practice_round_is_graded_but_not_saved(env):
    client = env["client"]
    resp = client.get("/practice?count=2")
    assert resp.status_code == 200
    name, ctx = env["rendered"][-1]
    assert name == "practice.html"
    assert len(ctx["questions"]) == 2

    answers = {f"answers[{i}]": str(q["correctAnswer"]) for i, q in enumerate(ctx["questions"])}
    client.post("/practice", data=answers)

    name, ctx = env["rendered"][-1]
    assert name == "practice.html"
    assert ctx["result"]["percentage"] == 100
    assert env["attempts"].rows == []

    expired = client.post("/practice", data=answers)
    assert expired.status_code == 302


def test_malformed_answers_are_graded_not_rejected(env):
    resp = env["client"].post("/quiz/os/1/submit", data={
        "answers[0]": "²", "answers[1]": "2", "answers[2]": "9" * 5000,
        "answers[999999999]": "1", "timeSpent": "01:²",
    })

    assert resp.status_code == 200
    (row,) = env["attempts"].rows
    assert row["answers"] == [None, 2, None]
    assert row["correct_answers"] == 1
    assert row["time_spent_seconds"] is None


def test_api_submit_rejects_non_object_bodies(env):
    resp = env["client"].post("/api/quiz/submit", json=[1, 2])
    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False

    assert env["client"].post("/api/quiz/submit", json="os/1").status_code == 400
    assert env["attempts"].rows == []
