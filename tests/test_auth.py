import sys
from pathlib import Path

import pytest
from flask import Flask, session
from flask_bcrypt import Bcrypt
from psycopg import OperationalError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import auth  # noqa: E402
from auth import create_auth_blueprint, resolve_avatar_url  # noqa: E402


class FakeUsers:
    def __init__(self):
        self.rows = {}
        self.fail = None

    def fetch_one(self, sql, params=()):
        if self.fail:
            raise self.fail
        return self.rows.get(params[0].lower())

    def execute_returning(self, sql, params=()):
        email, full_name, avatar_url, password_hash = params
        row = self.rows.setdefault(email, {"id": len(self.rows) + 1, "email": email, "full_name": None,
                                           "avatar_url": None, "password_hash": None, "is_active": True,
                                           "role": "student"})
        row["full_name"] = full_name or row["full_name"]
        row["avatar_url"] = avatar_url or row["avatar_url"]
        row["password_hash"] = row["password_hash"] or password_hash
        return [dict(row)]


@pytest.fixture
def env(monkeypatch):
    rendered = []

    def fake_render(template_name, **context):
        rendered.append((template_name, context))
        return f"rendered {template_name}"

    monkeypatch.setattr(auth, "render_template", fake_render)

    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test"
    app.config["BCRYPT_LOG_ROUNDS"] = 4
    users = FakeUsers()

    @app.get("/home")
    def home():
        return "home"

    app.register_blueprint(create_auth_blueprint("", {
        "fetch_one": users.fetch_one,
        "execute_returning": users.execute_returning,
        "bcrypt": Bcrypt(app),
        "sanitize_next": lambda nxt: nxt or "/home",
        "current_user": lambda: session.get("user"),
    }))
    return {"client": app.test_client(), "users": users, "rendered": rendered}


def _signup(client, email="ada@example.com", password="secret123", name="Ada"):
    return client.post("/auth/signup", data={"email": email, "password": password, "name": name})


def test_signup_then_login(env):
    client = env["client"]
    resp = _signup(client)
    assert resp.status_code == 200
    assert env["rendered"][-1][1]["success"] == "Signup successful! You can now log in."
    assert env["users"].rows["ada@example.com"]["password_hash"].startswith("$2")

    resp = client.post("/auth/login", data={"email": "Ada@Example.com", "password": "secret123",
                                            "next": "/dashboard"})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/dashboard")
    with client.session_transaction() as sess:
        assert sess["user"]["email"] == "ada@example.com"
        assert sess["user"]["name"] == "Ada"
        assert sess["user"]["id"] == "1"

    assert client.get("/").status_code == 302
    client.get("/auth/logout")
    with client.session_transaction() as sess:
        assert "user" not in sess


def test_signup_validation_and_duplicates(env):
    client = env["client"]
    assert _signup(client, email="not-an-email").status_code == 400
    assert _signup(client, password="123").status_code == 400
    assert _signup(client).status_code == 200
    dup = _signup(client, email="ADA@example.com")
    assert dup.status_code == 409
    assert env["rendered"][-1][1]["error"] == "An account with this email already exists."


def test_login_failures(env):
    client = env["client"]
    _signup(client)

    assert client.post("/auth/login", data={"email": "ada@example.com"}).status_code == 400

    bad = client.post("/auth/login", data={"email": "ada@example.com", "password": "wrong"})
    assert bad.status_code == 401
    assert env["rendered"][-1][1]["error"] == "Invalid login credentials."

    assert client.post("/auth/login", data={"email": "who@example.com", "password": "x"}).status_code == 401

    env["users"].rows["oauth@example.com"] = {"id": 9, "email": "oauth@example.com", "password_hash": None}
    oauth_only = client.post("/auth/login", data={"email": "oauth@example.com", "password": "x"})
    assert oauth_only.status_code == 401
    assert "Google or GitHub" in env["rendered"][-1][1]["error"]

    env["users"].rows["ada@example.com"]["is_active"] = False
    assert client.post("/auth/login", data={"email": "ada@example.com", "password": "secret123"}).status_code == 403


def test_login_when_database_is_down(env):
    env["users"].fail = OperationalError("connection refused")
    resp = env["client"].post("/auth/login", data={"email": "ada@example.com", "password": "secret123"})
    assert resp.status_code == 503


def test_unconfigured_oauth_provider_is_404(env):
    assert env["client"].get("/auth/github").status_code == 404


def test_resolve_avatar_url(monkeypatch):
    assert resolve_avatar_url(None) == auth.DEFAULT_AVATAR_URL
    assert resolve_avatar_url("https://cdn.example.com/a.png") == "https://cdn.example.com/a.png"
    monkeypatch.setattr(auth, "AVATAR_BASE_URL", "https://files.example.com/avatars")
    assert resolve_avatar_url("/u1.png") == "https://files.example.com/avatars/u1.png"
