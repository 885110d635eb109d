# auth.py
# -----------------------------------------------------------------------------
# Sign-in / sign-up / sign-out + Google & GitHub OAuth (Authlib).
# Every successful sign-in upserts public.users and stores a small identity
# dict in session["user"] = {id, email, name, avatar_url}.
# -----------------------------------------------------------------------------

import os
import re
from typing import Any, Callable, Dict, Optional

import psycopg
from flask import Blueprint, render_template, request, redirect, session, abort, url_for

AVATAR_BASE_URL = (os.getenv("AVATAR_BASE_URL") or "").rstrip("/")
DEFAULT_AVATAR_URL = os.getenv("DEFAULT_AVATAR_URL") or "/static/images/avatar.svg"
MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH") or 6)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def resolve_avatar_url(avatar_url: Optional[str]) -> str:
    """Public URL for a stored avatar reference, or the default image."""
    if not avatar_url:
        return DEFAULT_AVATAR_URL
    if avatar_url.startswith("http://") or avatar_url.startswith("https://"):
        return avatar_url
    if AVATAR_BASE_URL:
        return f"{AVATAR_BASE_URL}/{avatar_url.lstrip('/')}"
    return DEFAULT_AVATAR_URL


def upsert_user(execute_returning: Callable, email: str, full_name: Optional[str] = None,
                avatar_url: Optional[str] = None, password_hash: Optional[str] = None) -> Dict[str, Any]:
    """Create or refresh the users row for `email`; never clears existing name/avatar/hash."""
    email = (email or "").strip().lower()
    if not email:
        raise ValueError("upsert_user needs an email")
    rows = execute_returning("""
        INSERT INTO public.users (email, full_name, avatar_url, password_hash, role, is_active, created_at, updated_at)
        VALUES (%s, %s, %s, %s, 'student', TRUE, now(), now())
        ON CONFLICT (email) DO UPDATE SET
            full_name     = COALESCE(EXCLUDED.full_name, users.full_name),
            avatar_url    = COALESCE(EXCLUDED.avatar_url, users.avatar_url),
            password_hash = COALESCE(users.password_hash, EXCLUDED.password_hash),
            is_active     = TRUE,
            updated_at    = now()
        RETURNING id, email, full_name, avatar_url, role;
    """, (email, full_name, avatar_url, password_hash))
    return rows[0]


def session_user_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "email": row["email"],
        "name": row.get("full_name") or row["email"].split("@", 1)[0],
        "avatar_url": resolve_avatar_url(row.get("avatar_url")),
    }


def create_auth_blueprint(base_path: str, deps: Dict[str, Any], name: str = "auth") -> Blueprint:
    """
    Registers:
      GET  /                            login page, or /home when signed in
      GET  /auth/login, POST /auth/login
      POST /auth/signup
      GET  /auth/logout
      GET  /auth/<provider>, GET /auth/oauth/callback/<provider>
    Required deps: fetch_one, execute_returning, bcrypt, sanitize_next, current_user
    Optional deps: oauth, oauth_providers, oauth_callback_url
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    fetch_one: Callable = deps["fetch_one"]
    execute_returning: Callable = deps["execute_returning"]
    bcrypt = deps["bcrypt"]
    sanitize_next: Callable = deps["sanitize_next"]
    current_user: Callable = deps["current_user"]
    oauth = deps.get("oauth")
    oauth_providers = set(deps.get("oauth_providers") or ())
    oauth_callback_url: Optional[Callable] = deps.get("oauth_callback_url")

    def _login_page(status: int = 200, **ctx):
        ctx.setdefault("active_tab", "login")
        ctx.setdefault("next_url", session.get("login_next") or "")
        return render_template("login.html", **ctx), status

    def _sign_in(row: Dict[str, Any]):
        next_url = sanitize_next(session.pop("login_next", None))
        session["user"] = session_user_from_row(row)
        return redirect(next_url)

    @bp.get("/")
    def index():
        if current_user():
            return redirect(url_for("home"))
        nxt = request.args.get("next")
        if nxt:
            session["login_next"] = sanitize_next(nxt)
        return _login_page()

    @bp.get("/auth/login")
    def login_form():
        if current_user():
            return redirect(url_for("home"))
        return _login_page()

    @bp.post("/auth/login")
    def login():
        email = (request.form.get("email") or "").strip().lower()
        password = request.form.get("password") or ""
        if request.form.get("next"):
            session["login_next"] = sanitize_next(request.form.get("next"))
        if not email or not password:
            return _login_page(400, error="Email and password are required.", email=email)
        try:
            row = fetch_one("""
                SELECT id, email, full_name, avatar_url, password_hash, is_active
                  FROM public.users
                 WHERE lower(email) = lower(%s)
                 LIMIT 1;
            """, (email,))
        except psycopg.Error as e:
            print(f"[auth] user lookup failed for {email}: {e}")
            return _login_page(503, error="Sign-in is temporarily unavailable. Please try again.", email=email)

        if row and not row.get("password_hash"):
            return _login_page(401, error="This account uses Google or GitHub sign-in.", email=email)
        if not row or not bcrypt.check_password_hash(row["password_hash"], password):
            return _login_page(401, error="Invalid login credentials.", email=email)
        if row.get("is_active") is False:
            return _login_page(403, error="This account is disabled.", email=email)

        try:
            row = upsert_user(execute_returning, row["email"])
        except psycopg.Error as e:
            print(f"[auth] user sync failed for {email}: {e}")
        return _sign_in(row)

    @bp.post("/auth/signup")
    def signup():
        email = (request.form.get("email") or "").strip().lower()
        password = request.form.get("password") or ""
        full_name = (request.form.get("name") or "").strip() or None

        if not EMAIL_RE.match(email):
            return _login_page(400, error="Please enter a valid email address.", active_tab="signup", email=email)
        if len(password) < MIN_PASSWORD_LENGTH:
            return _login_page(400, error=f"Password should be at least {MIN_PASSWORD_LENGTH} characters.",
                               active_tab="signup", email=email)
        try:
            existing = fetch_one("SELECT id FROM public.users WHERE lower(email) = lower(%s);", (email,))
            if existing:
                return _login_page(409, error="An account with this email already exists.",
                                   active_tab="signup", email=email)
            pw_hash = bcrypt.generate_password_hash(password).decode("utf-8")
            upsert_user(execute_returning, email, full_name=full_name, password_hash=pw_hash)
        except psycopg.Error as e:
            print(f"[auth] signup failed for {email}: {e}")
            return _login_page(503, error="Sign-up is temporarily unavailable. Please try again.",
                               active_tab="signup", email=email)

        print(f"[auth] account created: {email}")
        return _login_page(success="Signup successful! You can now log in.", email=email)

    @bp.get("/auth/logout")
    def auth_logout():
        session.clear()
        return redirect(url_for(f"{bp.name}.login_form"))

    # ------------------------------- OAuth ------------------------------------
    def _client(provider: str):
        if oauth is None or provider not in oauth_providers:
            abort(404, description=f"Sign-in with {provider} is not configured.")
        return oauth.create_client(provider)

    def _oauth_profile(provider: str, client, token: Dict[str, Any]) -> Dict[str, Any]:
        if provider == "google":
            claims = token.get("userinfo") or client.userinfo(token=token)
            return {
                "email": claims.get("email"),
                "full_name": claims.get("name"),
                "avatar_url": claims.get("picture"),
            }
        data = client.get("user", token=token).json()
        email = data.get("email")
        if not email:
            emails = client.get("user/emails", token=token).json() or []
            primary = [e for e in emails if e.get("primary") and e.get("verified")]
            email = (primary[0] if primary else {}).get("email")
        return {
            "email": email,
            "full_name": data.get("name") or data.get("login"),
            "avatar_url": data.get("avatar_url"),
        }

    @bp.get("/auth/<provider>")
    def oauth_start(provider: str):
        client = _client(provider)
        nxt = request.args.get("next")
        if nxt:
            session["login_next"] = sanitize_next(nxt)
        return client.authorize_redirect(oauth_callback_url(provider))

    @bp.get("/auth/oauth/callback/<provider>")
    def oauth_callback(provider: str):
        client = _client(provider)
        token = client.authorize_access_token()
        profile = _oauth_profile(provider, client, token)
        email = (profile.get("email") or "").strip().lower()
        if not email:
            abort(400, description=f"{provider.title()} authentication failed (no email).")
        try:
            row = upsert_user(execute_returning, email,
                              full_name=profile.get("full_name"), avatar_url=profile.get("avatar_url"))
        except psycopg.Error as e:
            print(f"[auth] user sync failed for {email}: {e}")
            return _login_page(503, error="Sign-in is temporarily unavailable. Please try again.")
        return _sign_in(row)

    return bp


__all__ = ["create_auth_blueprint", "resolve_avatar_url", "upsert_user", "session_user_from_row"]
