# main.py: quiz portal config, psycopg3 pool, identity gate, route registration.
# Sign-in is email/password (bcrypt) or Google/GitHub via Authlib; identity lives in session["user"].

import os
import re
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from flask import Flask, request, redirect, g, session, flash, jsonify
from markupsafe import Markup, escape

# Database (psycopg 3)
import psycopg
from psycopg import conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

# Auth (Google / GitHub via Authlib, password hashes via Flask-Bcrypt)
from authlib.integrations.flask_client import OAuth
from flask_bcrypt import Bcrypt

from auth import create_auth_blueprint, resolve_avatar_url
from cache import TTLCache
from dashboard import create_dashboard_blueprint
from home import register_home_routes
from progress import format_time_spent
from quiz import create_quiz_blueprint
from quiz_loader import list_modules, get_module, list_quiz_numbers, load_quiz
from stores import AttemptStore, SummaryStore, CatalogStore


def _flag(name: str, default: str) -> bool:
    return (os.getenv(name, default) or "").lower() in {"1", "true", "yes"}


# =============================================================================
# App
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = f"{BASE_PATH}/static"

app = Flask(__name__, static_folder="static", static_url_path=STATIC_URL_PATH, template_folder="templates")
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=_flag("SESSION_COOKIE_SECURE", "1"),
)

bcrypt = Bcrypt(app)
dashboard_cache = TTLCache(default_ttl=float(os.getenv("DASHBOARD_CACHE_TTL") or 60))


def _bp(path: str = "") -> str:
    """`path` under BASE_PATH, unless it is already there."""
    p = "/" + (path or "").lstrip("/")
    if not BASE_PATH or p == BASE_PATH or p.startswith(BASE_PATH + "/"):
        return p
    return BASE_PATH + p


# =============================================================================
# OAuth providers (registered only when both id and secret are set)
# =============================================================================
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")
_PROVIDERS = {
    "google": {
        "server_metadata_url": "https://accounts.google.com/.well-known/openid-configuration",
        "client_kwargs": {"scope": "openid email profile"},
    },
    "github": {
        "access_token_url": "https://github.com/login/oauth/access_token",
        "authorize_url": "https://github.com/login/oauth/authorize",
        "api_base_url": "https://api.github.com/",
        "client_kwargs": {"scope": "read:user user:email"},
    },
}

oauth = OAuth(app)
OAUTH_PROVIDERS = set()
for _name, _settings in _PROVIDERS.items():
    _id = os.getenv(f"{_name.upper()}_CLIENT_ID")
    _secret = os.getenv(f"{_name.upper()}_CLIENT_SECRET")
    if _id and _secret:
        oauth.register(_name, client_id=_id, client_secret=_secret, **_settings)
        OAUTH_PROVIDERS.add(_name)

if not OAUTH_PROVIDERS:
    print("[auth] no OAuth providers configured; email/password sign-in only.", flush=True)


def _oauth_callback_url(provider: str) -> str:
    base = OAUTH_REDIRECT_BASE or request.url_root.rstrip("/") + BASE_PATH
    return f"{base}/auth/oauth/callback/{provider}"


# =============================================================================
# DB configuration: FORCE_TCP > DATABASE_URL_LOCAL > DATABASE_URL > DB_* vars
# =============================================================================
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)
_SA_SCHEME = re.compile(r"^postgres(?:ql)?\+psycopg2?://")
_CONN_DEFAULTS = {"connect_timeout": 10, "options": "-c search_path=public"}


def _dsn_from_url(url: str) -> str:
    """libpq DSN from a postgres URL (SQLAlchemy-style schemes accepted)."""
    url = _SA_SCHEME.sub("postgresql://", url.strip())
    if not conninfo.conninfo_to_dict(url).get("dbname"):
        raise ValueError("no dbname in URL")
    return conninfo.make_conninfo(url, **_CONN_DEFAULTS)


def _dsn_from_parts() -> str:
    name, user = os.getenv("DB_NAME"), os.getenv("DB_USER")
    password = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
    if not (name and user and password):
        raise RuntimeError("DB_NAME, DB_USER and DB_PASS must be set when DATABASE_URL is not.")
    return conninfo.make_conninfo(
        host=os.getenv("DB_HOST") or "127.0.0.1",
        port=int(os.getenv("DB_PORT") or 5432),
        dbname=name, user=user, password=password, sslmode="disable",
        **_CONN_DEFAULTS,
    )


def _resolve_dsn() -> str:
    if not _flag("FORCE_TCP", ""):
        for var in ("DATABASE_URL_LOCAL", "DATABASE_URL"):
            url = os.getenv(var)
            if not url:
                continue
            try:
                dsn = _dsn_from_url(url)
            except (ValueError, psycopg.ProgrammingError) as e:
                print(f"[db] ignoring {var}: {e}")
                continue
            print(f"[db] using {var}")
            return dsn
    print("[db] using DB_* settings over TCP")
    return _dsn_from_parts()


# =============================================================================
# psycopg3 pool + query helpers (rows as dicts)
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def init_pool():
    global _pg_pool
    if _pg_pool is None:
        _pg_pool = ConnectionPool(conninfo=_resolve_dsn(), min_size=1, max_size=DB_POOL_MAX, open=True)


@contextmanager
def get_conn():
    init_pool()
    with _pg_pool.connection() as conn:
        yield conn


def fetch_all(q, params=None):
    with get_conn() as conn, conn.cursor(row_factory=dict_row) as cur:
        cur.execute(q, params or ())
        return cur.fetchall()


def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q, params=None):
    with get_conn() as conn:
        conn.execute(q, params or ())
        conn.commit()


def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows


attempt_store = AttemptStore(fetch_one, fetch_all, execute_returning)
summary_store = SummaryStore(fetch_all, execute_returning)
catalog_store = CatalogStore(fetch_one, fetch_all, execute_returning)

# =============================================================================
# Question/explanation text: Markdown (or raw HTML), optionally bleached
# =============================================================================
ALLOW_RAW_HTML = _flag("ALLOW_RAW_HTML", "1")
SANITIZE_HTML = _flag("SANITIZE_HTML", "0")

_LOOKS_LIKE_HTML = re.compile(r"</?[a-zA-Z][^>]*>")
_CLEAN_TAGS = {
    "a", "b", "blockquote", "br", "code", "em", "i", "img", "li", "ol", "p", "pre",
    "span", "strong", "sub", "sup", "table", "tbody", "td", "th", "thead", "tr", "ul",
}
_CLEAN_ATTRS = {"*": ["class", "title"], "a": ["href", "title", "rel"], "img": ["src", "alt"]}


@lru_cache(maxsize=1024)
def _to_html(text: str, allow_raw: bool, sanitize: bool) -> str:
    if allow_raw and _LOOKS_LIKE_HTML.search(text):
        html = text
    else:
        import markdown
        html = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists"], output_format="html")
    if sanitize:
        import bleach
        html = bleach.clean(html, tags=_CLEAN_TAGS, attributes=_CLEAN_ATTRS,
                            protocols={"http", "https", "mailto"}, strip=True)
    return html


def render_rich(text: Any) -> Markup:
    if text is None or text == "":
        return Markup("")
    text = str(text)
    try:
        return Markup(_to_html(text, ALLOW_RAW_HTML, SANITIZE_HTML))
    except Exception as e:
        print(f"[render] plain-text fallback: {e}")
        return Markup(str(escape(text)).replace("\n", "<br/>"))


app.jinja_env.filters["rich"] = render_rich
app.jinja_env.filters["duration"] = format_time_spent

# =============================================================================
# Identity
# =============================================================================
def current_session_user() -> Optional[Dict[str, Any]]:
    u = session.get("user") or {}
    return u if u.get("id") and u.get("email") else None


def _sanitize_next(next_url: Optional[str]) -> str:
    """Local path to return to after sign-in; never the login pages themselves."""
    fallback = _bp("/home")
    if not next_url:
        return fallback
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return fallback
    path = parts.path or "/"
    if path in {"/", _bp("/")}:
        return fallback
    for auth_root in {"/auth", _bp("/auth")}:
        if path == auth_root or path.startswith(auth_root + "/"):
            return fallback
    return urlunsplit(("", "", path, parts.query, ""))


@app.context_processor
def inject_user_and_base():
    return {
        "current_user": getattr(g, "user", None),
        "base_path": BASE_PATH,
        "bp": _bp,
        "oauth_providers": sorted(OAUTH_PROVIDERS),
    }


# =============================================================================
# Health, logout, identity gate
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
    except Exception as e:
        return (f"error: {e}", 500)
    return ("ok", 200) if row and row.get("ok") == 1 else ("db-fail", 500)


@app.get("/favicon.ico")
def favicon():
    return ("", 204)


@app.get("/logout")
def logout():
    session.clear()
    flash("Signed out.", "success")
    return redirect(_bp("/"))


if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])

_PUBLIC_EXACT = {p for raw in ("/", "/favicon.ico", "/healthz", "/logout") for p in (raw, _bp(raw))}
_PUBLIC_PREFIXES = {"/auth", _bp("/auth")}


def _is_public_path(path: str) -> bool:
    if path.startswith(STATIC_URL_PATH) or path in _PUBLIC_EXACT:
        return True
    return any(path == p or path.startswith(p + "/") for p in _PUBLIC_PREFIXES)


def _is_api_path(path: str) -> bool:
    return path.startswith("/api/") or path.startswith(_bp("/api/"))


@app.before_request
def enforce_or_attach_identity():
    user = current_session_user()
    if user:
        g.user = user
        g.user_id = user["id"]
        g.user_email = user["email"]
        return
    if _is_public_path(request.path):
        return
    if _is_api_path(request.path):
        return jsonify({"ok": False, "error": "unauthorized"}), 401
    wanted = _sanitize_next(request.full_path if request.query_string else request.path)
    return redirect(f"{_bp('/')}?next={quote(wanted, safe='/:?&=')}")


# =============================================================================
# Route modules
# =============================================================================
app.register_blueprint(create_auth_blueprint(BASE_PATH, {
    "fetch_one": fetch_one,
    "execute_returning": execute_returning,
    "bcrypt": bcrypt,
    "oauth": oauth,
    "oauth_providers": OAUTH_PROVIDERS,
    "oauth_callback_url": _oauth_callback_url,
    "sanitize_next": _sanitize_next,
    "current_user": current_session_user,
}))

register_home_routes(app, BASE_PATH, {
    "list_modules": list_modules,
    "get_module": get_module,
    "list_quiz_numbers": list_quiz_numbers,
    "load_quiz": load_quiz,
})

app.register_blueprint(create_quiz_blueprint(BASE_PATH, {
    "attempt_store": attempt_store,
    "summary_store": summary_store,
    "catalog_store": catalog_store,
    "cache": dashboard_cache,
    "get_module": get_module,
    "load_quiz": load_quiz,
    "list_modules": list_modules,
    "list_quiz_numbers": list_quiz_numbers,
}))

app.register_blueprint(create_dashboard_blueprint(BASE_PATH, {
    "fetch_all": fetch_all,
    "attempt_store": attempt_store,
    "summary_store": summary_store,
    "catalog_store": catalog_store,
    "cache": dashboard_cache,
    "avatar_url": resolve_avatar_url,
}))


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 3000)), debug=True)
