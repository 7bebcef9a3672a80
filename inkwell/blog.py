#!/usr/bin/env python3
"""
A small personal blog + diary with content-addressed uploads.
"""

import os
import re
import secrets
import sqlite3
from collections import defaultdict, deque
from datetime import date, datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
import markdown
from flask import (
    Flask,
    Response,
    abort,
    g,
    redirect,
    render_template_string,
    request,
    send_from_directory,
    session,
    url_for,
)
from flask.cli import AppGroup
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

from inkwell.attachments import (
    AttachmentError,
    AttachmentSettings,
    ConsistencyError,
    LocalStorage,
    NotFoundError,
    PreconditionError,
    R2Storage,
    bind_upload,
    check_refcounts,
    delete_entry,
    list_with_references,
    load_hashes,
    manual_delete,
    rebuild_entry,
    register,
    repair_refcounts,
    split_stored_name,
    stage,
    sweep_orphans,
    sync_entry_attachments,
    unit_of_work,
)

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("INKWELL_DB", str(ROOT / "blog.sqlite3")))
UPLOAD_DIR = Path(os.environ.get("UPLOAD_DIR", str(ROOT / "uploads")))
SITE_URL = os.environ.get("SITE_URL", "")

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")

KINDS = ("post", "diary")
SLUG_RE = re.compile(r"^[a-z0-9-]+$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
UPLOAD_MAX_BYTES = int(os.environ.get("UPLOAD_MAX_BYTES", str(10 * 1024 * 1024)))
UPLOAD_URL_PREFIX = "/uploads"
STORAGE_BACKENDS = ("auto", "local", "r2")

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)

try:
    __version__ = version("inkwell")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    UPLOAD_DIR=str(UPLOAD_DIR),
    UPLOAD_URL_PREFIX=UPLOAD_URL_PREFIX,
    UPLOAD_MAX_BYTES=UPLOAD_MAX_BYTES,
    SITE_URL=SITE_URL,
    STORAGE_BACKEND=os.environ.get("STORAGE_BACKEND", "auto"),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.superfences",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]

md = markdown.Markdown(extensions=MD_EXTENSIONS)


def render_markdown_html(text: str | None) -> str:
    md.reset()
    return md.convert(text or "")


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown_html(text))


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        return datetime.fromisoformat(iso).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return iso


###############################################################################
# Database helpers
###############################################################################
def connect_db(path: str):
    db = sqlite3.connect(path, timeout=15)
    db.execute("PRAGMA foreign_keys = ON;")
    db.row_factory = sqlite3.Row
    return db


def get_db():
    if "db" not in g:
        g.db = connect_db(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Account
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id          INTEGER PRIMARY KEY,
            username    TEXT UNIQUE NOT NULL,
            token_hash  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Entries (posts + diary days)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS entry (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            kind          TEXT NOT NULL,               -- post | diary
            title         TEXT,
            slug          TEXT NOT NULL,               -- diary: YYYY-MM-DD
            body          TEXT NOT NULL DEFAULT '',
            status        TEXT NOT NULL DEFAULT 'draft',
            hidden        INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL,
            updated_at    TEXT,
            published_at  TEXT,
            asset_hashes  TEXT NOT NULL DEFAULT '[]',  -- JSON array of sha256
            UNIQUE (kind, slug)
        );

        CREATE TABLE IF NOT EXISTS revision (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            entry_id    INTEGER NOT NULL,
            body        TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            FOREIGN KEY (entry_id) REFERENCES entry(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_revision_entry ON revision(entry_id);

        ------------------------------------------------------------
        -- 3.  Content-addressed uploads
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS attachment (
            sha256      TEXT PRIMARY KEY,
            ext         TEXT NOT NULL DEFAULT '',
            mime        TEXT NOT NULL,
            size        INTEGER NOT NULL DEFAULT 0,
            path        TEXT NOT NULL,
            ref_count   INTEGER NOT NULL DEFAULT 0 CHECK (ref_count >= 0),
            created_at  TEXT NOT NULL,
            updated_at  TEXT
        );

        ------------------------------------------------------------
        -- 4.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );
        INSERT OR IGNORE INTO settings (key, value)
            VALUES ('site_name', 'inkwell');
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# Settings + storage configuration
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def make_storage():
    backend = app.config.get("STORAGE_BACKEND", "auto")
    if backend not in STORAGE_BACKENDS:
        raise RuntimeError(f"Unknown STORAGE_BACKEND {backend!r}")
    if backend == "local":
        return LocalStorage(app.config["UPLOAD_DIR"])
    cfg = r2_config()
    if r2_is_configured(cfg):
        return R2Storage(cfg)
    if backend == "r2":
        raise RuntimeError("STORAGE_BACKEND=r2 but R2 credentials are missing")
    return LocalStorage(app.config["UPLOAD_DIR"])


def attachment_settings() -> AttachmentSettings:
    """Snapshot of the current app config for the attachment core."""
    return AttachmentSettings(
        storage=make_storage(),
        url_prefix=app.config["UPLOAD_URL_PREFIX"],
        site_origin=app.config.get("SITE_URL") or None,
    )


###############################################################################
# CLI – create admin + token
###############################################################################
def _create_admin(db, *, username: str) -> str:
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute(
        "INSERT INTO user (username, token_hash) VALUES (?,?)",
        (username, hash_token(handle)),
    )
    db.commit()
    return token


def _rotate_token(db) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute("UPDATE user SET token_hash=? WHERE id=1", (hash_token(handle),))
    db.commit()
    return token


@app.cli.command("init")
@click.option(
    "--username", prompt=True, help="Admin username (will be created if DB empty)"
)
def cli_init(username: str):
    """Initialise DB *and* create the first admin account."""
    init_db()  # no-op if already there
    db = get_db()
    token = _create_admin(db, username=username.strip())

    click.secho("\n✅  Admin created.", fg="green")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("token")
def cli_token():
    """Rotate the admin’s one-time login token."""
    db = get_db()
    token = _rotate_token(db)

    click.secho("\n🔑  Fresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


attachments_cli = AppGroup("attachments", help="Inspect and repair uploaded attachments.")


@attachments_cli.command("check")
@click.option("--fix", is_flag=True, help="Rewrite reference counts to match the entries.")
def cli_attachments_check(fix: bool):
    """Compare stored reference counts with what entries actually cite."""
    db = get_db()
    if fix:
        with unit_of_work(db) as uow:
            drift = repair_refcounts(uow=uow, settings=attachment_settings())
    else:
        drift = check_refcounts(db)

    if not drift:
        click.secho("✅  Reference counts are consistent.", fg="green")
        return
    for d in drift:
        stored = "missing" if d.stored is None else d.stored
        click.echo(f"{d.sha256}  stored={stored}  expected={d.expected}")
    if fix:
        click.secho(f"\n🔧  Repaired {len(drift)} attachment(s).", fg="yellow")
    else:
        click.secho(f"\n⚠️  {len(drift)} attachment(s) drifted. Re-run with --fix.", fg="red")
        raise SystemExit(1)


@attachments_cli.command("sweep")
@click.option("--dry-run", is_flag=True, help="Only list orphaned files.")
def cli_attachments_sweep(dry_run: bool):
    """Delete stored files that no attachment record points to."""
    orphans = sweep_orphans(get_db(), make_storage(), dry_run=dry_run)
    for name in orphans:
        click.echo(name)
    verb = "Would delete" if dry_run else "Deleted"
    click.secho(f"{verb} {len(orphans)} orphaned file(s).", fg="yellow" if orphans else "green")


@attachments_cli.command("rebuild")
def cli_attachments_rebuild():
    """Re-derive every entry's attachment set from its body."""
    db = get_db()
    settings = attachment_settings()
    changed = 0
    ids = [row["id"] for row in db.execute("SELECT id FROM entry ORDER BY id")]
    for entry_id in ids:
        with unit_of_work(db) as uow:
            if rebuild_entry(entry_id, uow=uow, settings=settings).changed:
                changed += 1
    click.secho(f"Rebuilt {len(ids)} entries, {changed} changed.", fg="green")


app.cli.add_command(attachments_cli)


###############################################################################
# Authentication
###############################################################################
def validate_token(token: str, max_age: int = 60) -> bool:
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return False
    except BadSignature:
        return False

    row = get_db().execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    return bool(row) and verify_token(row["token_hash"], handle)


def login_required() -> None:
    if not session.get("logged_in"):
        abort(403)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _csrf_token() -> str:
    return session.get("csrf", "")


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return
    if not session.get("logged_in"):
        return
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST" and token and validate_token(token):
        # burn the token right away
        db = get_db()
        db.execute(
            "UPDATE user SET token_hash=? WHERE id=1",
            (hash_token(secrets.token_hex(16)),),
        )
        db.commit()

        session.clear()
        session.permanent = True
        session["logged_in"] = True
        session["csrf"] = secrets.token_hex(16)
        return redirect(url_for("index"))

    return render_template_string(TEMPL_LOGIN, title=get_setting("site_name", "inkwell"))


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["get_setting"] = get_setting
app.jinja_env.globals["version"] = __version__


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'inkwell' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;font-size:1.1rem;line-height:1.6;max-width:38em;margin:auto;padding:13px;color:#c9c9c9;background:#222}
a{color:#fff}img,video{max-width:100%;height:auto}pre,code{background:#4a4a4a}
nav{display:flex;gap:1rem;margin-bottom:1rem}
</style>
<body>
<header>
  <h1 style="margin-bottom:.25rem"><a href="{{ url_for('index') }}" style="text-decoration:none">{{ get_setting('site_name', 'inkwell') }}</a></h1>
  <nav>
    <a href="{{ url_for('index') }}">Posts</a>
    <a href="{{ url_for('diary_index') }}">Diary</a>
    {% if session.get('logged_in') %}
      <a href="{{ url_for('logout') }}">Log out</a>
    {% endif %}
  </nav>
</header>
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:2em;padding-top:1em;font-size:.8em;color:#888;border-top:1px solid #444;">
  Built with inkwell <span>v{{ version }}</span>
</footer>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
{% for e in entries %}
  <article style="margin-bottom:2rem">
    <h2><a href="{{ url_for('post_detail', slug=e['slug']) }}">{{ e['title'] }}</a></h2>
    <small>{{ e['published_at']|ts }}</small>
  </article>
{% else %}
  <p>Nothing published yet.</p>
{% endfor %}
""")

TEMPL_DIARY_INDEX = wrap("""
<ul>
{% for e in entries %}
  <li><a href="{{ url_for('diary_detail', day=e['slug']) }}">{{ e['slug'] }}</a></li>
{% else %}
  <li>No diary entries yet.</li>
{% endfor %}
</ul>
""")

TEMPL_ENTRY = wrap("""
<article class="h-entry">
  {% if e['title'] %}<h2>{{ e['title'] }}</h2>{% endif %}
  <div class="e-content">{{ e['body']|md }}</div>
  <small>{{ e['published_at']|ts }}</small>
</article>
""")

TEMPL_LOGIN = wrap("""
<hr>
<form method="post">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}
  <label for="token">token</label>
  <input id="token" name="token" type="password" autocomplete="current-password">
  <button type="submit">Sign in</button>
</form>
""")

TEMPL_404 = wrap("""
<hr>
<h2 style="margin-top:0">Page not found</h2>
<p>The URL you asked for doesn’t exist.
   <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
""")

TEMPL_500 = wrap("""
<hr>
<h2 style="margin-top:0">Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# Public pages
###############################################################################
@app.route("/")
def index():
    db = get_db()
    entries = db.execute(
        """SELECT * FROM entry
            WHERE kind='post' AND status='published' AND hidden=0
         ORDER BY published_at DESC, id DESC"""
    ).fetchall()
    return render_template_string(
        TEMPL_INDEX, entries=entries, title=get_setting("site_name", "inkwell")
    )


@app.route("/posts/<slug>")
def post_detail(slug):
    row = get_db().execute(
        "SELECT * FROM entry WHERE kind='post' AND slug=? AND status='published'",
        (slug,),
    ).fetchone()
    if not row or (row["hidden"] and not session.get("logged_in")):
        abort(404)
    return render_template_string(TEMPL_ENTRY, e=row, title=row["title"])


@app.route("/diary")
def diary_index():
    entries = get_db().execute(
        "SELECT slug FROM entry WHERE kind='diary' AND status='published' ORDER BY slug DESC"
    ).fetchall()
    return render_template_string(
        TEMPL_DIARY_INDEX, entries=entries, title=get_setting("site_name", "inkwell")
    )


@app.route("/diary/<day>")
def diary_detail(day):
    row = get_db().execute(
        "SELECT * FROM entry WHERE kind='diary' AND slug=? AND status='published'",
        (day,),
    ).fetchone()
    if not row:
        abort(404)
    return render_template_string(TEMPL_ENTRY, e=row, title=row["title"] or day)


@app.route(f"{UPLOAD_URL_PREFIX}/<name>")
def uploaded_file(name):
    if split_stored_name(name) is None:
        abort(404)
    storage = make_storage()
    url = storage.public_url(name)
    if url:
        return redirect(url)
    return send_from_directory(
        app.config["UPLOAD_DIR"], name, max_age=60 * 60 * 24 * 365
    )


###############################################################################
# Entries API
###############################################################################
def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _text(data: dict, key: str) -> str | None:
    """Stripped string value; "" when absent or null, None when not a string."""
    value = data.get(key)
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else None


def _entry_dict(row) -> dict:
    return {
        "id": row["id"],
        "kind": row["kind"],
        "title": row["title"],
        "slug": row["slug"],
        "body": row["body"],
        "status": row["status"],
        "hidden": bool(row["hidden"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "published_at": row["published_at"],
        "asset_hashes": load_hashes(row["asset_hashes"]),
    }


def _load_entry(entry_id: int, *, db):
    row = db.execute("SELECT * FROM entry WHERE id=?", (entry_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"Entry {entry_id} not found.")
    return row


@app.route("/api/entries", methods=["POST"])
def api_create_entry():
    login_required()
    data = _json_body()
    if data is None:
        return {"error": "Request body must be a JSON object."}, 400

    kind = data.get("kind") or "post"
    if kind not in KINDS:
        return {"error": f"kind must be one of {', '.join(KINDS)}."}, 422
    body = data.get("body")
    if not isinstance(body, str) or not body.strip():
        return {"error": "Body must not be empty."}, 422

    if kind == "diary":
        slug = str(data.get("date") or utc_now().date().isoformat())
        try:
            date.fromisoformat(slug)
        except ValueError:
            return {"error": "date must be YYYY-MM-DD."}, 422
        if not DATE_RE.match(slug):
            return {"error": "date must be YYYY-MM-DD."}, 422
        title = _text(data, "title")
        if title is None:
            return {"error": "Title must be a string."}, 422
        title = title or slug
    else:
        title, slug = _text(data, "title"), _text(data, "slug")
        if not title:
            return {"error": "Title must not be empty."}, 422
        if not slug or not SLUG_RE.match(slug):
            return {"error": "Slug may only contain a-z, 0-9 and dashes."}, 422

    db = get_db()
    try:
        with unit_of_work(db) as uow:
            cur = db.execute(
                """INSERT INTO entry (kind, title, slug, body, hidden, created_at)
                        VALUES (?,?,?,?,?,?)""",
                (kind, title, slug, body, int(bool(data.get("hidden"))), _now_iso()),
            )
            entry_id = cur.lastrowid
            result = sync_entry_attachments(
                entry_id, body, uow=uow, settings=attachment_settings()
            )
    except sqlite3.IntegrityError:
        return {"error": f"A {kind} with slug {slug!r} already exists."}, 409

    return {"id": entry_id, "slug": slug, "asset_hashes": list(result.desired)}, 201


@app.route("/api/entries/<int:entry_id>", methods=["GET"])
def api_get_entry(entry_id):
    login_required()
    return _entry_dict(_load_entry(entry_id, db=get_db()))


@app.route("/api/entries/<int:entry_id>", methods=["PATCH"])
def api_update_entry(entry_id):
    login_required()
    data = _json_body()
    if not data:
        return {"error": "Nothing to update."}, 400

    fields: dict[str, object] = {}
    if "title" in data:
        title = _text(data, "title")
        if not title:
            return {"error": "Title must not be empty."}, 422
        fields["title"] = title
    if "slug" in data:
        slug = _text(data, "slug")
        if not slug or not SLUG_RE.match(slug):
            return {"error": "Slug may only contain a-z, 0-9 and dashes."}, 422
        fields["slug"] = slug
    if "body" in data:
        body = data["body"]
        if not isinstance(body, str) or not body.strip():
            return {"error": "Body must not be empty."}, 422
        fields["body"] = body
    if "hidden" in data:
        fields["hidden"] = int(bool(data["hidden"]))
    if not fields:
        return {"error": "Nothing to update."}, 400

    db = get_db()
    settings = attachment_settings()
    try:
        with unit_of_work(db) as uow:
            row = _load_entry(entry_id, db=db)
            if row["kind"] == "diary" and "slug" in fields and not DATE_RE.match(fields["slug"]):
                return {"error": "A diary slug must be YYYY-MM-DD."}, 422

            now = _now_iso()
            fields["updated_at"] = now
            assignments = ", ".join(f"{k}=?" for k in fields)
            db.execute(
                f"UPDATE entry SET {assignments} WHERE id=?",
                (*fields.values(), entry_id),
            )

            result = None
            if "body" in fields:
                if row["status"] == "published" and fields["body"] != row["body"]:
                    db.execute(
                        "INSERT INTO revision (entry_id, body, created_at) VALUES (?,?,?)",
                        (entry_id, fields["body"], now),
                    )
                result = sync_entry_attachments(
                    entry_id, fields["body"], uow=uow, settings=settings
                )
    except sqlite3.IntegrityError:
        return {"error": f"Slug {fields.get('slug')!r} is already taken."}, 409

    payload = {"id": entry_id}
    if result is not None:
        payload["attachments"] = result.to_dict()
    return payload


@app.route("/api/entries/<int:entry_id>", methods=["DELETE"])
def api_delete_entry(entry_id):
    login_required()
    with unit_of_work(get_db()) as uow:
        result = delete_entry(entry_id, uow=uow, settings=attachment_settings())
    return {"id": entry_id, "released": list(result.released)}


@app.route("/api/entries/<int:entry_id>/publish", methods=["POST"])
def api_publish_entry(entry_id):
    login_required()
    db = get_db()
    with unit_of_work(db) as uow:
        row = _load_entry(entry_id, db=db)
        if row["status"] != "draft":
            raise PreconditionError("Only drafts can be published.")
        if not (row["body"] or "").strip():
            raise PreconditionError("An empty entry cannot be published.")
        now = _now_iso()
        db.execute(
            "UPDATE entry SET status='published', published_at=?, updated_at=? WHERE id=?",
            (now, now, entry_id),
        )
        result = sync_entry_attachments(
            entry_id, row["body"], uow=uow, settings=attachment_settings()
        )
    return {"id": entry_id, "published_at": now, "asset_hashes": list(result.desired)}


@app.route("/api/entries/<int:entry_id>/assets/rebuild", methods=["POST"])
def api_rebuild_entry_assets(entry_id):
    login_required()
    with unit_of_work(get_db()) as uow:
        result = rebuild_entry(entry_id, uow=uow, settings=attachment_settings())
    return {"hashes": list(result.desired), **result.to_dict()}


###############################################################################
# Uploads + attachment admin
###############################################################################
@app.route("/api/upload", methods=["POST"])
def api_upload():
    login_required()

    max_bytes = app.config["UPLOAD_MAX_BYTES"]
    clen = request.content_length
    if clen and clen > max_bytes + 64 * 1024:  # multipart overhead
        return {"error": f"File too large ({max_bytes // (1024 * 1024)} MiB max)."}, 413

    f = request.files.get("file")
    if f is None or not f.filename:
        return {"error": "No file received."}, 400

    raw_entry = request.form.get("entry_id", "").strip()
    entry_id = None
    if raw_entry:
        if not raw_entry.isdigit():
            return {"error": "entry_id must be an integer."}, 400
        entry_id = int(raw_entry)

    data = f.read()
    if not data:
        return {"error": "File is empty."}, 400
    if len(data) > max_bytes:
        return {"error": f"File too large ({max_bytes // (1024 * 1024)} MiB max)."}, 413

    db = get_db()
    if entry_id is not None:
        _load_entry(entry_id, db=db)  # 404 before anything is written

    settings = attachment_settings()
    staged = stage(data, f.filename, f.mimetype, db=db, settings=settings)
    with unit_of_work(db) as uow:
        stored = register(staged, data, uow=uow, settings=settings)
        if entry_id is not None:
            bind_upload(entry_id, stored.sha256, uow=uow, settings=settings)

    return stored.to_dict(), 201


@app.route("/api/attachments", methods=["GET"])
def api_list_attachments():
    login_required()
    return {"attachments": list_with_references(get_db())}


@app.route("/api/attachments/<sha256>", methods=["DELETE"])
def api_delete_attachment(sha256):
    login_required()
    with unit_of_work(get_db()) as uow:
        record = manual_delete(sha256.lower(), uow=uow, settings=attachment_settings())
    return {"deleted": record.sha256}


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(AttachmentError)
def attachment_error(exc):
    if isinstance(exc, ConsistencyError):
        app.logger.exception("attachment registry inconsistency")
    return {"error": str(exc)}, exc.status_code


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(
        TEMPL_404, title=get_setting("site_name", "inkwell")
    ), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.  With debug on, Flask bypasses this
    handler and shows the Werkzeug traceback instead.
    """
    return render_template_string(
        TEMPL_500, title=get_setting("site_name", "inkwell")
    ), 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
