#!/usr/bin/env python3
"""
A single-file personal blog with block-document post bodies.
"""

import json
import os
import re
import secrets
import sqlite3
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

from simplicity import blocks

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("SIMPLICITY_DATABASE", ROOT / "blog.sqlite3"))

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")

SITE_NAME_DEFAULT = "simplicity"
ACCENT = "#e0b060"
STATUSES = ("draft", "published")
PAGE_DEFAULT = 9
HOME_LIMIT = 3
API_LIMIT_DEFAULT = 10
API_LIMIT_MAX = 100
RELATED_LIMIT = 3
FEED_LIMIT = 50
EXCERPT_LEN = blocks.EXCERPT_DEFAULT
RFC2822_FMT = "%a, %d %b %Y %H:%M:%S %z"

_SLUG_DROP_RE = re.compile(r"[^\w\s-]")
_SLUG_DASH_RE = re.compile(r"[\s_-]+")

try:
    __version__ = version("simplicity")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    SITE_URL=os.environ.get("SITE_URL", "").rstrip("/"),
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    SESSION_COOKIE_SECURE=os.environ.get("SESSION_COOKIE_SECURE", "1") != "0",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("blocks")
def blocks_filter(body: str | None) -> Markup:
    """Stored post body (plain text or block JSON) → HTML."""
    return blocks.render_html(body, class_name="e-content")


@app.template_filter("reading_time")
def reading_time_filter(body: str | None) -> int:
    return blocks.reading_time(body)


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return dt.strftime("%Y.%m.%d")


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
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
        -- 1.  Account + settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id          INTEGER PRIMARY KEY,
            username    TEXT UNIQUE NOT NULL,
            token_hash  TEXT
        );

        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );

        INSERT OR IGNORE INTO settings (key, value) VALUES
            ('site_name',    'simplicity'),
            ('site_tagline', ''),
            ('page_size',    '9');

        ------------------------------------------------------------
        -- 2.  Posts  (body = legacy plain text OR block-document JSON)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post (
            id            INTEGER PRIMARY KEY,
            title         TEXT NOT NULL,
            slug          TEXT UNIQUE NOT NULL,
            body          TEXT NOT NULL DEFAULT '',
            excerpt       TEXT,
            status        TEXT NOT NULL DEFAULT 'draft'
                              CHECK (status IN ('draft','published')),
            header_image  TEXT,
            views         INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL,
            updated_at    TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_post_status_created
            ON post(status, created_at DESC);

        ------------------------------------------------------------
        -- 3.  Tags
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tag (
            id     INTEGER PRIMARY KEY,
            name   TEXT UNIQUE NOT NULL,
            label  TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS post_tag (
            post_id INTEGER NOT NULL,
            tag_id  INTEGER NOT NULL,
            PRIMARY KEY (post_id, tag_id),
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE,
            FOREIGN KEY (tag_id)  REFERENCES tag(id)  ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_post_tag_tag ON post_tag(tag_id);
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# CLI – create admin + token + body migration
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


def migrate_bodies(db, *, dry_run: bool = False) -> tuple[int, int]:
    """
    Compile every legacy plain-text post body into a stored block document.

    Structured and empty bodies are left alone, so running this twice is a
    no-op.  Returns ``(converted, skipped)``.
    """
    converted = skipped = 0
    rows = db.execute("SELECT id, body FROM post ORDER BY id").fetchall()
    for row in rows:
        if blocks.detect_format(row["body"]) != "plain":
            skipped += 1
            continue
        if not dry_run:
            doc = blocks.compile_text(row["body"])
            db.execute(
                "UPDATE post SET body=?, updated_at=? WHERE id=?",
                (blocks.dumps(doc), now_iso(), row["id"]),
            )
        converted += 1
    if not dry_run:
        db.commit()
    return converted, skipped


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


@app.cli.command("migrate-bodies")
@click.option("--dry-run", is_flag=True, help="Only report what would change.")
def cli_migrate_bodies(dry_run: bool):
    """Convert legacy plain-text post bodies into block documents."""
    init_db()
    converted, skipped = migrate_bodies(get_db(), dry_run=dry_run)
    verb = "Would convert" if dry_run else "Converted"
    click.secho(f"{verb} {converted} post(s), skipped {skipped}.", fg="green")
    if not dry_run:
        app.logger.info("migrate-bodies: %d converted, %d skipped", converted, skipped)


###############################################################################
# Content helpers
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def site_name() -> str:
    return get_setting("site_name", SITE_NAME_DEFAULT) or SITE_NAME_DEFAULT


def site_url() -> str:
    """Absolute base for feeds: the configured SITE_URL or the request root."""
    return app.config.get("SITE_URL") or request.url_root.rstrip("/")


# Pagination helpers
def page_size() -> int:
    try:
        return max(1, int(get_setting("page_size", PAGE_DEFAULT)))
    except (TypeError, ValueError):
        return PAGE_DEFAULT


def int_arg(name: str, default: int, *, minimum: int = 1, maximum: int | None = None):
    """Read a numeric query parameter, clamped; garbage → *default*."""
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    value = max(minimum, value)
    return min(value, maximum) if maximum else value


def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    pages = (total + per_page - 1) // per_page
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, total, pages


# Slugs
def slugify(text: str) -> str:
    """
    "Hello, World!" → "hello-world".  Falls back to "post" when nothing
    word-like is left.
    """
    s = _SLUG_DROP_RE.sub("", (text or "").lower()).strip()
    s = _SLUG_DASH_RE.sub("-", s).strip("-")
    return s or "post"


def unique_slug(base: str, *, db, exclude_id: int | None = None) -> str:
    """Append -2, -3, … until *base* is free (ignoring post *exclude_id*)."""
    slug, n = base, 1
    while True:
        row = db.execute("SELECT id FROM post WHERE slug=?", (slug,)).fetchone()
        if row is None or row["id"] == exclude_id:
            return slug
        n += 1
        slug = f"{base}-{n}"


# Bodies
def store_body(value) -> str:
    """
    Normalise incoming body content for the `post.body` column: mappings
    (an editor document) are serialized, strings are kept as written.
    """
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, blocks.Document):
        return blocks.dumps(value)
    return str(value or "").strip()


def body_for_api(raw: str | None):
    """Structured bodies go out as JSON objects, legacy text as a string."""
    if blocks.is_structured(raw):
        return json.loads(raw)
    return raw or ""


def body_for_editing(raw: str | None) -> str:
    if blocks.is_structured(raw):
        return json.dumps(json.loads(raw), indent=2, ensure_ascii=False)
    return raw or ""


def derive_excerpt(body: str, excerpt: str | None = None) -> str:
    excerpt = (excerpt or "").strip()
    return excerpt or blocks.excerpt(body, EXCERPT_LEN)


# Tags
def normalize_tag_name(name: str | None) -> str:
    return (name or "").strip().lower()


def ensure_tags(names, *, db) -> list[int]:
    """Return tag ids for *names*, creating the missing ones."""
    ids: list[int] = []
    for raw in names:
        name = normalize_tag_name(raw)
        if not name:
            continue
        db.execute(
            "INSERT OR IGNORE INTO tag (name, label) VALUES (?,?)", (name, raw.strip())
        )
        tag_id = db.execute("SELECT id FROM tag WHERE name=?", (name,)).fetchone()["id"]
        if tag_id not in ids:
            ids.append(tag_id)
    return ids


def resolve_tag_ids(raw, *, db) -> list[int]:
    """
    API tag list → existing tag ids.  Accepts ids, numeric strings and
    ``{"id": …}`` objects; unknown ids are dropped.
    """
    if not isinstance(raw, list):
        return []
    wanted: list[int] = []
    for t in raw:
        if isinstance(t, dict):
            t = t.get("id")
        try:
            tag_id = int(t)
        except (TypeError, ValueError):
            continue
        if tag_id not in wanted:
            wanted.append(tag_id)
    if not wanted:
        return []
    qs = ",".join("?" * len(wanted))
    found = {r["id"] for r in db.execute(f"SELECT id FROM tag WHERE id IN ({qs})", wanted)}
    return [t for t in wanted if t in found]


def set_post_tags(post_id: int, tag_ids: list[int], *, db):
    """Replace the tag set of *post_id* with *tag_ids*."""
    cur = {
        r["tag_id"]
        for r in db.execute("SELECT tag_id FROM post_tag WHERE post_id=?", (post_id,))
    }
    new = set(tag_ids)
    for tag_id in new - cur:
        db.execute("INSERT OR IGNORE INTO post_tag VALUES (?,?)", (post_id, tag_id))
    for tag_id in cur - new:
        db.execute(
            "DELETE FROM post_tag WHERE post_id=? AND tag_id=?", (post_id, tag_id)
        )


def post_tags(post_id: int, *, db) -> list:
    return db.execute(
        "SELECT t.* FROM tag t JOIN post_tag pt ON t.id=pt.tag_id "
        "WHERE pt.post_id=? ORDER BY t.name",
        (post_id,),
    ).fetchall()


def tags_for_posts(post_ids, *, db) -> dict[int, list]:
    """{post_id: [tag rows …]} for a page of posts in one query."""
    out: dict[int, list] = {pid: [] for pid in post_ids}
    if not out:
        return out
    qs = ",".join("?" * len(out))
    for r in db.execute(
        f"SELECT pt.post_id, t.* FROM post_tag pt JOIN tag t ON t.id=pt.tag_id "
        f"WHERE pt.post_id IN ({qs}) ORDER BY t.name",
        tuple(out),
    ):
        out[r["post_id"]].append(r)
    return out


def all_tags(*, db) -> list:
    return db.execute(
        """
        SELECT t.id, t.name, t.label,
               (SELECT COUNT(*) FROM post_tag pt WHERE pt.tag_id=t.id) AS cnt
          FROM tag t
      ORDER BY t.name
        """
    ).fetchall()


# Queries
def _like(term: str) -> str:
    return "%" + term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"


def post_query(
    *,
    status: str | None = "published",
    tag: str | None = None,
    search: str | None = None,
    slug: str | None = None,
) -> tuple[str, tuple]:
    """Build the filtered, newest-first post listing SQL."""
    where, params = [], []
    if status:
        where.append("p.status=?")
        params.append(status)
    if tag:
        where.append(
            "p.id IN (SELECT pt.post_id FROM post_tag pt "
            "JOIN tag t ON t.id=pt.tag_id WHERE t.name=?)"
        )
        params.append(normalize_tag_name(tag))
    if search:
        where.append(
            "(p.title LIKE ? ESCAPE '\\' OR IFNULL(p.excerpt,'') LIKE ? ESCAPE '\\')"
        )
        params += [_like(search), _like(search)]
    if slug:
        where.append("p.slug=?")
        params.append(slug)
    sql = "SELECT p.* FROM post p"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY p.created_at DESC, p.id DESC"
    return sql, tuple(params)


def get_post(post_id: int, *, db):
    return db.execute("SELECT * FROM post WHERE id=?", (post_id,)).fetchone()


def related_posts(post, *, db, limit: int = RELATED_LIMIT) -> list:
    """Published posts sharing at least one tag with *post*, newest first."""
    return db.execute(
        """
        SELECT DISTINCT p.*
          FROM post p
          JOIN post_tag pt ON pt.post_id = p.id
         WHERE pt.tag_id IN (SELECT tag_id FROM post_tag WHERE post_id=?)
           AND p.id != ?
           AND p.status = 'published'
      ORDER BY p.created_at DESC, p.id DESC
         LIMIT ?
        """,
        (post["id"], post["id"], limit),
    ).fetchall()


def bump_views(post_id: int, *, db) -> None:
    db.execute("UPDATE post SET views = views + 1 WHERE id=?", (post_id,))
    db.commit()


def save_post(values: dict, *, db, post_id: int | None = None, tag_ids=None) -> int:
    """
    Insert (or update, when *post_id* is given) one post row from *values*
    (title, slug, body, excerpt, status, header_image).  Tag ids are synced
    when given.  Raises sqlite3.IntegrityError on a taken slug.
    """
    cols = ("title", "slug", "body", "excerpt", "status", "header_image")
    ts = now_iso()
    if post_id is None:
        cur = db.execute(
            "INSERT INTO post (title, slug, body, excerpt, status, header_image,"
            " created_at, updated_at) VALUES (?,?,?,?,?,?,?,?)",
            tuple(values.get(c) for c in cols) + (ts, ts),
        )
        post_id = cur.lastrowid
    else:
        sets = [c for c in cols if c in values]
        db.execute(
            f"UPDATE post SET {', '.join(f'{c}=?' for c in sets)}, updated_at=? "
            "WHERE id=?",
            tuple(values[c] for c in sets) + (ts, post_id),
        )
    if tag_ids is not None:
        set_post_tags(post_id, tag_ids, db=db)
    db.commit()
    return post_id


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


def _highlight(text: str | None, q: str | None) -> Markup:
    """
    Escape *text* and wrap every occurrence of a search term in <mark>.
    Returns a Jinja-safe `Markup` object.
    """
    if not text:
        return Markup("")
    safe = str(escape(text))
    terms = [str(escape(t)) for t in (q or "").split() if t]
    if not terms:
        return Markup(safe)
    pattern = re.compile("|".join(re.escape(t) for t in terms), re.I)
    return Markup(pattern.sub(lambda m: f"<mark>{m.group(0)}</mark>", safe))


# Expose helpers to templates
app.jinja_env.globals.update(get_setting=get_setting, site_name=site_name)
app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["highlight"] = _highlight
app.jinja_env.globals["version"] = __version__
app.jinja_env.globals["accent"] = ACCENT


###############################################################################
# Templates + Views
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="{{ site_name() }} – a personal blog">
<link rel="alternate" type="application/rss+xml"
      href="{{ url_for('rss') }}" title="{{ site_name() }} – RSS">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,"Noto Sans",sans-serif}body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:#c9c9c9;background-color:#222222;padding:13px}@media (max-width:684px){body{font-size:1.75rem}pre,pre>code{white-space:pre-wrap;word-break:break-word;}}h1,h2,h3{line-height:1.1;font-weight:700;margin-top:3rem;margin-bottom:1.5rem;overflow-wrap:break-word}h1{font-size:2.35em}h2{font-size:1.7em}h3{font-size:1.55em}p{margin-top:0;margin-bottom:2.5rem;hyphens:auto}hr{border-color:#ffffff}a{color:#ffffff;text-decoration:underline;text-decoration-color:transparent;text-decoration-thickness:2px;text-underline-offset:0.18em}a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}ul,ol{padding-left:1.4em;margin-top:0;margin-bottom:2.5rem}li{margin-bottom:0.4em}blockquote{margin-left:0;margin-right:0;padding:0.8em 0.8em 0.8em 1em;border-left:5px solid #ffffff;margin-bottom:2.5rem;background-color:#4a4a4a}blockquote p{margin-bottom:0.75em}img{height:auto;max-width:100%}figure{margin:0 0 2.5rem 0}figcaption{font-size:.8em;color:#aaa}pre{background-color:#4a4a4a;display:block;padding:1em;overflow-x:auto;margin-top:0;margin-bottom:2.5rem;font-size:0.9em}code{font-size:0.9em;padding:0 0.5em;background-color:#4a4a4a;white-space:pre-wrap;word-break:break-word}pre>code{padding:0;background-color:transparent;white-space:pre;font-size:1em}mark{background:transparent;color:{{ accent }};border-bottom:2px solid {{ accent }}}table{width:100%;border-collapse:collapse;margin-bottom:2rem}td,th{padding:0.5em;border-bottom:1px solid #4a4a4a;text-align:left}textarea{width:100%}button,input[type=submit]{display:inline-block;padding:5px 10px;text-align:center;white-space:nowrap;background-color:#ffffff;color:#222222;border-radius:1px;border:1px solid #ffffff;cursor:pointer}button:hover,input[type=submit]:hover{background-color:#c9c9c9}textarea,select,input{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background-color:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box}textarea:focus,select:focus,input:focus{border:1px solid #ffffff;outline:0}label{display:block;margin-bottom:0.5rem;font-weight:600}
.nav-primary{display:flex;gap:1.25rem;align-items:center;flex-wrap:wrap;margin-bottom:1rem;font-size:.9em}
.nav-primary .nav-auth{margin-left:auto}
nav a[aria-current=page]{color:#c9c9c9;text-decoration-color:currentColor}
.post-card{margin-bottom:2.5rem}
.post-card h3{margin:0 0 .5rem 0}
.post-meta{font-size:.8em;color:#888}
.pill{display:inline-block;padding:.05em .6em;margin-right:.3em;background:#444;color:#fff;border-radius:1em;font-size:.75em;text-decoration:none}
.writing-area{font-size:1.05em;line-height:1.6;padding:12px 14px;width:100%;min-height:14rem;background:#2b2b2b;border:1px solid #555;border-radius:8px;font-family:ui-monospace,monospace}
.writing-input{font-size:1.02em;padding:10px 12px;width:100%;background:#2b2b2b;border:1px solid #555;border-radius:8px}
.header-image{width:100%;margin-bottom:2rem}
</style>
<body>
{% macro post_card(p, tags=(), q='') -%}
<article class="h-entry post-card">
    <h3><a class="u-url p-name" href="{{ url_for('post_detail', slug=p['slug']) }}">{{ p['title'] }}</a></h3>
    {% if p['excerpt'] %}
    <p class="p-summary" style="margin-bottom:.5rem">{{ highlight(p['excerpt'], q) if q else p['excerpt'] }}</p>
    {% endif %}
    <div class="post-meta">
        <time class="dt-published" datetime="{{ p['created_at'] }}">{{ p['created_at']|ts }}</time>
        · {{ p['body']|reading_time }} min read
        {% for t in tags %}
            <a class="pill p-category" href="{{ url_for('blog_list', tag=t['name']) }}">{{ t['label'] }}</a>
        {% endfor %}
    </div>
</article>
{%- endmacro %}
<div class="container h-feed" style="max-width:60rem;margin:3rem auto;">
    <div style="margin-bottom:1rem;font-size:1.9rem;line-height:1.2;">
        <h1 style="display:inline;margin:0;font-size:2.25em">
            <a href="{{ url_for('index') }}" style="color:{{ accent }};text-decoration:none;">{{ site_name() }}</a>
        </h1>
        {% set tagline = get_setting('site_tagline', '') or '' %}
        {% if tagline.strip() %}
            <span style="margin-left:.1rem;color:#bcbcbc;">{{ tagline }}</span>
        {% endif %}
    </div>
    <nav aria-label="Primary" class="nav-primary">
        <a href="{{ url_for('index') }}"
           {% if request.endpoint=='index' %}aria-current="page"{% endif %}>Home</a>
        <a href="{{ url_for('blog_list') }}"
           {% if request.endpoint in ('blog_list', 'post_detail') %}aria-current="page"{% endif %}>Blog</a>
        <span class="nav-auth">
        {% if session.get('logged_in') %}
            <a href="{{ url_for('admin') }}"
               {% if request.endpoint and request.endpoint.startswith('admin') %}aria-current="page"{% endif %}>Admin</a>
            &nbsp;<a href="{{ url_for('logout') }}">Logout</a>
        {% else %}
            <a href="{{ url_for('login') }}"
               {% if request.endpoint=='login' %}aria-current="page"{% endif %}>Login</a>
        {% endif %}
        </span>
    </nav>
    {% with msgs = get_flashed_messages() %}
    {% if msgs %}
        <div role="status" aria-live="polite" style="position:fixed;top:1rem;right:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.9rem;box-shadow:0 2px 6px rgba(0,0,0,.4);max-width:24rem;z-index:999;">
        {% for m in msgs %}{{ m }}{% if not loop.last %}<br>{% endif %}{% endfor %}
        </div>
    {% endif %}
    {% endwith %}
    <main id="main-content" role="main">
"""

TEMPL_EPILOG = """
    </main>
    <footer style="margin-top:1.875em;padding-top:1.5em;font-size:.8em;color:#888;display:flex;justify-content:space-between;border-top:1px solid #444;">
        <span style="color:#aaa;">
            Built with <span style="color:{{ accent }}">simplicity</span> v{{ version }}
        </span>
        <nav aria-label="Footer">
            <a href="{{ url_for('rss') }}">RSS</a>
        </nav>
    </footer>
</div> <!-- container -->
</body>
</html>
"""


###############################################################################
# Authentication
###############################################################################
def validate_token(token: str, max_age: int = 60) -> bool:
    """
    • Unsigned  age-check in *one* step (`max_age` seconds).
    • Compare the payload (“handle”) against the hashed copy in the DB.
    """
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return False  # too old ➜ invalid
    except BadSignature:
        return False  # forged ➜ invalid

    row = get_db().execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    return bool(row and row["token_hash"] and verify_token(row["token_hash"], handle))


def login_required() -> None:
    if not session.get("logged_in"):
        abort(403)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                app.logger.warning("login rate limit hit for %s", ip)
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST" and token and validate_token(token):
        # token matched → burn it right away
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
        app.logger.info("admin logged in")
        return redirect(url_for("admin"))

    return render_template_string(TEMPL_LOGIN, title=site_name())


TEMPL_LOGIN = wrap("""
{% block body %}
<hr>
<form method="post" id="token-form">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}
  <label for="token" style="font-size:.75em;color:#aaa;">token</label>
  <input id="token" name="token" type="password" autocomplete="current-password"
         style="width:100%;">
  <button type="submit" style="margin-top:1rem;padding:.55rem 1rem;">
      Sign&nbsp;in&nbsp;with&nbsp;Token
  </button>
</form>
{% endblock %}
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # no logged-in flag yet ⇒ allow (covers /login POST)
    if not session.get("logged_in"):
        return

    # for authenticated users we REQUIRE a valid token
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
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


###############################################################################
# Index + Listings
###############################################################################
@app.route("/")
def index():
    db = get_db()
    sql, params = post_query(status="published")
    posts = db.execute(f"{sql} LIMIT ?", params + (HOME_LIMIT,)).fetchall()
    return render_template_string(
        TEMPL_INDEX,
        posts=posts,
        tags=tags_for_posts([p["id"] for p in posts], db=db),
        title=site_name(),
    )


TEMPL_INDEX = wrap("""{% block body %}
<hr>
{% if posts %}
    <h2 style="margin-top:1rem">Latest</h2>
    {% for p in posts %}
        {{ post_card(p, tags[p['id']]) }}
    {% endfor %}
    <p><a href="{{ url_for('blog_list') }}">All posts →</a></p>
{% else %}
    <p>Nothing published yet.</p>
{% endif %}
{% endblock %}
""")


@app.route("/blog")
def blog_list():
    db = get_db()
    tag = normalize_tag_name(request.args.get("tag"))
    q = request.args.get("search", "").strip()
    page = int_arg("page", 1)
    per_page = page_size()

    sql, params = post_query(status="published", tag=tag or None, search=q or None)
    posts, total, pages = paginate(sql, params, page=page, per_page=per_page, db=db)

    return render_template_string(
        TEMPL_BLOG,
        posts=posts,
        tags=tags_for_posts([p["id"] for p in posts], db=db),
        all_tags=[t for t in all_tags(db=db) if t["cnt"]],
        tag=tag,
        q=q,
        page=page,
        pages=pages,
        total=total,
        title=f"Blog – {site_name()}",
    )


TEMPL_BLOG = wrap("""{% block body %}
<hr>
<form method="get" action="{{ url_for('blog_list') }}" style="display:flex;gap:.5rem;">
    <input type="search" name="search" value="{{ q }}" placeholder="Search posts"
           aria-label="Search posts" style="flex:1 1 auto;">
    {% if tag %}<input type="hidden" name="tag" value="{{ tag }}">{% endif %}
</form>
{% if all_tags %}
<div style="margin-bottom:2rem">
    <a class="pill" href="{{ url_for('blog_list', search=q or None) }}"
       {% if not tag %}aria-current="page"{% endif %}>all</a>
    {% for t in all_tags %}
        <a class="pill" href="{{ url_for('blog_list', tag=t['name'], search=q or None) }}"
           {% if t['name'] == tag %}aria-current="page" style="background:{{ accent }};color:#000"{% endif %}>
           {{ t['label'] }}&nbsp;({{ t['cnt'] }})</a>
    {% endfor %}
</div>
{% endif %}
{% if q or tag %}
    <p class="post-meta">{{ total }} post{{ '' if total == 1 else 's' }}
    {% if tag %} tagged “{{ tag }}”{% endif %}{% if q %} matching “{{ q }}”{% endif %}</p>
{% endif %}
{% for p in posts %}
    {{ post_card(p, tags[p['id']], q) }}
{% else %}
    <p>No posts found.</p>
{% endfor %}
{% if pages > 1 %}
<nav aria-label="Pagination" style="display:flex;justify-content:space-between;">
    {% if page > 1 %}
        <a href="{{ url_for('blog_list', page=page-1, tag=tag or None, search=q or None) }}">← Newer</a>
    {% else %}<span></span>{% endif %}
    <span class="post-meta">{{ page }} / {{ pages }}</span>
    {% if page < pages %}
        <a href="{{ url_for('blog_list', page=page+1, tag=tag or None, search=q or None) }}">Older →</a>
    {% else %}<span></span>{% endif %}
</nav>
{% endif %}
{% endblock %}
""")


###############################################################################
# Posts
###############################################################################
@app.route("/blog/<slug>")
def post_detail(slug):
    db = get_db()
    post = db.execute("SELECT * FROM post WHERE slug=?", (slug,)).fetchone()
    if not post:
        abort(404)
    if post["status"] != "published" and not session.get("logged_in"):
        abort(404)

    bump_views(post["id"], db=db)
    return render_template_string(
        TEMPL_POST,
        p=post,
        tags=post_tags(post["id"], db=db),
        related=related_posts(post, db=db),
        minutes=blocks.reading_time(post["body"]),
        title=f"{post['title']} – {site_name()}",
    )


TEMPL_POST = wrap("""
{% block body %}
<hr>
<article class="h-entry">
    {% if p['header_image'] %}
        <img class="header-image u-photo" src="{{ p['header_image'] }}" alt="">
    {% endif %}
    <h2 class="p-name" style="margin-top:0">{{ p['title'] }}</h2>
    <div class="post-meta" style="margin-bottom:2rem">
        <time class="dt-published" datetime="{{ p['created_at'] }}">{{ p['created_at']|ts }}</time>
        · {{ minutes }} min read
        {% if p['status'] != 'published' %} · <strong>draft</strong>{% endif %}
        {% for t in tags %}
            <a class="pill p-category" href="{{ url_for('blog_list', tag=t['name']) }}">{{ t['label'] }}</a>
        {% endfor %}
    </div>
    {{ p['body']|blocks }}
    {% if session.get('logged_in') %}
    <div class="post-meta">
        {{ p['views'] }} views ·
        <a href="{{ url_for('admin_edit_post', post_id=p['id']) }}">Edit</a> ·
        <a href="{{ url_for('admin_delete_post', post_id=p['id']) }}">Delete</a>
    </div>
    {% endif %}
</article>
{% if related %}
<section style="margin-top:3rem">
    <h3>Related</h3>
    {% for r in related %}
        {{ post_card(r) }}
    {% endfor %}
</section>
{% endif %}
{% endblock %}
""")


###############################################################################
# Admin
###############################################################################
@app.route("/admin")
def admin():
    login_required()
    db = get_db()
    status = request.args.get("status", "all")
    if status not in STATUSES:
        status = "all"

    sql, params = post_query(status=None if status == "all" else status)
    posts = db.execute(sql, params).fetchall()
    counts = {
        r["status"]: r["n"]
        for r in db.execute("SELECT status, COUNT(*) AS n FROM post GROUP BY status")
    }
    return render_template_string(
        TEMPL_ADMIN,
        posts=posts,
        status=status,
        counts=counts,
        title=f"Admin – {site_name()}",
    )


TEMPL_ADMIN = wrap("""
{% block body %}
<hr>
<div style="display:flex;gap:1rem;align-items:center;flex-wrap:wrap;">
    <h2 style="margin:0">Posts</h2>
    <a class="pill" href="{{ url_for('admin_new_post') }}" style="background:{{ accent }};color:#000">+ New post</a>
    <span style="margin-left:auto" class="post-meta">
        <a href="{{ url_for('admin_tags') }}">Tags</a> ·
        <a href="{{ url_for('admin_settings') }}">Settings</a>
    </span>
</div>
<p class="post-meta" style="margin-top:1rem">
    {% for s, label in (('all', 'All'), ('published', 'Published'), ('draft', 'Drafts')) %}
        <a href="{{ url_for('admin', status=s) }}" {% if status == s %}aria-current="page"{% endif %}>
        {{ label }}&nbsp;({{ counts.values()|sum if s == 'all' else counts.get(s, 0) }})</a>
        {% if not loop.last %}·{% endif %}
    {% endfor %}
</p>
<table>
    <tr><th>Title</th><th>Status</th><th>Views</th><th>Updated</th><th></th></tr>
    {% for p in posts %}
    <tr>
        <td><a href="{{ url_for('post_detail', slug=p['slug']) }}">{{ p['title'] }}</a></td>
        <td>{{ p['status'] }}</td>
        <td>{{ p['views'] }}</td>
        <td>{{ (p['updated_at'] or p['created_at'])|ts }}</td>
        <td style="white-space:nowrap">
            <a href="{{ url_for('admin_edit_post', post_id=p['id']) }}">Edit</a> ·
            <a href="{{ url_for('admin_delete_post', post_id=p['id']) }}">Delete</a>
        </td>
    </tr>
    {% else %}
    <tr><td colspan="5">No posts yet.</td></tr>
    {% endfor %}
</table>
{% endblock %}
""")


def _post_form_values(*, db, post_id: int | None = None) -> tuple[dict, list[str]]:
    """Read + validate the post form.  Returns (values, error messages)."""
    f = request.form
    title = f.get("title", "").strip()
    body = f.get("body", "").strip()
    status = f.get("status", "draft")
    errors = []
    if not title:
        errors.append("Title is required.")
    if not body:
        errors.append("Body is required.")
    if status not in STATUSES:
        errors.append("Unknown status.")

    if body and f.get("convert") and blocks.detect_format(body) == "plain":
        body = blocks.dumps(blocks.compile_text(body))

    slug = slugify(f.get("slug", "").strip() or title)
    values = {
        "title": title,
        "slug": unique_slug(slug, db=db, exclude_id=post_id),
        "body": store_body(body),
        "excerpt": derive_excerpt(body, f.get("excerpt")),
        "status": status,
        "header_image": blocks.safe_url(f.get("header_image", "")) or None,
    }
    return values, errors


def _form_tag_names() -> list[str]:
    return [t for t in request.form.get("tags", "").split(",") if t.strip()]


@app.route("/admin/posts/new", methods=["GET", "POST"])
def admin_new_post():
    login_required()
    db = get_db()

    if request.method == "POST":
        values, errors = _post_form_values(db=db)
        if not errors:
            post_id = save_post(
                values, db=db, tag_ids=ensure_tags(_form_tag_names(), db=db)
            )
            app.logger.info("created post %s (%s)", post_id, values["slug"])
            flash("Post created.")
            return redirect(url_for("post_detail", slug=values["slug"]))
        for msg in errors:
            flash(msg)
        return (
            render_template_string(
                TEMPL_POST_FORM,
                p=request.form,
                body=request.form.get("body", ""),
                tag_names=request.form.get("tags", ""),
                heading="New post",
                title=site_name(),
            ),
            400,
        )

    return render_template_string(
        TEMPL_POST_FORM,
        p={"status": "draft"},
        body="",
        tag_names="",
        heading="New post",
        title=site_name(),
    )


@app.route("/admin/posts/<int:post_id>/edit", methods=["GET", "POST"])
def admin_edit_post(post_id: int):
    login_required()
    db = get_db()
    post = get_post(post_id, db=db)
    if not post:
        abort(404)

    if request.method == "POST":
        values, errors = _post_form_values(db=db, post_id=post_id)
        if not errors:
            save_post(
                values,
                db=db,
                post_id=post_id,
                tag_ids=ensure_tags(_form_tag_names(), db=db),
            )
            app.logger.info("updated post %s", post_id)
            flash("Post saved.")
            return redirect(url_for("post_detail", slug=values["slug"]))
        for msg in errors:
            flash(msg)
        return (
            render_template_string(
                TEMPL_POST_FORM,
                p=request.form,
                body=request.form.get("body", ""),
                tag_names=request.form.get("tags", ""),
                heading="Edit post",
                title=site_name(),
            ),
            400,
        )

    return render_template_string(
        TEMPL_POST_FORM,
        p=post,
        body=body_for_editing(post["body"]),
        tag_names=", ".join(t["label"] for t in post_tags(post_id, db=db)),
        heading="Edit post",
        title=site_name(),
    )


TEMPL_POST_FORM = wrap("""
{% block body %}
<hr>
<h2>{{ heading }}</h2>
<form method="post" id="post-form">
    {% if csrf_token() %}
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <label>Title<input name="title" class="writing-input" value="{{ p['title'] or '' }}" required></label>
    <label>Slug <small style="color:#aaa;font-weight:normal">(optional)</small>
        <input name="slug" class="writing-input" value="{{ p['slug'] or '' }}"></label>
    <label>Excerpt <small style="color:#aaa;font-weight:normal">(blank → derived from the body)</small>
        <input name="excerpt" class="writing-input" value="{{ p['excerpt'] or '' }}"></label>
    <label>Header image URL
        <input name="header_image" class="writing-input" value="{{ p['header_image'] or '' }}"></label>
    <label>Tags <small style="color:#aaa;font-weight:normal">(comma separated)</small>
        <input name="tags" class="writing-input" value="{{ tag_names }}"></label>
    <label>Body
        <textarea name="body" class="writing-area" rows="16">{{ body }}</textarea></label>
    <label style="font-weight:normal">
        <input type="checkbox" name="convert" value="1"> Convert plain text to blocks on save
    </label>
    <div style="display:flex;gap:.6rem;align-items:center;">
        <select name="status">
            {% for s in ('draft', 'published') %}
                <option value="{{ s }}" {% if p['status'] == s %}selected{% endif %}>{{ s }}</option>
            {% endfor %}
        </select>
        <button type="submit">Save</button>
        <button type="button" id="preview-btn">Preview</button>
    </div>
</form>
<section id="preview" style="margin-top:2rem;border-top:1px dashed #555;padding-top:1rem;display:none;"></section>
<script>
(() => {
    const btn = document.getElementById('preview-btn');
    const out = document.getElementById('preview');
    const form = document.getElementById('post-form');
    const csrf = form.querySelector('input[name="csrf"]')?.value || '';
    btn.addEventListener('click', async () => {
        const res = await fetch('{{ url_for('api_preview') }}', {
            method: 'POST',
            headers: {'Content-Type': 'application/json', 'X-CSRFToken': csrf},
            body: JSON.stringify({body: form.elements.body.value}),
        });
        const data = await res.json();
        if (!res.ok || !data.success) return;
        out.innerHTML = data.data.html;
        out.style.display = 'block';
    });
})();
</script>
{% endblock %}
""")


@app.route("/admin/posts/<int:post_id>/delete", methods=["GET", "POST"])
def admin_delete_post(post_id: int):
    login_required()
    db = get_db()
    post = get_post(post_id, db=db)
    if not post:
        abort(404)

    if request.method == "POST":
        db.execute("DELETE FROM post WHERE id=?", (post_id,))
        db.commit()
        app.logger.info("deleted post %s", post_id)
        flash("Post deleted.")
        return redirect(url_for("admin"))

    return render_template_string(TEMPL_DELETE_POST, p=post, title=site_name())


TEMPL_DELETE_POST = wrap("""
{% block body %}
    <hr>
    <h2>Delete post?</h2>
    <article style="border-left:3px solid #c00;padding-left:1rem;">
        <h3>{{ p['title'] }}</h3>
        {% if p['excerpt'] %}<p>{{ p['excerpt'] }}</p>{% endif %}
        <small style="color:#aaa;">{{ p['created_at']|ts }}</small>
    </article>
    <form method="post" style="margin-top:1rem;">
        {% if csrf_token() %}
            <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        {% endif %}
        <button style="background:#c00;color:#fff;">Yes – delete it</button>
        <a href="{{ url_for('admin') }}" style="margin-left:1rem;">Cancel</a>
    </form>
{% endblock %}
""")


@app.route("/admin/tags", methods=["GET", "POST"])
def admin_tags():
    login_required()
    db = get_db()

    if request.method == "POST":
        if request.form.get("action") == "delete":
            db.execute("DELETE FROM tag WHERE id=?", (request.form.get("id", type=int),))
            db.commit()
            flash("Tag deleted.")
            return redirect(url_for("admin_tags"))

        raw = request.form.get("name", "").strip()
        name = normalize_tag_name(raw)
        if not name:
            flash("Tag name is required.")
        else:
            label = request.form.get("label", "").strip() or raw
            try:
                db.execute("INSERT INTO tag (name, label) VALUES (?,?)", (name, label))
                db.commit()
                flash(f"Tag “{name}” created.")
            except sqlite3.IntegrityError:
                flash(f"Tag “{name}” already exists.")
        return redirect(url_for("admin_tags"))

    return render_template_string(
        TEMPL_TAGS_ADMIN, tags=all_tags(db=db), title=site_name()
    )


TEMPL_TAGS_ADMIN = wrap("""
{% block body %}
<hr>
<h2>Tags</h2>
<form method="post" style="display:flex;gap:.5rem;align-items:flex-end;">
    {% if csrf_token() %}
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <label style="flex:1 1 auto">Name<input name="name" class="writing-input"></label>
    <label style="flex:1 1 auto">Label<input name="label" class="writing-input"></label>
    <button type="submit" style="margin-bottom:10px">Add</button>
</form>
<table>
    <tr><th>Name</th><th>Label</th><th>Posts</th><th></th></tr>
    {% for t in tags %}
    <tr>
        <td><a href="{{ url_for('blog_list', tag=t['name']) }}">{{ t['name'] }}</a></td>
        <td>{{ t['label'] }}</td>
        <td>{{ t['cnt'] }}</td>
        <td>
            <form method="post" style="margin:0">
                <input type="hidden" name="csrf" value="{{ csrf_token() }}">
                <input type="hidden" name="action" value="delete">
                <input type="hidden" name="id" value="{{ t['id'] }}">
                <button style="background:#c00;color:#fff;">Delete</button>
            </form>
        </td>
    </tr>
    {% else %}
    <tr><td colspan="4">No tags yet.</td></tr>
    {% endfor %}
</table>
{% endblock %}
""")


@app.route("/admin/settings", methods=["GET", "POST"])
def admin_settings():
    login_required()
    db = get_db()

    if request.method == "POST" and request.form.get("action") == "rotate_token":
        session["one_time_token"] = _rotate_token(db)  # store once
        return redirect(url_for("admin_settings") + "#new-token", code=303)

    if request.method == "POST":
        name = request.form.get("site_name", "").strip()
        if name:
            set_setting("site_name", name)
        set_setting("site_tagline", request.form.get("site_tagline", "").strip())

        size = (
            max(1, int(raw))
            if (raw := request.form.get("page_size", "").strip()).isdigit()
            else PAGE_DEFAULT
        )
        set_setting("page_size", size)

        flash("Settings saved.")
        return redirect(url_for("admin_settings"))

    return render_template_string(
        TEMPL_SETTINGS,
        site_tagline=get_setting("site_tagline", ""),
        per_page=page_size(),
        new_token=session.pop("one_time_token", None),  # use-and-forget
        title=site_name(),
    )


TEMPL_SETTINGS = wrap("""
{% block body %}
<hr>
<h2>Site Settings</h2>
<form method="post">
    {% if csrf_token() %}
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <label>Site name<input name="site_name" class="writing-input" value="{{ site_name() }}"></label>
    <label>Tagline (optional)<input name="site_tagline" class="writing-input" value="{{ site_tagline }}"></label>
    <label>Posts per page<input name="page_size" class="writing-input" value="{{ per_page }}" inputmode="numeric"></label>
    <button type="submit">Save</button>
</form>
<hr>
<form method="post">
    {% if csrf_token() %}
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% endif %}
    <input type="hidden" name="action" value="rotate_token">
    <button type="submit">Generate new login token</button>
</form>
{% if new_token %}
<div id="new-token" style="margin-top:1rem;word-break:break-all;">
    <p class="post-meta">One-time token (valid for one minute, shown once):</p>
    <code>{{ new_token }}</code>
</div>
{% endif %}
{% endblock %}
""")


###############################################################################
# JSON API
###############################################################################
def api_ok(data=None, status: int = 200, **extra):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return jsonify(body), status


def api_error(message: str, status: int):
    if status < 500:
        app.logger.warning("api %s %s → %d: %s", request.method, request.path, status, message)
    return jsonify({"success": False, "error": message}), status


def _json_payload() -> dict | None:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def tag_payload(t) -> dict:
    return {"id": t["id"], "name": t["name"], "label": t["label"]}


def post_payload(p, tags) -> dict:
    return {
        "id": p["id"],
        "title": p["title"],
        "slug": p["slug"],
        "body": body_for_api(p["body"]),
        "excerpt": p["excerpt"] or "",
        "status": p["status"],
        "headerImage": p["header_image"],
        "views": p["views"],
        "readingTime": blocks.reading_time(p["body"]),
        "createdAt": p["created_at"],
        "updatedAt": p["updated_at"],
        "tags": [tag_payload(t) for t in tags],
    }


def _api_post_values(data: dict, *, db, post=None) -> tuple[dict, str | None]:
    """
    Map an API payload onto post columns.  Only keys present in *data*
    are returned, so the same helper serves POST and PATCH.
    """
    values: dict = {}
    if "title" in data:
        title = str(data["title"] or "").strip()
        if not title:
            return {}, "Title cannot be empty"
        values["title"] = title
    if "body" in data:
        values["body"] = store_body(data["body"])
    if "status" in data:
        if data["status"] not in STATUSES:
            return {}, "Status must be 'draft' or 'published'"
        values["status"] = data["status"]
    if "headerImage" in data:
        values["header_image"] = blocks.safe_url(data["headerImage"] or "") or None
    if "slug" in data:
        slug = slugify(str(data["slug"] or ""))
        taken = db.execute("SELECT id FROM post WHERE slug=?", (slug,)).fetchone()
        if taken and (post is None or taken["id"] != post["id"]):
            return {}, "slug"
        values["slug"] = slug

    if "excerpt" in data:
        body = values.get("body", post["body"] if post else "")
        values["excerpt"] = derive_excerpt(body or "", data["excerpt"])
    elif "body" in values:
        # keep a hand-written excerpt, refresh a derived one
        old = post["excerpt"] if post else None
        if not old or old == blocks.excerpt(post["body"], EXCERPT_LEN):
            values["excerpt"] = derive_excerpt(values["body"])
    return values, None


@app.route("/api/posts", methods=["GET"])
def api_posts():
    db = get_db()
    raw_status = request.args.get("status", "published")
    if raw_status in ("all", "draft") and not session.get("logged_in"):
        return api_error("You must be logged in as admin", 401)
    status = None if raw_status == "all" else raw_status
    if status not in STATUSES and status is not None:
        status = "published"

    page = int_arg("page", 1)
    limit = int_arg("limit", API_LIMIT_DEFAULT, maximum=API_LIMIT_MAX)
    sql, params = post_query(
        status=status,
        tag=request.args.get("tag") or None,
        search=request.args.get("search", "").strip() or None,
        slug=request.args.get("slug") or None,
    )
    rows, total, pages = paginate(sql, params, page=page, per_page=limit, db=db)
    tags = tags_for_posts([r["id"] for r in rows], db=db)
    return api_ok(
        [post_payload(r, tags[r["id"]]) for r in rows],
        total=total,
        totalPages=pages,
        currentPage=page,
    )


@app.route("/api/posts", methods=["POST"])
def api_create_post():
    if not session.get("logged_in"):
        return api_error("You must be logged in as admin", 401)
    data = _json_payload()
    if data is None:
        return api_error("Request body must be a JSON object", 400)
    if not str(data.get("title") or "").strip() or not data.get("body"):
        return api_error("Title and body are required", 400)

    db = get_db()
    if not data.get("slug"):
        data = {**data, "slug": unique_slug(slugify(str(data["title"])), db=db)}
    values, err = _api_post_values(data, db=db)
    if err == "slug":
        return api_error("A post with this slug already exists", 409)
    if err:
        return api_error(err, 400)
    values.setdefault("status", "draft")
    values.setdefault("excerpt", derive_excerpt(values["body"]))

    try:
        post_id = save_post(
            values, db=db, tag_ids=resolve_tag_ids(data.get("tags"), db=db)
        )
    except sqlite3.IntegrityError:
        db.rollback()
        return api_error("A post with this slug already exists", 409)
    app.logger.info("created post %s via api", post_id)
    post = get_post(post_id, db=db)
    return api_ok(
        post_payload(post, post_tags(post_id, db=db)),
        201,
        message="Post created successfully",
    )


@app.route("/api/posts/<int:post_id>", methods=["GET"])
def api_post(post_id: int):
    db = get_db()
    post = get_post(post_id, db=db)
    if not post or (post["status"] != "published" and not session.get("logged_in")):
        return api_error("Post not found", 404)
    bump_views(post_id, db=db)
    post = get_post(post_id, db=db)
    return api_ok(post_payload(post, post_tags(post_id, db=db)))


@app.route("/api/posts/<int:post_id>", methods=["PATCH"])
def api_update_post(post_id: int):
    if not session.get("logged_in"):
        return api_error("Unauthorized", 403)
    data = _json_payload()
    if data is None:
        return api_error("Request body must be a JSON object", 400)

    db = get_db()
    post = get_post(post_id, db=db)
    if not post:
        return api_error("Post not found", 404)

    values, err = _api_post_values(data, db=db, post=post)
    if err == "slug":
        return api_error("A post with this slug already exists", 409)
    if err:
        return api_error(err, 400)

    tag_ids = resolve_tag_ids(data["tags"], db=db) if "tags" in data else None
    try:
        save_post(values, db=db, post_id=post_id, tag_ids=tag_ids)
    except sqlite3.IntegrityError:
        db.rollback()
        return api_error("A post with this slug already exists", 409)
    app.logger.info("updated post %s via api", post_id)
    return api_ok(
        post_payload(get_post(post_id, db=db), post_tags(post_id, db=db)),
        message="Post updated successfully",
    )


@app.route("/api/posts/<int:post_id>", methods=["DELETE"])
def api_delete_post(post_id: int):
    if not session.get("logged_in"):
        return api_error("Unauthorized", 403)
    db = get_db()
    if not get_post(post_id, db=db):
        return api_error("Post not found", 404)
    db.execute("DELETE FROM post WHERE id=?", (post_id,))
    db.commit()
    app.logger.info("deleted post %s via api", post_id)
    return api_ok(message="Post deleted successfully")


@app.route("/api/tags", methods=["GET"])
def api_tags():
    return api_ok([tag_payload(t) for t in all_tags(db=get_db())])


@app.route("/api/tags", methods=["POST"])
def api_create_tag():
    if not session.get("logged_in"):
        return api_error("Unauthorized", 403)
    data = _json_payload() or {}
    raw = data.get("name")
    name = normalize_tag_name(raw if isinstance(raw, str) else "")
    if not name:
        return api_error("Tag name is required", 400)
    label = str(data.get("label") or "").strip() or raw.strip()

    db = get_db()
    try:
        cur = db.execute("INSERT INTO tag (name, label) VALUES (?,?)", (name, label))
        db.commit()
    except sqlite3.IntegrityError:
        db.rollback()
        return api_error("Tag already exists", 409)
    tag = db.execute("SELECT * FROM tag WHERE id=?", (cur.lastrowid,)).fetchone()
    return api_ok(tag_payload(tag), 201, message="Tag created successfully")


@app.route("/api/preview", methods=["POST"])
def api_preview():
    """Run a draft body through the whole block pipeline for the editor."""
    if not session.get("logged_in"):
        return api_error("You must be logged in as admin", 401)
    data = _json_payload()
    if data is None:
        return api_error("Request body must be a JSON object", 400)

    body = data.get("body")
    doc = blocks.as_document(body)
    return api_ok(
        {
            "document": blocks.encode_document(doc),
            "html": str(blocks.render_html(doc)),
            "excerpt": blocks.excerpt(doc, EXCERPT_LEN),
            "readingTime": blocks.reading_time(doc),
            "plainText": blocks.plain_text(doc),
        }
    )


###############################################################################
# RSS feed + crawler resources
###############################################################################
def _rfc2822(dt_str: str) -> str:
    """ISO-8601 → RFC 2822 (Tue, 24 Jun 2025 09:22:20 +0000)."""
    try:
        return datetime.fromisoformat(dt_str).strftime(RFC2822_FMT)
    except (TypeError, ValueError):
        return dt_str


def _cdata(html: str) -> str:
    return "<![CDATA[" + html.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def _rss(posts, *, title, feed_url, base_url) -> str:
    """
    Build a valid RSS 2.0 document (single string).
    `posts` is an iterable of rows from the `post` table.
    """
    db = get_db()
    items = []
    for p in posts:
        link = f"{base_url}{url_for('post_detail', slug=p['slug'])}"
        cats = "".join(
            f"<category>{escape(t['name'])}</category>"
            for t in post_tags(p["id"], db=db)
        )
        items.append(
            f"""
    <item>
      <title>{escape(p['title'])}</title>
      <link>{link}</link>
      <guid isPermaLink="true">{link}</guid>
      <pubDate>{_rfc2822(p['created_at'])}</pubDate>
      <description>{_cdata(str(blocks.render_html(p['body'])))}</description>
      {cats}
    </item>"""
        )

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:atom="http://www.w3.org/2005/Atom">
  <channel>
    <title>{escape(title)}</title>
    <link>{base_url}</link>
    <description>{escape(title)} – RSS</description>
    <generator>simplicity</generator>
    <docs>https://validator.w3.org/feed/docs/rss2.html</docs>
    <lastBuildDate>{_rfc2822(now_iso())}</lastBuildDate>
    <atom:link href="{feed_url}"
               rel="self"
               type="application/rss+xml" />
    {"".join(items)}
  </channel>
</rss>"""


@app.route("/rss")
def rss():
    db = get_db()
    sql, params = post_query(status="published")
    rows = db.execute(f"{sql} LIMIT ?", params + (FEED_LIMIT,)).fetchall()
    base = site_url()
    xml = _rss(
        rows,
        title=site_name(),
        feed_url=f"{base}{url_for('rss')}",
        base_url=base,
    )
    return app.response_class(xml, mimetype="application/rss+xml")


@app.route("/sitemap.xml")
def sitemap():
    db = get_db()
    base = site_url()
    urls = [
        (f"{base}{url_for('index')}", None),
        (f"{base}{url_for('blog_list')}", None),
    ]
    sql, params = post_query(status="published")
    for p in db.execute(sql, params):
        urls.append(
            (
                f"{base}{url_for('post_detail', slug=p['slug'])}",
                (p["updated_at"] or p["created_at"])[:10],
            )
        )

    entries = "".join(
        f"\n  <url><loc>{escape(loc)}</loc>"
        + (f"<lastmod>{mod}</lastmod>" if mod else "")
        + "</url>"
        for loc, mod in urls
    )
    xml = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        f"{entries}\n</urlset>"
    )
    return app.response_class(xml, mimetype="application/xml")


@app.route("/robots.txt")
def robots():
    """Let crawlers in everywhere except the admin pages."""
    rules = (
        "User-agent: *\n"
        "Allow: /\n"
        "Disallow: /admin/\n"
        "Disallow: /api/\n\n"
        f"Sitemap: {site_url()}{url_for('sitemap')}\n"
    )
    return (
        Response(rules, mimetype="text/plain"),
        200,
        {"Cache-Control": "public, max-age=86400"},
    )  # 1 day cache


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page (JSON for the API)."""
    if request.path.startswith("/api/"):
        return api_error("Not found", 404)
    return render_template_string(TEMPL_404, title=site_name()), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.
    • In debug mode the Werkzeug debugger still shows the traceback,
      because Flask bypasses this handler.
    """
    app.logger.exception("unhandled error on %s", request.path)
    if request.path.startswith("/api/"):
        return jsonify({"success": False, "error": "Internal server error"}), 500
    return render_template_string(TEMPL_500, title=SITE_NAME_DEFAULT), 500


TEMPL_404 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}" style="color:{{ accent }};">Back to the front page</a>
     or <a href="{{ url_for('blog_list') }}" style="color:{{ accent }};">browse the blog</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <hr>
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
