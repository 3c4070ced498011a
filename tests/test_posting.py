"""
tests/test_posting.py
"""
from __future__ import annotations

import json
import uuid
from typing import Any

from simplicity import blocks
from simplicity.blog import get_db, slugify

CSRF = "test-token"          # shared constant so the token matches the session


def _login(client) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = CSRF


def _logout(client) -> None:
    with client.session_transaction() as sess:
        sess.clear()


def _title(prefix: str) -> str:
    return f"{prefix} {uuid.uuid4().hex[:8]}"


def _create(client, **fields: Any):
    """POST the new-post form (logged in) and return the response."""
    _login(client)
    data = {"status": "published", "body": "Body text.", **fields, "csrf": CSRF}
    return client.post("/admin/posts/new", data=data, follow_redirects=True)


def _row(title: str):
    return get_db().execute("SELECT * FROM post WHERE title=?", (title,)).fetchone()


# ───────────────────────── create ─────────────────────────────────────
def test_create_plain_text_post(client):
    title = _title("Form Post")
    rv = _create(
        client,
        title=title,
        body="# Heading\n\nSome **text** here.\n- one\n- two",
        tags="Python, Web",
    )
    assert rv.status_code == 200, rv.data.decode()
    html = rv.data.decode()
    assert "<h1>Heading</h1>" in html
    assert "<ul><li><p>one</p></li><li><p>two</p></li></ul>" in html
    assert "Some **text** here." in html          # no markdown, legacy text only

    row = _row(title)
    assert row["slug"] == slugify(title)
    assert row["body"].startswith("# Heading")   # stored as written
    assert row["excerpt"] == "Heading\n\nSome **text** here.\n\n- one\n- two"
    assert row["status"] == "published"

    tags = get_db().execute(
        "SELECT t.name, t.label FROM tag t JOIN post_tag pt ON pt.tag_id=t.id "
        "WHERE pt.post_id=? ORDER BY t.name",
        (row["id"],),
    ).fetchall()
    assert [(t["name"], t["label"]) for t in tags] == [("python", "Python"), ("web", "Web")]


def test_convert_checkbox_stores_a_block_document(client):
    title = _title("Converted")
    _create(client, title=title, body="Intro\n1. first\n2. second", convert="1")

    row = _row(title)
    assert blocks.detect_format(row["body"]) == "structured"
    doc = json.loads(row["body"])
    assert [b["type"] for b in doc["content"]] == ["paragraph", "orderedList"]


def test_structured_body_is_accepted_verbatim(client):
    title = _title("Structured")
    body = json.dumps(
        {
            "type": "doc",
            "content": [
                {
                    "type": "paragraph",
                    "content": [
                        {"type": "text", "text": "bold", "marks": [{"type": "bold"}]}
                    ],
                }
            ],
        }
    )
    rv = _create(client, title=title, body=body)
    assert b"<p><strong>bold</strong></p>" in rv.data
    assert _row(title)["excerpt"] == "bold"


def test_hand_written_excerpt_wins(client):
    title = _title("Excerpted")
    _create(client, title=title, body="long body", excerpt="A teaser")
    assert _row(title)["excerpt"] == "A teaser"


def test_missing_fields_are_rejected(client):
    _login(client)
    before = get_db().execute("SELECT COUNT(*) FROM post").fetchone()[0]
    rv = client.post(
        "/admin/posts/new",
        data={"title": "", "body": "", "status": "published", "csrf": CSRF},
    )
    assert rv.status_code == 400
    assert b"Title is required." in rv.data
    assert b"Body is required." in rv.data
    assert get_db().execute("SELECT COUNT(*) FROM post").fetchone()[0] == before


def test_duplicate_titles_get_numbered_slugs(client):
    title = _title("Twin")
    _create(client, title=title)
    _create(client, title=title)

    slugs = [
        r["slug"]
        for r in get_db().execute(
            "SELECT slug FROM post WHERE title=? ORDER BY id", (title,)
        )
    ]
    assert slugs[1] == slugs[0] + "-2"


def test_csrf_token_is_required(client):
    _login(client)
    rv = client.post("/admin/posts/new", data={"title": "x", "body": "y"})
    assert rv.status_code == 403


# ───────────────────────── edit / delete ──────────────────────────────
def test_edit_post(client):
    title = _title("Editable")
    _create(client, title=title, tags="alpha")
    row = _row(title)

    page = client.get(f"/admin/posts/{row['id']}/edit")
    assert page.status_code == 200
    assert title.encode() in page.data

    new_title = _title("Edited")
    rv = client.post(
        f"/admin/posts/{row['id']}/edit",
        data={
            "title": new_title,
            "slug": row["slug"],
            "body": "Fresh body",
            "status": "draft",
            "tags": "beta",
            "csrf": CSRF,
        },
        follow_redirects=True,
    )
    assert rv.status_code == 200
    edited = get_db().execute("SELECT * FROM post WHERE id=?", (row["id"],)).fetchone()
    assert edited["title"] == new_title
    assert edited["slug"] == row["slug"]       # own slug is not "taken"
    assert edited["status"] == "draft"
    assert edited["excerpt"] == "Fresh body"
    names = [
        r["name"]
        for r in get_db().execute(
            "SELECT t.name FROM tag t JOIN post_tag pt ON pt.tag_id=t.id WHERE pt.post_id=?",
            (row["id"],),
        )
    ]
    assert names == ["beta"]


def test_edit_form_pretty_prints_structured_bodies(client):
    title = _title("Pretty")
    _create(client, title=title, body="- a", convert="1")
    row = _row(title)
    page = client.get(f"/admin/posts/{row['id']}/edit").data.decode()
    assert "&#34;type&#34;: &#34;bulletList&#34;" in page


def test_delete_post(client):
    title = _title("Doomed")
    _create(client, title=title, tags="gone")
    row = _row(title)

    confirm = client.get(f"/admin/posts/{row['id']}/delete")
    assert b"Delete post?" in confirm.data

    rv = client.post(f"/admin/posts/{row['id']}/delete", data={"csrf": CSRF})
    assert rv.status_code == 302
    assert _row(title) is None
    assert (
        get_db().execute("SELECT 1 FROM post_tag WHERE post_id=?", (row["id"],)).fetchone()
        is None
    )


def test_edit_missing_post_is_404(client):
    _login(client)
    assert client.get("/admin/posts/999999/edit").status_code == 404


# ───────────────────────── public pages ───────────────────────────────
def test_detail_counts_views_and_shows_reading_time(client):
    title = _title("Counted")
    _create(client, title=title, body=" ".join(["word"] * 450))
    row = _row(title)        # the redirect after saving already counted once
    _logout(client)

    rv = client.get(f"/blog/{row['slug']}")
    assert rv.status_code == 200
    assert b"3 min read" in rv.data
    client.get(f"/blog/{row['slug']}")
    assert _row(title)["views"] == row["views"] + 2


def test_drafts_are_hidden_from_visitors(client):
    title = _title("Secret")
    _create(client, title=title, status="draft")
    slug = _row(title)["slug"]

    assert client.get(f"/blog/{slug}").status_code == 200     # admin preview
    _logout(client)
    assert client.get(f"/blog/{slug}").status_code == 404


def test_related_posts_share_a_tag(client):
    tag = f"rel{uuid.uuid4().hex[:6]}"
    first, second, lonely = _title("First"), _title("Second"), _title("Lonely")
    _create(client, title=first, tags=tag)
    _create(client, title=second, tags=tag)
    _create(client, title=lonely, tags="elsewhere")

    html = client.get(f"/blog/{_row(first)['slug']}").data.decode()
    assert "Related" in html
    assert second in html
    assert lonely not in html


def test_header_image_with_bad_scheme_is_dropped(client):
    title = _title("Pictured")
    _create(client, title=title, header_image="javascript:alert(1)")
    assert _row(title)["header_image"] is None
