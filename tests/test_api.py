"""
tests/test_api.py – JSON envelope + status codes of /api/*
"""
from __future__ import annotations

import uuid

from simplicity import blocks
from simplicity.blog import get_db

CSRF = "test-token"
HDRS = {"X-CSRFToken": CSRF}


# ───────────────────────── helpers ────────────────────────────────────
def _login(client) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = CSRF


def _logout(client) -> None:
    with client.session_transaction() as sess:
        sess.clear()


def _title(prefix: str = "Api") -> str:
    return f"{prefix} {uuid.uuid4().hex[:8]}"


def _create(client, **fields):
    _login(client)
    payload = {"title": _title(), "body": "Hello there.", **fields}
    return client.post("/api/posts", json=payload, headers=HDRS)


def _tag(client, name: str, label: str | None = None) -> dict:
    _login(client)
    payload = {"name": name} if label is None else {"name": name, "label": label}
    rv = client.post("/api/tags", json=payload, headers=HDRS)
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["data"]


# ───────────────────────── create ─────────────────────────────────────
def test_create_requires_login(client):
    _logout(client)
    rv = client.post("/api/posts", json={"title": "x", "body": "y"})
    assert rv.status_code == 401
    assert rv.get_json() == {
        "success": False,
        "error": "You must be logged in as admin",
    }


def test_create_post(client):
    rv = _create(client, title="Hello API World", body="# Big\n\nSmall words.")
    assert rv.status_code == 201
    out = rv.get_json()
    assert out["success"] is True
    assert out["message"] == "Post created successfully"

    post = out["data"]
    assert post["slug"].startswith("hello-api-world")
    assert post["status"] == "draft"                 # default
    assert post["body"] == "# Big\n\nSmall words."   # legacy text stays a string
    assert post["excerpt"] == "Big\n\nSmall words."
    assert post["readingTime"] == 1
    assert post["views"] == 0
    assert post["tags"] == []


def test_create_structured_body_round_trips_as_object(client):
    doc = {"type": "doc", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "hi"}]}]}
    post = _create(client, body=doc).get_json()["data"]
    assert post["body"] == doc
    assert post["excerpt"] == "hi"

    row = get_db().execute("SELECT body FROM post WHERE id=?", (post["id"],)).fetchone()
    assert blocks.detect_format(row["body"]) == "structured"


def test_create_validation(client):
    assert _create(client, title="  ").status_code == 400
    assert _create(client, body="").status_code == 400
    assert _create(client, status="archived").status_code == 400

    _login(client)
    rv = client.post(
        "/api/posts", data="not json", content_type="text/plain", headers=HDRS
    )
    assert rv.status_code == 400
    assert rv.get_json()["success"] is False


def test_create_with_taken_slug_is_409(client):
    first = _create(client).get_json()["data"]
    rv = _create(client, slug=first["slug"])
    assert rv.status_code == 409
    assert rv.get_json()["error"] == "A post with this slug already exists"


def test_create_with_tags_drops_unknown_ids(client):
    tag = _tag(client, f"api{uuid.uuid4().hex[:6]}")
    post = _create(client, tags=[tag["id"], {"id": 99999999}, "junk"]).get_json()["data"]
    assert [t["id"] for t in post["tags"]] == [tag["id"]]


def test_create_needs_csrf_header(client):
    _login(client)
    rv = client.post("/api/posts", json={"title": "x", "body": "y"})
    assert rv.status_code == 403


# ───────────────────────── read ───────────────────────────────────────
def test_list_envelope_and_paging(client):
    _create(client, status="published")
    _logout(client)
    out = client.get("/api/posts?limit=1").get_json()
    assert out["success"] is True
    assert len(out["data"]) == 1
    assert out["currentPage"] == 1
    assert out["totalPages"] == out["total"] >= 1


def test_list_limit_is_clamped(client):
    out = client.get("/api/posts?limit=100000&page=zzz").get_json()
    assert out["currentPage"] == 1
    assert len(out["data"]) <= 100


def test_list_hides_drafts_from_visitors(client):
    slug = _create(client, status="draft").get_json()["data"]["slug"]
    _logout(client)
    assert client.get(f"/api/posts?slug={slug}").get_json()["data"] == []
    assert client.get("/api/posts?status=draft").status_code == 401
    assert client.get("/api/posts?status=all").status_code == 401

    _login(client)
    out = client.get(f"/api/posts?status=draft&slug={slug}").get_json()
    assert [p["slug"] for p in out["data"]] == [slug]


def test_list_filters_by_tag_and_search(client):
    tok = uuid.uuid4().hex[:8]
    tag = _tag(client, f"f{tok}")
    _create(client, title=f"Match {tok}", status="published", tags=[tag["id"]])
    _create(client, title=f"Other {tok}", status="published")

    by_tag = client.get(f"/api/posts?tag=f{tok}").get_json()["data"]
    assert [p["title"] for p in by_tag] == [f"Match {tok}"]

    by_search = client.get(f"/api/posts?search={tok}").get_json()
    assert by_search["total"] == 2


def test_get_single_post_counts_views(client):
    post = _create(client, status="published").get_json()["data"]
    _logout(client)
    first = client.get(f"/api/posts/{post['id']}").get_json()["data"]
    second = client.get(f"/api/posts/{post['id']}").get_json()["data"]
    assert second["views"] == first["views"] + 1


def test_get_missing_or_hidden_post_is_404(client):
    assert client.get("/api/posts/99999999").status_code == 404

    draft = _create(client, status="draft").get_json()["data"]
    _logout(client)
    rv = client.get(f"/api/posts/{draft['id']}")
    assert rv.status_code == 404
    assert rv.get_json() == {"success": False, "error": "Post not found"}


# ───────────────────────── update ─────────────────────────────────────
def test_update_requires_login(client):
    post = _create(client).get_json()["data"]
    _logout(client)
    assert client.patch(f"/api/posts/{post['id']}", json={"title": "x"}).status_code == 403


def test_update_partial_fields(client):
    post = _create(client, body="Old body text.").get_json()["data"]
    rv = client.patch(
        f"/api/posts/{post['id']}",
        json={"status": "published", "body": "New body text."},
        headers=HDRS,
    )
    assert rv.status_code == 200
    out = rv.get_json()
    assert out["message"] == "Post updated successfully"
    assert out["data"]["status"] == "published"
    assert out["data"]["title"] == post["title"]        # untouched
    assert out["data"]["excerpt"] == "New body text."    # derived excerpt follows


def test_update_keeps_hand_written_excerpt(client):
    post = _create(client, excerpt="Teaser").get_json()["data"]
    out = client.patch(
        f"/api/posts/{post['id']}", json={"body": "Changed."}, headers=HDRS
    ).get_json()
    assert out["data"]["excerpt"] == "Teaser"


def test_update_blank_excerpt_is_derived_from_the_stored_body(client):
    post = _create(client, body="Stored words.", excerpt="Teaser").get_json()["data"]
    out = client.patch(
        f"/api/posts/{post['id']}", json={"excerpt": "  "}, headers=HDRS
    ).get_json()
    assert out["data"]["excerpt"] == "Stored words."


def test_update_replaces_tags(client):
    a = _tag(client, f"a{uuid.uuid4().hex[:6]}")
    b = _tag(client, f"b{uuid.uuid4().hex[:6]}")
    post = _create(client, tags=[a["id"]]).get_json()["data"]
    out = client.patch(
        f"/api/posts/{post['id']}", json={"tags": [b["id"]]}, headers=HDRS
    ).get_json()
    assert [t["id"] for t in out["data"]["tags"]] == [b["id"]]


def test_update_errors(client):
    first = _create(client).get_json()["data"]
    second = _create(client).get_json()["data"]

    rv = client.patch(f"/api/posts/{second['id']}", json={"slug": first["slug"]}, headers=HDRS)
    assert rv.status_code == 409
    rv = client.patch(f"/api/posts/{second['id']}", json={"title": ""}, headers=HDRS)
    assert rv.status_code == 400
    rv = client.patch("/api/posts/99999999", json={"title": "x"}, headers=HDRS)
    assert rv.status_code == 404

    # keeping its own slug is fine
    rv = client.patch(f"/api/posts/{second['id']}", json={"slug": second["slug"]}, headers=HDRS)
    assert rv.status_code == 200


# ───────────────────────── delete ─────────────────────────────────────
def test_delete_post(client):
    post = _create(client).get_json()["data"]
    _logout(client)
    assert client.delete(f"/api/posts/{post['id']}").status_code == 403

    _login(client)
    rv = client.delete(f"/api/posts/{post['id']}", headers=HDRS)
    assert rv.status_code == 200
    assert rv.get_json() == {"success": True, "message": "Post deleted successfully"}
    assert client.delete(f"/api/posts/{post['id']}", headers=HDRS).status_code == 404


# ───────────────────────── tags ───────────────────────────────────────
def test_tags_create_and_list(client):
    raw = f"  Mixed{uuid.uuid4().hex[:6]} "
    tag = _tag(client, raw)
    assert tag["name"] == raw.strip().lower()
    assert tag["label"] == raw.strip()

    _logout(client)
    listed = client.get("/api/tags").get_json()["data"]
    assert tag in listed


def test_tags_errors(client):
    _logout(client)
    assert client.post("/api/tags", json={"name": "x"}).status_code == 403

    _login(client)
    assert client.post("/api/tags", json={"name": "  "}, headers=HDRS).status_code == 400
    name = f"dup{uuid.uuid4().hex[:6]}"
    _tag(client, name, label="Dup")
    rv = client.post("/api/tags", json={"name": name.upper()}, headers=HDRS)
    assert rv.status_code == 409
    assert rv.get_json()["error"] == "Tag already exists"


# ───────────────────────── preview ────────────────────────────────────
def test_preview_compiles_plain_text(client):
    _login(client)
    rv = client.post(
        "/api/preview",
        json={"body": "HELLO\n- a\n- b\n> wise words"},
        headers=HDRS,
    )
    assert rv.status_code == 200
    data = rv.get_json()["data"]
    assert [b["type"] for b in data["document"]["content"]] == [
        "heading",
        "bulletList",
        "blockquote",
    ]
    assert data["html"].startswith('<div class="block-renderer">')
    assert "<h2>HELLO</h2>" in data["html"]
    assert data["plainText"] == "HELLO\n\n- a\n- b\n\n> wise words"
    assert data["readingTime"] == 1


def test_preview_requires_login(client):
    _logout(client)
    assert client.post("/api/preview", json={"body": "x"}).status_code == 401
