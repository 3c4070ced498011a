"""
tests/test_errors.py
"""
from __future__ import annotations

from simplicity.blog import app


def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    # sanity-check that we really rendered *our* template, not Werkzeug’s
    assert b"Page not found" in resp.data
    assert b"Back to the front page" in resp.data


def test_missing_post_is_404(client):
    assert client.get("/blog/no-such-post-anywhere").status_code == 404


def test_api_404_is_json(client):
    resp = client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert resp.get_json() == {"success": False, "error": "Not found"}


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "index", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data
    assert b"kaboom" not in resp.data


def test_500_on_the_api_keeps_the_envelope(client, monkeypatch):
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "api_tags", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/api/tags")
    assert resp.status_code == 500
    assert resp.get_json()["success"] is False
