"""
tests/test_auth.py – one-time token login, the session it opens, and the
CSRF header every API write has to carry.
"""
from __future__ import annotations

import io
import itertools
import time

import pytest
from helpers import sha

from inkwell.blog import _create_admin, _rotate_token, app, get_db, signer

PNG = b"\x89PNG\r\n\x1a\n signed in"

_hosts = itertools.count(1)


def _mint_token() -> str:
    db = get_db()
    if db.execute("SELECT 1 FROM user LIMIT 1").fetchone() is None:
        return _create_admin(db, username="tester")
    return _rotate_token(db)


def _log_in(browser, token: str):
    return browser.post("/login", data={"token": token})


def _session_csrf(browser) -> str | None:
    with browser.session_transaction() as sess:
        return sess.get("csrf")


def _new_post(browser, csrf: str | None = None, slug: str = "hello"):
    headers = {"X-CSRFToken": csrf} if csrf is not None else {}
    return browser.post(
        "/api/entries",
        json={"title": "Hello", "slug": slug, "body": "first words"},
        headers=headers,
    )


def _entry_count() -> int:
    return get_db().execute("SELECT COUNT(*) FROM entry").fetchone()[0]


@pytest.fixture
def browser():
    """Own client on its own address; the login rate limit is per address."""
    with app.test_client() as c, app.app_context():
        c.environ_base["REMOTE_ADDR"] = f"10.0.0.{next(_hosts)}"
        yield c


@pytest.fixture
def signed_in(browser):
    rv = _log_in(browser, _mint_token())
    assert rv.status_code == 302
    return browser


# ───────────────────────── session → API ──────────────────────────────
def test_token_login_opens_the_api(signed_in):
    csrf = _session_csrf(signed_in)
    assert csrf

    rv = _new_post(signed_in, csrf)
    assert rv.status_code == 201
    eid = rv.get_json()["id"]
    assert signed_in.get(f"/api/entries/{eid}").get_json()["title"] == "Hello"


@pytest.mark.parametrize("sent", [None, "", "not-the-session-token"])
def test_api_write_needs_the_session_csrf_token(signed_in, sent):
    assert _new_post(signed_in, sent).status_code == 403
    assert _entry_count() == 0


def test_upload_accepts_csrf_as_form_field(signed_in, upload_dir):
    rv = signed_in.post(
        "/api/upload",
        data={"file": (io.BytesIO(PNG), "in.png"), "csrf": _session_csrf(signed_in)},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 201
    assert (upload_dir / f"{sha(PNG)}.png").exists()


def test_csrf_token_belongs_to_one_session(browser):
    _log_in(browser, _mint_token())
    first = _session_csrf(browser)

    with app.test_client() as other:
        other.environ_base["REMOTE_ADDR"] = f"10.0.0.{next(_hosts)}"
        _log_in(other, _mint_token())
        second = _session_csrf(other)
        assert first != second
        assert _new_post(other, first).status_code == 403
        assert _new_post(other, second).status_code == 201


def test_logout_closes_the_api(signed_in):
    csrf = _session_csrf(signed_in)
    assert signed_in.get("/logout").status_code == 302
    assert _new_post(signed_in, csrf).status_code == 403
    assert signed_in.get("/api/attachments").status_code == 403


# ───────────────────────── token checks ───────────────────────────────
def _assert_rejected(browser, token: str) -> None:
    rv = _log_in(browser, token)
    assert rv.status_code == 200                    # back on the login form
    with browser.session_transaction() as sess:
        assert "logged_in" not in sess
    assert _new_post(browser, "anything").status_code == 403


def test_unknown_handle_is_rejected(browser):
    _mint_token()
    _assert_rejected(browser, signer.sign("not-the-stored-handle").decode())


def test_bad_signature_is_rejected(browser):
    token = _mint_token()
    handle = token.rsplit(".", 2)[0]
    _assert_rejected(browser, f"{handle}.AAAAAA.{'x' * 27}")


def test_expired_token_is_rejected(browser, monkeypatch):
    token = _mint_token()
    real_time = time.time
    monkeypatch.setattr(time, "time", lambda: real_time() + 120)
    _assert_rejected(browser, token)


def test_token_works_once(browser):
    token = _mint_token()
    assert _log_in(browser, token).status_code == 302

    with app.test_client() as again:
        again.environ_base["REMOTE_ADDR"] = f"10.0.0.{next(_hosts)}"
        _assert_rejected(again, token)


def test_rotation_revokes_the_previous_token(browser):
    old = _mint_token()
    new = _mint_token()
    _assert_rejected(browser, old)
    assert _log_in(browser, new).status_code == 302


def test_login_attempts_are_rate_limited(browser):
    bogus = signer.sign("nobody").decode()
    for _ in range(5):
        assert _log_in(browser, bogus).status_code == 200

    rv = _log_in(browser, bogus)
    assert rv.status_code == 429
    assert int(rv.headers["Retry-After"]) <= 60
