"""
tests/helpers.py – shared helpers that are not fixtures.
"""
from __future__ import annotations

import hashlib
import itertools
import json

CSRF = "test-token"          # shared constant so the token matches the session
SITE = "https://example.com"
HDRS = {"X-CSRFToken": CSRF}

_slugs = itertools.count(1)


def login(client) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = CSRF


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def img(sha256: str, ext: str = "png", prefix: str = "/uploads") -> str:
    """Markdown image pointing at a stored upload."""
    return f"![]({prefix}/{sha256}.{ext})"


def new_entry(db, body: str = "", *, kind: str = "post", slug: str | None = None) -> int:
    """Insert a bare entry row (no reconciliation) and return its id."""
    slug = slug or f"e-{next(_slugs)}"
    cur = db.execute(
        "INSERT INTO entry (kind, title, slug, body, created_at) VALUES (?,?,?,?,?)",
        (kind, slug, slug, body, "2099-01-01T00:00:00+00:00"),
    )
    db.commit()
    return cur.lastrowid


def ref_count(db, sha256: str) -> int | None:
    row = db.execute("SELECT ref_count FROM attachment WHERE sha256=?", (sha256,)).fetchone()
    return row["ref_count"] if row else None


def stored_hashes(db, entry_id: int) -> list[str]:
    row = db.execute("SELECT asset_hashes FROM entry WHERE id=?", (entry_id,)).fetchone()
    return json.loads(row["asset_hashes"])
