"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from helpers import SITE
from pytest import MonkeyPatch

from inkwell.attachments import AttachmentSettings, LocalStorage
from inkwell.blog import app, get_db, init_db


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        STORAGE_BACKEND="local",
        SITE_URL=SITE,
    )
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def upload_dir(tmp_path: Path, monkeypatch) -> Path:
    """Every test writes uploads to its own directory."""
    path = tmp_path / "uploads"
    monkeypatch.setitem(app.config, "UPLOAD_DIR", str(path))
    return path


@pytest.fixture(autouse=True)
def _clean_tables(_configure_app) -> Generator[None, None, None]:
    """Reference counts are global state – start every test from zero."""
    yield
    with app.app_context():
        db = get_db()
        db.execute("DELETE FROM revision")
        db.execute("DELETE FROM entry")
        db.execute("DELETE FROM attachment")
        db.commit()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def db():
    """A connection inside an app context, for tests that skip HTTP."""
    with app.app_context():
        yield get_db()


@pytest.fixture
def settings(upload_dir: Path) -> AttachmentSettings:
    return AttachmentSettings(
        storage=LocalStorage(upload_dir), url_prefix="/uploads", site_origin=SITE
    )


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch inkwell.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.
    """
    from inkwell import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
