"""
tests/test_maintenance.py – drift check, repair, orphan sweep, CLI
"""
from __future__ import annotations

import logging

import pytest
from helpers import img, new_entry, ref_count, sha

from inkwell.attachments import (
    Drift,
    check_refcounts,
    register,
    repair_refcounts,
    stage,
    store,
    sweep_orphans,
    sync_entry_attachments,
    unit_of_work,
)
from inkwell.blog import app


def _upload(db, settings, data: bytes, filename: str = "f.png") -> str:
    return store(data, filename, db=db, settings=settings).sha256


def _cite(db, settings, entry_id: int, *digests: str) -> None:
    body = " ".join(img(d) for d in digests)
    with unit_of_work(db) as uow:
        db.execute("UPDATE entry SET body=? WHERE id=?", (body, entry_id))
        sync_entry_attachments(entry_id, body, uow=uow, settings=settings)


@pytest.fixture
def drifted(db, settings):
    """
    Three kinds of damage:
      • *inflated* – stored count too high
      • *missing*  – cited but no registry row
      • *stale*    – registry row nobody cites any more
    """
    inflated = _upload(db, settings, b"inflated")
    stale = _upload(db, settings, b"stale")
    missing = sha(b"missing")
    eid = new_entry(db)
    _cite(db, settings, eid, inflated, stale)

    db.execute("UPDATE attachment SET ref_count=5 WHERE sha256=?", (inflated,))
    db.execute(
        "UPDATE entry SET asset_hashes=? WHERE id=?",
        (f'["{inflated}", "{missing}"]', eid),
    )
    db.commit()
    return {"inflated": inflated, "missing": missing, "stale": stale}


def test_consistent_database_has_no_drift(db, settings):
    a = _upload(db, settings, b"A")
    _cite(db, settings, new_entry(db), a)
    _cite(db, settings, new_entry(db), a)
    assert check_refcounts(db) == []


def test_check_reports_every_kind_of_drift(db, drifted, caplog):
    with caplog.at_level(logging.WARNING, logger="inkwell.attachments"):
        drift = check_refcounts(db)

    assert set(drift) == {
        Drift(drifted["inflated"], 5, 1),
        Drift(drifted["missing"], None, 1),
        Drift(drifted["stale"], 1, 0),
    }
    assert caplog.text.count("refcount drift") == 3


def test_repair_fixes_counts_and_releases_stale(db, settings, drifted, upload_dir):
    with unit_of_work(db) as uow:
        repaired = repair_refcounts(uow=uow, settings=settings)

    assert len(repaired) == 3
    assert ref_count(db, drifted["inflated"]) == 1
    assert ref_count(db, drifted["missing"]) == 1
    assert ref_count(db, drifted["stale"]) is None
    assert not (upload_dir / f"{drifted['stale']}.png").exists()
    assert check_refcounts(db) == []


def test_sweep_removes_only_unknown_files(db, settings, upload_dir):
    kept = _upload(db, settings, b"kept")
    upload_dir.joinpath(f"{sha(b'leaked')}.png").write_bytes(b"leaked")
    upload_dir.joinpath(f"{kept}.jpg").write_bytes(b"kept")       # second copy
    upload_dir.joinpath("README").write_text("not an upload")

    assert sweep_orphans(db, settings.storage, dry_run=True) == sorted(
        [f"{sha(b'leaked')}.png", f"{kept}.jpg"]
    )
    assert len(list(upload_dir.iterdir())) == 4

    sweep_orphans(db, settings.storage)
    assert sorted(p.name for p in upload_dir.iterdir()) == sorted(["README", f"{kept}.png"])


def test_sweep_keeps_files_of_placeholders(db, settings, upload_dir):
    digest = sha(b"cited before upload")
    upload_dir.mkdir(parents=True, exist_ok=True)
    upload_dir.joinpath(f"{digest}.gif").write_bytes(b"cited before upload")
    _cite(db, settings, new_entry(db), digest)

    assert sweep_orphans(db, settings.storage) == []


def test_rolled_back_upload_is_swept(db, settings, upload_dir):
    staged = stage(b"never committed", "x.png", db=db, settings=settings)
    with pytest.raises(RuntimeError):
        with unit_of_work(db) as uow:
            register(staged, b"never committed", uow=uow, settings=settings)
            raise RuntimeError("request aborted")

    assert sweep_orphans(db, settings.storage) == [f"{sha(b'never committed')}.png"]


# ───────────────────────── CLI ────────────────────────────────────────
@pytest.fixture
def runner():
    return app.test_cli_runner()


def test_cli_check_clean(runner):
    result = runner.invoke(args=["attachments", "check"])
    assert result.exit_code == 0
    assert "consistent" in result.output


def test_cli_check_then_fix(runner, db, drifted):
    result = runner.invoke(args=["attachments", "check"])
    assert result.exit_code == 1
    assert f"{drifted['missing']}  stored=missing  expected=1" in result.output

    result = runner.invoke(args=["attachments", "check", "--fix"])
    assert result.exit_code == 0
    assert "Repaired 3" in result.output
    assert check_refcounts(db) == []


def test_cli_sweep(runner, upload_dir):
    upload_dir.mkdir(parents=True, exist_ok=True)
    orphan = f"{sha(b'orphan')}.png"
    upload_dir.joinpath(orphan).write_bytes(b"orphan")

    result = runner.invoke(args=["attachments", "sweep", "--dry-run"])
    assert result.exit_code == 0
    assert orphan in result.output
    assert upload_dir.joinpath(orphan).exists()

    result = runner.invoke(args=["attachments", "sweep"])
    assert "Deleted 1" in result.output
    assert not upload_dir.joinpath(orphan).exists()


def test_cli_rebuild(runner, db, settings):
    a = _upload(db, settings, b"A")
    eid = new_entry(db, img(a))
    new_entry(db, "no images")

    result = runner.invoke(args=["attachments", "rebuild"])
    assert result.exit_code == 0
    assert "Rebuilt 2 entries, 1 changed." in result.output
    assert ref_count(db, a) == 1
    assert db.execute("SELECT asset_hashes FROM entry WHERE id=?", (eid,)).fetchone()[0] == f'["{a}"]'
