"""
tests/test_concurrency.py – simultaneous reconciliations on one attachment row
"""
from __future__ import annotations

import threading

from helpers import new_entry, ref_count, sha

from inkwell.attachments import reconcile, unit_of_work
from inkwell.blog import app, connect_db

DIGEST = sha(b"shared banner")


def _run_parallel(jobs, settings) -> list[BaseException]:
    """
    Run every ``(entry_id, current, desired)`` job on its own thread and
    its own connection; all threads are released at the same moment.
    """
    barrier = threading.Barrier(len(jobs))
    errors: list[BaseException] = []

    def worker(entry_id, current, desired):
        db = connect_db(app.config["DATABASE"])
        try:
            barrier.wait()
            with unit_of_work(db) as uow:
                reconcile(entry_id, current, desired, uow=uow, settings=settings)
        except BaseException as exc:  # surfaced to the test below
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=job) for job in jobs]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return errors


def test_two_entries_adding_the_same_hash(db, settings):
    e1, e2 = new_entry(db), new_entry(db)

    errors = _run_parallel([(e1, [], [DIGEST]), (e2, [], [DIGEST])], settings)

    assert errors == []
    assert ref_count(db, DIGEST) == 2


def test_many_writers_then_many_releasers(db, settings):
    ids = [new_entry(db) for _ in range(8)]

    errors = _run_parallel([(i, [], [DIGEST]) for i in ids], settings)
    assert errors == []
    assert ref_count(db, DIGEST) == 8

    errors = _run_parallel([(i, [DIGEST], []) for i in ids[:5]], settings)
    assert errors == []
    assert ref_count(db, DIGEST) == 3

    errors = _run_parallel([(i, [DIGEST], []) for i in ids[5:]], settings)
    assert errors == []
    assert ref_count(db, DIGEST) is None
