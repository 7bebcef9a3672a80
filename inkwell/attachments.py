"""
Content-addressed attachments and their reference counts.

Uploaded bytes are stored once per SHA-256 digest under ``<sha256>.<ext>``.
Every entry keeps the digests it cites in ``entry.asset_hashes`` (a JSON
array); ``attachment.ref_count`` mirrors how many entries cite each digest.

Any change to an entry body must go through :func:`reconcile` inside the
same :func:`unit_of_work` as the row write, so counts and hash sets commit
or roll back together.  Physical files are only removed after the commit.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import mimetypes
import os
import re
import sqlite3
import tempfile
from collections import Counter
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator
from urllib.parse import urlsplit

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536  # 64 KiB
DEFAULT_MIME = "application/octet-stream"
DEFAULT_EXT = "bin"
R2_KEY_PREFIX = "uploads/"

HASH_RE = re.compile(r"^[0-9a-f]{64}$")
_FILENAME_EXT_RE = re.compile(r"\.([A-Za-z0-9]+)$")
_STORED_NAME_RE = re.compile(r"^([0-9a-f]{64})\.([a-z0-9]+)$")
_LINK_TARGET_RE = re.compile(r"\]\(([^)]+)\)")
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:")


################################################################################
# Errors
################################################################################
class AttachmentError(Exception):
    """Base class; ``status_code`` is what the web layer answers with."""

    status_code = 500


class NotFoundError(AttachmentError):
    status_code = 404


class PreconditionError(AttachmentError):
    status_code = 409


class StorageError(AttachmentError):
    status_code = 502


class ConsistencyError(AttachmentError):
    """Registry misuse. Never expected when callers go through reconcile()."""

    status_code = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _stamp() -> str:
    return utc_now().isoformat(timespec="seconds")


################################################################################
# Unit of work
################################################################################
class UnitOfWork:
    """
    One sqlite write transaction plus the hooks to run once it commits.

    Registry, reconciler and cascade helpers take the unit explicitly
    (``uow=``) instead of looking up a connection themselves.
    """

    def __init__(self, db):
        self.db = db
        self._hooks: list[Callable[[], None]] = []

    def after_commit(self, hook: Callable[[], None]) -> None:
        self._hooks.append(hook)

    def run_hooks(self) -> None:
        hooks, self._hooks = self._hooks, []
        for hook in hooks:
            try:
                hook()
            except (StorageError, OSError, sqlite3.Error):
                logger.warning("post-commit cleanup failed", exc_info=True)


@contextmanager
def unit_of_work(db) -> Iterator[UnitOfWork]:
    """
    ``BEGIN IMMEDIATE`` → yield → ``COMMIT`` (or ``ROLLBACK`` on any error).

    Post-commit hooks only run when the commit went through; a rolled back
    unit drops them.
    """
    if db.in_transaction:
        raise ConsistencyError("unit_of_work() needs a connection without an open transaction")
    db.execute("BEGIN IMMEDIATE")
    uow = UnitOfWork(db)
    try:
        yield uow
    except BaseException:
        db.rollback()
        raise
    db.commit()
    uow.run_hooks()


################################################################################
# Hash-set codec (entry.asset_hashes)
################################################################################
def normalize_hash(value) -> str:
    if not isinstance(value, str) or not HASH_RE.match(value.lower()):
        raise ConsistencyError(f"not a sha256 hex digest: {value!r}")
    return value.lower()


def load_hashes(raw) -> list[str]:
    """Decode a stored hash set; anything but a list of digests is rejected."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ConsistencyError(f"asset_hashes is not valid JSON: {exc}") from exc
    if not isinstance(raw, list):
        raise ConsistencyError("asset_hashes must be a JSON array")
    return list(dict.fromkeys(normalize_hash(h) for h in raw))


def dump_hashes(hashes: Iterable[str]) -> str:
    return json.dumps(list(hashes))


################################################################################
# Storage backends
################################################################################
def split_stored_name(name: str) -> tuple[str, str] | None:
    m = _STORED_NAME_RE.match(name)
    return (m.group(1), m.group(2)) if m else None


class LocalStorage:
    """Files live flat under *root* as ``<sha256>.<ext>``."""

    def __init__(self, root):
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"LocalStorage({str(self.root)!r})"

    def path(self, name: str) -> Path:
        return self.root / name

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def write(self, name: str, data: bytes, mime: str | None = None) -> None:
        """
        Write to a temp file in the same directory, check its digest, then
        ``os.replace`` it into place.  A reader never sees a half-written file.
        """
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".upload-", suffix=".tmp")
        except OSError as exc:
            raise StorageError(f"cannot write {name}: {exc}") from exc
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            parts = split_stored_name(name)
            if parts and compute_hash(Path(tmp).read_bytes()) != parts[0]:
                raise StorageError(f"digest mismatch while writing {name}")
            os.replace(tmp, self.path(name))
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise StorageError(f"cannot write {name}: {exc}") from exc
        except StorageError:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise

    def delete(self, name: str) -> bool:
        try:
            self.path(name).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"cannot delete {name}: {exc}") from exc
        return True

    def list_names(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.name for p in self.root.iterdir() if p.is_file() and not p.name.startswith(".")
        )

    def public_url(self, name: str) -> str | None:
        # served by the app itself
        return None


def r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def _missing_key(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code", "")
    return code in {"404", "NoSuchKey", "NotFound"}


class R2Storage:
    """Cloudflare R2 (S3 API) bucket; objects live under ``uploads/``."""

    def __init__(self, cfg: dict[str, str], client=None):
        self.cfg = cfg
        self.bucket = cfg["R2_BUCKET"]
        self._client = client

    def __repr__(self) -> str:
        return f"R2Storage({self.bucket!r})"

    @property
    def client(self):
        if self._client is None:
            self._client = r2_client(self.cfg)
        return self._client

    @staticmethod
    def key(name: str) -> str:
        return f"{R2_KEY_PREFIX}{name}"

    def exists(self, name: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self.key(name))
        except ClientError as exc:
            if _missing_key(exc):
                return False
            raise StorageError(f"R2 lookup failed for {name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"R2 lookup failed for {name}: {exc}") from exc
        return True

    def write(self, name: str, data: bytes, mime: str | None = None) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=self.key(name),
                Body=data,
                ContentType=mime or DEFAULT_MIME,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"R2 upload failed for {name}: {exc}") from exc

    def delete(self, name: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self.key(name))
        except ClientError as exc:
            if _missing_key(exc):
                return False
            raise StorageError(f"R2 delete failed for {name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"R2 delete failed for {name}: {exc}") from exc
        return True

    def list_names(self) -> list[str]:
        names = []
        try:
            pages = self.client.get_paginator("list_objects_v2").paginate(
                Bucket=self.bucket, Prefix=R2_KEY_PREFIX
            )
            for page in pages:
                for obj in page.get("Contents", []):
                    names.append(obj["Key"][len(R2_KEY_PREFIX):])
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"R2 listing failed: {exc}") from exc
        return sorted(n for n in names if n and "/" not in n)

    def public_url(self, name: str) -> str | None:
        return r2_object_url(self.cfg, self.key(name))


@dataclass(frozen=True)
class AttachmentSettings:
    """Everything the core needs from configuration, passed in explicitly."""

    storage: LocalStorage | R2Storage
    url_prefix: str = "/uploads"
    site_origin: str | None = None

    def public_path(self, sha256: str, ext: str) -> str:
        return f"{self.url_prefix.rstrip('/')}/{sha256}.{ext}"


################################################################################
# Content-addressable store
################################################################################
@dataclass(frozen=True)
class StoredFile:
    sha256: str
    ext: str
    mime: str
    size: int
    path: str

    @property
    def name(self) -> str:
        return f"{self.sha256}.{self.ext}"

    def to_dict(self) -> dict:
        return asdict(self)


def compute_hash(data) -> str:
    """
    SHA-256 hex digest of *data*.

    Accepts bytes or a binary file object; file objects are read in chunks
    and rewound afterwards.
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        return hashlib.sha256(data).hexdigest()
    sha256 = hashlib.sha256()
    for chunk in iter(lambda: data.read(CHUNK_SIZE), b""):
        sha256.update(chunk)
    data.seek(0)
    return sha256.hexdigest()


def guess_mime(filename: str, declared: str | None = None) -> str:
    guessed = mimetypes.guess_type(filename or "")[0]
    return (guessed or declared or DEFAULT_MIME).lower()


def resolve_extension(filename: str, mime: str | None = None) -> str:
    """Filename extension first, then the MIME table, then ``bin``."""
    m = _FILENAME_EXT_RE.search(filename or "")
    if m:
        return m.group(1).lower()
    if mime and mime != DEFAULT_MIME:
        ext = mimetypes.guess_extension(mime, strict=False)
        if ext:
            return ext.lstrip(".").lower()
    return DEFAULT_EXT


def stage(
    data: bytes,
    filename: str,
    mime: str | None = None,
    *,
    db,
    settings: AttachmentSettings,
) -> StoredFile:
    """
    Hash *data* and put it into storage.  Runs before the unit of work is
    opened so no write lock is held during the upload itself.

    Bytes already registered under a real extension keep that extension, so
    the same content never ends up in two files.  A failed write raises
    :class:`StorageError` before the registry is touched.
    """
    if db.in_transaction:
        raise ConsistencyError("stage() must run outside a unit of work")
    sha256 = compute_hash(data)
    mime = guess_mime(filename, mime)
    ext = resolve_extension(filename, mime)

    known = _fetch(db, sha256)
    if known is not None and not known.is_placeholder:
        ext, mime = known.ext, known.mime

    name = f"{sha256}.{ext}"
    if settings.storage.exists(name):
        logger.debug("content %s already stored, skipping write", name)
    else:
        settings.storage.write(name, data, mime)
        logger.debug("stored %s (%d bytes)", name, len(data))
    return StoredFile(
        sha256=sha256, ext=ext, mime=mime, size=len(data), path=settings.public_path(sha256, ext)
    )


def register(
    staged: StoredFile, data: bytes, *, uow: UnitOfWork, settings: AttachmentSettings
) -> StoredFile:
    """
    Upsert the registry row for *staged* with ``ref_count`` untouched.

    Runs under the unit's write lock, the same lock the post-commit cleanup
    of a release takes, so a file removed since staging is written again
    before the row becomes visible.
    """
    storage = settings.storage
    stored = staged
    known = get(staged.sha256, uow=uow)
    if known is not None and not known.is_placeholder and known.ext != staged.ext:
        # registered under another name since staging
        stored = replace(
            staged,
            ext=known.ext,
            mime=known.mime,
            path=settings.public_path(staged.sha256, known.ext),
        )
        _discard(storage, staged.name)

    if not storage.exists(stored.name):
        storage.write(stored.name, data, stored.mime)
        logger.info("rewrote %s, removed after it was staged", stored.name)

    now = _stamp()
    uow.db.execute(
        """
        INSERT INTO attachment (sha256, ext, mime, size, path, ref_count, created_at, updated_at)
             VALUES (?,?,?,?,?,0,?,?)
        ON CONFLICT(sha256) DO UPDATE SET
             ext=excluded.ext, mime=excluded.mime, size=excluded.size,
             path=excluded.path, updated_at=excluded.updated_at
        """,
        (stored.sha256, stored.ext, stored.mime, stored.size, stored.path, now, now),
    )
    return stored


def store(
    data: bytes,
    filename: str,
    mime: str | None = None,
    *,
    db,
    settings: AttachmentSettings,
) -> StoredFile:
    """:func:`stage` then :func:`register` in a unit of its own."""
    staged = stage(data, filename, mime, db=db, settings=settings)
    with unit_of_work(db) as uow:
        return register(staged, data, uow=uow, settings=settings)


def _discard(storage, name: str) -> None:
    try:
        storage.delete(name)
    except StorageError:
        logger.warning("could not discard %s", name, exc_info=True)


################################################################################
# Registry
################################################################################
@dataclass(frozen=True)
class Attachment:
    sha256: str
    ext: str
    mime: str
    size: int
    path: str
    ref_count: int
    created_at: str
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row) -> Attachment:
        return cls(**{k: row[k] for k in row.keys()})

    @property
    def is_placeholder(self) -> bool:
        """Created for a referenced digest that was never uploaded here."""
        return not self.ext

    @property
    def name(self) -> str | None:
        return f"{self.sha256}.{self.ext}" if self.ext else None

    def to_dict(self) -> dict:
        return asdict(self)


_ATTACHMENT_COLS = "sha256, ext, mime, size, path, ref_count, created_at, updated_at"


def _fetch(db, sha256: str) -> Attachment | None:
    row = db.execute(
        f"SELECT {_ATTACHMENT_COLS} FROM attachment WHERE sha256=?", (sha256,)
    ).fetchone()
    return Attachment.from_row(row) if row else None


def get(sha256: str, *, uow: UnitOfWork) -> Attachment | None:
    return _fetch(uow.db, sha256)


def ensure_placeholder(sha256: str, *, uow: UnitOfWork, settings: AttachmentSettings) -> None:
    uow.db.execute(
        """
        INSERT OR IGNORE INTO attachment (sha256, ext, mime, size, path, ref_count, created_at)
             VALUES (?, '', ?, 0, ?, 0, ?)
        """,
        (sha256, DEFAULT_MIME, f"{settings.url_prefix.rstrip('/')}/{sha256}", _stamp()),
    )


def increment(sha256: str, *, uow: UnitOfWork) -> int:
    cur = uow.db.execute(
        "UPDATE attachment SET ref_count = ref_count + 1 WHERE sha256=?", (sha256,)
    )
    if cur.rowcount == 0:
        raise ConsistencyError(f"increment on unknown attachment {sha256}")
    return uow.db.execute(
        "SELECT ref_count FROM attachment WHERE sha256=?", (sha256,)
    ).fetchone()["ref_count"]


def decrement(
    sha256: str, *, uow: UnitOfWork, settings: AttachmentSettings
) -> tuple[int, Attachment | None]:
    """
    Drop one reference.  At zero the row is deleted in this unit and the
    file removal is queued for after the commit.

    Returns ``(new_count, record)``; *record* is ``None`` when the digest
    had no registry row at all.
    """
    cur = uow.db.execute(
        "UPDATE attachment SET ref_count = MAX(ref_count - 1, 0) WHERE sha256=?",
        (sha256,),
    )
    if cur.rowcount == 0:
        logger.warning("decrement on unknown attachment %s, skipped", sha256)
        return 0, None
    record = get(sha256, uow=uow)
    if record.ref_count == 0:
        delete(sha256, uow=uow, settings=settings)
    return record.ref_count, record


def delete(sha256: str, *, uow: UnitOfWork, settings: AttachmentSettings) -> Attachment | None:
    """Remove the row now and the file after commit (best effort)."""
    record = get(sha256, uow=uow)
    if record is None:
        return None
    uow.db.execute("DELETE FROM attachment WHERE sha256=?", (sha256,))
    db, storage = uow.db, settings.storage
    uow.after_commit(lambda: _remove_files(db, storage, record))
    logger.info("attachment %s released", sha256)
    return record


def _remove_files(db, storage, record: Attachment) -> None:
    """
    Post-commit cleanup.  Holds the write lock while it checks the registry
    and unlinks, so an upload of the same bytes committing in between keeps
    its file.
    """
    db.execute("BEGIN IMMEDIATE")
    try:
        if db.execute("SELECT 1 FROM attachment WHERE sha256=?", (record.sha256,)).fetchone():
            logger.info("attachment %s was stored again, keeping its file", record.sha256)
            return
        if record.name:
            names = [record.name]
        else:
            names = [n for n in storage.list_names() if n.startswith(f"{record.sha256}.")]
        for name in names:
            if storage.delete(name):
                logger.info("deleted file %s", name)
    finally:
        db.rollback()


def manual_delete(sha256: str, *, uow: UnitOfWork, settings: AttachmentSettings) -> Attachment:
    record = get(sha256, uow=uow)
    if record is None:
        raise NotFoundError(f"Attachment {sha256} not found.")
    if record.ref_count > 0:
        raise PreconditionError(
            f"Attachment {sha256} is still referenced by {record.ref_count} entr"
            f"{'y' if record.ref_count == 1 else 'ies'}."
        )
    delete(sha256, uow=uow, settings=settings)
    return record


def list_with_references(db) -> list[dict]:
    """Admin projection: every attachment plus the entries citing it."""
    cited: dict[str, list[dict]] = {}
    for row in db.execute("SELECT id, kind, title, slug, asset_hashes FROM entry ORDER BY id"):
        for sha256 in load_hashes(row["asset_hashes"]):
            cited.setdefault(sha256, []).append(
                {"id": row["id"], "kind": row["kind"], "title": row["title"], "slug": row["slug"]}
            )
    rows = db.execute(
        f"SELECT {_ATTACHMENT_COLS} FROM attachment ORDER BY created_at DESC, sha256"
    ).fetchall()
    return [
        {**Attachment.from_row(row).to_dict(), "referenced_by": cited.get(row["sha256"], [])}
        for row in rows
    ]


################################################################################
# Markdown hash extractor
################################################################################
def _link_url(target: str) -> str:
    """``<url> "title"`` → ``url``"""
    target = target.strip()
    if target.startswith("<") and ">" in target:
        return target[1:target.index(">")]
    return target.split()[0] if target else ""


def _same_origin(url: str, origin: str) -> bool:
    if url.startswith("//"):
        origin = "//" + origin.split("//", 1)[-1]
    return url == origin or url.startswith(origin + "/")


def extract_hashes(body: str | None, site_origin: str | None = None, *, url_prefix: str = "/uploads") -> list[str]:
    """
    Digests referenced by Markdown link or image targets, first-seen order,
    each once.

    Absolute URLs only count when they point at *site_origin* (if given).
    The path must end in ``<url_prefix>/<64 hex>.<ext>``; digests are
    lower-cased.
    """
    path_re = re.compile(
        re.escape(url_prefix.rstrip("/")) + r"/([0-9a-f]{64})\.[a-z0-9]+$", re.I
    )
    origin = site_origin.rstrip("/") if site_origin else None
    found: dict[str, None] = {}
    for m in _LINK_TARGET_RE.finditer(body or ""):
        url = _link_url(m.group(1))
        absolute = bool(_SCHEME_RE.match(url)) or url.startswith("//")
        if absolute and origin and not _same_origin(url, origin):
            continue
        hit = path_re.search(urlsplit(url).path)
        if hit:
            found[hit.group(1).lower()] = None
    return list(found)


################################################################################
# Reconciler
################################################################################
@dataclass(frozen=True)
class ReconcileResult:
    desired: tuple[str, ...]
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    released: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    def to_dict(self) -> dict:
        return {k: list(v) for k, v in asdict(self).items()}


def _require_entry(entry_id: int, *, uow: UnitOfWork):
    row = uow.db.execute(
        "SELECT id, body, asset_hashes FROM entry WHERE id=?", (entry_id,)
    ).fetchone()
    if row is None:
        raise NotFoundError(f"Entry {entry_id} not found.")
    return row


def reconcile(
    entry_id: int,
    current: Iterable[str],
    desired: Iterable[str],
    *,
    uow: UnitOfWork,
    settings: AttachmentSettings,
) -> ReconcileResult:
    """
    Move *entry_id* from the *current* hash set to the *desired* one.

    Only the symmetric difference touches the registry: new digests get a
    placeholder if needed and ``+1``, dropped ones ``-1``.  The entry's
    ``asset_hashes`` is rewritten only when something changed, so a repeat
    call with the same set is a no-op.  Must run inside *uow* together with
    the entry's own write.
    """
    _require_entry(entry_id, uow=uow)
    current = list(dict.fromkeys(normalize_hash(h) for h in current))
    desired = list(dict.fromkeys(normalize_hash(h) for h in desired))
    current_set, desired_set = set(current), set(desired)

    to_add = [h for h in desired if h not in current_set]
    to_remove = [h for h in current if h not in desired_set]

    for sha256 in to_add:
        ensure_placeholder(sha256, uow=uow, settings=settings)
        increment(sha256, uow=uow)

    released = []
    for sha256 in to_remove:
        count, record = decrement(sha256, uow=uow, settings=settings)
        if record is not None and count == 0:
            released.append(sha256)

    if to_add or to_remove:
        uow.db.execute(
            "UPDATE entry SET asset_hashes=? WHERE id=?", (dump_hashes(desired), entry_id)
        )
        logger.info(
            "entry %s attachments: +%d -%d (%d released)",
            entry_id, len(to_add), len(to_remove), len(released),
        )
    return ReconcileResult(tuple(desired), tuple(to_add), tuple(to_remove), tuple(released))


def entry_hashes(entry_id: int, *, uow: UnitOfWork) -> list[str]:
    return load_hashes(_require_entry(entry_id, uow=uow)["asset_hashes"])


def sync_entry_attachments(
    entry_id: int, body: str, *, uow: UnitOfWork, settings: AttachmentSettings
) -> ReconcileResult:
    """Reconcile against what *body* links to.  Call after writing the body."""
    current = entry_hashes(entry_id, uow=uow)
    desired = extract_hashes(body, settings.site_origin, url_prefix=settings.url_prefix)
    return reconcile(entry_id, current, desired, uow=uow, settings=settings)


def rebuild_entry(entry_id: int, *, uow: UnitOfWork, settings: AttachmentSettings) -> ReconcileResult:
    """Repair: derive the set from the stored body, whatever was recorded."""
    row = _require_entry(entry_id, uow=uow)
    desired = extract_hashes(row["body"], settings.site_origin, url_prefix=settings.url_prefix)
    return reconcile(entry_id, load_hashes(row["asset_hashes"]), desired, uow=uow, settings=settings)


def bind_upload(
    entry_id: int, sha256: str, *, uow: UnitOfWork, settings: AttachmentSettings
) -> ReconcileResult:
    """Pre-bind a fresh upload to an entry being edited."""
    current = entry_hashes(entry_id, uow=uow)
    return reconcile(entry_id, current, [*current, sha256], uow=uow, settings=settings)


################################################################################
# Deletion cascade
################################################################################
def release_all(entry_id: int, *, uow: UnitOfWork, settings: AttachmentSettings) -> ReconcileResult:
    return reconcile(entry_id, entry_hashes(entry_id, uow=uow), [], uow=uow, settings=settings)


def delete_entry(entry_id: int, *, uow: UnitOfWork, settings: AttachmentSettings) -> ReconcileResult:
    """Release every reference, then drop revisions and the entry row."""
    result = release_all(entry_id, uow=uow, settings=settings)
    uow.db.execute("DELETE FROM revision WHERE entry_id=?", (entry_id,))
    uow.db.execute("DELETE FROM entry WHERE id=?", (entry_id,))
    return result


################################################################################
# Maintenance
################################################################################
@dataclass(frozen=True)
class Drift:
    sha256: str
    stored: int | None  # None: no registry row
    expected: int


def expected_counts(db) -> Counter:
    counts: Counter = Counter()
    for row in db.execute("SELECT asset_hashes FROM entry"):
        counts.update(load_hashes(row["asset_hashes"]))
    return counts


def check_refcounts(db) -> list[Drift]:
    """Every digest whose stored count differs from what entries cite."""
    expected = expected_counts(db)
    stored = {
        row["sha256"]: row["ref_count"]
        for row in db.execute("SELECT sha256, ref_count FROM attachment")
    }
    drift = []
    for sha256 in sorted(set(expected) | set(stored)):
        have, want = stored.get(sha256), expected.get(sha256, 0)
        if have is None or have != want:
            drift.append(Drift(sha256, have, want))
    for d in drift:
        logger.warning("refcount drift on %s: stored=%s expected=%d", d.sha256, d.stored, d.expected)
    return drift


def repair_refcounts(*, uow: UnitOfWork, settings: AttachmentSettings) -> list[Drift]:
    drift = check_refcounts(uow.db)
    for d in drift:
        if d.expected == 0:
            delete(d.sha256, uow=uow, settings=settings)
            continue
        ensure_placeholder(d.sha256, uow=uow, settings=settings)
        uow.db.execute(
            "UPDATE attachment SET ref_count=? WHERE sha256=?", (d.expected, d.sha256)
        )
    return drift


def sweep_orphans(db, storage, *, dry_run: bool = False) -> list[str]:
    """
    Delete stored files the registry no longer knows about (leaks left by
    failed post-commit deletes or rolled back uploads).

    Run it while no uploads are in flight: a file written moments before
    its registry row commits looks orphaned too.
    """
    known = {
        row["sha256"]: row["ext"]
        for row in db.execute("SELECT sha256, ext FROM attachment")
    }
    orphans = []
    for name in storage.list_names():
        parts = split_stored_name(name)
        if parts is None:
            continue
        sha256, ext = parts
        if sha256 in known and known[sha256] in ("", ext):
            continue
        orphans.append(name)
        if not dry_run:
            storage.delete(name)
            logger.info("swept orphan file %s", name)
    return orphans
