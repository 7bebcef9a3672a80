#!/usr/bin/env python3
"""
migrate.py  –  generic “from-backup” data migrator.

• Expects:
      blog.sqlite3.backup   ← the *old* DB (ro)
      blog.sqlite3          ← **must not exist** (will be created)

• Copies only columns that still exist in the schema inkwell ships with.
  Extra columns / tables in the backup are ignored.

• Reference counts are never copied: every entry starts with an empty
  attachment set and is rebuilt from its body, so the new DB is consistent
  even if the backup had drifted.

Run once, then start the server as usual.
"""

import sqlite3
import sys
from pathlib import Path

import inkwell.blog as blog
from inkwell.attachments import check_refcounts, rebuild_entry, unit_of_work

# ----------------------------------------------------------------------
# 0.  locations + sanity checks
# ----------------------------------------------------------------------
ROOT = Path(__file__).parent
BACKUP = ROOT / "inkwell/blog.sqlite3.backup"
TARGET = Path(blog.app.config["DATABASE"])


if not BACKUP.exists():
    sys.exit(f"❌  blog.sqlite3.backup not found in {BACKUP.parent} – aborting.")
if TARGET.exists():
    sys.exit(f"❌  {TARGET.name} already exists – move it away first.")

# ----------------------------------------------------------------------
# 1.  create an empty brand-new DB
# ----------------------------------------------------------------------
with blog.app.app_context():
    blog.init_db()

# ----------------------------------------------------------------------
# 2.  open connections
# ----------------------------------------------------------------------
src = sqlite3.connect(f"file:{BACKUP}?mode=ro", uri=True)
src.row_factory = sqlite3.Row

# forced values per table; everything else is copied as-is
OVERRIDES = {
    "entry": {"asset_hashes": "[]"},
    "attachment": {"ref_count": 0},
}

with blog.app.app_context():
    dst = blog.get_db()
    dst.execute("PRAGMA foreign_keys=OFF;")  # easier while bulk-copying

    def dst_cols(table: str) -> list[str]:
        """Column list in the *destination* table (correct order)."""
        return [c["name"] for c in dst.execute(f"PRAGMA table_info({table})")]

    def src_cols(table: str) -> set[str]:
        """Set of column names that exist in the *source* DB."""
        return {c["name"] for c in src.execute(f"PRAGMA table_info({table})")}

    def copy_table(table: str):
        if not src_cols(table):
            print(f"  • {table:12}  (absent in backup – skipped)")
            return

        forced = OVERRIDES.get(table, {})
        common = [c for c in dst_cols(table) if c in src_cols(table) and c not in forced]
        if not common:
            print(f"  • {table:12}  (no common columns – skipped)")
            return

        if table == "settings":
            dst.execute("DELETE FROM settings")  # drop the seeded defaults

        cols = common + list(forced)
        qms = ",".join("?" * len(cols))
        rows = src.execute(f"SELECT {','.join(common)} FROM {table}")
        dst.executemany(
            f"INSERT INTO {table} ({','.join(cols)}) VALUES ({qms})",
            (tuple(r[c] for c in common) + tuple(forced.values()) for r in rows),
        )
        cnt = dst.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        print(f"  • {table:12}  ({cnt} rows)")

    print("→ copying compatible tables/columns")
    for tbl in ("user", "settings", "attachment", "entry", "revision"):
        copy_table(tbl)

    dst.execute("PRAGMA foreign_keys=ON;")
    dst.commit()

    # ------------------------------------------------------------------
    # 3.  rebuild attachment sets + reference counts from entry bodies
    # ------------------------------------------------------------------
    print("→ rebuilding attachment references")
    settings = blog.attachment_settings()
    ids = [r["id"] for r in dst.execute("SELECT id FROM entry ORDER BY id")]
    for entry_id in ids:
        with unit_of_work(dst) as uow:
            rebuild_entry(entry_id, uow=uow, settings=settings)

    drift = check_refcounts(dst)
    if drift:
        sys.exit(f"❌  {len(drift)} attachment(s) still inconsistent after rebuild.")

print("\n✔  Migration finished – start the app with the new database.")
