#!/usr/bin/env python3
"""
migrate.py  –  convert legacy plain-text post bodies into block documents.

• Expects an existing simplicity database (default: simplicity/blog.sqlite3,
  or the path given as first argument).
• Copies it to  <db>.backup  first and refuses to run if that file already
  exists, so an earlier backup is never overwritten.
• Bodies that are already structured (or empty) are left alone.

Run once, then start the server as usual.  `--dry-run` only reports.
"""

import shutil
import sqlite3
import sys
from contextlib import closing
from pathlib import Path

from simplicity import blog

ROOT = Path(__file__).parent
DEFAULT_DB = ROOT / "simplicity/blog.sqlite3"


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    dry_run = "--dry-run" in args
    paths = [a for a in args if a != "--dry-run"]
    target = Path(paths[0]) if paths else DEFAULT_DB
    backup = target.with_name(target.name + ".backup")

    # ------------------------------------------------------------------
    # 0.  sanity checks
    # ------------------------------------------------------------------
    if not target.exists():
        print(f"❌  {target} not found – aborting.")
        return 1
    if backup.exists() and not dry_run:
        print(f"❌  {backup} already exists – move it away first.")
        return 1

    # ------------------------------------------------------------------
    # 1.  backup
    # ------------------------------------------------------------------
    if not dry_run:
        shutil.copyfile(target, backup)
        print(f"• backup → {backup}")

    # ------------------------------------------------------------------
    # 2.  convert
    # ------------------------------------------------------------------
    with closing(sqlite3.connect(target)) as db:
        db.row_factory = sqlite3.Row
        has_posts = db.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name='post'"
        ).fetchone()
        if not has_posts:
            print(f"❌  {target} has no post table – is this a simplicity database?")
            return 1
        converted, skipped = blog.migrate_bodies(db, dry_run=dry_run)

    verb = "would convert" if dry_run else "converted"
    print(f"→ {verb} {converted} post(s), skipped {skipped}")
    if not dry_run:
        print("\n✔  Migration finished – start the app as usual.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
