#!/usr/bin/env python3
"""Delete the market database (and its WAL/SHM files) after printing row counts."""
import os
import sqlite3
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from predmarket.config import load_config


def table_counts(db_path: Path) -> dict[str, int]:
    conn = sqlite3.connect(str(db_path))
    try:
        names = [
            r[0] for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            )
        ]
        return {n: conn.execute(f"SELECT COUNT(*) FROM [{n}]").fetchone()[0] for n in names}
    finally:
        conn.close()


def wipe(db_path: Path) -> list[Path]:
    removed = []
    for suffix in ("", "-shm", "-wal", "-journal"):
        p = Path(f"{db_path}{suffix}")
        if p.exists():
            os.remove(p)
            removed.append(p)
    return removed


if __name__ == "__main__":
    db_path = Path(load_config().storage.sqlite_path).resolve()
    if not db_path.exists():
        print(f"No database at {db_path}.")
        sys.exit(0)

    print(f"=== {db_path} ===")
    for name, count in table_counts(db_path).items():
        print(f"  {name}: {count} rows")
    for p in wipe(db_path):
        print(f"Deleted: {p}")
    print("\n✅ Database wiped. Take a `predmarket backup` first next time if you need the data.")
