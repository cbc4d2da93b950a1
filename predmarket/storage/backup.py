"""Snapshots of the market database.

Copies go through SQLite's online backup API, so a snapshot taken while
bets are being placed still holds a consistent view of predictions, bets
and the ledger.
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path

from predmarket.config import StorageConfig
from predmarket.observability.logger import get_logger

log = get_logger(__name__)

_PREFIX = "predmarket_"


def backup_database(config: StorageConfig, tag: str = "") -> Path:
    """Write a timestamped snapshot and prune old ones.

    Args:
        config: Storage settings (source path, backup dir, retention).
        tag: Optional suffix, e.g. a prediction id before a manual resolve.

    Returns:
        Path to the new backup file.
    """
    source = Path(config.sqlite_path)
    if not source.exists():
        raise FileNotFoundError(f"No database at {config.sqlite_path}")

    target_dir = Path(config.backup_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    name = _PREFIX + time.strftime("%Y%m%d_%H%M%S") + (f"_{tag}" if tag else "") + ".db"
    target = target_dir / name

    src_conn = sqlite3.connect(str(source))
    try:
        dst_conn = sqlite3.connect(str(target))
        try:
            src_conn.backup(dst_conn)
        finally:
            dst_conn.close()
    finally:
        src_conn.close()
    log.info("backup.created", path=str(target), size_kb=round(target.stat().st_size / 1024, 1))

    prune_backups(target_dir, config.max_backups)
    return target


def prune_backups(backup_dir: Path, keep: int) -> list[Path]:
    """Delete all but the ``keep`` newest snapshots. Returns what was removed."""
    snapshots = sorted(
        backup_dir.glob(f"{_PREFIX}*.db"), key=lambda p: p.stat().st_mtime, reverse=True
    )
    removed = snapshots[keep:]
    for path in removed:
        path.unlink()
        log.info("backup.pruned", path=str(path))
    return removed
