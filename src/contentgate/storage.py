"""sqlite helpers shared by the corpus store and the work queue."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .errors import StorageUnavailable

BUSY_TIMEOUT_SECONDS = 30.0


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def json_loads(text: str | None) -> Any:
    return json.loads(text) if text else None


def connect(db_path: Path) -> sqlite3.Connection:
    """Open an autocommit connection; callers open transactions explicitly."""
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    except (OSError, sqlite3.Error) as e:
        raise StorageUnavailable(f"Cannot open database {db_path}: {e}") from e
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def immediate(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block in a BEGIN IMMEDIATE transaction.

    Commits on clean exit and rolls back on any exception. Integrity errors
    propagate unchanged; other sqlite errors become StorageUnavailable.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise StorageUnavailable(f"Cannot start transaction: {e}") from e
    try:
        yield conn
        conn.execute("COMMIT")
    except sqlite3.IntegrityError:
        conn.execute("ROLLBACK")
        raise
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise StorageUnavailable(f"Transaction failed: {e}") from e
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


@contextmanager
def reading(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Translate sqlite errors on read paths into StorageUnavailable."""
    try:
        yield conn
    except sqlite3.Error as e:
        raise StorageUnavailable(f"Read failed: {e}") from e
