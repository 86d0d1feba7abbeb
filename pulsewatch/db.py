"""Shared SQLite plumbing for the domain stores.

Every store owns its own tables but they all live in one database file.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from .config import settings
from .errors import PersistenceError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def persistence(func: F) -> F:
    """Wrap sqlite3 errors raised by a store method into PersistenceError."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as e:
            logger.error("%s failed: %s", func.__qualname__, e)
            raise PersistenceError(f"{func.__qualname__}: {e}") from e

    return wrapper  # type: ignore[return-value]


class SQLiteStore:
    """Base for SQLite-backed repositories. Subclasses provide SCHEMA."""

    SCHEMA = ""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path or settings.db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    @persistence
    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(self.SCHEMA)
        conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
