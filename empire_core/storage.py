"""SQLite connection helpers shared by the state and job stores."""
from __future__ import annotations

import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .errors import TransientStoreError

_TRANSIENT_MARKERS = ("locked", "busy")


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialise ``value`` as a fixed-width UTC timestamp.

    Stored timestamps are compared as strings inside SQL, so every value is
    normalised to UTC with microsecond precision.
    """

    return ensure_utc(value).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def is_transient(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


def connect(db_path: Path, timeout: float = 5.0) -> sqlite3.Connection:
    """Open an autocommit connection; callers manage transactions explicitly."""

    conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: Path, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
    """Run the body inside ``BEGIN IMMEDIATE`` on a fresh connection.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so a
    read-then-update inside the body cannot interleave with another writer.
    Lock contention surfaces as :class:`TransientStoreError`.
    """

    with closing(connect(db_path, timeout)) as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            if is_transient(exc):
                raise TransientStoreError(str(exc)) from exc
            raise
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            _rollback(conn)
            if is_transient(exc):
                raise TransientStoreError(str(exc)) from exc
            raise
        except BaseException:
            _rollback(conn)
            raise


@contextmanager
def reading(db_path: Path, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
    """Short-lived connection for read-only queries."""

    with closing(connect(db_path, timeout)) as conn:
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            if is_transient(exc):
                raise TransientStoreError(str(exc)) from exc
            raise


def ensure_schema(db_path: Path, schema: str) -> None:
    with closing(sqlite3.connect(str(db_path))) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(schema)
        conn.commit()


__all__ = [
    "connect",
    "ensure_schema",
    "ensure_utc",
    "from_iso",
    "is_transient",
    "reading",
    "to_iso",
    "transaction",
]
