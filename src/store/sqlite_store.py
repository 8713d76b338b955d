"""
Restart-safe repository: one SQLite table per record type, JSON bodies keyed by id.
"""

import sqlite3
from pathlib import Path
from typing import Generic, Iterator, TypeVar

from store.codec import decode_record, encode_record

T = TypeVar("T")


class SqliteRepository(Generic[T]):
    """
    SQLite-backed implementation of the Repository interface.
    Single writer (one process). Several repositories may share one file.
    """

    def __init__(self, path: str | Path, table: str, record_type: type[T]) -> None:
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table!r}")
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._table = table
        self._record_type = record_type
        self._init_schema()

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._path), timeout=10.0)

    def _init_schema(self) -> None:
        with self._conn() as c:
            c.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    body TEXT NOT NULL
                )
                """
            )

    def get(self, key: str) -> T | None:
        with self._conn() as c:
            row = c.execute(f"SELECT body FROM {self._table} WHERE id = ?", (key,)).fetchone()
        if row is None:
            return None
        return decode_record(self._record_type, row[0])

    def put(self, key: str, record: T) -> None:
        """Insert or replace the record. Replacing keeps its original insertion position."""
        body = encode_record(record)
        with self._conn() as c:
            c.execute(
                f"""
                INSERT INTO {self._table} (id, body) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET body = excluded.body
                """,
                (key, body),
            )

    def values(self) -> list[T]:
        with self._conn() as c:
            rows = c.execute(f"SELECT body FROM {self._table} ORDER BY seq ASC").fetchall()
        return [decode_record(self._record_type, body) for (body,) in rows]

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        with self._conn() as c:
            row = c.execute(f"SELECT 1 FROM {self._table} WHERE id = ?", (key,)).fetchone()
        return row is not None

    def __len__(self) -> int:
        with self._conn() as c:
            row = c.execute(f"SELECT COUNT(*) FROM {self._table}").fetchone()
        return row[0] if row else 0

    def __iter__(self) -> Iterator[str]:
        with self._conn() as c:
            rows = c.execute(f"SELECT id FROM {self._table} ORDER BY seq ASC").fetchall()
        return iter([r[0] for r in rows])
