"""
Repository interface for keyed records, plus the in-process implementation.

Stores take a Repository instead of owning a global map, so tests and the
SQLite backend plug in behind the same calls.
"""

from __future__ import annotations

from typing import Generic, Iterator, Protocol, TypeVar

T = TypeVar("T")


class Repository(Protocol[T]):
    """Keyed record storage. Records are replaced whole, never patched."""

    def get(self, key: str) -> T | None:
        ...

    def put(self, key: str, record: T) -> None:
        ...

    def values(self) -> list[T]:
        """All records in insertion order."""
        ...

    def __contains__(self, key: object) -> bool:
        ...

    def __len__(self) -> int:
        ...


class InMemoryRepository(Generic[T]):
    """Dict-backed repository. Process-wide and unbounded; lost on restart."""

    def __init__(self) -> None:
        self._records: dict[str, T] = {}

    def get(self, key: str) -> T | None:
        return self._records.get(key)

    def put(self, key: str, record: T) -> None:
        self._records[key] = record

    def values(self) -> list[T]:
        return list(self._records.values())

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))
