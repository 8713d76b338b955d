"""
Record storage behind one repository interface: in-memory or SQLite.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from market_core.contracts import BuyOrder, ConsumedReference, Fill, PendingTransaction, SellOrder
from store.repository import InMemoryRepository, Repository
from store.sqlite_store import SqliteRepository


@dataclass(frozen=True)
class RepositorySet:
    buy_orders: Any
    sell_orders: Any
    fills: Any
    transactions: Any
    consumed_references: Any


def memory_repositories() -> RepositorySet:
    return RepositorySet(
        buy_orders=InMemoryRepository(),
        sell_orders=InMemoryRepository(),
        fills=InMemoryRepository(),
        transactions=InMemoryRepository(),
        consumed_references=InMemoryRepository(),
    )


def sqlite_repositories(path: str | Path) -> RepositorySet:
    """All repositories in one SQLite file, one table each."""
    return RepositorySet(
        buy_orders=SqliteRepository(path, "buy_orders", BuyOrder),
        sell_orders=SqliteRepository(path, "sell_orders", SellOrder),
        fills=SqliteRepository(path, "fills", Fill),
        transactions=SqliteRepository(path, "pending_transactions", PendingTransaction),
        consumed_references=SqliteRepository(path, "consumed_references", ConsumedReference),
    )


__all__ = [
    "InMemoryRepository",
    "Repository",
    "RepositorySet",
    "SqliteRepository",
    "memory_repositories",
    "sqlite_repositories",
]
