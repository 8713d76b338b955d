"""
Ledger client contract and an in-process paper ledger.

Only the read/submit surface is consumed: look a transaction up by hash,
read its receipt logs, submit a transfer. Real chain adapters implement
LedgerClient; PaperLedgerClient simulates one for tests and dry runs.
"""

import hashlib
import itertools
import threading
from dataclasses import dataclass, field
from typing import Protocol

LEDGER_PENDING = "pending"
LEDGER_CONFIRMED = "confirmed"
LEDGER_FAILED = "failed"


class LedgerClientError(Exception):
    """Raised by ledger clients when the ledger cannot be reached or refuses a call."""


@dataclass(frozen=True)
class LedgerLog:
    data: str


@dataclass(frozen=True)
class LedgerTransaction:
    hash: str
    payload: str  # "0x..." calldata / input
    status: str  # "pending" | "confirmed" | "failed"
    destination: str = ""
    value: str = "0"


@dataclass(frozen=True)
class LedgerReceipt:
    hash: str
    status: str
    logs: list[LedgerLog] = field(default_factory=list)


class LedgerClient(Protocol):
    """Protocol for ledger adapters. Implement per chain / RPC provider."""

    def get_transaction_by_hash(self, tx_hash: str) -> LedgerTransaction | None:
        """Return the transaction, or None if the ledger does not know it (yet)."""
        ...

    def get_receipt_by_hash(self, tx_hash: str) -> LedgerReceipt | None:
        ...

    def submit(self, destination: str, value: str, payload: str) -> str:
        """Sign and broadcast from the escrow account; return the transaction hash."""
        ...


class PaperLedgerClient:
    """In-memory ledger. Transactions stay pending until confirm()/fail() unless auto_confirm."""

    def __init__(self, *, auto_confirm: bool = False) -> None:
        self._auto_confirm = auto_confirm
        self._txs: dict[str, LedgerTransaction] = {}
        self._logs: dict[str, list[LedgerLog]] = {}
        self._hidden_inputs: set[str] = set()
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self.submissions: list[LedgerTransaction] = []
        self.submit_error: str | None = None  # when set, submit() raises LedgerClientError

    def _next_hash(self, destination: str, payload: str) -> str:
        seed = f"{next(self._seq)}:{destination}:{payload}".encode()
        return "0x" + hashlib.sha256(seed).hexdigest()

    def _store(self, destination: str, value: str, payload: str, status: str, logs: list[str] | None) -> str:
        with self._lock:
            tx_hash = self._next_hash(destination, payload)
            tx = LedgerTransaction(hash=tx_hash, payload=payload, status=status, destination=destination, value=value)
            self._txs[tx_hash] = tx
            self._logs[tx_hash] = [LedgerLog(data=d) for d in (logs or [])]
        return tx_hash

    # ---------- LedgerClient ----------

    def get_transaction_by_hash(self, tx_hash: str) -> LedgerTransaction | None:
        key = tx_hash.lower()
        if key in self._hidden_inputs:
            return None
        return self._txs.get(key)

    def get_receipt_by_hash(self, tx_hash: str) -> LedgerReceipt | None:
        tx = self._txs.get(tx_hash.lower())
        if tx is None or tx.status == LEDGER_PENDING:
            return None
        return LedgerReceipt(hash=tx.hash, status=tx.status, logs=list(self._logs.get(tx.hash, [])))

    def submit(self, destination: str, value: str, payload: str) -> str:
        if self.submit_error:
            raise LedgerClientError(self.submit_error)
        status = LEDGER_CONFIRMED if self._auto_confirm else LEDGER_PENDING
        tx_hash = self._store(destination, value, payload, status, None)
        self.submissions.append(self._txs[tx_hash])
        return tx_hash

    # ---------- simulation controls ----------

    def broadcast(
        self,
        payload: str,
        *,
        destination: str = "",
        value: str = "0",
        status: str = LEDGER_PENDING,
        logs: list[str] | None = None,
    ) -> str:
        """Record a transaction signed elsewhere (e.g. by a user's wallet) and return its hash."""
        return self._store(destination, value, payload, status, logs)

    def confirm(self, tx_hash: str) -> None:
        self._set_status(tx_hash, LEDGER_CONFIRMED)

    def fail(self, tx_hash: str) -> None:
        self._set_status(tx_hash, LEDGER_FAILED)

    def hide_input(self, tx_hash: str) -> None:
        """Make get_transaction_by_hash() return None, as some RPC nodes do for old inputs."""
        self._hidden_inputs.add(tx_hash.lower())

    def _set_status(self, tx_hash: str, status: str) -> None:
        key = tx_hash.lower()
        with self._lock:
            tx = self._txs.get(key)
            if tx is None:
                raise KeyError(f"Unknown transaction: {tx_hash}")
            self._txs[key] = LedgerTransaction(
                hash=tx.hash, payload=tx.payload, status=status, destination=tx.destination, value=tx.value
            )
