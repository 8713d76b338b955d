"""
Pending transaction ledger: local audit trail of every ledger transaction
the market asks a wallet (or the escrow signer) to send.

Records are never deleted. Status moves forward only:
pending -> confirmed -> completed, or pending -> rejected | failed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Any

from market_core.contracts import Clock, PendingTransaction, TxPurpose, TxStatus, utc_now
from market_core.outcome import ErrorKind, Outcome
from market_core.tokens import ERC20_TRANSFER_SELECTOR
from store.repository import InMemoryRepository, Repository

logger = logging.getLogger("escrow.pending")

TX_TERMINAL = frozenset({TxStatus.COMPLETED, TxStatus.REJECTED, TxStatus.FAILED})

_TX_TRANSITIONS: dict[TxStatus, frozenset[TxStatus]] = {
    TxStatus.PENDING: frozenset({TxStatus.CONFIRMED, TxStatus.COMPLETED, TxStatus.REJECTED, TxStatus.FAILED}),
    TxStatus.CONFIRMED: frozenset({TxStatus.COMPLETED}),
    TxStatus.COMPLETED: frozenset(),
    TxStatus.REJECTED: frozenset(),
    TxStatus.FAILED: frozenset(),
}


def _hex(value: str) -> str:
    value = (value or "").strip()
    if not value:
        return "0x"
    return value if value.lower().startswith("0x") else "0x" + value


def classify_payload(payload: str) -> str:
    """Rough payload type for the audit trail."""
    body = _hex(payload)[2:].lower()
    if not body:
        return "native_transfer"
    if body.startswith(ERC20_TRANSFER_SELECTOR):
        return "token_transfer"
    return "contract_call"


class PendingTransactionLedger:
    """Submit, update and look up locally recorded transactions."""

    def __init__(self, repository: Repository | None = None, *, clock: Clock = utc_now) -> None:
        self._repo = repository if repository is not None else InMemoryRepository()
        self._clock = clock

    def submit(
        self,
        destination: str,
        value: str,
        payload: str,
        submitter: str,
        chain: str,
        metadata: dict[str, Any] | None = None,
        *,
        tx_hash: str | None = None,
    ) -> str:
        """Record a transaction awaiting signature/confirmation and return its local id."""
        now = self._clock()
        local_id = f"tx-{uuid.uuid4().hex[:16]}"
        meta = dict(metadata or {})
        meta.setdefault("data_type", classify_payload(payload))
        record = PendingTransaction(
            local_id=local_id,
            destination=_hex(destination),
            value=str(value),
            payload=_hex(payload),
            submitter=submitter,
            chain=chain,
            status=TxStatus.PENDING,
            created_at=now,
            updated_at=now,
            hash=tx_hash,
            metadata=meta,
        )
        self._repo.put(local_id, record)
        logger.debug("Recorded %s (%s) for %s", local_id, meta.get("purpose"), meta.get("entity_id"))
        return local_id

    def get_by_id(self, local_id: str) -> Outcome[PendingTransaction]:
        record = self._repo.get(local_id)
        if record is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Transaction {local_id} not found", local_id=local_id)
        return Outcome.success(record)

    def update_status(
        self,
        local_id: str,
        status: TxStatus | str,
        tx_hash: str | None = None,
    ) -> Outcome[PendingTransaction]:
        """Move a record forward. Same-status updates only attach a hash."""
        record = self._repo.get(local_id)
        if record is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Transaction {local_id} not found", local_id=local_id)
        try:
            target = TxStatus(status)
        except ValueError:
            return Outcome.failure(ErrorKind.VALIDATION, f"Unknown transaction status {status!r}")
        if target != record.status and target not in _TX_TRANSITIONS[record.status]:
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                f"Transaction {local_id} cannot move from {record.status.value} to {target.value}",
                current=record.status.value,
                requested=target.value,
            )
        if tx_hash and record.hash and tx_hash.lower() != record.hash.lower():
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                f"Transaction {local_id} already has hash {record.hash}",
            )
        updated = replace(
            record,
            status=target,
            hash=tx_hash or record.hash,
            updated_at=self._clock(),
        )
        self._repo.put(local_id, updated)
        return Outcome.success(updated)

    def annotate(self, local_id: str, **metadata: Any) -> Outcome[PendingTransaction]:
        """Merge audit metadata into a record. Status and hash are left alone."""
        record = self._repo.get(local_id)
        if record is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Transaction {local_id} not found", local_id=local_id)
        updated = replace(record, metadata={**record.metadata, **metadata}, updated_at=self._clock())
        self._repo.put(local_id, updated)
        return Outcome.success(updated)

    def list(
        self,
        *,
        status: TxStatus | str | None = None,
        purpose: TxPurpose | str | None = None,
        entity_id: str | None = None,
    ) -> list[PendingTransaction]:
        out = []
        for record in self._repo.values():
            if status is not None and record.status != TxStatus(status):
                continue
            if purpose is not None and record.metadata.get("purpose") != TxPurpose(purpose).value:
                continue
            if entity_id is not None and record.entity_id != entity_id:
                continue
            out.append(record)
        return out

    def open_transactions(self) -> list[PendingTransaction]:
        """Records not yet terminal, oldest first. Confirmed ones are still open until applied."""
        return [r for r in self._repo.values() if r.status not in TX_TERMINAL]
