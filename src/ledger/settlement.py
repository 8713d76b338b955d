"""
Settlement: release escrowed tokens to the counterparty.

The exactly-once guarantee lives with the caller (relay), which checks
that no transfer hash is recorded before calling release() and records
the result immediately after, both under one lock. This module only
builds, guards, submits and audits the transfer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ledger.client import LedgerClient
from ledger.pending import PendingTransactionLedger
from ledger.safety import SettlementGuard
from market_core.contracts import Clock, TxPurpose, utc_now
from market_core.outcome import ErrorKind, Outcome
from market_core.tokens import encode_erc20_transfer, get_token, to_base_units

logger = logging.getLogger("escrow.settlement")


@dataclass(frozen=True)
class SettlementRequest:
    entity_kind: str  # "fill" | "buy_order"
    entity_id: str
    token: str
    amount: str  # token units
    recipient: str


class SettlementService:
    def __init__(
        self,
        client: LedgerClient,
        pending: PendingTransactionLedger,
        *,
        escrow_address: str,
        chain: str = "base",
        guard: SettlementGuard | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._client = client
        self._pending = pending
        self._escrow = escrow_address
        self._chain = chain
        self._guard = guard or SettlementGuard()
        self._clock = clock

    def release(self, request: SettlementRequest) -> Outcome[str]:
        """Submit the escrow -> recipient token transfer. Returns the ledger hash or a LEDGER error."""
        info = get_token(request.token)
        if info is None:
            return Outcome.failure(ErrorKind.LEDGER, f"Unsupported settlement token {request.token!r}")
        try:
            payload = encode_erc20_transfer(request.recipient, to_base_units(request.amount, info.decimals))
        except ValueError as exc:
            return Outcome.failure(ErrorKind.LEDGER, f"Cannot build settlement transfer: {exc}")

        today = self._clock().date()
        verdict = self._guard.check(info.symbol, today=today)
        if not verdict.allowed:
            logger.warning("Settlement for %s %s blocked: %s", request.entity_kind, request.entity_id, verdict.reason)
            return Outcome.failure(ErrorKind.LEDGER, verdict.reason, blocked=True)

        try:
            tx_hash = self._client.submit(info.address, "0", payload)
        except Exception as exc:
            logger.warning("Settlement submit failed for %s %s: %s", request.entity_kind, request.entity_id, exc)
            return Outcome.failure(ErrorKind.LEDGER, f"Settlement transfer failed: {exc}")

        self._guard.record_transfer(info.symbol, today=today)
        self._pending.submit(
            info.address,
            "0",
            payload,
            self._escrow,
            self._chain,
            {
                "purpose": TxPurpose.SETTLEMENT.value,
                "entity_kind": request.entity_kind,
                "entity_id": request.entity_id,
                "recipient": request.recipient,
                "token": info.symbol,
                "amount": request.amount,
            },
            tx_hash=tx_hash,
        )
        logger.info(
            "Released %s %s to %s for %s %s (%s)",
            request.amount,
            info.symbol,
            request.recipient,
            request.entity_kind,
            request.entity_id,
            tx_hash,
        )
        return Outcome.success(tx_hash)
