"""
Fill tracker: a filler pays for an active sell order with a voucher.

pending -> processing once the voucher is validated, claimed and the fill
transaction is recorded; processing -> completed when the relay sees that
transaction confirmed. Settlement (escrow -> filler) is recorded exactly
once per fill, guarded by transfer_tx_hash.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable

from config.policy import MarketPolicy
from ledger.pending import PendingTransactionLedger
from market_core.contracts import Clock, Fill, FillStatus, OrderStatus, TxPurpose, utc_now
from market_core.lifecycle import FILL_EXPIRABLE, FILL_OPEN, can_transition_fill, parse_filter
from market_core.orders import OrderStore
from market_core.outcome import ErrorKind, Outcome
from market_core.tokens import is_address
from market_core.voucher import VoucherValidator, replay_failure
from store.repository import InMemoryRepository, Repository

logger = logging.getLogger("escrow.fills")

TransitionListener = Callable[[str, str, str, str, str | None], None]


class FillTracker:
    def __init__(
        self,
        orders: OrderStore,
        pending: PendingTransactionLedger,
        validator: VoucherValidator,
        *,
        fills: Repository | None = None,
        policy: MarketPolicy | None = None,
        escrow_address: str,
        chain: str = "base",
        clock: Clock = utc_now,
    ) -> None:
        self._orders = orders
        self._pending = pending
        self._validator = validator
        self._repo = fills if fills is not None else InMemoryRepository()
        self._policy = policy or MarketPolicy()
        self._escrow = escrow_address
        self._chain = chain
        self._clock = clock
        self._listeners: list[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def _notify(self, fill: Fill, old: FillStatus, new: FillStatus, reason: str | None) -> None:
        for listener in self._listeners:
            listener("fill", fill.fill_id, old.value, new.value, reason)

    # ---------- creation ----------

    def create_fill(self, order_id: str, filler: str, voucher_payload: str | dict[str, Any]) -> Outcome[Fill]:
        """Open a fill against an active sell order and move it to processing."""
        if not is_address(filler):
            return Outcome.failure(ErrorKind.VALIDATION, "Filler must be a wallet address")
        self._maybe_sweep()
        res = self._orders.get_sell_order(order_id)
        if not res.ok:
            return Outcome.from_error(res.error)
        order = res.value
        if order.status != OrderStatus.ACTIVE:
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                f"Only active orders can be filled (order is {order.status.value})",
                current=order.status.value,
            )
        if order.seller.lower() == filler.lower():
            return Outcome.failure(ErrorKind.UNAUTHORIZED, "You cannot fill your own order", order_id=order_id)
        blocking = [f for f in self.list_for_order(order_id) if f.status in FILL_OPEN | {FillStatus.COMPLETED}]
        if blocking:
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                "This order already has a fill in progress",
                fill_id=blocking[0].fill_id,
            )

        checked = self._validator.check(voucher_payload, target_amount=order.fiat_amount)
        if not checked.ok:
            return Outcome.from_error(checked.error)
        voucher = checked.value

        with self._validator.guard.claim(voucher.reference_code) as claim:
            if claim.already_consumed:
                return replay_failure(voucher.reference_code)

            now = self._clock()
            fill_id = str(uuid.uuid4())
            fill = Fill(
                fill_id=fill_id,
                order_id=order_id,
                filler=filler,
                reference_code=voucher.reference_code,
                voucher_amount=voucher.amount,
                voucher_expiration=voucher.expiration,
                status=FillStatus.PENDING,
                created_at=now,
                expires_at=now + timedelta(seconds=self._policy.lifetimes.fill_seconds),
            )
            self._repo.put(fill_id, fill)
            tx_id = self._pending.submit(
                self._escrow,
                "0",
                "0x",
                filler,
                self._chain,
                {
                    "purpose": TxPurpose.SELL_FILL.value,
                    "entity_kind": "fill",
                    "entity_id": fill_id,
                    "order_id": order_id,
                },
            )
            result = self.update_status(fill_id, FillStatus.PROCESSING, tx_id=tx_id)
            claim.commit("fill", fill_id)

        logger.info("Fill %s opened on order %s", fill_id, order_id)
        return result

    # ---------- reads ----------

    def _maybe_sweep(self) -> None:
        if self._policy.lazy_expiration:
            self.sweep_expired()

    def get_by_id(self, fill_id: str) -> Outcome[Fill]:
        self._maybe_sweep()
        fill = self._repo.get(fill_id)
        if fill is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Fill {fill_id} not found", fill_id=fill_id)
        return Outcome.success(fill)

    def peek(self, fill_id: str) -> Fill | None:
        return self._repo.get(fill_id)

    def list_for_order(self, order_id: str) -> list[Fill]:
        return [f for f in self._repo.values() if f.order_id == order_id]

    def open_fill(self, order_id: str) -> Fill | None:
        """The fill currently in flight against *order_id*, if any."""
        self._maybe_sweep()
        now = self._clock()
        for fill in self.list_for_order(order_id):
            if fill.status in FILL_OPEN and fill.expires_at > now:
                return fill
        return None

    def list(self, *, order_id: str | None = None, status: FillStatus | str | None = None) -> Outcome[list[Fill]]:
        """Newest first. status is case-insensitive; "ALL" or None disables it."""
        wanted = parse_filter(FillStatus, status, "fill status")
        if not wanted.ok:
            return Outcome.from_error(wanted.error)
        self._maybe_sweep()
        records = self._repo.values()
        if order_id:
            records = [f for f in records if f.order_id == order_id]
        if wanted.value is not None:
            records = [f for f in records if f.status == wanted.value]
        return Outcome.success(sorted(records, key=lambda f: f.created_at, reverse=True))

    # ---------- transitions ----------

    def update_status(
        self,
        fill_id: str,
        new_status: FillStatus | str,
        *,
        reason: str | None = None,
        **patch: Any,
    ) -> Outcome[Fill]:
        fill = self._repo.get(fill_id)
        if fill is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Fill {fill_id} not found", fill_id=fill_id)
        target = FillStatus(new_status)
        if not can_transition_fill(fill.status, target):
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                f"Fill {fill_id} cannot move from {fill.status.value} to {target.value}",
                current=fill.status.value,
                requested=target.value,
            )
        fields: dict[str, Any] = dict(patch)
        fields["status"] = target
        if reason is not None:
            fields["error" if target == FillStatus.FAILED else "status_reason"] = reason
        updated = replace(fill, **fields)
        self._repo.put(fill_id, updated)
        self._notify(fill, fill.status, target, reason)
        return Outcome.success(updated)

    def patch(self, fill_id: str, **fields: Any) -> Outcome[Fill]:
        if "status" in fields:
            raise ValueError("Use update_status() to change a fill's status")
        fill = self._repo.get(fill_id)
        if fill is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Fill {fill_id} not found", fill_id=fill_id)
        updated = replace(fill, **fields)
        self._repo.put(fill_id, updated)
        return Outcome.success(updated)

    def cancel(self, fill_id: str, caller: str) -> Outcome[Fill]:
        self._maybe_sweep()
        fill = self._repo.get(fill_id)
        if fill is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Fill {fill_id} not found", fill_id=fill_id)
        if fill.filler.lower() != (caller or "").lower():
            return Outcome.failure(ErrorKind.UNAUTHORIZED, "Only the filler can cancel this fill", fill_id=fill_id)
        if fill.status not in FILL_OPEN:
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                f"Cannot cancel a fill that is {fill.status.value}",
                current=fill.status.value,
            )
        return self.update_status(fill_id, FillStatus.CANCELLED, reason="cancelled by filler")

    def complete(self, fill_id: str, tx_hash: str | None) -> Outcome[Fill]:
        """Mark the fill completed and its sell order filled.

        If the sell order is no longer active (another fill won, or it
        expired) the fill fails instead, so at most one fill per order
        ever completes.
        """
        fill = self._repo.get(fill_id)
        if fill is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Fill {fill_id} not found", fill_id=fill_id)
        now = self._clock()
        filled = self._orders.update_status(
            fill.order_id,
            OrderStatus.FILLED,
            filled_at=now,
            filled_by=fill.filler,
            filled_tx_hash=tx_hash,
        )
        if not filled.ok:
            self.update_status(
                fill_id,
                FillStatus.FAILED,
                reason=f"order could not be filled: {filled.error.message}",
                on_chain_tx_hash=tx_hash,
            )
            return Outcome.from_error(filled.error)
        return self.update_status(
            fill_id,
            FillStatus.COMPLETED,
            completed_at=now,
            on_chain_tx_hash=tx_hash,
        )

    def sweep_expired(self) -> list[Fill]:
        now = self._clock()
        expired: list[Fill] = []
        for fill in self._repo.values():
            if fill.status in FILL_EXPIRABLE and fill.expires_at <= now:
                result = self.update_status(fill.fill_id, FillStatus.EXPIRED, reason="expired")
                if result.ok:
                    expired.append(result.value)
        if expired:
            logger.info("Expired %d fill(s)", len(expired))
        return expired

    def record_transfer(
        self,
        fill_id: str,
        *,
        tx_hash: str | None = None,
        error: str | None = None,
    ) -> Outcome[Fill]:
        """Record the escrow release to the filler. A recorded hash is never overwritten."""
        fill = self._repo.get(fill_id)
        if fill is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Fill {fill_id} not found", fill_id=fill_id)
        if fill.transfer_tx_hash:
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                "Settlement transfer already recorded",
                transfer_tx_hash=fill.transfer_tx_hash,
            )
        if tx_hash:
            updated = replace(fill, transfer_tx_hash=tx_hash, transfer_timestamp=self._clock(), transfer_error=None)
        else:
            updated = replace(fill, transfer_error=error or "settlement failed")
        self._repo.put(fill_id, updated)
        return Outcome.success(updated)
