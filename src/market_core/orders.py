"""
Order store: buy and sell orders, their lifecycle and lazy expiration.

Buy orders are backed by a payment voucher. The voucher is validated,
sealed and anchored on the ledger in one unit of work under the voucher's
reference-code claim, so a reference code yields at most one order.

Sell orders escrow tokens: creation records a token transfer to the escrow
account that the seller's wallet must sign. The relay activates the order
once that transfer confirms.

Every read and list sweeps expired orders first (when policy.lazy_expiration).
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Callable

from config.policy import MarketPolicy
from ledger.pending import PendingTransactionLedger
from market_core.contracts import (
    BuyOrder,
    Clock,
    OrderKind,
    OrderStatus,
    SellOrder,
    TxPurpose,
    utc_now,
)
from market_core.lifecycle import ORDER_EXPIRABLE, can_transition_order, parse_filter
from market_core.outcome import ErrorKind, Outcome
from market_core.secure_bundle import seal
from market_core.tokens import encode_erc20_transfer, get_token, is_address, parse_token_amount, to_base_units
from market_core.voucher import VoucherValidator, replay_failure
from store.repository import InMemoryRepository, Repository

logger = logging.getLogger("escrow.orders")

# Native value sent with the payload-anchor transaction.
PAYLOAD_ANCHOR_VALUE = "0.000022"

Order = BuyOrder | SellOrder
TransitionListener = Callable[[str, str, str, str, str | None], None]


@dataclass(frozen=True)
class CreatedBuyOrder:
    """Result of create_buy_order. private_id is returned once and never stored."""

    order: BuyOrder
    private_id: str
    tx_id: str


def _same_owner(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def _entity_kind(order: Order) -> str:
    return "buy_order" if isinstance(order, BuyOrder) else "sell_order"


class OrderStore:
    """Create, read, list and transition buy and sell orders."""

    def __init__(
        self,
        pending: PendingTransactionLedger,
        validator: VoucherValidator,
        *,
        buy_orders: Repository | None = None,
        sell_orders: Repository | None = None,
        policy: MarketPolicy | None = None,
        escrow_address: str,
        chain: str = "base",
        clock: Clock = utc_now,
    ) -> None:
        self._pending = pending
        self._validator = validator
        self._buy = buy_orders if buy_orders is not None else InMemoryRepository()
        self._sell = sell_orders if sell_orders is not None else InMemoryRepository()
        self._policy = policy or MarketPolicy()
        self._escrow = escrow_address
        self._chain = chain
        self._clock = clock
        self._listeners: list[TransitionListener] = []

    @property
    def clock(self) -> Clock:
        return self._clock

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback(entity_kind, entity_id, from_status, to_status, reason)."""
        self._listeners.append(listener)

    def _notify(self, order: Order, old: OrderStatus, new: OrderStatus, reason: str | None) -> None:
        for listener in self._listeners:
            listener(_entity_kind(order), order.order_id, old.value, new.value, reason)

    def _repo_for(self, order: Order) -> Repository:
        return self._buy if isinstance(order, BuyOrder) else self._sell

    def _save(self, order: Order) -> None:
        self._repo_for(order).put(order.order_id, order)

    # ---------- creation ----------

    def create_buy_order(
        self,
        buyer: str,
        voucher_payload: str | dict[str, Any],
        token: str,
        token_amount: str,
        memo: str | None = None,
    ) -> Outcome[CreatedBuyOrder]:
        """Validate the voucher, seal it, anchor it on the ledger and record a pending order."""
        if not is_address(buyer):
            return Outcome.failure(ErrorKind.VALIDATION, "Buyer must be a wallet address")
        info = get_token(token)
        if info is None:
            return Outcome.failure(ErrorKind.VALIDATION, f"Unsupported token {token!r}", token=token)
        amount = parse_token_amount(token_amount)
        if amount is None:
            return Outcome.failure(ErrorKind.VALIDATION, "Token amount must be a positive number")
        try:
            to_base_units(amount, info.decimals)
        except ValueError as exc:
            return Outcome.failure(ErrorKind.VALIDATION, str(exc))

        checked = self._validator.check(voucher_payload)
        if not checked.ok:
            return Outcome.from_error(checked.error)
        voucher = checked.value

        with self._validator.guard.claim(voucher.reference_code) as claim:
            if claim.already_consumed:
                return replay_failure(voucher.reference_code)

            now = self._clock()
            plaintext = voucher_payload if isinstance(voucher_payload, str) else json.dumps(voucher_payload, separators=(",", ":"))
            bundle = seal(plaintext)
            order_id = str(uuid.uuid4())
            tx_id = self._pending.submit(
                self._escrow,
                PAYLOAD_ANCHOR_VALUE,
                bundle.ciphertext,
                buyer,
                self._chain,
                {
                    "purpose": TxPurpose.ORDER_CREATION.value,
                    "entity_kind": "buy_order",
                    "entity_id": order_id,
                    "public_id": bundle.public_id,
                },
            )
            expires_at = min(now + timedelta(seconds=self._policy.lifetimes.order_seconds), voucher.expires_at)
            order = BuyOrder(
                order_id=order_id,
                buyer=buyer,
                fiat_amount=voucher.amount,
                token=info.symbol,
                token_amount=str(amount),
                reference_code=voucher.reference_code,
                voucher_expiration=voucher.expiration,
                status=OrderStatus.PENDING,
                created_at=now,
                expires_at=expires_at,
                memo=memo,
                tx_id=tx_id,
                encrypted_voucher=bundle.ciphertext,
                public_id=bundle.public_id,
            )
            self._save(order)
            claim.commit("buy_order", order_id)

        logger.info("Buy order %s created (%s %s for %.2f)", order_id, order.token_amount, order.token, order.fiat_amount)
        return Outcome.success(CreatedBuyOrder(order=order, private_id=bundle.private_id, tx_id=tx_id))

    def create_sell_order(
        self,
        seller: str,
        token: str,
        amount: str,
        fiat_amount: float | None = None,
        memo: str | None = None,
        lifetime_seconds: int | None = None,
    ) -> Outcome[SellOrder]:
        """Record a pending sell order and the escrow deposit the seller must sign."""
        if not is_address(seller):
            return Outcome.failure(ErrorKind.VALIDATION, "Seller must be a wallet address")
        info = get_token(token)
        if info is None:
            return Outcome.failure(ErrorKind.VALIDATION, f"Unsupported token {token!r}", token=token)
        qty = parse_token_amount(amount)
        if qty is None:
            return Outcome.failure(ErrorKind.VALIDATION, "Token amount must be a positive number")
        try:
            base_units = to_base_units(qty, info.decimals)
        except ValueError as exc:
            return Outcome.failure(ErrorKind.VALIDATION, str(exc))
        if fiat_amount is not None:
            rules = self._policy.sell_orders
            if not rules.min_fiat_amount <= float(fiat_amount) <= rules.max_fiat_amount:
                return Outcome.failure(
                    ErrorKind.VALIDATION,
                    f"Fiat amount must be between {rules.min_fiat_amount:g} and {rules.max_fiat_amount:g}",
                    fiat_amount=fiat_amount,
                )
        if lifetime_seconds is not None and lifetime_seconds <= 0:
            return Outcome.failure(ErrorKind.VALIDATION, "Order lifetime must be positive")

        now = self._clock()
        order_id = str(uuid.uuid4())
        tx_id = self._pending.submit(
            info.address,
            "0",
            encode_erc20_transfer(self._escrow, base_units),
            seller,
            self._chain,
            {
                "purpose": TxPurpose.ORDER_CREATION.value,
                "entity_kind": "sell_order",
                "entity_id": order_id,
                "token": info.symbol,
                "amount": str(qty),
            },
        )
        lifetime = lifetime_seconds or self._policy.lifetimes.order_seconds
        order = SellOrder(
            order_id=order_id,
            seller=seller,
            token=info.symbol,
            amount=str(qty),
            status=OrderStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(seconds=lifetime),
            fiat_amount=float(fiat_amount) if fiat_amount is not None else None,
            memo=memo,
            tx_id=tx_id,
        )
        self._save(order)
        logger.info("Sell order %s created (%s %s)", order_id, order.amount, order.token)
        return Outcome.success(order)

    # ---------- reads ----------

    def _lookup(self, order_id: str) -> Order | None:
        return self._buy.get(order_id) or self._sell.get(order_id)

    def _maybe_sweep(self) -> None:
        if self._policy.lazy_expiration:
            self.sweep_expired()

    def get_by_id(self, order_id: str) -> Outcome[Order]:
        self._maybe_sweep()
        order = self._lookup(order_id)
        if order is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id=order_id)
        return Outcome.success(order)

    def get_buy_order(self, order_id: str) -> Outcome[BuyOrder]:
        self._maybe_sweep()
        order = self._buy.get(order_id)
        if order is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Buy order {order_id} not found", order_id=order_id)
        return Outcome.success(order)

    def get_sell_order(self, order_id: str) -> Outcome[SellOrder]:
        self._maybe_sweep()
        order = self._sell.get(order_id)
        if order is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Sell order {order_id} not found", order_id=order_id)
        return Outcome.success(order)

    def peek(self, order_id: str) -> Order | None:
        """Current record without sweeping. For the relay, which sweeps once per tick."""
        return self._lookup(order_id)

    def list(
        self,
        kind: OrderKind | str | None = None,
        *,
        token: str = "ALL",
        status: OrderStatus | str = "active",
        limit: int = 10,
        owner: str | None = None,
    ) -> Outcome[list[Order]]:
        """Newest first. "ALL" disables the token or status filter; owner match is case-insensitive."""
        wanted_kind = parse_filter(OrderKind, kind, "order kind")
        if not wanted_kind.ok:
            return Outcome.from_error(wanted_kind.error)
        wanted_status = parse_filter(OrderStatus, status, "order status")
        if not wanted_status.ok:
            return Outcome.from_error(wanted_status.error)

        self._maybe_sweep()
        if wanted_kind.value is None:
            records: list[Order] = [*self._buy.values(), *self._sell.values()]
        elif wanted_kind.value == OrderKind.BUY:
            records = list(self._buy.values())
        else:
            records = list(self._sell.values())

        if token and token.upper() != "ALL":
            info = get_token(token)
            wanted = info.symbol if info else token
            records = [o for o in records if o.token == wanted]
        if wanted_status.value is not None:
            records = [o for o in records if o.status == wanted_status.value]
        if owner:
            records = [o for o in records if _same_owner(o.owner, owner)]

        records.sort(key=lambda o: o.created_at, reverse=True)
        return Outcome.success(records[:limit] if limit and limit > 0 else records)

    # ---------- transitions ----------

    def update_status(
        self,
        order_id: str,
        new_status: OrderStatus | str,
        *,
        reason: str | None = None,
        **patch: Any,
    ) -> Outcome[Order]:
        """Apply one state-machine step and optional field patch."""
        order = self._lookup(order_id)
        if order is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id=order_id)
        target = OrderStatus(new_status)
        if not can_transition_order(order.status, target):
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                f"Order {order_id} cannot move from {order.status.value} to {target.value}",
                current=order.status.value,
                requested=target.value,
            )
        fields: dict[str, Any] = dict(patch)
        fields["status"] = target
        if reason is not None:
            fields["status_reason"] = reason
        updated = replace(order, **fields)
        self._save(updated)
        self._notify(order, order.status, target, reason)
        return Outcome.success(updated)

    def patch(self, order_id: str, **fields: Any) -> Outcome[Order]:
        """Update non-status fields (hashes, filler references)."""
        if "status" in fields:
            raise ValueError("Use update_status() to change an order's status")
        order = self._lookup(order_id)
        if order is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id=order_id)
        updated = replace(order, **fields)
        self._save(updated)
        return Outcome.success(updated)

    def cancel(
        self,
        order_id: str,
        caller: str,
        reason: str = "cancelled by owner",
        *,
        open_fill_id: str | None = None,
    ) -> Outcome[Order]:
        """Owner-only. Refused while a counterparty payment is in flight.

        A buy order is blocked by its own filler_tx_id; for a sell order the
        caller passes the id of its open fill, if any.
        """
        self._maybe_sweep()
        order = self._lookup(order_id)
        if order is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id=order_id)
        if not _same_owner(order.owner, caller):
            return Outcome.failure(ErrorKind.UNAUTHORIZED, "Only the order owner can cancel it", order_id=order_id)
        if order.status in (OrderStatus.FILLED, OrderStatus.EXPIRED, OrderStatus.CANCELLED):
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                f"Cannot cancel an order that is {order.status.value}",
                current=order.status.value,
            )
        in_flight = order.filler_tx_id if isinstance(order, BuyOrder) else open_fill_id
        if in_flight:
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                "Cannot cancel an order while a fill is in progress",
                order_id=order_id,
                in_flight=in_flight,
            )
        return self.update_status(order_id, OrderStatus.CANCELLED, reason=reason)

    def sweep_expired(self) -> list[Order]:
        """Expire every active order whose expires_at has passed. Returns the expired records."""
        now = self._clock()
        expired: list[Order] = []
        for repo in (self._buy, self._sell):
            for order in repo.values():
                if order.status in ORDER_EXPIRABLE and order.expires_at <= now:
                    result = self.update_status(order.order_id, OrderStatus.EXPIRED, reason="expired")
                    if result.ok:
                        expired.append(result.value)
        if expired:
            logger.info("Expired %d order(s)", len(expired))
        return expired

    # ---------- buy-order fills and settlement bookkeeping ----------

    def start_buy_fill(self, order_id: str, filler: str) -> Outcome[BuyOrder]:
        """Record the filler's token deposit against an active buy order."""
        if not is_address(filler):
            return Outcome.failure(ErrorKind.VALIDATION, "Filler must be a wallet address")
        res = self.get_buy_order(order_id)
        if not res.ok:
            return res
        order = res.value
        if order.status != OrderStatus.ACTIVE:
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                f"Only active orders can be filled (order is {order.status.value})",
                current=order.status.value,
            )
        if _same_owner(order.buyer, filler):
            return Outcome.failure(ErrorKind.UNAUTHORIZED, "You cannot fill your own order", order_id=order_id)
        if order.filler_tx_id is not None:
            return Outcome.failure(ErrorKind.INVALID_STATE, "A fill is already in progress for this order")

        info = get_token(order.token)
        try:
            base_units = to_base_units(order.token_amount, info.decimals)
        except ValueError as exc:
            return Outcome.failure(ErrorKind.VALIDATION, str(exc))
        tx_id = self._pending.submit(
            info.address,
            "0",
            encode_erc20_transfer(self._escrow, base_units),
            filler,
            self._chain,
            {
                "purpose": TxPurpose.BUY_FILL.value,
                "entity_kind": "buy_order",
                "entity_id": order_id,
                "token": info.symbol,
                "amount": order.token_amount,
            },
        )
        return self.patch(order_id, filler_tx_id=tx_id)

    def record_transfer(
        self,
        order_id: str,
        *,
        tx_hash: str | None = None,
        error: str | None = None,
    ) -> Outcome[BuyOrder]:
        """Record the escrow release to the buyer. A recorded hash is never overwritten."""
        order = self._buy.get(order_id)
        if order is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, f"Buy order {order_id} not found", order_id=order_id)
        if order.transfer_tx_hash:
            return Outcome.failure(
                ErrorKind.INVALID_STATE,
                "Settlement transfer already recorded",
                transfer_tx_hash=order.transfer_tx_hash,
            )
        if tx_hash:
            updated = replace(order, transfer_tx_hash=tx_hash, transfer_timestamp=self._clock(), transfer_error=None)
        else:
            updated = replace(order, transfer_error=error or "settlement failed")
        self._buy.put(order_id, updated)
        return Outcome.success(updated)
