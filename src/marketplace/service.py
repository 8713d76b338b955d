"""
Marketplace: the operations callers use, wired over the market core.

Each operation is one short synchronous unit of work under a single
process-wide lock that the relay shares, so operations and relay ticks
never interleave. Every operation returns an Outcome: the entity, or a
typed error with no state change.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from config.loader import DEFAULT_ESCROW_ADDRESS
from config.policy import MarketPolicy
from journal.writer import JournalWriter
from ledger.client import LedgerClient
from ledger.pending import PendingTransactionLedger
from ledger.safety import SettlementGuard
from ledger.settlement import SettlementService
from market_core.contracts import (
    BuyOrder,
    Clock,
    Fill,
    FillStatus,
    OrderKind,
    OrderStatus,
    PendingTransaction,
    SellOrder,
    TxStatus,
    utc_now,
)
from market_core.fills import FillTracker
from market_core.lifecycle import parse_filter
from market_core.orders import CreatedBuyOrder, OrderStore
from market_core.outcome import ErrorKind, Outcome
from market_core.secure_bundle import unseal, unseal_from_ledger
from market_core.voucher import ReplayGuard, VoucherValidator
from relay.reconciliation import ReconciliationRelay, TickReport
from store import RepositorySet, memory_repositories

logger = logging.getLogger("escrow.marketplace")

DECRYPT_METHODS = ("local", "ledger")


class Marketplace:
    """Voucher-backed escrow market over an injected ledger client and repositories."""

    def __init__(
        self,
        client: LedgerClient,
        *,
        repositories: RepositorySet | None = None,
        policy: MarketPolicy | None = None,
        escrow_address: str = DEFAULT_ESCROW_ADDRESS,
        chain: str = "base",
        settlement_guard: SettlementGuard | None = None,
        journal: JournalWriter | None = None,
        events: Any = None,
        clock: Clock = utc_now,
    ) -> None:
        repos = repositories or memory_repositories()
        self._lock = threading.RLock()
        self._client = client
        self._journal = journal
        self.policy = policy or MarketPolicy()

        self.pending = PendingTransactionLedger(repos.transactions, clock=clock)
        self.replay_guard = ReplayGuard(repos.consumed_references, clock=clock)
        self.validator = VoucherValidator(self.policy, guard=self.replay_guard, clock=clock)
        self.orders = OrderStore(
            self.pending,
            self.validator,
            buy_orders=repos.buy_orders,
            sell_orders=repos.sell_orders,
            policy=self.policy,
            escrow_address=escrow_address,
            chain=chain,
            clock=clock,
        )
        self.fills = FillTracker(
            self.orders,
            self.pending,
            self.validator,
            fills=repos.fills,
            policy=self.policy,
            escrow_address=escrow_address,
            chain=chain,
            clock=clock,
        )
        self.settlement = SettlementService(
            client,
            self.pending,
            escrow_address=escrow_address,
            chain=chain,
            guard=settlement_guard,
            clock=clock,
        )
        self.relay = ReconciliationRelay(
            self.orders,
            self.fills,
            self.pending,
            client,
            self.settlement,
            journal=journal,
            events=events,
            lock=self._lock,
        )
        if journal is not None:
            self.orders.add_listener(journal.transition)
            self.fills.add_listener(journal.transition)

    def _note_replay(self, outcome: Outcome, operation: str) -> None:
        if outcome.error is not None and outcome.error.kind == ErrorKind.REPLAY:
            ref = outcome.error.details.get("reference_code", "")
            logger.warning("Rejected reused voucher reference %s (%s)", ref, operation)
            if self._journal is not None:
                self._journal.replay_rejected(ref, operation)

    # ---------- orders ----------

    def create_buy_order(
        self,
        buyer: str,
        voucher_payload: str | dict[str, Any],
        token: str,
        token_amount: str,
        memo: str | None = None,
    ) -> Outcome[CreatedBuyOrder]:
        with self._lock:
            outcome = self.orders.create_buy_order(buyer, voucher_payload, token, token_amount, memo)
        self._note_replay(outcome, "create_buy_order")
        return outcome

    def create_sell_order(
        self,
        seller: str,
        token: str,
        amount: str,
        fiat_amount: float | None = None,
        memo: str | None = None,
        lifetime_seconds: int | None = None,
    ) -> Outcome[SellOrder]:
        with self._lock:
            return self.orders.create_sell_order(seller, token, amount, fiat_amount, memo, lifetime_seconds)

    def cancel_order(self, order_id: str, caller: str) -> Outcome[BuyOrder | SellOrder]:
        with self._lock:
            open_fill = self.fills.open_fill(order_id)
            return self.orders.cancel(order_id, caller, open_fill_id=open_fill.fill_id if open_fill else None)

    def get_order(self, order_id: str) -> Outcome[BuyOrder | SellOrder]:
        with self._lock:
            return self.orders.get_by_id(order_id)

    def list_orders(
        self,
        kind: OrderKind | str | None = None,
        *,
        token: str = "ALL",
        status: OrderStatus | str = "active",
        limit: int = 10,
        owner: str | None = None,
    ) -> Outcome[list[BuyOrder | SellOrder]]:
        with self._lock:
            return self.orders.list(kind, token=token, status=status, limit=limit, owner=owner)

    def fill_buy_order(self, order_id: str, filler: str) -> Outcome[BuyOrder]:
        """Counterparty deposits the order's tokens into escrow; the relay settles to the buyer."""
        with self._lock:
            return self.orders.start_buy_fill(order_id, filler)

    # ---------- fills ----------

    def create_fill(self, order_id: str, filler: str, voucher_payload: str | dict[str, Any]) -> Outcome[Fill]:
        with self._lock:
            outcome = self.fills.create_fill(order_id, filler, voucher_payload)
        self._note_replay(outcome, "create_fill")
        return outcome

    def cancel_fill(self, fill_id: str, caller: str) -> Outcome[Fill]:
        with self._lock:
            return self.fills.cancel(fill_id, caller)

    def get_fill(self, fill_id: str) -> Outcome[Fill]:
        with self._lock:
            return self.fills.get_by_id(fill_id)

    def list_fills(self, *, order_id: str | None = None, status: FillStatus | str | None = None) -> Outcome[list[Fill]]:
        with self._lock:
            return self.fills.list(order_id=order_id, status=status)

    # ---------- ledger audit trail ----------

    def report_transaction(
        self,
        local_id: str,
        status: TxStatus | str,
        tx_hash: str | None = None,
        caller: str | None = None,
    ) -> Outcome[PendingTransaction]:
        """Wallet callback: the user signed (hash) or rejected a recorded transaction."""
        with self._lock:
            found = self.pending.get_by_id(local_id)
            if not found.ok:
                return found
            if caller is not None and found.value.submitter.lower() != caller.lower():
                return Outcome.failure(
                    ErrorKind.UNAUTHORIZED,
                    "Only the submitter can report on this transaction",
                    local_id=local_id,
                )
            return self.pending.update_status(local_id, status, tx_hash)

    def get_transaction(self, local_id: str) -> Outcome[PendingTransaction]:
        with self._lock:
            return self.pending.get_by_id(local_id)

    def list_transactions(self, *, status: TxStatus | str | None = None) -> Outcome[list[PendingTransaction]]:
        wanted = parse_filter(TxStatus, status, "transaction status")
        if not wanted.ok:
            return Outcome.from_error(wanted.error)
        with self._lock:
            return Outcome.success(self.pending.list(status=wanted.value))

    # ---------- vouchers ----------

    def decrypt_voucher(
        self,
        order_id: str,
        caller: str,
        private_id: str,
        method: str = "local",
    ) -> Outcome[str]:
        """Owner-only recovery of a buy order's voucher, from the store or read back from the ledger."""
        if method not in DECRYPT_METHODS:
            return Outcome.failure(ErrorKind.VALIDATION, f"method must be one of {', '.join(DECRYPT_METHODS)}")
        with self._lock:
            found = self.orders.get_buy_order(order_id)
            if not found.ok:
                return Outcome.from_error(found.error)
            order = found.value
            if order.buyer.lower() != (caller or "").lower():
                return Outcome.failure(ErrorKind.UNAUTHORIZED, "Only the order owner can decrypt its voucher")
            if not order.encrypted_voucher or not order.public_id:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Order has no encrypted voucher")
            if method == "local":
                return unseal(order.encrypted_voucher, order.public_id, private_id)
            if not order.on_chain_tx_hash:
                return Outcome.failure(
                    ErrorKind.INVALID_STATE,
                    "Order has no confirmed ledger transaction yet",
                    status=order.status.value,
                )
            return unseal_from_ledger(self._client, order.on_chain_tx_hash, order.public_id, private_id)

    # ---------- reconciliation ----------

    def tick(self) -> TickReport:
        return self.relay.tick()

    def request_manual_reconciliation(self, entity_id: str) -> Outcome[TickReport]:
        return self.relay.reconcile_entity(entity_id)
