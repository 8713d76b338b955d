"""
Reconciliation relay: moves orders and fills forward as their ledger
transactions settle.

One tick:
  1. sweep expired orders and fills
  2. for every transaction an order or fill is waiting on, refresh its
     status from the ledger client when it has a hash and is still pending
  3. confirmed/completed with a hash -> advance the linked entity one step,
     record the hash; a fill reaching completed (or a buy order reaching
     filled) triggers the settlement transfer, at most once
  4. rejected/failed -> cancel the order / fail the fill with a reason
  5. a confirmed transaction whose order or fill no longer waits on it
     (cancelled or expired) is never applied; it is reported as a failure
     and marked on its record so it is reported once
  6. anything else is left untouched; nothing ever moves backward

reconcile_entity() runs steps 2-5 for one entity and retries a settlement
that previously failed. Both are idempotent.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any

from journal.writer import JournalWriter
from ledger.client import LEDGER_CONFIRMED, LEDGER_FAILED, LedgerClient
from ledger.pending import PendingTransactionLedger
from ledger.settlement import SettlementRequest, SettlementService
from market_core.contracts import (
    BuyOrder,
    Fill,
    FillStatus,
    OrderStatus,
    PendingTransaction,
    SellOrder,
    TxPurpose,
    TxStatus,
)
from market_core.fills import FillTracker
from market_core.orders import OrderStore
from market_core.outcome import ErrorKind, Outcome

logger = logging.getLogger("escrow.relay")

_SUCCESS = frozenset({TxStatus.CONFIRMED, TxStatus.COMPLETED})
_FAILURE = frozenset({TxStatus.REJECTED, TxStatus.FAILED})
_OPEN = frozenset({TxStatus.PENDING}) | _SUCCESS


@dataclass
class TickReport:
    expired_orders: int = 0
    expired_fills: int = 0
    examined: int = 0
    advanced: int = 0
    failed: int = 0
    settled: int = 0
    settlement_errors: int = 0
    ledger_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class ReconciliationRelay:
    """Drive entity state from ledger transaction status."""

    def __init__(
        self,
        orders: OrderStore,
        fills: FillTracker,
        pending: PendingTransactionLedger,
        client: LedgerClient,
        settlement: SettlementService,
        *,
        journal: JournalWriter | None = None,
        events: Any = None,
        lock: threading.RLock | None = None,
    ) -> None:
        self._orders = orders
        self._fills = fills
        self._pending = pending
        self._client = client
        self._settlement = settlement
        self._journal = journal
        self._events = events
        self._lock = lock or threading.RLock()

    # ---------- public ----------

    def tick(self) -> TickReport:
        with self._lock:
            report = TickReport()
            if self._events:
                self._events.tick_start()
            report.expired_orders = len(self._orders.sweep_expired())
            report.expired_fills = len(self._fills.sweep_expired())

            for tx in self._pending.list():
                self._visit(tx, report)

            if self._events:
                self._events.tick_complete(**report.to_dict())
            logger.debug("Tick complete: %s", report)
            return report

    def reconcile_entity(self, entity_id: str) -> Outcome[TickReport]:
        """Manual override: re-run reconciliation for one order or fill, then retry settlement if due."""
        with self._lock:
            report = TickReport()
            report.expired_orders = len(self._orders.sweep_expired())
            report.expired_fills = len(self._fills.sweep_expired())
            entity = self._orders.peek(entity_id) or self._fills.peek(entity_id)
            if entity is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, f"No order or fill with id {entity_id}", entity_id=entity_id)

            for tx in self._pending.list(entity_id=entity_id):
                self._visit(tx, report)

            if isinstance(entity, Fill):
                self._settle_fill(entity_id, report)
            elif isinstance(entity, BuyOrder):
                self._settle_buy_order(entity_id, report)
            logger.info("Manual reconciliation of %s: %s", entity_id, report)
            return Outcome.success(report)

    # ---------- steps ----------

    def _visit(self, tx: PendingTransaction, report: TickReport) -> None:
        if tx.purpose == TxPurpose.SETTLEMENT:
            self._refresh(tx, report)
        elif self._awaits(tx):
            report.examined += 1
            self._process(tx, report)
        elif tx.status in _OPEN and not tx.metadata.get("reconciled"):
            self._check_unapplied(tx, report)

    def _awaits(self, tx: PendingTransaction) -> bool:
        """True if the linked entity is still waiting on *tx*."""
        purpose = tx.purpose
        if purpose == TxPurpose.ORDER_CREATION:
            order = self._orders.peek(tx.entity_id or "")
            return order is not None and order.status == OrderStatus.PENDING and order.tx_id == tx.local_id
        if purpose == TxPurpose.SELL_FILL:
            fill = self._fills.peek(tx.entity_id or "")
            return (
                fill is not None
                and fill.status in (FillStatus.PENDING, FillStatus.PROCESSING)
                and fill.tx_id == tx.local_id
            )
        if purpose == TxPurpose.BUY_FILL:
            order = self._orders.peek(tx.entity_id or "")
            return (
                isinstance(order, BuyOrder)
                and order.status == OrderStatus.ACTIVE
                and order.filler_tx_id == tx.local_id
            )
        return False

    def _refresh(self, tx: PendingTransaction, report: TickReport) -> PendingTransaction:
        """Pull ledger status for a pending record that carries a hash."""
        if tx.status != TxStatus.PENDING or not tx.hash:
            return tx
        try:
            remote = self._client.get_transaction_by_hash(tx.hash)
        except Exception as exc:
            report.ledger_errors += 1
            logger.warning("Ledger lookup failed for %s (%s): %s", tx.local_id, tx.hash, exc)
            if self._events:
                self._events.error("ledger lookup failed", detail=f"{tx.local_id}: {exc}")
            return tx
        if remote is None:
            return tx
        if remote.status == LEDGER_CONFIRMED:
            target = TxStatus.CONFIRMED
        elif remote.status == LEDGER_FAILED:
            target = TxStatus.FAILED
        else:
            return tx
        updated = self._pending.update_status(tx.local_id, target)
        return updated.value if updated.ok else tx

    def _process(self, tx: PendingTransaction, report: TickReport) -> None:
        tx = self._refresh(tx, report)
        if tx.status in _SUCCESS:
            if not tx.hash:
                logger.warning("Transaction %s is %s but has no hash; waiting", tx.local_id, tx.status.value)
                return
            self._advance(tx, report)
        elif tx.status in _FAILURE:
            self._fail(tx, report)

    def _advance(self, tx: PendingTransaction, report: TickReport) -> None:
        entity_id = tx.entity_id or ""
        purpose = tx.purpose
        if purpose == TxPurpose.ORDER_CREATION:
            kind = "sell_order" if isinstance(self._orders.peek(entity_id), SellOrder) else "buy_order"
            res = self._orders.update_status(entity_id, OrderStatus.ACTIVE, on_chain_tx_hash=tx.hash)
            self._after_advance(kind, entity_id, res, tx, report)
        elif purpose == TxPurpose.SELL_FILL:
            res = self._fills.complete(entity_id, tx.hash)
            self._after_advance("fill", entity_id, res, tx, report)
            if res.ok:
                self._settle_fill(entity_id, report)
        elif purpose == TxPurpose.BUY_FILL:
            res = self._orders.update_status(
                entity_id,
                OrderStatus.FILLED,
                filled_at=self._orders.clock(),
                filled_by=tx.submitter,
                filler_tx_hash=tx.hash,
            )
            self._after_advance("buy_order", entity_id, res, tx, report)
            if res.ok:
                self._settle_buy_order(entity_id, report)

    def _after_advance(
        self,
        kind: str,
        entity_id: str,
        res: Outcome,
        tx: PendingTransaction,
        report: TickReport,
    ) -> None:
        if res.ok:
            report.advanced += 1
            self._pending.update_status(tx.local_id, TxStatus.COMPLETED)
            self._pending.annotate(tx.local_id, reconciled=True)
            status = res.value.status.value
            logger.info("%s %s -> %s (%s)", kind, entity_id, status, tx.hash)
            if self._events:
                self._events.entity_advanced(kind, entity_id, status, tx.hash or "")
        else:
            self._surface_unapplied(tx, kind, entity_id, res.error.message, report)

    def _linked_entity(self, tx: PendingTransaction) -> tuple[str, Any] | None:
        entity_id = tx.entity_id or ""
        if tx.purpose == TxPurpose.SELL_FILL:
            fill = self._fills.peek(entity_id)
            return ("fill", fill) if fill is not None else None
        order = self._orders.peek(entity_id)
        if order is None:
            return None
        return ("sell_order" if isinstance(order, SellOrder) else "buy_order"), order

    def _check_unapplied(self, tx: PendingTransaction, report: TickReport) -> None:
        """A transaction its entity stopped waiting on: surface it if it confirms anyway."""
        linked = self._linked_entity(tx)
        if linked is None:
            return
        tx = self._refresh(tx, report)
        if tx.status not in _SUCCESS or not tx.hash:
            return
        kind, entity = linked
        recorded = {getattr(entity, name, None) for name in ("on_chain_tx_hash", "filler_tx_hash")}
        if tx.hash in recorded:
            self._pending.annotate(tx.local_id, reconciled=True)
            return
        reason = f"{tx.purpose.value} transaction confirmed after {kind} became {entity.status.value}"
        self._surface_unapplied(tx, kind, tx.entity_id or "", reason, report)

    def _surface_unapplied(
        self,
        tx: PendingTransaction,
        kind: str,
        entity_id: str,
        reason: str,
        report: TickReport,
    ) -> None:
        """Report a confirmed transaction that was not applied. The record is marked so this runs once."""
        report.failed += 1
        logger.warning(
            "Confirmed transaction %s (%s) not applied to %s %s: %s", tx.local_id, tx.hash, kind, entity_id, reason
        )
        self._pending.annotate(tx.local_id, reconciled=True, unapplied_reason=reason)
        if self._events:
            self._events.entity_failed(kind, entity_id, reason)
        if self._journal:
            self._journal.unapplied_transaction(
                kind,
                entity_id,
                tx.local_id,
                tx.hash,
                reason,
                purpose=tx.purpose.value if tx.purpose else None,
            )

    def _fail(self, tx: PendingTransaction, report: TickReport) -> None:
        entity_id = tx.entity_id or ""
        reason = f"transaction {tx.status.value}"
        purpose = tx.purpose
        if purpose == TxPurpose.ORDER_CREATION:
            res = self._orders.update_status(entity_id, OrderStatus.CANCELLED, reason=reason)
            kind = "order"
        elif purpose == TxPurpose.SELL_FILL:
            res = self._fills.update_status(entity_id, FillStatus.FAILED, reason=reason)
            kind = "fill"
        else:
            # The buy order stays active for another counterparty.
            res = self._orders.patch(entity_id, filler_tx_id=None, status_reason=f"fill {reason}")
            kind = "buy_order_fill"
        report.failed += 1
        logger.info("%s %s failed: %s", kind, entity_id, reason)
        if self._events and res.ok:
            self._events.entity_failed(kind, entity_id, reason)

    # ---------- settlement (exactly once) ----------

    def _settle_fill(self, fill_id: str, report: TickReport) -> None:
        with self._lock:
            fill = self._fills.peek(fill_id)
            if fill is None or fill.status != FillStatus.COMPLETED or fill.transfer_tx_hash:
                return
            order = self._orders.peek(fill.order_id)
            if not isinstance(order, SellOrder):
                return
            request = SettlementRequest("fill", fill_id, order.token, order.amount, fill.filler)
            result = self._settlement.release(request)
            if result.ok:
                self._fills.record_transfer(fill_id, tx_hash=result.value)
            else:
                self._fills.record_transfer(fill_id, error=result.error.message)
            self._report_settlement(request, result, report)

    def _settle_buy_order(self, order_id: str, report: TickReport) -> None:
        with self._lock:
            order = self._orders.peek(order_id)
            if not isinstance(order, BuyOrder) or order.status != OrderStatus.FILLED or order.transfer_tx_hash:
                return
            request = SettlementRequest("buy_order", order_id, order.token, order.token_amount, order.buyer)
            result = self._settlement.release(request)
            if result.ok:
                self._orders.record_transfer(order_id, tx_hash=result.value)
            else:
                self._orders.record_transfer(order_id, error=result.error.message)
            self._report_settlement(request, result, report)

    def _report_settlement(self, request: SettlementRequest, result: Outcome[str], report: TickReport) -> None:
        if result.ok:
            report.settled += 1
            if self._events:
                self._events.settlement_submitted(request.entity_kind, request.entity_id, result.value)
            if self._journal:
                self._journal.settlement(
                    request.entity_kind,
                    request.entity_id,
                    transfer_tx_hash=result.value,
                    recipient=request.recipient,
                    token=request.token,
                    amount=request.amount,
                )
        else:
            report.settlement_errors += 1
            if self._events:
                self._events.settlement_failed(request.entity_kind, request.entity_id, result.error.message)
            if self._journal:
                self._journal.settlement(request.entity_kind, request.entity_id, error=result.error.message)
