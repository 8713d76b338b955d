"""
Human-readable terminal output for orders, fills, transactions and relay ticks.

Private ids and voucher payloads are never printed.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from market_core.contracts import BuyOrder, Fill, PendingTransaction, SellOrder

if TYPE_CHECKING:
    from relay.reconciliation import TickReport


def _ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "-"


def _short(value: str | None, keep: int = 10) -> str:
    if not value:
        return "-"
    return value if len(value) <= keep + 4 else f"{value[:keep]}..."


def format_order(order: BuyOrder | SellOrder) -> str:
    if isinstance(order, BuyOrder):
        head = f"BUY  {order.order_id}  {order.token_amount} {order.token} for {order.fiat_amount:.2f} MXN"
        owner = f"buyer {order.buyer}"
        extra = f"  transfer={_short(order.transfer_tx_hash)}" if order.status.value == "filled" else ""
    else:
        fiat = f" for {order.fiat_amount:.2f} MXN" if order.fiat_amount is not None else ""
        head = f"SELL {order.order_id}  {order.amount} {order.token}{fiat}"
        owner = f"seller {order.seller}"
        extra = ""
    lines = [
        head,
        f"     status {order.status.value:9s} {owner}",
        f"     created {_ts(order.created_at)}  expires {_ts(order.expires_at)}  tx={_short(order.on_chain_tx_hash)}{extra}",
    ]
    if order.status_reason:
        lines.append(f"     reason: {order.status_reason}")
    return "\n".join(lines)


def format_fill(fill: Fill) -> str:
    lines = [
        f"FILL {fill.fill_id}  order {fill.order_id}  {fill.voucher_amount:.2f} MXN",
        f"     status {fill.status.value:10s} filler {fill.filler}",
        f"     created {_ts(fill.created_at)}  expires {_ts(fill.expires_at)}  tx={_short(fill.on_chain_tx_hash)}"
        f"  transfer={_short(fill.transfer_tx_hash)}",
    ]
    if fill.status_reason:
        lines.append(f"     reason: {fill.status_reason}")
    if fill.error:
        lines.append(f"     error: {fill.error}")
    if fill.transfer_error:
        lines.append(f"     settlement error: {fill.transfer_error}")
    return "\n".join(lines)


def format_transaction(tx: PendingTransaction) -> str:
    purpose = tx.metadata.get("purpose", "-")
    entity = tx.metadata.get("entity_id", "-")
    return (
        f"{tx.local_id}  {tx.status.value:9s} {purpose:15s} entity {entity}  "
        f"hash={_short(tx.hash)}  updated {_ts(tx.updated_at)}"
    )


def format_tick_report(report: TickReport) -> str:
    return (
        f"examined {report.examined}  advanced {report.advanced}  failed {report.failed}  "
        f"settled {report.settled}  settlement errors {report.settlement_errors}  "
        f"expired {report.expired_orders} order(s) / {report.expired_fills} fill(s)"
    )
