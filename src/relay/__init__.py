"""Reconciliation relay: ledger status -> order and fill lifecycle."""

from relay.reconciliation import ReconciliationRelay, TickReport

__all__ = ["ReconciliationRelay", "TickReport"]
