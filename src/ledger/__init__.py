"""
Ledger side of the market: the pending-transaction audit trail, the ledger
client contract and escrow settlement.
"""

from ledger.client import (
    LedgerClient,
    LedgerClientError,
    LedgerLog,
    LedgerReceipt,
    LedgerTransaction,
    PaperLedgerClient,
)
from ledger.pending import PendingTransactionLedger
from ledger.safety import SafetyResult, SettlementGuard
from ledger.settlement import SettlementRequest, SettlementService

__all__ = [
    "LedgerClient",
    "LedgerClientError",
    "LedgerLog",
    "LedgerReceipt",
    "LedgerTransaction",
    "PaperLedgerClient",
    "PendingTransactionLedger",
    "SafetyResult",
    "SettlementGuard",
    "SettlementRequest",
    "SettlementService",
]
