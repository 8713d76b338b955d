"""
Escrow market core: contracts, state machines, voucher validation,
secure payload escrow, order store and fill tracker.
"""

from market_core.contracts import (
    BuyOrder,
    ConsumedReference,
    Fill,
    FillStatus,
    OrderKind,
    OrderStatus,
    PendingTransaction,
    SecureBundle,
    SellOrder,
    TxPurpose,
    TxStatus,
    Voucher,
)
from market_core.outcome import ErrorKind, OpError, Outcome, OutcomeError

__all__ = [
    "BuyOrder",
    "ConsumedReference",
    "ErrorKind",
    "Fill",
    "FillStatus",
    "OpError",
    "OrderKind",
    "OrderStatus",
    "Outcome",
    "OutcomeError",
    "PendingTransaction",
    "SecureBundle",
    "SellOrder",
    "TxPurpose",
    "TxStatus",
    "Voucher",
]
