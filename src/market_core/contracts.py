"""
Data contracts for the escrow market: BuyOrder, SellOrder, Fill, Voucher,
PendingTransaction, SecureBundle.

Entities are frozen dataclasses. Stores replace a record with an updated
copy (dataclasses.replace), so nothing outside a store can mutate one.
All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class FillStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TxStatus(str, Enum):
    """Status of a locally recorded ledger transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


class OrderKind(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TxPurpose(str, Enum):
    """What a pending transaction does for the entity it is linked to."""

    ORDER_CREATION = "order_creation"  # payload anchor (buy) or deposit (sell)
    SELL_FILL = "sell_fill"  # filler pays against a sell order
    BUY_FILL = "buy_fill"  # counterparty deposits tokens against a buy order
    SETTLEMENT = "settlement"  # escrow releases tokens


# ---------------------------------------------------------------------------
# Voucher / secure payload
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Voucher:
    """A parsed, structurally valid payment voucher. Never persisted raw."""

    operation_type: str
    issuer_id: str
    amount: float
    reference_code: str
    created: str  # raw "YY/MM/DD HH:MM:SS"
    expiration: str  # raw "YY/MM/DD HH:MM:SS"
    expires_at: datetime
    message: str | None = None


@dataclass(frozen=True)
class SecureBundle:
    public_id: str
    private_id: str = field(repr=False)
    ciphertext: str  # even-length hex


# ---------------------------------------------------------------------------
# Orders and fills
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BuyOrder:
    order_id: str
    buyer: str
    fiat_amount: float
    token: str
    token_amount: str  # decimal string in token units
    reference_code: str
    voucher_expiration: str
    status: OrderStatus
    created_at: datetime
    expires_at: datetime
    memo: str | None = None
    tx_id: str | None = None  # local pending-transaction id of the payload anchor
    on_chain_tx_hash: str | None = None
    encrypted_voucher: str | None = None
    public_id: str | None = None
    filled_at: datetime | None = None
    filled_by: str | None = None
    filler_tx_id: str | None = None
    filler_tx_hash: str | None = None
    transfer_tx_hash: str | None = None
    transfer_timestamp: datetime | None = None
    transfer_error: str | None = None
    status_reason: str | None = None

    @property
    def kind(self) -> OrderKind:
        return OrderKind.BUY

    @property
    def owner(self) -> str:
        return self.buyer


@dataclass(frozen=True)
class SellOrder:
    order_id: str
    seller: str
    token: str
    amount: str  # decimal string in token units
    status: OrderStatus
    created_at: datetime
    expires_at: datetime
    fiat_amount: float | None = None
    memo: str | None = None
    tx_id: str | None = None  # local pending-transaction id of the escrow deposit
    on_chain_tx_hash: str | None = None
    filled_at: datetime | None = None
    filled_by: str | None = None
    filled_tx_hash: str | None = None
    status_reason: str | None = None

    @property
    def kind(self) -> OrderKind:
        return OrderKind.SELL

    @property
    def owner(self) -> str:
        return self.seller


@dataclass(frozen=True)
class Fill:
    fill_id: str
    order_id: str
    filler: str
    reference_code: str
    voucher_amount: float
    voucher_expiration: str
    status: FillStatus
    created_at: datetime
    expires_at: datetime
    completed_at: datetime | None = None
    tx_id: str | None = None
    on_chain_tx_hash: str | None = None
    error: str | None = None  # why the fill failed
    status_reason: str | None = None  # why it was cancelled or expired
    transfer_tx_hash: str | None = None
    transfer_timestamp: datetime | None = None
    transfer_error: str | None = None


# ---------------------------------------------------------------------------
# Ledger audit trail
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PendingTransaction:
    local_id: str
    destination: str
    value: str
    payload: str
    submitter: str
    chain: str
    status: TxStatus
    created_at: datetime
    updated_at: datetime
    hash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def purpose(self) -> TxPurpose | None:
        raw = self.metadata.get("purpose")
        return TxPurpose(raw) if raw else None

    @property
    def entity_id(self) -> str | None:
        return self.metadata.get("entity_id")


@dataclass(frozen=True)
class ConsumedReference:
    """A voucher reference code that has been used and can never be used again."""

    reference_code: str
    consumed_at: datetime
    operation: str  # "buy_order" | "fill"
    entity_id: str | None = None
