"""Pytest fixtures: fixed clock, vouchers, paper ledger and a wired marketplace."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from config.policy import MarketPolicy
from ledger.client import PaperLedgerClient
from marketplace.service import Marketplace

ESCROW = "0x9c77c6fafc1eb0821F1De12972Ef0199C97C6e45"
BUYER = "0x" + "1" * 40
SELLER = "0x" + "2" * 40
FILLER = "0x" + "3" * 40
OTHER = "0x" + "4" * 40

# 2026-03-01 12:00 UTC is 06:00 in America/Mexico_City (UTC-6, no DST).
START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_voucher(
    reference: str = "CR-1",
    amount: float = 100.0,
    *,
    expiration: str = "26/03/08 12:00:00",
    created: str = "26/03/01 05:00:00",
    operation_type: str = "0004",
    issuer: str = "101",
    network_names: bool = False,
) -> str:
    """Voucher JSON as the wallet submits it. network_names uses the issuer's field names."""
    if network_names:
        body = {
            "TipoOperacion": operation_type,
            "EmisorQR": issuer,
            "Monto": amount,
            "FechaCreacionQR": created,
            "FechaExpiracionQR": expiration,
            "Operacion": {"CR": reference, "Mensaje": "Pago OXXO"},
        }
    else:
        body = {
            "operationType": operation_type,
            "issuerId": issuer,
            "amount": amount,
            "creationTimestamp": created,
            "expirationTimestamp": expiration,
            "operation": {"referenceCode": reference},
        }
    return json.dumps(body)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def policy() -> MarketPolicy:
    return MarketPolicy()


@pytest.fixture
def ledger() -> PaperLedgerClient:
    return PaperLedgerClient()


@pytest.fixture
def market(ledger: PaperLedgerClient, clock: FixedClock, policy: MarketPolicy) -> Marketplace:
    return Marketplace(ledger, policy=policy, escrow_address=ESCROW, clock=clock)


def sign_and_confirm(market: Marketplace, ledger: PaperLedgerClient, local_id: str, *, confirm: bool = True) -> str:
    """Play the wallet: broadcast the recorded transaction, report its hash, optionally confirm it."""
    tx = market.get_transaction(local_id).unwrap()
    tx_hash = ledger.broadcast(tx.payload, destination=tx.destination, value=tx.value)
    market.report_transaction(local_id, "pending", tx_hash).unwrap()
    if confirm:
        ledger.confirm(tx_hash)
    return tx_hash


def active_buy_order(market: Marketplace, ledger: PaperLedgerClient, reference: str = "CR-1", amount: float = 100.0):
    created = market.create_buy_order(BUYER, make_voucher(reference, amount), "MXNe", "100").unwrap()
    sign_and_confirm(market, ledger, created.tx_id)
    market.tick()
    return created


def active_sell_order(market: Marketplace, ledger: PaperLedgerClient, *, amount: str = "100", fiat: float | None = 100.0):
    order = market.create_sell_order(SELLER, "MXNe", amount, fiat_amount=fiat).unwrap()
    sign_and_confirm(market, ledger, order.tx_id)
    market.tick()
    return market.get_order(order.order_id).unwrap()
