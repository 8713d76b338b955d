"""End-to-end marketplace flows on the paper ledger, in memory and on SQLite."""

import json
import uuid

from conftest import BUYER, ESCROW, FILLER, OTHER, SELLER, make_voucher, sign_and_confirm
from market_core.contracts import FillStatus, OrderStatus
from market_core.outcome import ErrorKind
from marketplace.service import Marketplace
from store import sqlite_repositories


def test_buy_order_lifecycle_with_replay_and_expiry(market, ledger, clock):
    created = market.create_buy_order(BUYER, make_voucher("CR-1", 100.0), "MXNe", "100").unwrap()
    oid = created.order.order_id
    assert market.get_order(oid).unwrap().status == OrderStatus.PENDING

    sign_and_confirm(market, ledger, created.tx_id)
    market.tick()
    assert market.get_order(oid).unwrap().status == OrderStatus.ACTIVE

    replay = market.create_buy_order(BUYER, make_voucher("CR-1", 100.0), "MXNe", "100")
    assert replay.error.kind == ErrorKind.REPLAY

    clock.advance(days=7, seconds=1)
    assert market.get_order(oid).unwrap().status == OrderStatus.EXPIRED


def test_sell_order_fill_and_settlement(market, ledger):
    order = market.create_sell_order(SELLER, "USDC", "25", fiat_amount=450.0).unwrap()
    sign_and_confirm(market, ledger, order.tx_id)
    market.tick()

    fill = market.create_fill(order.order_id, FILLER, make_voucher("CR-77", 440.0)).unwrap()
    sign_and_confirm(market, ledger, fill.tx_id)
    report = market.tick()
    assert report.settled == 1

    done = market.get_fill(fill.fill_id).unwrap()
    assert done.status == FillStatus.COMPLETED
    assert done.transfer_tx_hash
    assert market.get_order(order.order_id).unwrap().status == OrderStatus.FILLED
    assert market.create_fill(order.order_id, OTHER, make_voucher("CR-78", 450.0)).error.kind == ErrorKind.INVALID_STATE


class TestDecryptVoucher:
    def test_owner_recovers_voucher_locally(self, market):
        raw = make_voucher("CR-5", 300.0)
        created = market.create_buy_order(BUYER, raw, "MXNe", "300").unwrap()
        out = market.decrypt_voucher(created.order.order_id, BUYER, created.private_id)
        assert out.ok
        assert json.loads(out.value)["operation"]["referenceCode"] == "CR-5"

    def test_dict_payload_is_sealed_as_json(self, market):
        body = json.loads(make_voucher("CR-6"))
        created = market.create_buy_order(BUYER, body, "MXNe", "100").unwrap()
        out = market.decrypt_voucher(created.order.order_id, BUYER, created.private_id).unwrap()
        assert json.loads(out) == body

    def test_recover_from_ledger(self, market, ledger):
        created = market.create_buy_order(BUYER, make_voucher("CR-5"), "MXNe", "100").unwrap()
        sign_and_confirm(market, ledger, created.tx_id)
        market.tick()
        out = market.decrypt_voucher(created.order.order_id, BUYER, created.private_id, method="ledger")
        assert out.ok
        assert "CR-5" in out.value

    def test_ledger_method_needs_confirmed_order(self, market):
        created = market.create_buy_order(BUYER, make_voucher(), "MXNe", "100").unwrap()
        out = market.decrypt_voucher(created.order.order_id, BUYER, created.private_id, method="ledger")
        assert out.error.kind == ErrorKind.INVALID_STATE

    def test_wrong_private_id(self, market):
        created = market.create_buy_order(BUYER, make_voucher(), "MXNe", "100").unwrap()
        out = market.decrypt_voucher(created.order.order_id, BUYER, str(uuid.uuid4()))
        assert out.error.kind == ErrorKind.DECRYPTION

    def test_only_owner(self, market):
        created = market.create_buy_order(BUYER, make_voucher(), "MXNe", "100").unwrap()
        out = market.decrypt_voucher(created.order.order_id, OTHER, created.private_id)
        assert out.error.kind == ErrorKind.UNAUTHORIZED

    def test_unknown_method(self, market):
        created = market.create_buy_order(BUYER, make_voucher(), "MXNe", "100").unwrap()
        out = market.decrypt_voucher(created.order.order_id, BUYER, created.private_id, method="ipfs")
        assert out.error.kind == ErrorKind.VALIDATION


class TestReportTransaction:
    def test_only_submitter_may_report(self, market):
        order = market.create_sell_order(SELLER, "MXNe", "1").unwrap()
        out = market.report_transaction(order.tx_id, "rejected", caller=OTHER)
        assert out.error.kind == ErrorKind.UNAUTHORIZED
        assert market.report_transaction(order.tx_id, "rejected", caller=SELLER).ok

    def test_unknown_transaction(self, market):
        assert market.report_transaction("tx-none", "confirmed").error.kind == ErrorKind.NOT_FOUND


def test_state_survives_restart_on_sqlite(tmp_path, ledger, clock):
    db = tmp_path / "escrow.db"
    first = Marketplace(ledger, repositories=sqlite_repositories(db), escrow_address=ESCROW, clock=clock)
    order = first.create_sell_order(SELLER, "MXNe", "100", fiat_amount=100.0).unwrap()
    sign_and_confirm(first, ledger, order.tx_id)
    first.tick()
    fill = first.create_fill(order.order_id, FILLER, make_voucher("CR-DISK")).unwrap()

    second = Marketplace(ledger, repositories=sqlite_repositories(db), escrow_address=ESCROW, clock=clock)
    assert second.get_order(order.order_id).unwrap().status == OrderStatus.ACTIVE
    assert second.get_fill(fill.fill_id).unwrap().status == FillStatus.PROCESSING
    assert second.replay_guard.is_consumed("CR-DISK")
    again = second.create_buy_order(BUYER, make_voucher("CR-DISK"), "MXNe", "100")
    assert again.error.kind == ErrorKind.REPLAY

    sign_and_confirm(second, ledger, fill.tx_id)
    assert second.tick().settled == 1
    assert second.tick().settled == 0
    assert len(ledger.submissions) == 1
