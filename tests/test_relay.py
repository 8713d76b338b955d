"""Tests for relay.reconciliation: ledger-driven advancement and exactly-once settlement."""

import threading

import pytest

from conftest import (
    BUYER,
    ESCROW,
    FILLER,
    OTHER,
    SELLER,
    active_buy_order,
    active_sell_order,
    make_voucher,
    sign_and_confirm,
)
from journal.writer import JournalWriter
from ledger.client import LedgerClientError, PaperLedgerClient
from ledger.safety import SettlementGuard
from market_core.contracts import FillStatus, OrderStatus, TxPurpose, TxStatus
from market_core.outcome import ErrorKind
from market_core.tokens import SUPPORTED_TOKENS, encode_erc20_transfer
from marketplace.service import Marketplace


class RecordingEvents:
    """Collects relay event calls as (name, args, kwargs)."""

    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args, kwargs))

        return record

    def names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def sell(market, ledger):
    return active_sell_order(market, ledger)


def _confirmed_fill(market, ledger, sell, reference="CR-F1"):
    fill = market.create_fill(sell.order_id, FILLER, make_voucher(reference)).unwrap()
    sign_and_confirm(market, ledger, fill.tx_id)
    return fill


class TestOrderActivation:
    def test_pending_ledger_status_leaves_order_alone(self, market, ledger):
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        sign_and_confirm(market, ledger, order.tx_id, confirm=False)
        report = market.tick()
        assert report.examined == 1
        assert report.advanced == 0
        assert market.get_order(order.order_id).unwrap().status == OrderStatus.PENDING

    def test_confirmation_activates_and_records_hash(self, market, ledger):
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        tx_hash = sign_and_confirm(market, ledger, order.tx_id)
        report = market.tick()
        assert report.advanced == 1
        got = market.get_order(order.order_id).unwrap()
        assert got.status == OrderStatus.ACTIVE
        assert got.on_chain_tx_hash == tx_hash
        assert market.get_transaction(order.tx_id).unwrap().status == TxStatus.COMPLETED

    def test_wallet_reported_confirmation_is_enough(self, market, ledger):
        created = market.create_buy_order(BUYER, make_voucher(), "MXNe", "100").unwrap()
        market.report_transaction(created.tx_id, "confirmed", "0x" + "ab" * 32).unwrap()
        market.tick()
        assert market.get_order(created.order.order_id).unwrap().status == OrderStatus.ACTIVE

    def test_confirmed_without_hash_waits(self, market):
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        market.report_transaction(order.tx_id, "confirmed").unwrap()
        report = market.tick()
        assert report.advanced == 0
        assert market.get_order(order.order_id).unwrap().status == OrderStatus.PENDING

    def test_rejected_cancels_order(self, market):
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        market.report_transaction(order.tx_id, "rejected").unwrap()
        report = market.tick()
        assert report.failed == 1
        got = market.get_order(order.order_id).unwrap()
        assert got.status == OrderStatus.CANCELLED
        assert got.status_reason == "transaction rejected"

    def test_ledger_failure_cancels_order(self, market, ledger):
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        tx_hash = sign_and_confirm(market, ledger, order.tx_id, confirm=False)
        ledger.fail(tx_hash)
        market.tick()
        got = market.get_order(order.order_id).unwrap()
        assert got.status == OrderStatus.CANCELLED
        assert got.status_reason == "transaction failed"

    def test_cancelled_order_not_revived_by_late_confirmation(self, market, ledger):
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        market.cancel_order(order.order_id, SELLER).unwrap()
        sign_and_confirm(market, ledger, order.tx_id)
        report = market.tick()
        assert report.examined == 0
        assert report.advanced == 0
        assert report.failed == 1
        assert market.get_order(order.order_id).unwrap().status == OrderStatus.CANCELLED
        tx = market.get_transaction(order.tx_id).unwrap()
        assert tx.status == TxStatus.CONFIRMED
        assert tx.metadata["unapplied_reason"] == "order_creation transaction confirmed after sell_order became cancelled"

    def test_ticks_are_idempotent(self, market, ledger):
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        sign_and_confirm(market, ledger, order.tx_id)
        assert market.tick().advanced == 1
        again = market.tick()
        assert again.examined == 0
        assert again.advanced == 0


class TestLedgerErrors:
    def test_lookup_error_is_counted_and_retried(self, clock):
        class FlakyLedger(PaperLedgerClient):
            down = True

            def get_transaction_by_hash(self, tx_hash):
                if self.down:
                    raise LedgerClientError("rpc timeout")
                return super().get_transaction_by_hash(tx_hash)

        ledger = FlakyLedger()
        market = Marketplace(ledger, escrow_address=ESCROW, clock=clock)
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        sign_and_confirm(market, ledger, order.tx_id)

        report = market.tick()
        assert report.ledger_errors == 1
        assert market.get_order(order.order_id).unwrap().status == OrderStatus.PENDING

        ledger.down = False
        assert market.tick().advanced == 1
        assert market.get_order(order.order_id).unwrap().status == OrderStatus.ACTIVE


class TestSellFillSettlement:
    def test_confirmed_fill_completes_and_settles(self, market, ledger, sell):
        fill = _confirmed_fill(market, ledger, sell)
        report = market.tick()
        assert report.advanced == 1
        assert report.settled == 1

        done = market.get_fill(fill.fill_id).unwrap()
        assert done.status == FillStatus.COMPLETED
        assert done.transfer_tx_hash == ledger.submissions[0].hash
        assert done.transfer_timestamp is not None
        assert market.get_order(sell.order_id).unwrap().status == OrderStatus.FILLED

        sent = ledger.submissions[0]
        assert sent.destination == SUPPORTED_TOKENS["MXNe"].address
        assert sent.payload == encode_erc20_transfer(FILLER, 100 * 10**6)

    def test_settlement_recorded_in_pending_ledger(self, market, ledger, sell):
        fill = _confirmed_fill(market, ledger, sell)
        market.tick()
        settlements = market.pending.list(purpose=TxPurpose.SETTLEMENT)
        assert len(settlements) == 1
        rec = settlements[0]
        assert rec.entity_id == fill.fill_id
        assert rec.submitter == ESCROW
        assert rec.metadata["recipient"] == FILLER
        assert rec.status == TxStatus.PENDING

        ledger.confirm(rec.hash)
        market.tick()
        assert market.get_transaction(rec.local_id).unwrap().status == TxStatus.CONFIRMED

    def test_exactly_once_across_ticks_and_manual_runs(self, market, ledger, sell):
        fill = _confirmed_fill(market, ledger, sell)
        market.tick()
        for _ in range(3):
            assert market.tick().settled == 0
        report = market.request_manual_reconciliation(fill.fill_id).unwrap()
        assert report.settled == 0
        assert len(ledger.submissions) == 1

    def test_failed_settlement_is_recorded_not_raised(self, market, ledger, sell):
        fill = _confirmed_fill(market, ledger, sell)
        ledger.submit_error = "nonce too low"
        report = market.tick()
        assert report.advanced == 1
        assert report.settlement_errors == 1

        got = market.get_fill(fill.fill_id).unwrap()
        assert got.status == FillStatus.COMPLETED
        assert got.transfer_tx_hash is None
        assert "nonce too low" in got.transfer_error

    def test_failed_settlement_not_retried_by_ticks(self, market, ledger, sell):
        _confirmed_fill(market, ledger, sell)
        ledger.submit_error = "nonce too low"
        market.tick()
        ledger.submit_error = None
        market.tick()
        assert ledger.submissions == []

    def test_manual_reconciliation_retries_settlement(self, market, ledger, sell):
        fill = _confirmed_fill(market, ledger, sell)
        ledger.submit_error = "nonce too low"
        market.tick()
        ledger.submit_error = None

        report = market.request_manual_reconciliation(fill.fill_id).unwrap()
        assert report.settled == 1
        got = market.get_fill(fill.fill_id).unwrap()
        assert got.transfer_tx_hash == ledger.submissions[0].hash
        assert got.transfer_error is None

    def test_concurrent_manual_reconciliation_settles_once(self, market, ledger, sell):
        fill = _confirmed_fill(market, ledger, sell)
        ledger.submit_error = "down"
        market.tick()
        ledger.submit_error = None

        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            market.request_manual_reconciliation(fill.fill_id)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(ledger.submissions) == 1

    def test_kill_switch_blocks_settlement(self, ledger, clock):
        market = Marketplace(
            ledger, escrow_address=ESCROW, clock=clock, settlement_guard=SettlementGuard(kill_switch=True)
        )
        sell = active_sell_order(market, ledger)
        fill = _confirmed_fill(market, ledger, sell)
        report = market.tick()
        assert report.settlement_errors == 1
        assert ledger.submissions == []
        assert "Kill switch" in market.get_fill(fill.fill_id).unwrap().transfer_error

    def test_daily_cap(self, ledger, clock):
        market = Marketplace(
            ledger, escrow_address=ESCROW, clock=clock, settlement_guard=SettlementGuard(max_daily_transfers=1)
        )
        first = active_sell_order(market, ledger)
        second = active_sell_order(market, ledger)
        a = _confirmed_fill(market, ledger, first, "CR-A")
        b = market.create_fill(second.order_id, OTHER, make_voucher("CR-B")).unwrap()
        sign_and_confirm(market, ledger, b.tx_id)
        report = market.tick()
        assert report.settled == 1
        assert report.settlement_errors == 1
        settled = [f for f in (market.get_fill(a.fill_id).unwrap(), market.get_fill(b.fill_id).unwrap()) if f.transfer_tx_hash]
        assert len(settled) == 1

        clock.advance(days=1)
        for f in (a, b):
            market.request_manual_reconciliation(f.fill_id).unwrap()
        assert len(ledger.submissions) == 2

    def test_rejected_fill_transaction_fails_fill(self, market, sell):
        fill = market.create_fill(sell.order_id, FILLER, make_voucher("CR-F1")).unwrap()
        market.report_transaction(fill.tx_id, "rejected").unwrap()
        market.tick()
        got = market.get_fill(fill.fill_id).unwrap()
        assert got.status == FillStatus.FAILED
        assert got.error == "transaction rejected"
        assert market.get_order(sell.order_id).unwrap().status == OrderStatus.ACTIVE

    def test_expired_fill_ignores_late_confirmation(self, market, ledger, sell, clock):
        fill = market.create_fill(sell.order_id, FILLER, make_voucher("CR-F1")).unwrap()
        clock.advance(minutes=16)
        sign_and_confirm(market, ledger, fill.tx_id)
        report = market.tick()
        assert report.advanced == 0
        assert report.failed == 1
        assert market.get_fill(fill.fill_id).unwrap().status == FillStatus.EXPIRED
        assert ledger.submissions == []


class TestBuyOrderFill:
    def test_filler_deposit_fills_and_settles_to_buyer(self, market, ledger):
        created = active_buy_order(market, ledger)
        oid = created.order.order_id
        order = market.fill_buy_order(oid, FILLER).unwrap()
        deposit_hash = sign_and_confirm(market, ledger, order.filler_tx_id)

        report = market.tick()
        assert report.advanced == 1
        assert report.settled == 1
        got = market.get_order(oid).unwrap()
        assert got.status == OrderStatus.FILLED
        assert got.filled_by == FILLER
        assert got.filler_tx_hash == deposit_hash
        assert got.transfer_tx_hash == ledger.submissions[0].hash
        assert ledger.submissions[0].payload == encode_erc20_transfer(BUYER, 100 * 10**6)

    def test_rejected_deposit_frees_order(self, market, ledger):
        created = active_buy_order(market, ledger)
        oid = created.order.order_id
        order = market.fill_buy_order(oid, FILLER).unwrap()
        market.report_transaction(order.filler_tx_id, "rejected").unwrap()
        market.tick()

        got = market.get_order(oid).unwrap()
        assert got.status == OrderStatus.ACTIVE
        assert got.filler_tx_id is None
        assert got.status_reason == "fill transaction rejected"
        assert market.fill_buy_order(oid, OTHER).ok

    def test_manual_retry_for_buy_order(self, market, ledger):
        created = active_buy_order(market, ledger)
        oid = created.order.order_id
        order = market.fill_buy_order(oid, FILLER).unwrap()
        sign_and_confirm(market, ledger, order.filler_tx_id)
        ledger.submit_error = "gas"
        market.tick()
        assert market.get_order(oid).unwrap().transfer_error
        ledger.submit_error = None
        assert market.request_manual_reconciliation(oid).unwrap().settled == 1
        assert market.request_manual_reconciliation(oid).unwrap().settled == 0


class TestUnappliedConfirmations:
    @pytest.fixture
    def journal(self, tmp_path):
        return JournalWriter(tmp_path / "journal.jsonl")

    @pytest.fixture
    def events(self):
        return RecordingEvents()

    @pytest.fixture
    def market(self, ledger, clock, journal, events):
        return Marketplace(ledger, escrow_address=ESCROW, clock=clock, journal=journal, events=events)

    def test_deposit_confirmed_after_buy_order_expired(self, market, ledger, clock, journal, events):
        created = active_buy_order(market, ledger)
        oid = created.order.order_id
        order = market.fill_buy_order(oid, FILLER).unwrap()
        deposit_hash = sign_and_confirm(market, ledger, order.filler_tx_id, confirm=False)
        clock.advance(days=8)
        first = market.tick()
        assert first.expired_orders == 1
        assert first.failed == 0

        ledger.confirm(deposit_hash)
        report = market.tick()
        assert report.failed == 1
        assert report.advanced == 0
        assert report.settled == 0
        assert market.get_order(oid).unwrap().status == OrderStatus.EXPIRED

        reason = "buy_fill transaction confirmed after buy_order became expired"
        tx = market.get_transaction(order.filler_tx_id).unwrap()
        assert tx.status == TxStatus.CONFIRMED
        assert tx.metadata["reconciled"] is True
        assert tx.metadata["unapplied_reason"] == reason
        assert ("entity_failed", ("buy_order", oid, reason), {}) in events.calls

        entries = [e for e in journal.read_all() if e["event"] == "unapplied_transaction"]
        assert len(entries) == 1
        assert entries[0]["entity_id"] == oid
        assert entries[0]["local_id"] == order.filler_tx_id
        assert entries[0]["tx_hash"] == deposit_hash
        assert entries[0]["purpose"] == "buy_fill"

        assert market.tick().failed == 0
        assert len([e for e in journal.read_all() if e["event"] == "unapplied_transaction"]) == 1

    def test_fill_confirmed_after_sell_order_expired(self, market, ledger, clock, journal):
        order = market.create_sell_order(SELLER, "MXNe", "100", fiat_amount=100.0, lifetime_seconds=600).unwrap()
        sign_and_confirm(market, ledger, order.tx_id)
        market.tick()
        fill = market.create_fill(order.order_id, FILLER, make_voucher("CR-F1")).unwrap()
        clock.advance(seconds=601)
        sign_and_confirm(market, ledger, fill.tx_id)

        report = market.tick()
        assert report.expired_orders == 1
        assert report.examined == 1
        assert report.advanced == 0
        assert report.failed == 1
        assert ledger.submissions == []

        got = market.get_fill(fill.fill_id).unwrap()
        assert got.status == FillStatus.FAILED
        assert got.error.startswith("order could not be filled")
        tx = market.get_transaction(fill.tx_id).unwrap()
        assert tx.metadata["unapplied_reason"].startswith("Order ")

        assert market.tick().failed == 0
        entries = [e for e in journal.read_all() if e["event"] == "unapplied_transaction"]
        assert [(e["entity_kind"], e["entity_id"]) for e in entries] == [("fill", fill.fill_id)]

    def test_applied_transactions_are_marked_not_surfaced(self, market, ledger, journal):
        sell = active_sell_order(market, ledger)
        tx = market.get_transaction(sell.tx_id).unwrap()
        assert tx.status == TxStatus.COMPLETED
        assert tx.metadata["reconciled"] is True
        assert "unapplied_reason" not in tx.metadata
        assert market.tick().failed == 0
        assert [e for e in journal.read_all() if e["event"] == "unapplied_transaction"] == []

    def test_manual_reconciliation_surfaces_too(self, market, ledger):
        order = market.create_sell_order(SELLER, "MXNe", "100").unwrap()
        market.cancel_order(order.order_id, SELLER).unwrap()
        sign_and_confirm(market, ledger, order.tx_id)
        report = market.request_manual_reconciliation(order.order_id).unwrap()
        assert report.failed == 1
        assert market.request_manual_reconciliation(order.order_id).unwrap().failed == 0


class TestManualReconciliation:
    def test_unknown_entity(self, market):
        out = market.request_manual_reconciliation("missing")
        assert out.error.kind == ErrorKind.NOT_FOUND

    def test_only_touches_requested_entity(self, market, ledger):
        a = market.create_sell_order(SELLER, "MXNe", "1").unwrap()
        b = market.create_sell_order(SELLER, "MXNe", "2").unwrap()
        sign_and_confirm(market, ledger, a.tx_id)
        sign_and_confirm(market, ledger, b.tx_id)
        report = market.request_manual_reconciliation(a.order_id).unwrap()
        assert report.advanced == 1
        assert market.get_order(a.order_id).unwrap().status == OrderStatus.ACTIVE
        assert market.get_order(b.order_id).unwrap().status == OrderStatus.PENDING


class TestEvents:
    def test_tick_emits_lifecycle_events(self, ledger, clock):
        events = RecordingEvents()
        market = Marketplace(ledger, escrow_address=ESCROW, clock=clock, events=events)
        sell = active_sell_order(market, ledger)
        _confirmed_fill(market, ledger, sell)
        ledger.submit_error = "boom"
        market.tick()
        names = events.names()
        assert names.count("tick_start") == names.count("tick_complete") == 2
        assert "entity_advanced" in names
        assert "settlement_failed" in names
        complete = [c for c in events.calls if c[0] == "tick_complete"][-1]
        assert complete[2]["settlement_errors"] == 1
