"""Tests for sweeping session balances to the operator."""

import dataclasses
import json
import threading

import pytest

from conftest import OPERATOR
from turnstile.audit import EventType
from turnstile.config import SweepSettings
from turnstile.ledger import ConfirmationStatus, LocalLedger
from turnstile.money import ether_to_wei
from turnstile.sessions import lease_key
from turnstile.sweep import SweepEngine, SweepStatus

PAID = ether_to_wei("0.0009")
RESERVE = ether_to_wei("0.00005")


@pytest.fixture
def settings():
    return SweepSettings(operator_address=OPERATOR.address, sweep_delay_seconds=0)


@pytest.fixture
def engine(sessions, issuer, ledger, settings, audit, clock):
    return SweepEngine(sessions, issuer, ledger, settings, audit=audit, clock=clock, sleep=lambda s: None)


def funded(sessions, ledger, amount=PAID):
    record = sessions.create()
    ledger.deposit(record.address, amount)
    return record


class TestSweepOne:
    def test_sweep_leaves_gas_reserve(self, engine, sessions, ledger):
        record = funded(sessions, ledger)
        item = engine.sweep_one(record.session_id)

        assert item.status == SweepStatus.SWEPT
        assert item.amount_moved == PAID - RESERVE
        assert ledger.get_balance(record.address) == RESERVE
        assert ledger.get_balance(OPERATOR.address) == PAID - RESERVE
        assert ledger.submitted[0].sender == record.address

    def test_below_threshold_is_skipped_without_submission(self, engine, sessions, ledger):
        record = funded(sessions, ledger, amount=engine.threshold_wei - 1)
        item = engine.sweep_one(record.session_id)
        assert item.status == SweepStatus.SKIPPED
        assert ledger.submitted == []

    def test_sweep_marks_session(self, engine, sessions, ledger, clock):
        record = funded(sessions, ledger)
        assert sessions.get(record.session_id).last_swept_at is None
        engine.sweep_one(record.session_id)
        assert sessions.get(record.session_id).last_swept_at == clock.now

    def test_exact_threshold_is_swept(self, engine, sessions, ledger):
        record = funded(sessions, ledger, amount=engine.threshold_wei)
        assert engine.sweep_one(record.session_id).status == SweepStatus.SWEPT

    def test_unknown_session(self, engine):
        item = engine.sweep_one("0" * 64)
        assert item.status == SweepStatus.FAILED

    def test_operator_not_configured(self, sessions, issuer, ledger, clock):
        engine = SweepEngine(sessions, issuer, ledger, SweepSettings(), clock=clock)
        record = funded(sessions, ledger)
        item = engine.sweep_one(record.session_id)
        assert item.status == SweepStatus.FAILED
        assert "Operator address" in item.error
        assert ledger.submitted == []

    def test_fee_above_reserve_fails(self, sessions, issuer, settings, clock):
        ledger = LocalLedger(gas_price=10**10, clock=clock)
        engine = SweepEngine(sessions, issuer, ledger, settings, clock=clock)
        record = funded(sessions, ledger)
        item = engine.sweep_one(record.session_id)
        assert item.status == SweepStatus.FAILED
        assert "Insufficient balance after fee" in item.error
        assert ledger.submitted == []

    def test_fee_within_reserve_is_paid_from_reserve(self, sessions, issuer, settings, clock):
        gas_price = RESERVE // 21_000
        ledger = LocalLedger(gas_price=gas_price, clock=clock)
        engine = SweepEngine(sessions, issuer, ledger, settings, clock=clock)
        record = funded(sessions, ledger)
        assert engine.sweep_one(record.session_id).status == SweepStatus.SWEPT
        assert ledger.get_balance(record.address) == RESERVE - 21_000 * gas_price

    def test_unconfirmed_transfer_fails(self, sessions, issuer, settings, clock):
        class StuckLedger(LocalLedger):
            def confirm(self, ref, timeout):
                return ConfirmationStatus.TIMEOUT

        ledger = StuckLedger(clock=clock)
        engine = SweepEngine(sessions, issuer, ledger, settings, clock=clock)
        record = funded(sessions, ledger)
        item = engine.sweep_one(record.session_id)
        assert item.status == SweepStatus.FAILED
        assert item.tx_ref == ledger.submitted[0].tx_ref

    def test_ledger_offline_fails(self, engine, sessions, ledger):
        record = funded(sessions, ledger)
        ledger.online = False
        assert engine.sweep_one(record.session_id).status == SweepStatus.FAILED

    def test_second_sweep_has_nothing_to_move(self, engine, sessions, ledger):
        record = funded(sessions, ledger)
        engine.sweep_one(record.session_id)
        assert engine.sweep_one(record.session_id).status == SweepStatus.SKIPPED
        assert len(ledger.submitted) == 1


class TestLeases:
    def test_held_lease_skips_address(self, engine, sessions, ledger, store, clock):
        record = funded(sessions, ledger)
        store.put(lease_key(record.address), json.dumps({"owner": "other", "expires_at": clock.now + 60}))
        item = engine.sweep_one(record.session_id)
        assert item.status == SweepStatus.SKIPPED
        assert ledger.submitted == []

    def test_stale_lease_is_taken_over(self, engine, sessions, ledger, store, clock):
        record = funded(sessions, ledger)
        store.put(lease_key(record.address), json.dumps({"owner": "dead", "expires_at": clock.now - 1}))
        assert engine.sweep_one(record.session_id).status == SweepStatus.SWEPT

    def test_lease_released_after_sweep(self, engine, sessions, ledger, store):
        record = funded(sessions, ledger)
        engine.sweep_one(record.session_id)
        assert store.get(lease_key(record.address)) is None

    def test_concurrent_sweeps_sign_once(self, engine, sessions, ledger):
        record = funded(sessions, ledger)
        barrier = threading.Barrier(4)
        results = []

        def sweep():
            barrier.wait()
            results.append(engine.sweep_one(record.session_id))

        threads = [threading.Thread(target=sweep) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(r.status == SweepStatus.SWEPT for r in results) == 1
        assert len(ledger.submitted) == 1
        assert ledger.get_balance(record.address) == RESERVE


class TestSweepAll:
    def test_failure_does_not_stop_batch(self, engine, sessions, ledger, audit):
        records = [funded(sessions, ledger) for _ in range(10)]
        broken = records[4]
        sessions.update(
            broken.session_id,
            lambda r: setattr(r, "identity", dataclasses.replace(r.identity, salt="00" * 16)),
        )

        outcome = engine.sweep_all()

        assert outcome.attempted == 10
        assert outcome.succeeded == 9
        assert outcome.failed == 1
        assert outcome.errors[0]["session_id"] == broken.session_id
        for record in records:
            if record is not broken:
                assert ledger.get_balance(record.address) == RESERVE
        assert ledger.get_balance(broken.address) == PAID
        assert ledger.get_balance(OPERATOR.address) == 9 * (PAID - RESERVE)

        alerts = audit.read_events(event_type=EventType.KEY_DERIVATION_FAILED)
        assert [e.session_id for e in alerts] == [broken.session_id]

    def test_unexpected_exception_is_contained(self, engine, sessions, ledger, monkeypatch):
        first, second = funded(sessions, ledger), funded(sessions, ledger)
        real = ledger.get_nonce

        def flaky(address):
            if address == first.address:
                raise RuntimeError("boom")
            return real(address)

        monkeypatch.setattr(ledger, "get_nonce", flaky)
        outcome = engine.sweep_all()
        assert (outcome.succeeded, outcome.failed) == (1, 1)
        assert "RuntimeError" in outcome.errors[0]["reason"]

    def test_stop_event_yields_prefix(self, engine, sessions, ledger, monkeypatch):
        for _ in range(5):
            funded(sessions, ledger)
        order = [r.session_id for r in engine.eligible_sessions()]
        stop = threading.Event()
        real = ledger.get_balance
        calls = []

        def counting(address):
            calls.append(address)
            if len(calls) == 2:
                stop.set()
            return real(address)

        monkeypatch.setattr(ledger, "get_balance", counting)
        outcome = engine.sweep_all(stop_event=stop)
        assert [i.session_id for i in outcome.items] == order[:2]

    def test_delay_between_addresses(self, sessions, issuer, ledger, clock):
        pauses = []
        settings = SweepSettings(operator_address=OPERATOR.address, sweep_delay_seconds=1.5)
        engine = SweepEngine(sessions, issuer, ledger, settings, clock=clock, sleep=pauses.append)
        for _ in range(3):
            funded(sessions, ledger)
        engine.sweep_all()
        assert pauses == [1.5, 1.5]

    def test_unpaid_funded_can_be_excluded(self, sessions, issuer, ledger, clock):
        settings = SweepSettings(operator_address=OPERATOR.address, include_unpaid_funded=False)
        engine = SweepEngine(sessions, issuer, ledger, settings, clock=clock)
        funded(sessions, ledger)
        assert engine.sweep_all().attempted == 0

    def test_outcome_dict(self, engine, sessions, ledger):
        funded(sessions, ledger)
        data = engine.sweep_all().to_dict()
        assert data["moved"] == str(PAID - RESERVE)
        assert data["moved_display"] == "0.000850 ETH"
        assert data["items"][0]["status"] == "swept"


class TestStats:
    def test_stats_accumulate(self, engine, sessions, ledger):
        funded(sessions, ledger)
        engine.sweep_all()
        stats = engine.stats()
        assert stats["runs"] == 1
        assert stats["total_swept_wei"] == str(PAID - RESERVE)
        assert stats["failed_items"] == 0
        assert stats["operator_address"] == OPERATOR.address
        assert stats["threshold"] == "0.000550 ETH"
        assert not stats["is_running"]

    def test_completed_sweep_is_audited(self, engine, sessions, ledger, audit):
        record = funded(sessions, ledger)
        engine.sweep_one(record.session_id)
        events = audit.read_events(event_type=EventType.SWEEP_COMPLETED)
        assert events[0].address == record.address
        assert events[0].amount_wei == str(PAID - RESERVE)
