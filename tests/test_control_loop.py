"""
Tests for ControlLoopScheduler.

Coverage:
- Tick outcomes: idle, rebalanced, rejected, skipped
- Non-forced rejections are not recorded; forced ones are
- Forced requests bypass cooldown/cap and consume a slot
- At most one Executing phase in flight under concurrent force requests
- Graceful drain on stop
- Notifications
"""

import threading

import pytest

from core.ability_client import AbilityResponse
from core.control_loop import LoopState, LoopStopped
from core.models import AttemptOutcome, RebalanceTier, RejectionReason
from tests.helpers import FakeTransactor, FakeVault, balance, make_reading
from tests.helpers.harness import Harness, wait_for


def test_calm_market_tick_is_idle(tmp_path):
    h = Harness(tmp_path, volatility_bps=200)
    result = h.scheduler.run_tick()

    assert result.result == "idle"
    assert len(h.ledger) == 0
    assert h.transactor.calls == []
    assert h.scheduler.state is LoopState.IDLE


def test_volatile_tick_rebalances_and_records(tmp_path, metrics):
    h = Harness(tmp_path, volatility_bps=1200, metrics=metrics)
    result = h.scheduler.run_tick()

    assert result.result == "rebalanced"
    assert result.tier is RebalanceTier.MEDIUM
    attempt = h.ledger.list()[0]
    assert attempt.outcome is AttemptOutcome.SUCCESS
    assert attempt.trigger_asset == "WETH"
    assert attempt.trigger_volatility == pytest.approx(12.0)
    assert attempt.forced is False
    assert h.admission.snapshot().daily_count == 1
    assert h.alerts.history()[-1]["severity"] == "INFO"
    assert metrics.snapshot()["outcomes"] == {"success": 1}
    assert metrics.last_tick().result == "rebalanced"


def test_second_tick_inside_cooldown_is_rejected_not_recorded(tmp_path):
    h = Harness(tmp_path)
    h.scheduler.run_tick()
    h.clock.advance(minutes=5)
    h.oracle.readings["WETH"] = make_reading(1200, at=h.clock.now)

    result = h.scheduler.run_tick()
    assert result.result == "rejected"
    assert result.reason == RejectionReason.COOLDOWN_ACTIVE.value
    assert len(h.ledger) == 1


def test_disabled_tick_rejected_without_touching_vault(tmp_path):
    vault = FakeVault(fail=True)
    h = Harness(tmp_path, enabled=False, vault=vault)
    result = h.scheduler.run_tick()

    assert result.result == "rejected"
    assert result.reason == "disabled"
    assert len(h.ledger) == 0


def test_partial_failure_is_recorded_and_alerted(tmp_path):
    transactor = FakeTransactor(script={("swap", "execute"): AbilityResponse(success=False, error="reverted")})
    h = Harness(tmp_path, transactor=transactor)
    h.scheduler.run_tick()

    attempt = h.ledger.list()[0]
    assert attempt.outcome is AttemptOutcome.PARTIAL_FAILURE
    assert h.alerts.history()[-1]["severity"] == "WARNING"
    # slot was consumed at admission
    assert h.admission.snapshot().daily_count == 1


def test_notifications_respect_config(tmp_path):
    h = Harness(tmp_path, notification_enabled=False)
    h.scheduler.run_tick()
    assert len(h.ledger) == 1
    assert h.alerts.history() == []


def test_no_observations_skips_tick(tmp_path):
    h = Harness(tmp_path)
    h.oracle.readings = {"WETH": ConnectionError("down"), "USDC": None}
    result = h.scheduler.run_tick()
    assert result.result == "skipped"
    assert result.reason == "no_observations"


def test_vault_unavailable_skips_without_consuming_slot(tmp_path):
    h = Harness(tmp_path, vault=FakeVault(fail=True))
    result = h.scheduler.run_tick()

    assert result.result == "skipped"
    assert result.reason == "vault_unavailable"
    assert h.admission.snapshot().daily_count == 0
    assert len(h.ledger) == 0


def test_forced_while_disabled_is_recorded_as_rejected(tmp_path):
    h = Harness(tmp_path, enabled=False)
    attempt = h.scheduler.run_forced(RebalanceTier.AGGRESSIVE)

    assert attempt.outcome is AttemptOutcome.REJECTED
    assert attempt.rejection_reason is RejectionReason.DISABLED
    assert attempt.forced is True
    assert h.ledger.list() == [attempt]
    assert h.transactor.calls == []
    assert h.admission.snapshot().daily_count == 0


def test_forced_with_nothing_to_rebalance_is_recorded(tmp_path):
    h = Harness(tmp_path, vault=FakeVault([balance("USDC", "1000", decimals=6)]))
    attempt = h.scheduler.run_forced(RebalanceTier.SOFT)
    assert attempt.rejection_reason is RejectionReason.NOTHING_TO_REBALANCE
    assert len(h.ledger) == 1


def test_forced_bypasses_cooldown_and_cap(tmp_path):
    h = Harness(tmp_path, max_daily=1)
    h.scheduler.run_tick()
    h.clock.advance(minutes=1)

    attempt = h.scheduler.run_forced(RebalanceTier.SOFT)
    assert attempt.outcome is AttemptOutcome.SUCCESS
    assert attempt.forced is True
    assert attempt.trigger_asset == "WETH"
    assert h.admission.snapshot().daily_count == 2
    assert len(h.ledger) == 2


def test_submit_force_rejects_none_tier(tmp_path):
    h = Harness(tmp_path)
    with pytest.raises(ValueError):
        h.scheduler.submit_force(RebalanceTier.NONE)


def test_concurrent_force_requests_are_serialized(tmp_path):
    transactor = FakeTransactor(delay=0.01)
    h = Harness(tmp_path, transactor=transactor)
    loop_thread = threading.Thread(target=h.scheduler.run_forever, daemon=True)
    loop_thread.start()
    assert wait_for(lambda: h.scheduler.running)

    futures = []
    lock = threading.Lock()

    def submit():
        future = h.scheduler.submit_force(RebalanceTier.SOFT)
        with lock:
            futures.append(future)

    submitters = [threading.Thread(target=submit) for _ in range(4)]
    for t in submitters:
        t.start()
    for t in submitters:
        t.join()

    attempts = [f.result(timeout=10) for f in futures]
    assert h.scheduler.stop(timeout=10)

    assert all(a.outcome is AttemptOutcome.SUCCESS for a in attempts)
    assert transactor.max_in_flight == 1
    assert h.scheduler.max_concurrent_executing == 1
    assert len({a.id for a in h.ledger.list()}) == len(h.ledger)


def test_stop_drains_in_flight_execution(tmp_path):
    transactor = FakeTransactor(delay=0.1)
    h = Harness(tmp_path, transactor=transactor)
    loop_thread = threading.Thread(target=h.scheduler.run_forever, daemon=True)
    loop_thread.start()

    assert wait_for(lambda: h.scheduler.state is LoopState.EXECUTING)
    assert h.scheduler.stop(timeout=10)
    loop_thread.join(timeout=5)

    assert not loop_thread.is_alive()
    assert len(h.ledger) == 1
    assert h.ledger.list()[0].outcome is AttemptOutcome.SUCCESS
    assert len(transactor.calls) == 6


def test_submit_after_stop_raises(tmp_path):
    h = Harness(tmp_path)
    loop_thread = threading.Thread(target=h.scheduler.run_forever, daemon=True)
    loop_thread.start()
    assert wait_for(lambda: h.scheduler.running)
    assert h.scheduler.stop(timeout=10)

    with pytest.raises(LoopStopped):
        h.scheduler.submit_force(RebalanceTier.SOFT)


def test_status_snapshot(tmp_path):
    h = Harness(tmp_path)
    h.scheduler.run_tick()
    status = h.scheduler.status()

    assert status["loop_state"] == "idle"
    assert status["daily_rebalancings_count"] == 1
    assert status["last_tick"]["result"] == "rebalanced"
    assert set(status["observations"]) == {"USDC", "WETH"}
    assert status["pending_force_requests"] == 0


def test_zero_volatility_reading_does_not_rebalance(tmp_path):
    h = Harness(tmp_path)
    h.oracle.readings["WETH"] = make_reading(0, confidence="100", at=h.clock.now)
    result = h.scheduler.run_tick()

    assert result.result == "idle"
    assert result.tier is RebalanceTier.NONE
    assert h.transactor.calls == []
