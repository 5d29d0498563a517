"""Scheduler wired to the fakes, shared by loop and API tests."""

import time
from datetime import timedelta

from core.admission import AdmissionController
from core.config_store import AutomationConfig, ConfigStore
from core.control_loop import ControlLoopScheduler
from core.executor import RebalanceExecutor
from core.history import HistoryLedger
from core.rebalance_plan import PlanPolicy
from core.volatility_monitor import VolatilityMonitor
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from tests.helpers.vault_stubs import (
    T0,
    USDC,
    FakeOracle,
    FakeTransactor,
    FakeVault,
    FixedClock,
    balance,
    make_reading,
)

DELEGATOR = "0x00000000000000000000000000000000000000aa"


class Harness:
    """Scheduler wired to fakes"""

    def __init__(self, tmp_path, *, volatility_bps=1200, enabled=True, transactor=None,
                 vault=None, cooldown_minutes=60, max_daily=3, notification_enabled=True,
                 metrics=None):
        self.clock = FixedClock(T0 + timedelta(seconds=5))
        self.oracle = FakeOracle({"WETH": make_reading(volatility_bps), "USDC": make_reading(10, price="1", confidence="0.0001")})
        self.vault = vault or FakeVault([balance("WETH", "2"), balance("USDC", "1000", decimals=6)])
        self.transactor = transactor or FakeTransactor()
        self.config_store = ConfigStore(AutomationConfig(
            enabled=enabled,
            cooldown_minutes=cooldown_minutes,
            max_daily_rebalancings=max_daily,
            notification_enabled=notification_enabled,
        ))
        self.admission = AdmissionController()
        self.ledger = HistoryLedger(str(tmp_path / "history.jsonl"))
        self.alerts = AlertService(AlertConfig(
            enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO, dry_run=True, dedupe_seconds=0,
        ))
        self.scheduler = ControlLoopScheduler(
            monitor=VolatilityMonitor(self.oracle, max_staleness_seconds=120, clock=self.clock),
            admission=self.admission,
            executor=RebalanceExecutor(self.transactor, self.vault, DELEGATOR, step_timeout_seconds=5,
                                       clock=self.clock),
            ledger=self.ledger,
            config_store=self.config_store,
            vault=self.vault,
            assets=["WETH", "USDC"],
            interval_seconds=1,
            plan_policy=PlanPolicy(stable_address=USDC),
            alerts=self.alerts,
            metrics=metrics,
            clock=self.clock,
        )




def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False
