"""
ViVault Automation Runner: Main Loop

Wires the rebalancing control loop together and runs it.

Flow per tick:
1. Read volatility for each tracked asset (VolatilityIndex oracle)
2. Map the strongest reading onto a tier (soft / medium / aggressive)
3. Build a plan from vault balances
4. Admission: enabled, cooldown, rolling daily cap
5. Execute withdraw -> swap -> deposit through the delegated transactor
6. Append the attempt to the history ledger, notify

The HTTP API runs on its own threads; forced requests are handed to the
loop thread through ControlLoopScheduler.submit_force.
"""

import hashlib
import os
import signal
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
import logging

import yaml

from core.ability_client import AbilityClient
from core.admission import AdmissionController
from core.config_store import ConfigStore, parse_config
from core.control_loop import ControlLoopScheduler
from core.executor import SWAP_ABILITY, RebalanceExecutor
from core.history import HistoryLedger
from core.oracle_client import VolatilityOracle
from core.rebalance_plan import PlanPolicy
from core.vault_client import VaultClient
from core.volatility_monitor import DEFAULT_MAX_CONFIDENCE_BPS, VolatilityMonitor
from infra.alerting import AlertService
from infra.api_server import ApiServer, VaultApi
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


class AutomationService:
    """
    Process-level orchestrator.

    Responsibilities:
    - Load and validate config
    - Construct every component explicitly (no module-level singletons
      beyond the metrics registry)
    - Run the control loop and the API server
    - Handle shutdown signals with a graceful drain
    """

    def __init__(self, config_dir: str = "config", interval_seconds: Optional[float] = None):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.config_hash = self._compute_config_hash()

        self._setup_logging(self.app_config.get("logging") or {})
        logger.info(f"Configuration hash: {self.config_hash} (app.yaml)")

        state_cfg = self.app_config.get("state") or {}
        from infra.instance_lock import check_single_instance
        self.instance_lock = check_single_instance(
            self.app_config.get("app", {}).get("name", "vivault-automation"),
            lock_dir=state_cfg.get("lock_dir", "data"),
        )
        if not self.instance_lock:
            logger.error("=" * 80)
            logger.error("ANOTHER INSTANCE IS ALREADY RUNNING - refusing to start")
            logger.error("=" * 80)
            raise RuntimeError("Another vivault-automation instance holds the lock")

        loop_cfg = self.app_config.get("loop") or {}
        self.interval_seconds = float(interval_seconds or loop_cfg.get("interval_seconds", 60))

        monitoring_cfg = self.app_config.get("monitoring") or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", True)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )

        alerts_cfg = self.app_config.get("alerts") or {}
        self.alerts = AlertService.from_config(bool(alerts_cfg.get("enabled", False)), alerts_cfg)

        self.state_store = StateStore(state_cfg.get("state_file", "data/.state.json"))
        self.config_store = ConfigStore(
            initial=parse_config(self.app_config.get("automation") or {}),
            state_store=self.state_store,
        )
        self.admission = AdmissionController(state_store=self.state_store)
        self.ledger = HistoryLedger(state_cfg.get("history_file", "data/rebalance_history.jsonl"))

        oracle_cfg = self.app_config.get("oracle") or {}
        self.oracle = VolatilityOracle.from_config(oracle_cfg)
        staleness = oracle_cfg.get("max_staleness_seconds") or 2 * self.interval_seconds
        self.monitor = VolatilityMonitor(
            self.oracle,
            max_staleness_seconds=float(staleness),
            max_confidence_bps=int(oracle_cfg.get("max_confidence_bps", DEFAULT_MAX_CONFIDENCE_BPS)),
            metrics=self.metrics,
        )

        self.vault = VaultClient.from_config(self.app_config.get("vault") or {})
        transactor_cfg = self.app_config.get("transactor") or {}
        self.transactor = AbilityClient.from_config(transactor_cfg)
        self.delegator = os.path.expandvars(self.app_config["app"]["delegator_address"])

        self.executor = RebalanceExecutor(
            self.transactor,
            self.vault,
            self.delegator,
            step_timeout_seconds=float(loop_cfg.get("step_timeout_seconds", 60)),
            metrics=self.metrics,
            swap_ability=transactor_cfg.get("swap_ability", SWAP_ABILITY),
        )

        self.scheduler = ControlLoopScheduler(
            monitor=self.monitor,
            admission=self.admission,
            executor=self.executor,
            ledger=self.ledger,
            config_store=self.config_store,
            vault=self.vault,
            assets=oracle_cfg.get("assets") or ["WETH"],
            interval_seconds=self.interval_seconds,
            plan_policy=PlanPolicy.from_config(self.app_config.get("plan")),
            alerts=self.alerts,
            metrics=self.metrics,
        )

        api_cfg = self.app_config.get("api") or {}
        self.api_server: Optional[ApiServer] = None
        if api_cfg.get("enabled", True):
            api = VaultApi(
                self.scheduler,
                self.config_store,
                self.admission,
                self.ledger,
                health_provider=self._health_status_snapshot,
                force_timeout_seconds=float(loop_cfg.get("force_timeout_seconds", 300)),
            )
            self.api_server = ApiServer(
                int(api_cfg.get("port", 3000)), api, host=api_cfg.get("host", "0.0.0.0")
            )

        logger.info(
            f"Initialized AutomationService (vault={self.vault.vault_address}, "
            f"delegator={self.delegator}, interval={self.interval_seconds}s)"
        )

    def _setup_logging(self, log_cfg: Dict[str, Any]) -> None:
        log_file = log_cfg.get("file", "logs/vivault-automation.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _compute_config_hash(self) -> str:
        """
        SHA256 of app.yaml, first 16 hex chars.

        Logged at startup to spot configuration drift between deployments.
        """
        hasher = hashlib.sha256()
        with open(self.config_dir / "app.yaml", "rb") as f:
            hasher.update(f.read())
        return hasher.hexdigest()[:16]

    def _health_status_snapshot(self) -> Dict[str, Any]:
        last_tick = self.metrics.last_tick()
        issues = []
        if not self.scheduler.running:
            issues.append("loop_not_running")
        if last_tick and last_tick.result == "error":
            issues.append("last_tick_error")

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config_hash": self.config_hash,
            "loop_state": self.scheduler.state.value,
            "running": self.scheduler.running,
            "last_tick": {
                "result": last_tick.result,
                "tier": last_tick.tier,
                "duration_seconds": last_tick.duration_seconds,
            } if last_tick else None,
            "counters": self.metrics.snapshot(),
            "metrics_enabled": self.metrics.is_enabled(),
            "alerts_enabled": self.alerts.is_enabled(),
            "issues": issues,
            "ok": not issues,
        }

    def _handle_stop(self, *_):
        """Stop after the current tick; an in-flight execution finishes first."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - draining current tick")
        logger.warning("=" * 80)
        # stop() blocks until drained; the signal handler runs on the loop
        # thread, so only request it here
        threading.Thread(target=self.scheduler.stop, name="ShutdownRequest", daemon=True).start()

    def run_once(self) -> None:
        result = self.scheduler.run_tick()
        logger.info(f"Tick finished: {result.to_dict()}")

    def run_forever(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.metrics.start()
        if self.api_server is not None:
            self.api_server.start()

        try:
            self.scheduler.run_forever()
        finally:
            if self.api_server is not None:
                self.api_server.stop()
            self.instance_lock.release()
            logger.info("AutomationService stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="ViVault automated rebalancing service")
    parser.add_argument("--once", action="store_true", help="Run one tick and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks (overrides app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    service = AutomationService(config_dir=args.config_dir, interval_seconds=args.interval)

    if args.once:
        service.run_once()
        service.instance_lock.release()
    else:
        service.run_forever()


if __name__ == "__main__":
    main()
