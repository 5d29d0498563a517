"""
ViVault Automation Core: Control Loop Scheduler

One tick:
    Idle -> Observing -> Evaluating -> Admitting -> Executing -> Recording -> Idle

A rejected tick goes Admitting -> Idle without touching the ledger. Forced
requests from the HTTP side are queued and run on the loop thread between
ticks; a lock around admit+execute+record keeps at most one execution in
flight even when run_tick is called from elsewhere (tests, --once).
"""

import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional
import logging
import uuid

from core.exceptions import LoopStopped, VaultUnavailable
from core.models import (
    AttemptOutcome,
    RebalanceAttempt,
    RebalancePlan,
    RebalanceTier,
    RejectionReason,
    VolatilityObservation,
)
from core.rebalance_plan import PlanPolicy, build_plan
from core.thresholds import ThresholdEvaluator
from infra.alerting import AlertSeverity
from infra.metrics import TickStats

logger = logging.getLogger(__name__)


class LoopState(Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    EVALUATING = "evaluating"
    ADMITTING = "admitting"
    EXECUTING = "executing"
    RECORDING = "recording"


@dataclass
class TickResult:
    """What one tick did"""
    result: str  # "idle", "rebalanced", "rejected", "skipped", "error"
    tier: RebalanceTier = RebalanceTier.NONE
    reason: Optional[str] = None
    attempt: Optional[RebalanceAttempt] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "tier": self.tier.value,
            "reason": self.reason,
            "attempt_id": self.attempt.id if self.attempt else None,
            "at": self.at.isoformat(),
        }


@dataclass
class _ForceRequest:
    tier: RebalanceTier
    future: Future
    submitted_at: datetime


_STOP = object()


class ControlLoopScheduler:
    """
    Ties monitor, evaluator, admission, executor and ledger together.

    Args:
        monitor: VolatilityMonitor
        admission: AdmissionController
        executor: RebalanceExecutor
        ledger: HistoryLedger
        config_store: ConfigStore
        vault: VaultClient (balances for planning)
        assets: Asset symbols to observe each tick
        interval_seconds: Polling interval
        plan_policy: PlanPolicy for leg sizing
        evaluator: ThresholdEvaluator
        alerts: Optional AlertService
        metrics: Optional MetricsRecorder
        clock: Returns the current tz-aware time
    """

    def __init__(
        self,
        monitor,
        admission,
        executor,
        ledger,
        config_store,
        vault,
        assets: Iterable[str],
        interval_seconds: float = 60.0,
        plan_policy: Optional[PlanPolicy] = None,
        evaluator: Optional[ThresholdEvaluator] = None,
        alerts=None,
        metrics=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.monitor = monitor
        self.admission = admission
        self.executor = executor
        self.ledger = ledger
        self.config_store = config_store
        self.vault = vault
        self.assets = list(assets)
        self.interval_seconds = max(float(interval_seconds), 1.0)
        self.plan_policy = plan_policy or PlanPolicy()
        self.evaluator = evaluator or ThresholdEvaluator()
        self.alerts = alerts
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._execute_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = LoopState.IDLE
        self._executing = 0
        self._max_concurrent_executing = 0

        self._force_queue: "queue.Queue" = queue.Queue()
        self._stop_event = threading.Event()
        self._stopped = threading.Event()
        self._stopped.set()

        self._last_observations: Dict[str, VolatilityObservation] = {}
        self._last_tick: Optional[TickResult] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LoopState:
        with self._state_lock:
            return self._state

    @property
    def max_concurrent_executing(self) -> int:
        """Highest number of overlapping Executing phases ever seen"""
        with self._state_lock:
            return self._max_concurrent_executing

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    @property
    def stopping(self) -> bool:
        """Set once stop() is called; stays set after the loop exits"""
        return self._stop_event.is_set()

    def _transition(self, new_state: LoopState) -> None:
        with self._state_lock:
            if new_state is LoopState.EXECUTING:
                self._executing += 1
                self._max_concurrent_executing = max(self._max_concurrent_executing, self._executing)
            elif self._state is LoopState.EXECUTING:
                self._executing -= 1
            self._state = new_state
        logger.debug(f"Loop state -> {new_state.value}")

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def run_tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Run one observe/evaluate/admit/execute/record pass.

        Returns:
            TickResult describing what happened
        """
        started = time.monotonic()
        now = now or self._clock()
        config = self.config_store.get()

        with self._execute_lock:
            try:
                result = self._tick(now, config)
            finally:
                self._transition(LoopState.IDLE)

        self._finish_tick(result, started, now, config)
        return result

    def _tick(self, now: datetime, config) -> TickResult:
        self._transition(LoopState.OBSERVING)
        observations = self.monitor.observe_all(self.assets)
        if observations:
            self._last_observations = observations
        else:
            logger.warning("No usable volatility observations this tick")
            return TickResult("skipped", reason="no_observations", at=now)

        self._transition(LoopState.EVALUATING)
        tier, trigger = self.evaluator.evaluate_all(observations, config)
        if self.metrics is not None:
            self.metrics.record_tier(tier.rank)

        summary = ", ".join(
            f"{asset}={obs.volatility_pct:.2f}%" for asset, obs in sorted(observations.items())
        )
        logger.info(f"Volatility: {summary} -> tier={tier.value}")

        if tier is RebalanceTier.NONE:
            return TickResult("idle", at=now)

        if not config.enabled:
            logger.info(f"Tier {tier.value} reached but automation is disabled")
            self._count_rejection(RejectionReason.DISABLED)
            return TickResult("rejected", tier=tier, reason=RejectionReason.DISABLED.value, at=now)

        plan, reason = self._plan(tier)
        if plan is None:
            return TickResult("skipped", tier=tier, reason=reason.value, at=now)

        self._transition(LoopState.ADMITTING)
        decision = self.admission.try_admit(now, config, forced=False)
        if not decision.admitted:
            self._count_rejection(decision.reason)
            return TickResult("rejected", tier=tier, reason=decision.reason.value, at=now)

        attempt = self._execute_and_record(
            tier, plan, trigger_asset=trigger.asset,
            trigger_volatility=trigger.volatility_pct,
            forced=False, started_at=now, config=config,
        )
        return TickResult("rebalanced", tier=tier, attempt=attempt, at=now)

    def _plan(self, tier: RebalanceTier):
        """Build a plan; (None, reason) when there is nothing to do"""
        try:
            balances = self.vault.get_balances()
        except VaultUnavailable as e:
            logger.error(f"Cannot plan {tier.value} rebalance: {e}")
            return None, RejectionReason.VAULT_UNAVAILABLE

        plan = build_plan(tier, balances, self.plan_policy)
        if plan.is_empty:
            logger.info(f"Nothing to rebalance for tier {tier.value}")
            return None, RejectionReason.NOTHING_TO_REBALANCE
        return plan, None

    def _execute_and_record(
        self,
        tier: RebalanceTier,
        plan: RebalancePlan,
        *,
        trigger_asset: Optional[str],
        trigger_volatility: float,
        forced: bool,
        started_at: datetime,
        config,
    ) -> RebalanceAttempt:
        """Caller holds _execute_lock and has already been admitted"""
        self._transition(LoopState.EXECUTING)
        attempt = self.executor.execute(
            tier,
            plan,
            trigger_asset=trigger_asset,
            trigger_volatility=trigger_volatility,
            forced=forced,
            started_at=started_at,
        )

        self._transition(LoopState.RECORDING)
        self._record(attempt, config)
        return attempt

    def _record(self, attempt: RebalanceAttempt, config) -> None:
        self.ledger.append(attempt)
        if self.metrics is not None:
            self.metrics.record_attempt(attempt.outcome.value, attempt.tier.value)
        self._notify(attempt, config)

    def _finish_tick(self, result: TickResult, started: float, now: datetime, config) -> None:
        self._last_tick = result
        if self.metrics is None:
            return
        self.metrics.observe_tick(
            TickStats(
                result=result.result,
                tier=result.tier.value,
                duration_seconds=time.monotonic() - started,
            )
        )
        status = self.admission.status(now, config)
        self.metrics.record_admission(
            status["daily_rebalancings_count"], status["seconds_until_next_allowed"]
        )

    # ------------------------------------------------------------------
    # Forced rebalancing
    # ------------------------------------------------------------------

    def submit_force(self, tier: RebalanceTier) -> Future:
        """
        Queue a forced rebalance for the loop thread.

        Returns:
            Future resolved with the RebalanceAttempt (executed or rejected)

        Raises:
            ValueError: tier is NONE
            LoopStopped: loop is shutting down
        """
        if tier is RebalanceTier.NONE:
            raise ValueError("Forced rebalance needs a tier other than 'none'")
        if self._stop_event.is_set():
            raise LoopStopped("Control loop is shutting down")

        future: Future = Future()
        self._force_queue.put(_ForceRequest(tier=tier, future=future, submitted_at=self._clock()))
        logger.info(f"Queued forced {tier.value} rebalance")
        return future

    def run_forced(self, tier: RebalanceTier, now: Optional[datetime] = None) -> RebalanceAttempt:
        """
        Run a forced rebalance now on the calling thread.

        Cooldown and daily cap are bypassed. A disabled config, an unreadable
        vault or an empty plan produce a recorded rejected attempt.
        """
        now = now or self._clock()
        config = self.config_store.get()
        trigger = self._strongest_observation()
        trigger_asset = trigger.asset if trigger else None
        trigger_volatility = trigger.volatility_pct if trigger else 0.0

        with self._execute_lock:
            try:
                self._transition(LoopState.ADMITTING)
                if not config.enabled:
                    return self._record_rejected(
                        tier, RejectionReason.DISABLED, now, config, trigger_asset, trigger_volatility
                    )

                plan, reason = self._plan(tier)
                if plan is None:
                    return self._record_rejected(
                        tier, reason, now, config, trigger_asset, trigger_volatility
                    )

                decision = self.admission.try_admit(now, config, forced=True)
                if not decision.admitted:
                    return self._record_rejected(
                        tier, decision.reason, now, config, trigger_asset, trigger_volatility
                    )

                return self._execute_and_record(
                    tier, plan, trigger_asset=trigger_asset,
                    trigger_volatility=trigger_volatility,
                    forced=True, started_at=now, config=config,
                )
            finally:
                self._transition(LoopState.IDLE)

    def _record_rejected(
        self,
        tier: RebalanceTier,
        reason: RejectionReason,
        now: datetime,
        config,
        trigger_asset: Optional[str],
        trigger_volatility: float,
    ) -> RebalanceAttempt:
        logger.warning(f"Forced {tier.value} rebalance rejected: {reason.value}")
        self._count_rejection(reason)
        attempt = RebalanceAttempt(
            id=uuid.uuid4().hex,
            started_at=now,
            finished_at=now,
            tier=tier,
            outcome=AttemptOutcome.REJECTED,
            trigger_asset=trigger_asset,
            trigger_volatility=trigger_volatility,
            forced=True,
            rejection_reason=reason,
        )
        self._transition(LoopState.RECORDING)
        self._record(attempt, config)
        return attempt

    def _strongest_observation(self) -> Optional[VolatilityObservation]:
        observations = list(self._last_observations.values())
        if not observations:
            return None
        return max(observations, key=lambda o: (o.volatility_bps, o.asset))

    def _handle_force(self, request: _ForceRequest) -> None:
        if not request.future.set_running_or_notify_cancel():
            return
        try:
            attempt = self.run_forced(request.tier)
        except Exception as e:
            logger.error(f"Forced {request.tier.value} rebalance failed: {e}", exc_info=True)
            request.future.set_exception(e)
        else:
            request.future.set_result(attempt)

    # ------------------------------------------------------------------
    # Run / stop
    # ------------------------------------------------------------------

    def run_forever(self) -> None:
        """Tick every interval; serve force requests while waiting."""
        self._stop_event.clear()
        self._stopped.clear()
        logger.info(f"Starting control loop (interval={self.interval_seconds}s, assets={self.assets})")

        next_tick = time.monotonic()
        try:
            while not self._stop_event.is_set():
                wait = max(0.0, next_tick - time.monotonic())
                try:
                    item = self._force_queue.get(timeout=wait)
                except queue.Empty:
                    item = None

                if item is _STOP:
                    break
                if item is not None:
                    self._handle_force(item)
                    continue

                self._safe_tick()
                next_tick = time.monotonic() + self.interval_seconds
        finally:
            self._drain_pending()
            self._stopped.set()
            logger.info("Control loop stopped cleanly.")

    def _safe_tick(self) -> None:
        try:
            self.run_tick()
        except Exception as e:
            logger.error(f"Control loop tick failed: {e}", exc_info=True)
            self._last_tick = TickResult("error", reason=str(e))
            if self.metrics is not None:
                self.metrics.observe_tick(TickStats(result="error", tier="none", duration_seconds=0.0))

    def _drain_pending(self) -> None:
        while True:
            try:
                item = self._force_queue.get_nowait()
            except queue.Empty:
                return
            if item is _STOP:
                continue
            if item.future.set_running_or_notify_cancel():
                item.future.set_exception(LoopStopped("Control loop stopped before the request ran"))

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Request shutdown; the current tick (including execution) finishes first.

        Returns:
            True if the loop has stopped within `timeout`
        """
        logger.warning("Control loop stop requested")
        self._stop_event.set()
        self._force_queue.put(_STOP)
        return self._stopped.wait(timeout)

    # ------------------------------------------------------------------
    # Status / notifications
    # ------------------------------------------------------------------

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        config = self.config_store.get()
        status = self.admission.status(now, config)
        status.update({
            "loop_state": self.state.value,
            "running": self.running,
            "last_tick": self._last_tick.to_dict() if self._last_tick else None,
            "observations": {
                asset: obs.to_dict() for asset, obs in sorted(self._last_observations.items())
            },
            "pending_force_requests": self._force_queue.qsize(),
        })
        return status

    def _count_rejection(self, reason: Optional[RejectionReason]) -> None:
        if self.metrics is not None and reason is not None:
            self.metrics.record_rejection(reason.value)

    def _notify(self, attempt: RebalanceAttempt, config) -> None:
        if self.alerts is None or not config.notification_enabled:
            return

        if attempt.outcome is AttemptOutcome.SUCCESS:
            self.alerts.notify(
                AlertSeverity.INFO,
                f"Vault rebalanced ({attempt.tier.value})",
                f"{len(attempt.transaction_hashes)} transaction(s) confirmed",
                {"attempt_id": attempt.id, "forced": attempt.forced,
                 "volatility": attempt.trigger_volatility},
            )
        elif attempt.outcome is AttemptOutcome.PARTIAL_FAILURE:
            failed = attempt.failed_step
            self.alerts.notify(
                AlertSeverity.WARNING,
                f"Vault rebalance halted ({attempt.tier.value})",
                f"{failed.step_kind.value} {failed.token} failed: {failed.error.value}",
                {"attempt_id": attempt.id, "detail": failed.detail,
                 "transactions": list(attempt.transaction_hashes)},
            )


__all__ = ["ControlLoopScheduler", "LoopState", "LoopStopped", "TickResult"]
