"""Prometheus-backed metrics hooks for the rebalancing loop and executor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "vault_"


@dataclass
class TickStats:
    result: str  # "idle", "rebalanced", "rejected", "skipped", "error"
    tier: str
    duration_seconds: float


class MetricsRecorder:
    """
    Expose control loop stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_tick: Optional[TickStats] = None
        self._rejections: Dict[str, int] = {}
        self._outcomes: Dict[str, int] = {}
        self._step_failures: Dict[str, int] = {}
        self._oracle_errors: Dict[str, int] = {}

        if not self._enabled:
            self._tick_summary = None
            self._tick_counter = None
            self._attempt_counter = None
            self._rejection_counter = None
            self._oracle_error_counter = None
            self._step_failure_counter = None
            self._tier_gauge = None
            self._daily_count_gauge = None
            self._next_allowed_gauge = None
            return

        self._tick_summary = Summary(
            "vault_tick_duration_seconds",
            "Duration of one control loop tick",
        )
        self._tick_counter = Counter(
            "vault_ticks_total",
            "Control loop ticks by result",
            labelnames=("result",),
        )
        self._attempt_counter = Counter(
            "vault_rebalance_attempts_total",
            "Recorded rebalance attempts by outcome",
            labelnames=("outcome", "tier"),
        )
        self._rejection_counter = Counter(
            "vault_admission_rejections_total",
            "Admission rejections by reason",
            labelnames=("reason",),
        )
        self._oracle_error_counter = Counter(
            "vault_oracle_errors_total",
            "Oracle read failures by kind",
            labelnames=("kind",),  # "unavailable", "stale"
        )
        self._step_failure_counter = Counter(
            "vault_step_failures_total",
            "Failed executor steps by step and error",
            labelnames=("step", "error"),
        )
        self._tier_gauge = Gauge(
            "vault_current_tier",
            "Tier from the last evaluation (0=none .. 3=aggressive)",
        )
        self._daily_count_gauge = Gauge(
            "vault_daily_rebalancings",
            "Rebalancings admitted in the current rolling window",
        )
        self._next_allowed_gauge = Gauge(
            "vault_seconds_until_next_allowed",
            "Seconds until admission would allow a non-forced rebalance",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return

        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_tick(self, stats: TickStats) -> None:
        self._last_tick = stats
        if self._enabled:
            self._tick_summary.observe(stats.duration_seconds)
            self._tick_counter.labels(result=stats.result).inc()

    def record_tier(self, rank: int) -> None:
        if self._enabled:
            self._tier_gauge.set(rank)

    def record_attempt(self, outcome: str, tier: str) -> None:
        self._outcomes[outcome] = self._outcomes.get(outcome, 0) + 1
        if self._enabled:
            self._attempt_counter.labels(outcome=outcome, tier=tier).inc()

    def record_rejection(self, reason: str) -> None:
        self._rejections[reason] = self._rejections.get(reason, 0) + 1
        if self._enabled:
            self._rejection_counter.labels(reason=reason).inc()

    def record_oracle_error(self, kind: str) -> None:
        self._oracle_errors[kind] = self._oracle_errors.get(kind, 0) + 1
        if self._enabled:
            self._oracle_error_counter.labels(kind=kind).inc()

    def record_step_failure(self, step: str, error: str) -> None:
        key = f"{step}:{error}"
        self._step_failures[key] = self._step_failures.get(key, 0) + 1
        if self._enabled:
            self._step_failure_counter.labels(step=step, error=error).inc()

    def record_admission(self, daily_count: int, seconds_until_next: float) -> None:
        if self._enabled:
            self._daily_count_gauge.set(daily_count)
            self._next_allowed_gauge.set(max(seconds_until_next, 0.0))

    def last_tick(self) -> Optional[TickStats]:
        return self._last_tick

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        """In-process counters, used by /health and tests"""
        return {
            "outcomes": dict(self._outcomes),
            "rejections": dict(self._rejections),
            "step_failures": dict(self._step_failures),
            "oracle_errors": dict(self._oracle_errors),
        }
