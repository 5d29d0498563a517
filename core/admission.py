"""
ViVault Automation Core: Rebalance Admission

Pacing for automated rebalancing, independent of the tier decision.

Enforces:
- Enabled flag (automation switched off from the dashboard)
- Cooldown between rebalancings (cooldown_minutes)
- Rolling 24h cap on rebalancings (max_daily_rebalancings)

The rolling window starts at the first admission after the previous window
elapsed, not at midnight, so the reset time cannot be gamed.

Admission updates the counters before execution starts. Forced requests skip
cooldown and cap but still count toward both.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging

from core.models import AdmissionDecision, AdmissionState, RejectionReason

logger = logging.getLogger(__name__)

DAILY_WINDOW = timedelta(hours=24)


class AdmissionController:
    """
    Sole owner of AdmissionState.

    All reads return copies; all writes happen under one lock and are
    persisted to the StateStore (when given) before the lock is released.
    """

    STATE_KEY = "admission"

    def __init__(self, state_store=None, window: timedelta = DAILY_WINDOW):
        """
        Initialize admission controller.

        Args:
            state_store: StateStore instance for persisting counters
            window: Length of the rolling cap window
        """
        self.state_store = state_store
        self.window = window
        self._lock = threading.Lock()

        if state_store is not None:
            self._state = AdmissionState.from_dict(state_store.get(self.STATE_KEY))
        else:
            self._state = AdmissionState()

        logger.info(
            f"AdmissionController initialized: daily_count={self._state.daily_count}, "
            f"last_rebalance_at={self._state.last_rebalance_at}, window={self.window}"
        )

    def snapshot(self) -> AdmissionState:
        with self._lock:
            return self._state.copy()

    def try_admit(self, now: datetime, config, forced: bool = False) -> AdmissionDecision:
        """
        Decide whether a rebalance may start at `now`.

        Args:
            now: Current time (tz-aware; naive is treated as UTC)
            config: AutomationConfig snapshot
            forced: Operator override, skips cooldown and daily cap

        Returns:
            AdmissionDecision; when admitted the counters are already updated
        """
        now = _aware(now)

        with self._lock:
            state = self._effective_state(now)

            if not config.enabled:
                return self._reject(RejectionReason.DISABLED, "Automation disabled", forced, state)

            if not forced:
                cooldown = timedelta(minutes=config.cooldown_minutes)
                if state.last_rebalance_at and now - state.last_rebalance_at < cooldown:
                    remaining = cooldown - (now - state.last_rebalance_at)
                    return self._reject(
                        RejectionReason.COOLDOWN_ACTIVE,
                        f"Cooldown active ({remaining.total_seconds() / 60:.1f}min left)",
                        forced,
                        state,
                    )

                if state.daily_count >= config.max_daily_rebalancings:
                    return self._reject(
                        RejectionReason.DAILY_CAP_REACHED,
                        f"Daily rebalance limit reached ({state.daily_count}/{config.max_daily_rebalancings})",
                        forced,
                        state,
                    )

            if state.daily_window_start is None:
                state.daily_window_start = now
            state.last_rebalance_at = now
            state.daily_count += 1

            self._commit(state)

            logger.info(
                f"Rebalance admitted (forced={forced}): "
                f"daily_count={state.daily_count}/{config.max_daily_rebalancings}"
            )
            return AdmissionDecision(admitted=True, forced=forced, state=state.copy())

    def reset_daily_counter(self, now: Optional[datetime] = None) -> AdmissionState:
        """Operator action: zero the daily count and restart the window at `now`."""
        now = _aware(now or datetime.now(timezone.utc))
        with self._lock:
            state = self._state.copy()
            previous = state.daily_count
            state.daily_count = 0
            state.daily_window_start = now
            self._commit(state)

        if self.state_store is not None:
            self.state_store.record_event("daily_counter_reset", previous_count=previous)
        logger.warning(f"Daily rebalance counter reset (was {previous})")
        return state.copy()

    def status(self, now: datetime, config) -> Dict[str, Any]:
        """
        Dashboard view of the admission state.

        Returns:
            Dict with: is_active, daily_rebalancings_count, last_rebalance_at,
            next_allowed_rebalancing, seconds_until_next_allowed,
            daily_window_resets_at
        """
        now = _aware(now)
        with self._lock:
            state = self._effective_state(now)

        next_allowed = now
        if state.last_rebalance_at:
            cooldown_end = state.last_rebalance_at + timedelta(minutes=config.cooldown_minutes)
            next_allowed = max(next_allowed, cooldown_end)

        window_resets_at = None
        if state.daily_window_start:
            window_resets_at = state.daily_window_start + self.window
            if state.daily_count >= config.max_daily_rebalancings:
                next_allowed = max(next_allowed, window_resets_at)

        return {
            "is_active": bool(config.enabled),
            "daily_rebalancings_count": state.daily_count,
            "max_daily_rebalancings": config.max_daily_rebalancings,
            "last_rebalance_at": state.last_rebalance_at.isoformat() if state.last_rebalance_at else None,
            "next_allowed_rebalancing": next_allowed.isoformat(),
            "seconds_until_next_allowed": max(0.0, (next_allowed - now).total_seconds()),
            "daily_window_start": state.daily_window_start.isoformat() if state.daily_window_start else None,
            "daily_window_resets_at": window_resets_at.isoformat() if window_resets_at else None,
        }

    def _effective_state(self, now: datetime) -> AdmissionState:
        """Copy of the state with an elapsed rolling window rolled over"""
        state = self._state.copy()
        if state.daily_window_start and now - state.daily_window_start >= self.window:
            logger.debug(
                f"Rolling window elapsed (started {state.daily_window_start.isoformat()}), "
                f"resetting daily count {state.daily_count} -> 0"
            )
            state.daily_count = 0
            state.daily_window_start = None
        return state

    def _reject(
        self,
        reason: RejectionReason,
        message: str,
        forced: bool,
        state: AdmissionState,
    ) -> AdmissionDecision:
        logger.info(f"Rebalance rejected: {message}")
        return AdmissionDecision(
            admitted=False,
            reason=reason,
            forced=forced,
            message=message,
            state=state.copy(),
        )

    def _commit(self, state: AdmissionState) -> None:
        """Persist then publish; caller holds the lock"""
        if self.state_store is not None:
            self.state_store.set_section(self.STATE_KEY, state.to_dict())
        self._state = state


def _aware(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


__all__ = ["AdmissionController", "DAILY_WINDOW"]
