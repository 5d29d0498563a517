"""
ViVault Automation Infrastructure: State Store

Persistent state management with atomic writes.
Holds admission counters and the last accepted automation config so both
survive a restart.
"""

import copy
import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pathlib import Path
import logging

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "admission": {
        "last_rebalance_at": None,
        "daily_count": 0,
        "daily_window_start": None,
    },
    "automation_config": None,  # last config accepted through ConfigStore.update
    "events": [],  # Recent operator events (counter resets, config updates)
}

MAX_EVENTS = 100


class StateStore:
    """
    Persistent state storage using JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Section-level updates under a lock
    - Bounded operator event log
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: data/.state.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            state_file = os.getenv("STATE_FILE", "data/.state.json")
            self.state_file = Path(state_file)

        # Ensure directory exists
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._state: Optional[Dict[str, Any]] = None
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Returns:
            State dict with defaults merged
        """
        with self._lock:
            if not self.state_file.exists():
                logger.debug("No state file found, using defaults")
                return copy.deepcopy(DEFAULT_STATE)

            try:
                with open(self.state_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load state: {e}")
                return copy.deepcopy(DEFAULT_STATE)

            if not isinstance(data, dict):
                logger.warning("Invalid state file format, using defaults")
                return copy.deepcopy(DEFAULT_STATE)

            state = {**copy.deepcopy(DEFAULT_STATE), **data}
            self._state = state
            logger.debug("Loaded state from file")
            return copy.deepcopy(state)

    def save(self, state: Dict[str, Any]) -> None:
        """
        Save state to file atomically.

        Args:
            state: State dict to save
        """
        with self._lock:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".state_",
                suffix=".json.tmp"
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())

                # Atomic rename
                os.replace(temp_path, self.state_file)
            except OSError:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

            self._state = copy.deepcopy(state)
            logger.debug("Saved state to file")

    def get(self, key: str, default: Any = None) -> Any:
        state = self.load()
        value = state.get(key)
        return default if value is None else value

    def set_section(self, key: str, value: Any) -> Dict[str, Any]:
        """Replace one top-level section and persist."""
        with self._lock:
            state = self.load()
            state[key] = value
            self.save(state)
            return state

    def record_event(self, event: str, **kwargs) -> Dict[str, Any]:
        """
        Append an operator event to the bounded event log.

        Args:
            event: Event type ("config_update", "daily_counter_reset", ...)
            **kwargs: Event-specific data
        """
        with self._lock:
            state = self.load()
            now = datetime.now(timezone.utc)

            state.setdefault("events", []).append({
                "at": now.isoformat(),
                "event": event,
                **kwargs
            })

            if len(state["events"]) > MAX_EVENTS:
                state["events"] = state["events"][-MAX_EVENTS:]

            self.save(state)
            return state

    def reset(self) -> Dict[str, Any]:
        """Reset to defaults (keeps nothing)."""
        with self._lock:
            state = copy.deepcopy(DEFAULT_STATE)
            self.save(state)
            logger.warning("State store reset to defaults")
            return state


__all__ = ["StateStore", "DEFAULT_STATE"]
