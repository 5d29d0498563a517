"""
ViVault Automation Core: Automation Config Store

Single owner of the mutable AutomationConfig.

Readers get an immutable snapshot; writers go through update(), which
validates the merged result and swaps it in atomically. Invalid updates are
rejected whole; nothing is clamped.
"""

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    ValidationError,
    field_validator,
    model_validator,
)

from core.exceptions import ConfigInvalid

logger = logging.getLogger(__name__)


class Thresholds(BaseModel):
    """Volatility percentage cut points, strictly ascending"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    soft: float = Field(default=5.0, ge=0, description="Soft rebalance at >= X% volatility")
    medium: float = Field(default=10.0, ge=0, description="Medium rebalance at >= X% volatility")
    aggressive: float = Field(default=15.0, ge=0, description="Aggressive rebalance at >= X% volatility")

    @field_validator("soft", "medium", "aggressive", mode="before")
    @classmethod
    def require_number(cls, v: Any) -> Any:
        """Reject strings and booleans instead of coercing them"""
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError(f"must be a number, got {type(v).__name__}")
        return v

    @model_validator(mode="after")
    def check_ascending(self) -> "Thresholds":
        if not (self.soft < self.medium < self.aggressive):
            raise ValueError(
                f"thresholds must satisfy soft < medium < aggressive "
                f"(got soft={self.soft}, medium={self.medium}, aggressive={self.aggressive})"
            )
        return self


class AutomationConfig(BaseModel):
    """Automation settings edited from the dashboard"""
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    enabled: StrictBool = False
    thresholds: Thresholds = Field(default_factory=Thresholds)
    cooldown_minutes: StrictInt = Field(default=60, ge=0, alias="cooldownMinutes")
    max_daily_rebalancings: StrictInt = Field(default=3, ge=1, alias="maxDailyRebalancings")
    notification_enabled: StrictBool = Field(default=True, alias="notificationEnabled")

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


_FIELD_BY_KEY = {}
for _name, _field in AutomationConfig.model_fields.items():
    _FIELD_BY_KEY[_name] = _name
    if _field.alias:
        _FIELD_BY_KEY[_field.alias] = _name


def _errors_from_validation(exc: ValidationError) -> List[str]:
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"]) or "config"
        errors.append(f"{field}: {error['msg']}")
    return errors


def parse_config(raw: Optional[Mapping[str, Any]]) -> AutomationConfig:
    """Build a config from a full mapping (YAML section or persisted state)."""
    try:
        return AutomationConfig.model_validate(dict(raw or {}))
    except ValidationError as exc:
        raise ConfigInvalid(_errors_from_validation(exc)) from exc


def merge_config(current: AutomationConfig, partial: Mapping[str, Any]) -> AutomationConfig:
    """
    Merge a partial update (snake_case or camelCase keys) into `current`.

    Raises:
        ConfigInvalid: unknown keys, wrong types, or violated invariants
    """
    if not isinstance(partial, Mapping):
        raise ConfigInvalid(["config update must be a JSON object"])

    merged = current.model_dump()
    unknown = []

    for key, value in partial.items():
        name = _FIELD_BY_KEY.get(key)
        if name is None:
            unknown.append(key)
            continue
        if name == "thresholds" and isinstance(value, Mapping):
            merged["thresholds"] = {**merged["thresholds"], **value}
        else:
            merged[name] = value

    if unknown:
        raise ConfigInvalid([f"{key}: unknown field" for key in sorted(unknown)])

    return parse_config(merged)


class ConfigStore:
    """
    Thread-safe holder for AutomationConfig.

    Args:
        initial: Config to start from (usually the YAML `automation` section)
        state_store: Optional StateStore; a previously accepted config found
            there wins over `initial`
    """

    STATE_KEY = "automation_config"

    def __init__(self, initial: Optional[AutomationConfig] = None, state_store=None):
        self._lock = threading.Lock()
        self._state_store = state_store
        self._config = initial or AutomationConfig()

        if state_store is not None:
            persisted = state_store.get(self.STATE_KEY)
            if persisted:
                try:
                    self._config = parse_config(persisted)
                    logger.info("Restored automation config from state store")
                except ConfigInvalid as exc:
                    logger.warning(f"Ignoring invalid persisted automation config: {exc}")

        logger.info(
            f"ConfigStore initialized: enabled={self._config.enabled}, "
            f"thresholds={self._config.thresholds.model_dump()}, "
            f"cooldown={self._config.cooldown_minutes}min, "
            f"max_daily={self._config.max_daily_rebalancings}"
        )

    def get(self) -> AutomationConfig:
        with self._lock:
            return self._config

    def update(self, partial: Mapping[str, Any]) -> AutomationConfig:
        """
        Validate and apply a partial update.

        Returns:
            The new config

        Raises:
            ConfigInvalid: update rejected; stored config unchanged
        """
        with self._lock:
            try:
                new_config = merge_config(self._config, partial)
            except ConfigInvalid as exc:
                logger.warning(f"Rejected automation config update: {exc}")
                raise

            if self._state_store is not None:
                self._state_store.set_section(self.STATE_KEY, new_config.model_dump())
                self._state_store.record_event("config_update", fields=sorted(partial.keys()))

            self._config = new_config

        logger.info(f"Automation config updated: {new_config.model_dump()}")
        return new_config


__all__ = [
    "AutomationConfig",
    "Thresholds",
    "ConfigStore",
    "parse_config",
    "merge_config",
]
