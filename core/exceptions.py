"""Shared exception types for the rebalancing control loop."""

from typing import List, Optional


class OracleUnavailable(RuntimeError):
    """Raised when the volatility oracle cannot produce a usable observation."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class StaleData(RuntimeError):
    """Raised when an oracle observation is older than the freshness bound."""

    def __init__(self, asset: str, age_seconds: float, max_age_seconds: float):
        super().__init__(
            f"{asset}: observation is {age_seconds:.0f}s old (max {max_age_seconds:.0f}s)"
        )
        self.asset = asset
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds


class ConfigInvalid(ValueError):
    """Raised when an automation config update violates validation rules."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors) if errors else "invalid configuration")
        self.errors = list(errors)


class VaultUnavailable(RuntimeError):
    """Raised when vault balances cannot be read."""


class TransactorTimeout(TimeoutError):
    """Raised by a transactor call that exceeded its deadline."""


class LoopStopped(RuntimeError):
    """Raised for force requests submitted or pending after shutdown."""
