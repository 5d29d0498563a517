"""
ViVault Automation Core: Volatility Monitor

Turns raw oracle readings into validated VolatilityObservations.

Rejects:
- Missing readings and RPC failures (OracleUnavailable)
- Non-positive prices (OracleUnavailable)
- Readings whose confidence interval is too wide relative to price (OracleUnavailable)
- Readings older than the freshness bound (StaleData)
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional
import logging

from core.exceptions import OracleUnavailable, StaleData
from core.models import VolatilityObservation

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONFIDENCE_BPS = 500


def confidence_bps(price: Decimal, confidence: Decimal) -> int:
    """Confidence interval as basis points of price; price must be positive"""
    return int(confidence / price * Decimal(10_000))


class VolatilityMonitor:
    """
    Pure read over an oracle source.

    Args:
        oracle: Object with read_asset(asset) -> Optional[OracleReading]
        max_staleness_seconds: Readings older than this raise StaleData
        max_confidence_bps: Wider confidence intervals raise OracleUnavailable
        clock: Returns the current tz-aware time
        metrics: Optional MetricsRecorder for oracle error counts
    """

    def __init__(
        self,
        oracle,
        max_staleness_seconds: float,
        max_confidence_bps: int = DEFAULT_MAX_CONFIDENCE_BPS,
        clock: Optional[Callable[[], datetime]] = None,
        metrics=None,
    ):
        self.oracle = oracle
        self.max_staleness_seconds = float(max_staleness_seconds)
        self.max_confidence_bps = int(max_confidence_bps)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.metrics = metrics

    def observe(self, asset: str) -> VolatilityObservation:
        try:
            reading = self.oracle.read_asset(asset)
        except OracleUnavailable:
            raise
        except Exception as e:
            raise OracleUnavailable(asset, original=e) from e

        if reading is None:
            raise OracleUnavailable(f"{asset}: no reading")

        if reading.price <= 0:
            raise OracleUnavailable(f"{asset}: non-positive price {reading.price}")

        conf_bps = confidence_bps(reading.price, reading.confidence)
        if conf_bps > self.max_confidence_bps:
            raise OracleUnavailable(
                f"{asset}: confidence {conf_bps}bps exceeds {self.max_confidence_bps}bps"
            )

        age = (self._clock() - reading.timestamp).total_seconds()
        if age > self.max_staleness_seconds:
            raise StaleData(asset, age, self.max_staleness_seconds)

        return VolatilityObservation(
            asset=asset,
            volatility_bps=reading.volatility_bps,
            price=reading.price,
            confidence=reading.confidence,
            observed_at=reading.timestamp,
        )

    def observe_all(self, assets: Iterable[str]) -> Dict[str, VolatilityObservation]:
        """Observe each asset; failures are logged and skipped"""
        observations = {}
        for asset in assets:
            try:
                observations[asset] = self.observe(asset)
            except StaleData as e:
                logger.warning(f"Skipping {asset}: {e}")
                self._count_error("stale")
            except OracleUnavailable as e:
                logger.warning(f"Skipping {asset}: oracle unavailable ({e})")
                self._count_error("unavailable")
        return observations

    def _count_error(self, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.record_oracle_error(kind)


__all__ = ["VolatilityMonitor", "confidence_bps", "DEFAULT_MAX_CONFIDENCE_BPS"]
