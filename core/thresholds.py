"""
ViVault Automation Core: Threshold Evaluation

Maps a volatility observation onto a rebalance tier.

Cut points are volatility percentages (volatility_bps / 100). Lower bounds
are inclusive: an observation exactly on a threshold meets it.
"""

from typing import Dict, Iterable, Optional, Tuple

from core.models import RebalanceTier, VolatilityObservation


def evaluate(observation: VolatilityObservation, config) -> RebalanceTier:
    """
    Return the tier for one observation.

    Args:
        observation: Oracle reading
        config: AutomationConfig (uses config.thresholds)

    Returns:
        Highest tier whose cut point is met, else RebalanceTier.NONE
    """
    return tier_for_pct(observation.volatility_pct, config.thresholds)


def tier_for_pct(volatility_pct: float, thresholds) -> RebalanceTier:
    if volatility_pct >= thresholds.aggressive:
        return RebalanceTier.AGGRESSIVE
    if volatility_pct >= thresholds.medium:
        return RebalanceTier.MEDIUM
    if volatility_pct >= thresholds.soft:
        return RebalanceTier.SOFT
    return RebalanceTier.NONE


def evaluate_all(
    observations: Dict[str, VolatilityObservation],
    config,
) -> Tuple[RebalanceTier, Optional[VolatilityObservation]]:
    """
    Pick the strongest tier across all observed assets.

    Ties on tier go to the higher volatility reading, then to asset name so
    the result does not depend on dict ordering.
    """
    best_tier = RebalanceTier.NONE
    best_obs: Optional[VolatilityObservation] = None

    for obs in _ordered(observations.values()):
        tier = evaluate(obs, config)
        if tier is RebalanceTier.NONE:
            continue
        if best_obs is None or tier > best_tier or (
            tier == best_tier and obs.volatility_bps > best_obs.volatility_bps
        ):
            best_tier = tier
            best_obs = obs

    return best_tier, best_obs


def _ordered(observations: Iterable[VolatilityObservation]):
    return sorted(observations, key=lambda o: o.asset)


class ThresholdEvaluator:
    """Stateless wrapper so the control loop can take an evaluator by injection"""

    def evaluate(self, observation: VolatilityObservation, config) -> RebalanceTier:
        return evaluate(observation, config)

    def evaluate_all(self, observations: Dict[str, VolatilityObservation], config):
        return evaluate_all(observations, config)


__all__ = ["ThresholdEvaluator", "evaluate", "evaluate_all", "tier_for_pct"]
