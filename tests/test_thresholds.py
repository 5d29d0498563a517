"""
Tests for threshold evaluation.

Coverage:
- Inclusive lower bounds at every cut point
- Strongest tier wins across assets
- Ties broken by higher volatility
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from core.config_store import AutomationConfig
from core.models import RebalanceTier, VolatilityObservation
from core.thresholds import ThresholdEvaluator, evaluate, evaluate_all


def obs(asset: str, volatility_bps: int) -> VolatilityObservation:
    return VolatilityObservation(
        asset=asset,
        volatility_bps=volatility_bps,
        price=Decimal("2000"),
        confidence=Decimal("1"),
        observed_at=datetime(2025, 6, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def config():
    return AutomationConfig(thresholds={"soft": 5, "medium": 10, "aggressive": 15})


@pytest.mark.parametrize(
    "volatility_bps,expected",
    [
        (0, RebalanceTier.NONE),
        (499, RebalanceTier.NONE),
        (500, RebalanceTier.SOFT),
        (999, RebalanceTier.SOFT),
        (1000, RebalanceTier.MEDIUM),
        (1499, RebalanceTier.MEDIUM),
        (1500, RebalanceTier.AGGRESSIVE),
        (9000, RebalanceTier.AGGRESSIVE),
    ],
)
def test_tier_boundaries_are_inclusive(config, volatility_bps, expected):
    assert evaluate(obs("WETH", volatility_bps), config) is expected


def test_tier_ordering():
    assert RebalanceTier.NONE < RebalanceTier.SOFT < RebalanceTier.MEDIUM < RebalanceTier.AGGRESSIVE
    assert max([RebalanceTier.SOFT, RebalanceTier.AGGRESSIVE, RebalanceTier.NONE]) is RebalanceTier.AGGRESSIVE


def test_custom_thresholds_are_used():
    config = AutomationConfig(thresholds={"soft": 1, "medium": 2, "aggressive": 3})
    assert evaluate(obs("WETH", 250), config) is RebalanceTier.MEDIUM


def test_evaluate_all_picks_strongest_asset(config):
    tier, trigger = evaluate_all(
        {"USDC": obs("USDC", 20), "WETH": obs("WETH", 1100), "WBTC": obs("WBTC", 600)},
        config,
    )
    assert tier is RebalanceTier.MEDIUM
    assert trigger.asset == "WETH"


def test_evaluate_all_tie_goes_to_higher_volatility(config):
    tier, trigger = evaluate_all({"WETH": obs("WETH", 600), "WBTC": obs("WBTC", 700)}, config)
    assert tier is RebalanceTier.SOFT
    assert trigger.asset == "WBTC"


def test_evaluate_all_calm_market(config):
    tier, trigger = evaluate_all({"WETH": obs("WETH", 100)}, config)
    assert tier is RebalanceTier.NONE
    assert trigger is None


def test_evaluator_wrapper(config):
    evaluator = ThresholdEvaluator()
    assert evaluator.evaluate(obs("WETH", 1500), config) is RebalanceTier.AGGRESSIVE
    assert evaluator.evaluate_all({}, config) == (RebalanceTier.NONE, None)
