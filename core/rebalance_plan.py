"""
ViVault Automation Core: Rebalance Plan Policy

Turns a tier and the vault's balances into swap legs.

Each non-stable token gives up a tier-dependent fraction of its balance,
swapped into the stable token and redeposited. The stable token itself is
never rebalanced.
"""

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, localcontext
from typing import Dict, Iterable, List, Optional
import logging

from core.models import RebalanceLeg, RebalancePlan, RebalanceTier, TokenBalance

logger = logging.getLogger(__name__)


DEFAULT_FRACTIONS = {
    RebalanceTier.SOFT: Decimal("0.15"),
    RebalanceTier.MEDIUM: Decimal("0.30"),
    RebalanceTier.AGGRESSIVE: Decimal("0.50"),
}


@dataclass
class PlanPolicy:
    """How much to move per tier and where to move it"""
    stable_symbol: str = "USDC"
    stable_address: str = ""
    fractions: Dict[RebalanceTier, Decimal] = field(default_factory=lambda: dict(DEFAULT_FRACTIONS))
    slippage_bps: int = 50
    min_amount: Decimal = Decimal("0")

    @classmethod
    def from_config(cls, raw: Optional[Dict]) -> "PlanPolicy":
        raw = raw or {}
        fractions = dict(DEFAULT_FRACTIONS)
        for name, value in (raw.get("fractions") or {}).items():
            tier = RebalanceTier.from_string(name)
            if tier is RebalanceTier.NONE:
                continue
            fraction = Decimal(str(value))
            if not (Decimal("0") < fraction <= Decimal("1")):
                raise ValueError(f"plan.fractions.{name} must be in (0, 1], got {value}")
            fractions[tier] = fraction

        return cls(
            stable_symbol=raw.get("stable_symbol", "USDC"),
            stable_address=raw.get("stable_address", ""),
            fractions=fractions,
            slippage_bps=int(raw.get("slippage_bps", 50)),
            min_amount=Decimal(str(raw.get("min_amount", "0"))),
        )

    def is_stable(self, token: TokenBalance) -> bool:
        if token.symbol.upper() == self.stable_symbol.upper():
            return True
        return bool(self.stable_address) and token.address.lower() == self.stable_address.lower()


def build_plan(
    tier: RebalanceTier,
    balances: Iterable[TokenBalance],
    policy: Optional[PlanPolicy] = None,
) -> RebalancePlan:
    """
    Compute legs for `tier`.

    Args:
        tier: Tier to plan for (NONE yields an empty plan)
        balances: Current vault balances
        policy: Fractions and stable target

    Returns:
        RebalancePlan; legs ordered by token symbol
    """
    policy = policy or PlanPolicy()
    if tier is RebalanceTier.NONE:
        return RebalancePlan(tier=tier)

    fraction = policy.fractions[tier]
    target = policy.stable_address or policy.stable_symbol
    legs: List[RebalanceLeg] = []

    for token in sorted(balances, key=lambda t: t.symbol):
        if policy.is_stable(token):
            continue

        amount = _quantize(token.balance * fraction, token.decimals)
        if amount <= 0 or amount < policy.min_amount:
            logger.debug(f"{token.symbol}: amount {amount} below minimum, skipping")
            continue

        legs.append(
            RebalanceLeg(
                token=token,
                amount=amount,
                fraction=fraction,
                target_token=target,
                slippage_bps=policy.slippage_bps,
            )
        )

    logger.info(
        f"Plan for {tier.value}: {len(legs)} leg(s) "
        f"({', '.join(f'{leg.amount} {leg.token.symbol}' for leg in legs) or 'nothing to move'})"
    )
    return RebalancePlan(tier=tier, legs=tuple(legs))


def _quantize(amount: Decimal, decimals: int) -> Decimal:
    """Round down to the token's smallest unit so we never withdraw more than held"""
    exponent = Decimal(1).scaleb(-max(int(decimals), 0))
    with localcontext() as ctx:
        ctx.prec = 78  # uint256 range
        return amount.quantize(exponent, rounding=ROUND_DOWN)


__all__ = ["PlanPolicy", "build_plan", "DEFAULT_FRACTIONS"]
