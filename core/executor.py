"""
ViVault Automation Core: Rebalance Executor

Drives one admitted rebalance through the delegated transactor.

For each leg of the plan:
    Withdraw (vault -> delegator) -> Swap (token -> stable) -> Deposit (stable -> vault)

Every step is precheck-then-commit with a per-call timeout. The first failed
step halts the sequence. Completed steps are never undone: a partial failure
can leave tokens outside the vault, and the attempt record says exactly where
the sequence stopped.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from core.ability_client import AbilityResponse, Transactor
from core.exceptions import TransactorTimeout
from core.models import (
    AttemptOutcome,
    RebalanceAttempt,
    RebalanceLeg,
    RebalancePlan,
    RebalanceTier,
    StepError,
    StepKind,
    StepResult,
    StepStatus,
)

logger = logging.getLogger(__name__)

SWAP_ABILITY = "uniswap-swap"


def swap_call(leg: RebalanceLeg, recipient: str, ability: str = SWAP_ABILITY) -> Dict[str, Any]:
    """Ability params for swapping a leg's token into the stable token"""
    return {
        "ability": ability,
        "tokenInAddress": leg.token.address,
        "tokenInAmount": format(leg.amount, "f"),
        "tokenOutAddress": leg.target_token,
        "recipient": recipient,
        "slippageTolerance": leg.slippage_bps,
    }


class RebalanceExecutor:
    """
    Sequential step runner.

    Args:
        transactor: Transactor used for every precheck/execute call
        vault: VaultClient (builds withdraw/deposit params)
        delegator: Delegated signer address the abilities act for
        step_timeout_seconds: Deadline for each precheck and each commit
        metrics: Optional MetricsRecorder
        swap_ability: Ability name for the swap step
    """

    def __init__(
        self,
        transactor: Transactor,
        vault,
        delegator: str,
        step_timeout_seconds: float = 60.0,
        metrics=None,
        swap_ability: str = SWAP_ABILITY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.transactor = transactor
        self.vault = vault
        self.delegator = delegator
        self.step_timeout_seconds = float(step_timeout_seconds)
        self.metrics = metrics
        self.swap_ability = swap_ability
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def execute(
        self,
        tier: RebalanceTier,
        plan: RebalancePlan,
        *,
        trigger_asset: Optional[str] = None,
        trigger_volatility: float = 0.0,
        forced: bool = False,
        started_at: Optional[datetime] = None,
    ) -> RebalanceAttempt:
        """
        Run every leg of `plan`.

        Returns:
            Finalized RebalanceAttempt (success or partial_failure)
        """
        started_at = started_at or self._clock()
        attempt_id = uuid.uuid4().hex
        steps: List[StepResult] = []

        logger.info(
            f"Executing {tier.value} rebalance {attempt_id[:8]} "
            f"({len(plan.legs)} leg(s), forced={forced})"
        )

        for leg in plan.legs:
            leg_steps = self._run_leg(leg)
            steps.extend(leg_steps)
            if not leg_steps[-1].ok:
                break

        outcome = (
            AttemptOutcome.SUCCESS
            if all(step.ok for step in steps)
            else AttemptOutcome.PARTIAL_FAILURE
        )

        attempt = RebalanceAttempt(
            id=attempt_id,
            started_at=started_at,
            finished_at=self._clock(),
            tier=tier,
            outcome=outcome,
            trigger_asset=trigger_asset,
            trigger_volatility=trigger_volatility,
            forced=forced,
            steps=tuple(steps),
            transaction_hashes=tuple(step.tx_hash for step in steps if step.ok and step.tx_hash),
        )

        if outcome is AttemptOutcome.SUCCESS:
            logger.info(f"Rebalance {attempt_id[:8]} succeeded ({len(steps)} step(s))")
        else:
            failed = attempt.failed_step
            logger.error(
                f"Rebalance {attempt_id[:8]} halted at {failed.step_kind.value} "
                f"{failed.token}: {failed.error.value} ({failed.detail})"
            )
        return attempt

    def _run_leg(self, leg: RebalanceLeg) -> List[StepResult]:
        symbol = leg.token.symbol
        steps = []

        withdraw, _ = self._run_step(
            StepKind.WITHDRAW,
            self.vault.withdraw_call(leg.token, leg.amount, self.delegator),
            token=symbol,
            amount=format(leg.amount, "f"),
        )
        steps.append(withdraw)
        if not withdraw.ok:
            return steps

        swap, swap_response = self._run_step(
            StepKind.SWAP,
            swap_call(leg, self.delegator, self.swap_ability),
            token=symbol,
            amount=format(leg.amount, "f"),
        )
        steps.append(swap)
        if not swap.ok:
            return steps

        amount_out = _amount_out(swap_response)
        if amount_out is None:
            steps.append(self._failed(
                StepKind.DEPOSIT,
                StepError.PRECHECK_REJECTED,
                token=leg.target_token,
                amount="0",
                detail="swap did not report amountOut",
            ))
            return steps

        deposit, _ = self._run_step(
            StepKind.DEPOSIT,
            self.vault.deposit_call(leg.target_token, amount_out),
            token=leg.target_token,
            amount=str(amount_out),
        )
        steps.append(deposit)
        return steps

    def _run_step(
        self,
        kind: StepKind,
        params: Dict[str, Any],
        token: str,
        amount: str,
    ) -> Tuple[StepResult, Optional[AbilityResponse]]:
        timeout = self.step_timeout_seconds

        try:
            precheck = self.transactor.precheck(params, self.delegator, timeout)
        except TransactorTimeout as e:
            return self._failed(kind, StepError.TIMEOUT, token, amount, f"precheck: {e}"), None
        except Exception as e:
            return self._failed(kind, StepError.PRECHECK_REJECTED, token, amount, str(e)), None

        if not precheck.success:
            return self._failed(
                kind, StepError.PRECHECK_REJECTED, token, amount,
                precheck.error or "precheck failed",
            ), precheck

        try:
            commit = self.transactor.execute(params, self.delegator, timeout)
        except TransactorTimeout as e:
            return self._failed(kind, StepError.TIMEOUT, token, amount, f"execute: {e}"), None
        except Exception as e:
            return self._failed(kind, StepError.CHAIN_REVERT, token, amount, str(e)), None

        if not commit.success:
            return self._failed(
                kind, StepError.CHAIN_REVERT, token, amount,
                commit.error or "execution failed",
            ), commit

        logger.info(f"  {kind.value} {amount} {token} ok (tx={commit.tx_hash})")
        result = StepResult(
            step_kind=kind,
            status=StepStatus.OK,
            token=token,
            amount=amount,
            tx_hash=commit.tx_hash,
        )
        return result, commit

    def _failed(
        self,
        kind: StepKind,
        error: StepError,
        token: str,
        amount: str,
        detail: str,
    ) -> StepResult:
        logger.warning(f"  {kind.value} {amount} {token} failed: {error.value} ({detail})")
        if self.metrics is not None:
            self.metrics.record_step_failure(kind.value, error.value)
        return StepResult(
            step_kind=kind,
            status=StepStatus.FAILED,
            token=token,
            amount=amount,
            error=error,
            detail=detail,
        )


def _amount_out(response: Optional[AbilityResponse]) -> Optional[int]:
    """Swap output in the stable token's base units"""
    if response is None:
        return None
    raw = response.result.get("amountOut")
    if raw is None:
        return None
    try:
        return int(Decimal(str(raw)))
    except (ArithmeticError, ValueError):
        return None


__all__ = ["RebalanceExecutor", "swap_call", "SWAP_ABILITY"]
