"""
ViVault Automation Core: Domain Models

Tiers, observations, step results and rebalance attempts shared by the
control loop, the ledger and the HTTP surface.

Attempt lifecycle: admitted → steps run in order → outcome finalized →
appended to the ledger. Once appended an attempt never changes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RebalanceTier(Enum):
    """Rebalance intensity, totally ordered by rank"""
    NONE = "none"
    SOFT = "soft"
    MEDIUM = "medium"
    AGGRESSIVE = "aggressive"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def __lt__(self, other: "RebalanceTier") -> bool:
        if not isinstance(other, RebalanceTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "RebalanceTier") -> bool:
        if not isinstance(other, RebalanceTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "RebalanceTier") -> bool:
        if not isinstance(other, RebalanceTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "RebalanceTier") -> bool:
        if not isinstance(other, RebalanceTier):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def from_string(cls, value: str) -> "RebalanceTier":
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown rebalance tier: {value!r}")


_TIER_RANK = {
    RebalanceTier.NONE: 0,
    RebalanceTier.SOFT: 1,
    RebalanceTier.MEDIUM: 2,
    RebalanceTier.AGGRESSIVE: 3,
}


class StepKind(Enum):
    WITHDRAW = "withdraw"
    SWAP = "swap"
    DEPOSIT = "deposit"


class StepStatus(Enum):
    OK = "ok"
    FAILED = "failed"


class StepError(Enum):
    """Why a step failed"""
    TIMEOUT = "timeout"
    PRECHECK_REJECTED = "precheck_rejected"
    CHAIN_REVERT = "chain_revert"


class AttemptOutcome(Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    REJECTED = "rejected"


class RejectionReason(Enum):
    """Why an attempt did not reach execution"""
    DISABLED = "disabled"
    COOLDOWN_ACTIVE = "cooldown_active"
    DAILY_CAP_REACHED = "daily_cap_reached"
    NOTHING_TO_REBALANCE = "nothing_to_rebalance"
    VAULT_UNAVAILABLE = "vault_unavailable"


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class VolatilityObservation:
    """One oracle reading for a tracked asset"""
    asset: str
    volatility_bps: int
    price: Decimal
    confidence: Decimal
    observed_at: datetime

    @property
    def volatility_pct(self) -> float:
        return self.volatility_bps / 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "volatility_bps": self.volatility_bps,
            "volatility_pct": self.volatility_pct,
            "price": str(self.price),
            "confidence": str(self.confidence),
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class TokenBalance:
    address: str
    symbol: str
    balance: Decimal
    decimals: int = 18


@dataclass(frozen=True)
class RebalanceLeg:
    """Move `amount` of `token` out of the vault, swap it to the stable token, redeposit."""
    token: TokenBalance
    amount: Decimal
    fraction: Decimal
    target_token: str
    slippage_bps: int = 50


@dataclass(frozen=True)
class RebalancePlan:
    tier: RebalanceTier
    legs: Tuple[RebalanceLeg, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.legs


@dataclass(frozen=True)
class StepResult:
    step_kind: StepKind
    status: StepStatus
    token: str = ""
    amount: str = "0"
    tx_hash: Optional[str] = None
    error: Optional[StepError] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_kind": self.step_kind.value,
            "status": self.status.value,
            "token": self.token,
            "amount": self.amount,
            "tx_hash": self.tx_hash,
            "error": self.error.value if self.error else None,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        error = data.get("error")
        return cls(
            step_kind=StepKind(data["step_kind"]),
            status=StepStatus(data["status"]),
            token=data.get("token", ""),
            amount=data.get("amount", "0"),
            tx_hash=data.get("tx_hash"),
            error=StepError(error) if error else None,
            detail=data.get("detail"),
        )


@dataclass(frozen=True)
class RebalanceAttempt:
    """
    Finalized record of one admitted (or forced-and-rejected) rebalance.

    Frozen: outcome and steps are fixed before the ledger ever sees it.
    """
    id: str
    started_at: datetime
    tier: RebalanceTier
    outcome: AttemptOutcome
    trigger_asset: Optional[str] = None
    trigger_volatility: float = 0.0
    forced: bool = False
    steps: Tuple[StepResult, ...] = ()
    transaction_hashes: Tuple[str, ...] = ()
    finished_at: Optional[datetime] = None
    rejection_reason: Optional[RejectionReason] = None

    @property
    def failed_step(self) -> Optional[StepResult]:
        for step in self.steps:
            if not step.ok:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at.isoformat(),
            "finished_at": _iso(self.finished_at),
            "tier": self.tier.value,
            "outcome": self.outcome.value,
            "trigger_asset": self.trigger_asset,
            "trigger_volatility": self.trigger_volatility,
            "forced": self.forced,
            "steps": [step.to_dict() for step in self.steps],
            "transaction_hashes": list(self.transaction_hashes),
            "rejection_reason": self.rejection_reason.value if self.rejection_reason else None,
        }

    def to_summary(self) -> Dict[str, Any]:
        """Shape consumed by the dashboard history list"""
        return {
            "id": self.id,
            "date": self.started_at.isoformat(),
            "timestamp": int(self.started_at.timestamp() * 1000),
            "type": self.tier.value,
            "volatility": self.trigger_volatility,
            "asset": self.trigger_asset,
            "outcome": self.outcome.value,
            "forced": self.forced,
            "transactionHashes": list(self.transaction_hashes),
            "failedStep": self.failed_step.to_dict() if self.failed_step else None,
            "rejectionReason": self.rejection_reason.value if self.rejection_reason else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RebalanceAttempt":
        reason = data.get("rejection_reason")
        return cls(
            id=data["id"],
            started_at=_parse_ts(data["started_at"]),
            finished_at=_parse_ts(data.get("finished_at")),
            tier=RebalanceTier(data["tier"]),
            outcome=AttemptOutcome(data["outcome"]),
            trigger_asset=data.get("trigger_asset"),
            trigger_volatility=float(data.get("trigger_volatility", 0.0)),
            forced=bool(data.get("forced", False)),
            steps=tuple(StepResult.from_dict(s) for s in data.get("steps", [])),
            transaction_hashes=tuple(data.get("transaction_hashes", [])),
            rejection_reason=RejectionReason(reason) if reason else None,
        )


@dataclass
class AdmissionState:
    """Mutable counters owned by AdmissionController"""
    last_rebalance_at: Optional[datetime] = None
    daily_count: int = 0
    daily_window_start: Optional[datetime] = None

    def copy(self) -> "AdmissionState":
        return AdmissionState(
            last_rebalance_at=self.last_rebalance_at,
            daily_count=self.daily_count,
            daily_window_start=self.daily_window_start,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_rebalance_at": _iso(self.last_rebalance_at),
            "daily_count": self.daily_count,
            "daily_window_start": _iso(self.daily_window_start),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AdmissionState":
        data = data or {}
        return cls(
            last_rebalance_at=_parse_ts(data.get("last_rebalance_at")),
            daily_count=int(data.get("daily_count", 0) or 0),
            daily_window_start=_parse_ts(data.get("daily_window_start")),
        )


@dataclass
class AdmissionDecision:
    admitted: bool
    reason: Optional[RejectionReason] = None
    forced: bool = False
    message: str = ""
    state: AdmissionState = field(default_factory=AdmissionState)


__all__ = [
    "RebalanceTier",
    "StepKind",
    "StepStatus",
    "StepError",
    "AttemptOutcome",
    "RejectionReason",
    "VolatilityObservation",
    "TokenBalance",
    "RebalanceLeg",
    "RebalancePlan",
    "StepResult",
    "RebalanceAttempt",
    "AdmissionState",
    "AdmissionDecision",
]
