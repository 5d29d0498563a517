"""
ViVault Automation Core: Delegated Ability Transactor

Two-phase transactor used for every on-chain step: precheck first, execute
only after a successful precheck. Calls go to an ability-execution gateway
over HTTP and run on behalf of the user's delegated signer (the delegator).

Calls are never retried here. A commit that times out may still land
on-chain, so retrying it could double-send; retry is an operator decision.
"""

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

import requests

from core.exceptions import TransactorTimeout

logger = logging.getLogger(__name__)


@dataclass
class AbilityResponse:
    """Result of one precheck/execute call"""
    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def tx_hash(self) -> Optional[str]:
        return self.result.get("txHash") or self.result.get("tx_hash")


class Transactor(ABC):
    """Collaborator contract consumed by RebalanceExecutor"""

    @abstractmethod
    def precheck(self, params: Dict[str, Any], delegator: str, timeout: float) -> AbilityResponse:
        """Validate the call without sending anything on-chain."""

    @abstractmethod
    def execute(self, params: Dict[str, Any], delegator: str, timeout: float) -> AbilityResponse:
        """Send the transaction; result carries txHash on success."""


class AbilityClient(Transactor):
    """
    HTTP client for the ability gateway.

    Endpoints:
        POST {base_url}/abilities/{ability}/precheck
        POST {base_url}/abilities/{ability}/execute

    Body: {"abilityParams": {...}, "delegatorPkpEthAddress": "0x..."}
    Reply: {"success": bool, "result": {...}, "error": "..."}
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError("Ability gateway base_url is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or os.getenv("ABILITY_API_KEY")
        self._session = session or requests.Session()
        logger.info(f"Initialized AbilityClient at {self.base_url}")

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "AbilityClient":
        raw = raw or {}
        base_url = os.path.expandvars(raw.get("base_url", ""))
        api_key_env = raw.get("api_key_env", "ABILITY_API_KEY")
        return cls(base_url=base_url, api_key=os.getenv(api_key_env))

    def precheck(self, params: Dict[str, Any], delegator: str, timeout: float) -> AbilityResponse:
        return self._call("precheck", params, delegator, timeout)

    def execute(self, params: Dict[str, Any], delegator: str, timeout: float) -> AbilityResponse:
        return self._call("execute", params, delegator, timeout)

    def _call(self, phase: str, params: Dict[str, Any], delegator: str, timeout: float) -> AbilityResponse:
        ability = params.get("ability")
        if not ability:
            return AbilityResponse(success=False, error="params missing 'ability'")

        url = f"{self.base_url}/abilities/{ability}/{phase}"
        body = {
            "abilityParams": {k: v for k, v in params.items() if k != "ability"},
            "delegatorPkpEthAddress": delegator,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        started = time.monotonic()
        try:
            response = self._session.post(url, json=body, headers=headers, timeout=timeout)
        except requests.exceptions.Timeout as e:
            logger.warning(f"Ability {ability}/{phase} timed out after {timeout}s")
            raise TransactorTimeout(f"{ability}/{phase} timed out after {timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            logger.warning(f"Ability {ability}/{phase} connection error: {e}")
            return AbilityResponse(success=False, error=f"connection error: {e}")

        elapsed = time.monotonic() - started
        logger.debug(f"Ability {ability}/{phase} -> HTTP {response.status_code} in {elapsed:.2f}s")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            error = payload.get("error") if isinstance(payload, dict) else None
            return AbilityResponse(
                success=False,
                error=error or f"HTTP {response.status_code}: {response.text[:200]}",
            )

        if not isinstance(payload, dict):
            return AbilityResponse(success=False, error="malformed ability response")

        return AbilityResponse(
            success=bool(payload.get("success")),
            result=payload.get("result") or {},
            error=payload.get("error"),
        )


__all__ = ["AbilityResponse", "Transactor", "AbilityClient"]
