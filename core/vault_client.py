"""
ViVault Automation Core: User Vault Client

Reads vault balances over web3 and builds the ability parameters for the
vault's withdraw/deposit calls. Nothing here signs or sends; transactions go
through the Transactor on behalf of the delegator.
"""

import os
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional
import logging

from web3 import Web3
from web3.providers.rpc import HTTPProvider

from core.exceptions import VaultUnavailable
from core.models import TokenBalance

logger = logging.getLogger(__name__)

CONTRACT_CALL_ABILITY = "vault-contract-call"

USER_VAULT_ABI = [
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "to", "type": "address"},
        ],
        "name": "withdrawTo",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "deposit",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "token", "type": "address"}],
        "name": "getBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getBalances",
        "outputs": [
            {
                "components": [
                    {"name": "token", "type": "address"},
                    {"name": "symbol", "type": "string"},
                    {"name": "balance", "type": "uint256"},
                    {"name": "decimals", "type": "uint8"},
                ],
                "name": "",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


def from_wei(raw: int, decimals: int) -> Decimal:
    """Integer base units -> human amount"""
    return Decimal(int(raw)).scaleb(-int(decimals))


def to_wei(amount: Decimal, decimals: int) -> int:
    """Human amount -> integer base units, rounded down"""
    scaled = Decimal(amount).scaleb(int(decimals))
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


class VaultClient:
    """
    One user vault.

    Args:
        rpc_url: JSON-RPC endpoint
        vault_address: The user's vault contract
        ability: Ability name used for withdraw/deposit contract calls
        timeout: HTTP timeout for RPC calls in seconds
    """

    def __init__(
        self,
        rpc_url: str,
        vault_address: str,
        ability: str = CONTRACT_CALL_ABILITY,
        timeout: float = 10.0,
        w3: Optional[Web3] = None,
    ):
        if not vault_address:
            raise ValueError("vault_address is required")
        self.w3 = w3 or Web3(HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.vault_address = Web3.to_checksum_address(vault_address)
        self.ability = ability
        self.contract = self.w3.eth.contract(address=self.vault_address, abi=USER_VAULT_ABI)
        logger.info(f"Initialized VaultClient for {self.vault_address}")

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "VaultClient":
        raw = raw or {}
        rpc_url = os.path.expandvars(raw.get("rpc_url") or os.getenv("RPC_URL", ""))
        return cls(
            rpc_url=rpc_url,
            vault_address=os.path.expandvars(raw.get("address", "")),
            ability=raw.get("ability", CONTRACT_CALL_ABILITY),
            timeout=float(raw.get("timeout_seconds", 10.0)),
        )

    def get_balances(self) -> List[TokenBalance]:
        """
        Read all vault balances.

        Raises:
            VaultUnavailable: RPC or decoding failure
        """
        try:
            rows = self.contract.functions.getBalances().call()
        except Exception as e:
            logger.warning(f"getBalances() on {self.vault_address} failed: {e}")
            raise VaultUnavailable(f"getBalances failed: {e}") from e

        balances = []
        for token, symbol, balance, decimals in rows:
            balances.append(
                TokenBalance(
                    address=Web3.to_checksum_address(token),
                    symbol=symbol,
                    balance=from_wei(balance, decimals),
                    decimals=int(decimals),
                )
            )
        logger.debug(
            "Vault balances: " + ", ".join(f"{b.balance} {b.symbol}" for b in balances)
        )
        return balances

    def get_balance(self, token: TokenBalance) -> Decimal:
        try:
            raw = self.contract.functions.getBalance(
                Web3.to_checksum_address(token.address)
            ).call()
        except Exception as e:
            raise VaultUnavailable(f"getBalance({token.symbol}) failed: {e}") from e
        return from_wei(raw, token.decimals)

    def withdraw_call(self, token: TokenBalance, amount: Decimal, recipient: str) -> Dict[str, Any]:
        """Ability params for withdrawTo(token, amount, recipient)"""
        return {
            "ability": self.ability,
            "contractAddress": self.vault_address,
            "functionName": "withdrawTo",
            "args": [token.address, str(to_wei(amount, token.decimals)), recipient],
        }

    def deposit_call(self, token_address: str, amount_wei: int) -> Dict[str, Any]:
        """Ability params for deposit(token, amount)"""
        return {
            "ability": self.ability,
            "contractAddress": self.vault_address,
            "functionName": "deposit",
            "args": [token_address, str(int(amount_wei))],
        }


__all__ = ["VaultClient", "USER_VAULT_ABI", "from_wei", "to_wei"]
