"""
ViVault Automation Core: Volatility Index Oracle Client

Read-only web3 client for the on-chain VolatilityIndex contract.

The contract stores one record per Pyth price feed:
    (volatilityBps, price, timestamp, confidence)
Price and confidence use the Pyth -8 exponent.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from web3 import Web3
from web3.providers.rpc import HTTPProvider

from core.exceptions import OracleUnavailable

logger = logging.getLogger(__name__)

PRICE_EXPONENT = -8

# Pyth price feed ids tracked by the vault
DEFAULT_FEEDS = {
    "WETH": "0x9d4294bbcd1174d6f2003ec365831e64cc31d9f6f15a2b85399db8d5000960f6",
    "USDC": "0xeaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
}

VOLATILITY_INDEX_ABI = [
    {
        "inputs": [{"name": "priceFeedId", "type": "bytes32"}],
        "name": "getVolatilityData",
        "outputs": [
            {
                "components": [
                    {"name": "volatilityBps", "type": "uint256"},
                    {"name": "price", "type": "uint256"},
                    {"name": "timestamp", "type": "uint256"},
                    {"name": "confidence", "type": "uint256"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class OracleReading:
    volatility_bps: int
    price: Decimal
    timestamp: datetime
    confidence: Decimal


def scale_price(raw: int, exponent: int = PRICE_EXPONENT) -> Decimal:
    return Decimal(int(raw)).scaleb(exponent)


class VolatilityOracle:
    """
    web3 reader for VolatilityIndex.getVolatilityData(bytes32).

    Args:
        rpc_url: JSON-RPC endpoint (Base)
        contract_address: VolatilityIndex address
        feeds: asset symbol -> bytes32 feed id
        timeout: HTTP timeout for RPC calls in seconds
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        feeds: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        w3: Optional[Web3] = None,
    ):
        if not contract_address:
            raise ValueError("VolatilityIndex contract address is required")
        self.w3 = w3 or Web3(HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=VOLATILITY_INDEX_ABI,
        )
        self.feeds = {k.upper(): v for k, v in (feeds or DEFAULT_FEEDS).items()}
        logger.info(
            f"Initialized VolatilityOracle at {contract_address} "
            f"(feeds: {', '.join(sorted(self.feeds))})"
        )

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "VolatilityOracle":
        raw = raw or {}
        rpc_url = os.path.expandvars(raw.get("rpc_url") or os.getenv("RPC_URL", ""))
        return cls(
            rpc_url=rpc_url,
            contract_address=os.path.expandvars(raw.get("contract_address", "")),
            feeds=raw.get("feeds") or DEFAULT_FEEDS,
            timeout=float(raw.get("timeout_seconds", 10.0)),
        )

    def feed_id(self, asset: str) -> str:
        try:
            return self.feeds[asset.upper()]
        except KeyError:
            raise OracleUnavailable(f"{asset}: no price feed configured") from None

    def get_volatility_data(self, feed_id: str) -> Optional[OracleReading]:
        """
        Read one feed record.

        Returns:
            OracleReading, or None when the feed has never been written

        Raises:
            OracleUnavailable: RPC or decoding failure
        """
        try:
            raw = self.contract.functions.getVolatilityData(
                Web3.to_bytes(hexstr=feed_id)
            ).call()
        except Exception as e:
            logger.warning(f"getVolatilityData({feed_id[:10]}...) failed: {e}")
            raise OracleUnavailable(f"feed {feed_id[:10]}...", original=e) from e

        volatility_bps, price, timestamp, confidence = raw
        if int(timestamp) == 0:
            return None

        return OracleReading(
            volatility_bps=int(volatility_bps),
            price=scale_price(price),
            timestamp=datetime.fromtimestamp(int(timestamp), tz=timezone.utc),
            confidence=scale_price(confidence),
        )

    def read_asset(self, asset: str) -> Optional[OracleReading]:
        return self.get_volatility_data(self.feed_id(asset))


__all__ = ["OracleReading", "VolatilityOracle", "DEFAULT_FEEDS", "scale_price"]
