"""Test helpers for vivault-automation test suite"""

from tests.helpers.vault_stubs import (
    FakeOracle,
    FakeVault,
    FakeTransactor,
    FixedClock,
    make_reading,
    balance,
    WETH,
    WBTC,
    USDC,
)

__all__ = [
    "FakeOracle",
    "FakeVault",
    "FakeTransactor",
    "FixedClock",
    "make_reading",
    "balance",
    "WETH",
    "WBTC",
    "USDC",
]
