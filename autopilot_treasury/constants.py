"""Deployment constants for the Base mainnet reference deployment."""
from __future__ import annotations

from typing import Dict

CHAIN_ID = 8453

ENTRY_POINT_ADDRESS = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
TREASURY_MODULE_ADDRESS = "0xdCB9c356310DdBD693fbA8bF5e271123808cF6dd"
AUTOMATION_VALIDATOR_ADDRESS = "0x47A6b2f3bD564F9DeA17AcF8AbE73890c546900b"
OWNER_VALIDATOR_ADDRESS = "0x845ADb2C711129d4f3966735eD98a9F09fC4cE57"
ACCOUNT_FACTORY_ADDRESS = "0xA5BC2a02C397F66fBCFC445457325F36106788d1"
USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
USDC_DECIMALS = 6

ZERO_ADDRESS = "0x" + "00" * 20
EXEC_MODE_DEFAULT = b"\x00" * 32

# Placeholder limits used for the stub envelope of automation operations.
AUTOMATION_STUB_GAS_LIMITS: Dict[str, int] = {
    "call_gas_limit": 500_000,
    "verification_gas_limit": 500_000,
    "pre_verification_gas": 100_000,
}

# Owner-signed sends are priced with fixed limits so the wallet signs once.
OWNER_SEND_GAS_LIMITS: Dict[str, int] = {
    "call_gas_limit": 500_000,
    "verification_gas_limit": 150_000,
    "pre_verification_gas": 75_000,
    "paymaster_verification_gas_limit": 50_000,
    "paymaster_post_op_gas_limit": 50_000,
}

DEFAULT_SPONSOR_GAS_HINT = 100_000
DEFAULT_FEE_PER_GAS = 1_000_000_000

# ERC-4337 validation data and ERC-1271 return values.
SIG_VALIDATION_SUCCESS = 0
SIG_VALIDATION_FAILED = 1
ERC1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
ERC1271_INVALID = bytes.fromhex("ffffffff")

EXECUTE_SIGNATURE = "execute(bytes32,bytes)"
TRANSFER_SIGNATURE = "transfer(address,uint256)"
REBALANCE_SIGNATURE = "rebalance(address)"
MIGRATE_STRATEGY_SIGNATURE = "migrateStrategy(address,address)"
SWEEP_DUST_SIGNATURE = "sweepDustAndCompound(address,address,address[])"
EXECUTE_WITH_AUTO_YIELD_SIGNATURE = "executeWithAutoYield(address,address,uint256,bytes)"

ENTRY_POINT_ABI = [
    {
        "name": "getNonce",
        "type": "function",
        "inputs": [
            {"name": "sender", "type": "address"},
            {"name": "key", "type": "uint192"},
        ],
        "outputs": [{"name": "nonce", "type": "uint256"}],
        "stateMutability": "view",
    },
]

__all__ = [
    "ACCOUNT_FACTORY_ADDRESS",
    "AUTOMATION_STUB_GAS_LIMITS",
    "AUTOMATION_VALIDATOR_ADDRESS",
    "CHAIN_ID",
    "DEFAULT_FEE_PER_GAS",
    "DEFAULT_SPONSOR_GAS_HINT",
    "ENTRY_POINT_ABI",
    "ENTRY_POINT_ADDRESS",
    "ERC1271_INVALID",
    "ERC1271_MAGIC_VALUE",
    "EXEC_MODE_DEFAULT",
    "EXECUTE_SIGNATURE",
    "EXECUTE_WITH_AUTO_YIELD_SIGNATURE",
    "MIGRATE_STRATEGY_SIGNATURE",
    "OWNER_SEND_GAS_LIMITS",
    "OWNER_VALIDATOR_ADDRESS",
    "REBALANCE_SIGNATURE",
    "SIG_VALIDATION_FAILED",
    "SIG_VALIDATION_SUCCESS",
    "SWEEP_DUST_SIGNATURE",
    "TRANSFER_SIGNATURE",
    "TREASURY_MODULE_ADDRESS",
    "USDC_ADDRESS",
    "USDC_DECIMALS",
    "ZERO_ADDRESS",
]
