"""Automation-key treasury: permission validator, state machine and operation builder."""
from __future__ import annotations

from .account import EntryPoint, OperationReceipt, SmartAccount
from .automation import AutomationResult, AutomationService
from .builder import BuiltOperation, OperationBuilder
from .chain import ChainState
from .config import AutomationConfig, load_config
from .exceptions import (
    AlreadyInitialized,
    ConfigurationError,
    ConfirmationTimeout,
    ExecutionReverted,
    InsufficientBalance,
    InvalidStrategy,
    NotInitialized,
    RelayError,
    SlippageExceeded,
    StrategyQueryError,
    TreasuryError,
    Unauthorized,
)
from .maintenance import StrategyCandidate, WalletCheck, check_wallet, check_wallets, format_units, recommend_strategy
from .nonce import KernelNonceKeyV3, LegacyNonceKey, codec_for
from .relay import BundlerClient, EntryPointReader
from .router import SwapRouter
from .scheduler import Scheduler, SchedulerTask, TaskRun
from .signing import AutomationIdentity, OwnerIdentity
from .strategies import StrategyValue, StrategyValueStatus, YieldStrategy
from .submission import OperationLeases, await_confirmation, submit
from .treasury import AssetConfig, TreasuryModule
from .user_operation import PackedUserOperation, UserOperation, pack_user_operation, unpack_user_operation, user_operation_hash
from .validator import OwnerValidator, PermissionValidator, ValidationStatus

__all__ = [
    "AlreadyInitialized",
    "AssetConfig",
    "AutomationConfig",
    "AutomationIdentity",
    "AutomationResult",
    "AutomationService",
    "BuiltOperation",
    "BundlerClient",
    "ChainState",
    "ConfigurationError",
    "ConfirmationTimeout",
    "EntryPoint",
    "EntryPointReader",
    "ExecutionReverted",
    "InsufficientBalance",
    "InvalidStrategy",
    "KernelNonceKeyV3",
    "LegacyNonceKey",
    "NotInitialized",
    "OperationBuilder",
    "OperationLeases",
    "OperationReceipt",
    "OwnerIdentity",
    "OwnerValidator",
    "PackedUserOperation",
    "PermissionValidator",
    "RelayError",
    "Scheduler",
    "SchedulerTask",
    "SlippageExceeded",
    "SmartAccount",
    "StrategyCandidate",
    "StrategyQueryError",
    "StrategyValue",
    "StrategyValueStatus",
    "SwapRouter",
    "TaskRun",
    "TreasuryError",
    "TreasuryModule",
    "Unauthorized",
    "UserOperation",
    "ValidationStatus",
    "WalletCheck",
    "YieldStrategy",
    "await_confirmation",
    "check_wallet",
    "check_wallets",
    "codec_for",
    "format_units",
    "load_config",
    "pack_user_operation",
    "recommend_strategy",
    "submit",
    "unpack_user_operation",
    "user_operation_hash",
]
