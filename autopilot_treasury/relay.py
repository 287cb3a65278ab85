"""JSON-RPC clients for the relay (bundler + sponsor) and the entry point.

The relay speaks ERC-4337 / ERC-7677 JSON-RPC over HTTP. Every transport
failure, non-2xx response or JSON-RPC ``error`` member surfaces as a
:class:`~autopilot_treasury.exceptions.RelayError` naming the method, so
callers never have to inspect raw ``requests`` exceptions.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests
from web3 import Web3

from .constants import CHAIN_ID, DEFAULT_FEE_PER_GAS, DEFAULT_SPONSOR_GAS_HINT, ENTRY_POINT_ABI, ENTRY_POINT_ADDRESS
from .encoding import hex_to_bytes, parse_quantity, to_checksum, to_rpc_hex
from .exceptions import ConfigurationError, RelayError
from .user_operation import AnyUserOperation, build_paymaster_and_data, serialize_user_operation, split_paymaster_and_data

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeQuote:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass(frozen=True)
class GasEstimate:
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    paymaster_verification_gas_limit: Optional[int] = None
    paymaster_post_op_gas_limit: Optional[int] = None

    @classmethod
    def from_rpc(cls, payload: Mapping[str, Any]) -> "GasEstimate":
        def optional(key: str) -> Optional[int]:
            value = payload.get(key)
            return None if value in (None, "") else parse_quantity(value)

        return cls(
            call_gas_limit=parse_quantity(payload["callGasLimit"]),
            verification_gas_limit=parse_quantity(payload["verificationGasLimit"]),
            pre_verification_gas=parse_quantity(payload["preVerificationGas"]),
            paymaster_verification_gas_limit=optional("paymasterVerificationGasLimit"),
            paymaster_post_op_gas_limit=optional("paymasterPostOpGasLimit"),
        )


@dataclass(frozen=True)
class SponsorData:
    """Paymaster fields returned by a sponsor endpoint."""

    paymaster: str
    verification_gas_limit: int
    post_op_gas_limit: int
    paymaster_data: bytes = b""

    @property
    def paymaster_and_data(self) -> bytes:
        return build_paymaster_and_data(
            self.paymaster, self.verification_gas_limit, self.post_op_gas_limit, self.paymaster_data
        )

    @classmethod
    def from_rpc(cls, payload: Mapping[str, Any], *, default_gas: int = DEFAULT_SPONSOR_GAS_HINT) -> "SponsorData":
        """Accept both the packed ``paymasterAndData`` and the split ERC-7677 response."""

        packed = payload.get("paymasterAndData")
        if packed:
            paymaster, verification, post_op, data = split_paymaster_and_data(hex_to_bytes(packed))
            if paymaster is None:
                raise ValueError("paymasterAndData is empty")
            return cls(paymaster, verification, post_op, data)
        paymaster = payload.get("paymaster")
        if not paymaster:
            raise ValueError("Sponsor response carries no paymaster")
        return cls(
            paymaster=to_checksum(paymaster),
            verification_gas_limit=parse_quantity(payload.get("paymasterVerificationGasLimit") or default_gas),
            post_op_gas_limit=parse_quantity(payload.get("paymasterPostOpGasLimit") or default_gas),
            paymaster_data=hex_to_bytes(payload.get("paymasterData")),
        )


@dataclass(frozen=True)
class OperationStatus:
    operation_id: str
    success: bool
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    reason: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_rpc(cls, operation_id: str, payload: Mapping[str, Any]) -> "OperationStatus":
        receipt = payload.get("receipt") or {}
        block = receipt.get("blockNumber")
        gas_used = payload.get("actualGasUsed") or receipt.get("gasUsed")
        return cls(
            operation_id=operation_id,
            success=bool(payload.get("success")),
            transaction_hash=receipt.get("transactionHash"),
            block_number=parse_quantity(block) if block is not None else None,
            gas_used=parse_quantity(gas_used) if gas_used is not None else None,
            reason=payload.get("reason") or None,
            raw=dict(payload),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "success": self.success,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "reason": self.reason,
        }


@dataclass
class BundlerClient:
    """JSON-RPC 2.0 client for the relay and its sponsor endpoint."""

    url: str
    entry_point: str = ENTRY_POINT_ADDRESS
    chain_id: int = CHAIN_ID
    session: Optional[requests.Session] = None
    timeout: Optional[float] = 10.0

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigurationError("Relay URL is not configured")
        if self.session is None:
            self.session = requests.Session()
        self.entry_point = to_checksum(self.entry_point)
        self._ids = itertools.count(1)

    def call(self, method: str, params: Sequence[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RelayError(method, str(exc)) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise RelayError(method, "response is not valid JSON") from exc
        if not isinstance(payload, Mapping):
            raise RelayError(method, f"unexpected payload {payload!r}", response=payload)
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, Mapping) else None
            raise RelayError(method, message or str(error), response=payload)
        return payload.get("result")

    def _call_parsed(self, method: str, params: Sequence[Any], parser: Any) -> Any:
        result = self.call(method, params)
        if result is None:
            raise RelayError(method, "empty result")
        try:
            return parser(result)
        except (KeyError, TypeError, ValueError) as exc:
            raise RelayError(method, f"malformed result: {exc}", response=result) from exc

    def get_fee_price(self) -> FeeQuote:
        priority = self.call("eth_maxPriorityFeePerGas", [])
        gas_price = self.call("eth_gasPrice", [])
        max_priority = parse_quantity(priority) if priority else DEFAULT_FEE_PER_GAS
        max_fee = parse_quantity(gas_price) if gas_price else DEFAULT_FEE_PER_GAS
        return FeeQuote(max_fee_per_gas=max(max_fee, max_priority), max_priority_fee_per_gas=max_priority)

    def estimate_gas(self, operation: AnyUserOperation) -> GasEstimate:
        return self._call_parsed(
            "eth_estimateUserOperationGas",
            [serialize_user_operation(operation), self.entry_point],
            GasEstimate.from_rpc,
        )

    def _sponsor_params(self, operation: AnyUserOperation, context: Optional[Mapping[str, Any]]) -> List[Any]:
        params: List[Any] = [serialize_user_operation(operation), self.entry_point, to_rpc_hex(self.chain_id)]
        if context is not None:
            params.append(dict(context))
        return params

    def get_sponsor_stub(self, operation: AnyUserOperation, context: Optional[Mapping[str, Any]] = None) -> SponsorData:
        return self._call_parsed(
            "pm_getPaymasterStubData", self._sponsor_params(operation, context), SponsorData.from_rpc
        )

    def get_sponsor_data(self, operation: AnyUserOperation, context: Optional[Mapping[str, Any]] = None) -> SponsorData:
        return self._call_parsed("pm_getPaymasterData", self._sponsor_params(operation, context), SponsorData.from_rpc)

    def submit(self, operation: AnyUserOperation) -> str:
        result = self.call("eth_sendUserOperation", [serialize_user_operation(operation), self.entry_point])
        if not isinstance(result, str) or not result:
            raise RelayError("eth_sendUserOperation", f"unexpected operation id {result!r}", response=result)
        return result

    def get_receipt(self, operation_id: str) -> Optional[OperationStatus]:
        result = self.call("eth_getUserOperationReceipt", [operation_id])
        if not result:
            return None
        return OperationStatus.from_rpc(operation_id, result)

    def supported_scopes(self) -> List[str]:
        result = self.call("eth_supportedEntryPoints", [])
        return [to_checksum(address) for address in result or []]

    def is_healthy(self) -> bool:
        try:
            return self.entry_point in self.supported_scopes()
        except RelayError as exc:
            _LOGGER.warning("Relay health check failed: %s", exc)
            return False


class EntryPointReader:
    """Reads per-key nonces from the deployed entry point through web3."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        entry_point: str = ENTRY_POINT_ADDRESS,
        *,
        web3: Optional[Web3] = None,
    ) -> None:
        if web3 is None:
            if not rpc_url:
                raise ConfigurationError("RPC URL is not configured")
            web3 = Web3(Web3.HTTPProvider(rpc_url))
        self.web3 = web3
        self.entry_point = to_checksum(entry_point)
        self._contract = web3.eth.contract(address=self.entry_point, abi=ENTRY_POINT_ABI)

    def get_nonce(self, sender: str, key: int) -> int:
        return int(self._contract.functions.getNonce(to_checksum(sender), key).call())


__all__ = [
    "BundlerClient",
    "EntryPointReader",
    "FeeQuote",
    "GasEstimate",
    "OperationStatus",
    "SponsorData",
]
