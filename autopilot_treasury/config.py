"""Runtime configuration for the automation service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, MutableMapping, Optional

from dotenv import load_dotenv

from .constants import (
    AUTOMATION_VALIDATOR_ADDRESS,
    CHAIN_ID,
    ENTRY_POINT_ADDRESS,
    OWNER_VALIDATOR_ADDRESS,
    TREASURY_MODULE_ADDRESS,
)
from .encoding import to_checksum
from .exceptions import ConfigurationError
from .nonce import NonceKeyCodec, codec_for
from .submission import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_POLL_INTERVAL


@dataclass(frozen=True)
class AutomationConfig:
    """Everything the builder and relay need, resolved once and passed in."""

    bundler_url: str
    rpc_url: Optional[str] = None
    automation_private_key: Optional[str] = field(default=None, repr=False)
    entry_point: str = ENTRY_POINT_ADDRESS
    chain_id: int = CHAIN_ID
    module_address: str = TREASURY_MODULE_ADDRESS
    validator_address: str = AUTOMATION_VALIDATOR_ADDRESS
    owner_validator_address: str = OWNER_VALIDATOR_ADDRESS
    nonce_key_version: str = "v3"
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL

    @property
    def codec(self) -> NonceKeyCodec:
        return codec_for(self.nonce_key_version)

    @property
    def has_signer(self) -> bool:
        return bool(self.automation_private_key)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "bundler_url": self.bundler_url,
            "rpc_url": self.rpc_url,
            "automation_key_configured": self.has_signer,
            "entry_point": self.entry_point,
            "chain_id": self.chain_id,
            "module_address": self.module_address,
            "validator_address": self.validator_address,
            "owner_validator_address": self.owner_validator_address,
            "nonce_key_version": self.nonce_key_version,
            "confirmation_timeout": self.confirmation_timeout,
            "poll_interval": self.poll_interval,
        }


def _get_env() -> MutableMapping[str, str]:
    """Expose ``os.environ`` (after ``load_dotenv``) separately to simplify testing."""

    load_dotenv()
    return os.environ


def _number(env: Mapping[str, str], name: str, default: float, cast: Any) -> Any:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, received {raw!r}") from None


def _address(env: Mapping[str, str], name: str, default: str) -> str:
    raw = env.get(name) or default
    try:
        return to_checksum(raw)
    except ValueError:
        raise ConfigurationError(f"{name} is not a valid address: {raw!r}") from None


def load_config(env: Mapping[str, str] | None = None, *, require_signer: bool = True) -> AutomationConfig:
    """Build an :class:`AutomationConfig` from environment variables.

    Parameters
    ----------
    env:
        Optional mapping used to resolve variables. When omitted
        ``os.environ`` (after ``load_dotenv``) is used.
    require_signer:
        Fail when ``AUTOMATION_PRIVATE_KEY`` is absent. Read-only tooling
        such as health checks passes ``False``.

    Raises
    ------
    ConfigurationError
        If the relay URL (or, when required, the signing key) is missing, or
        a value cannot be parsed.
    """

    if env is None:
        env = _get_env()

    bundler_url = env.get("AUTOPILOT_BUNDLER_URL") or env.get("CDP_BUNDLER_URL")
    if not bundler_url:
        raise ConfigurationError("Set AUTOPILOT_BUNDLER_URL before running automation.")
    private_key = env.get("AUTOMATION_PRIVATE_KEY") or None
    if require_signer and not private_key:
        raise ConfigurationError("Set AUTOMATION_PRIVATE_KEY before submitting automation operations.")

    version = env.get("AUTOPILOT_NONCE_KEY_VERSION") or "v3"
    try:
        codec_for(version)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from None

    timeout = _number(env, "AUTOPILOT_CONFIRMATION_TIMEOUT", DEFAULT_CONFIRMATION_TIMEOUT, float)
    poll_interval = _number(env, "AUTOPILOT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL, float)
    if timeout <= 0 or poll_interval <= 0:
        raise ConfigurationError("Confirmation timeout and poll interval must be positive")

    return AutomationConfig(
        bundler_url=bundler_url,
        rpc_url=env.get("AUTOPILOT_RPC_URL") or None,
        automation_private_key=private_key,
        entry_point=_address(env, "AUTOPILOT_ENTRY_POINT", ENTRY_POINT_ADDRESS),
        chain_id=_number(env, "AUTOPILOT_CHAIN_ID", CHAIN_ID, int),
        module_address=_address(env, "AUTOPILOT_MODULE_ADDRESS", TREASURY_MODULE_ADDRESS),
        validator_address=_address(env, "AUTOPILOT_VALIDATOR_ADDRESS", AUTOMATION_VALIDATOR_ADDRESS),
        owner_validator_address=_address(env, "AUTOPILOT_OWNER_VALIDATOR_ADDRESS", OWNER_VALIDATOR_ADDRESS),
        nonce_key_version=version,
        confirmation_timeout=timeout,
        poll_interval=poll_interval,
    )


__all__ = ["AutomationConfig", "load_config"]
