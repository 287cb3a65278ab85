#!/usr/bin/env python3
"""Check relay health and preview nonces for the automation setup."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, Sequence

from autopilot_treasury.builder import OperationBuilder
from autopilot_treasury.config import AutomationConfig, load_config
from autopilot_treasury.constants import USDC_ADDRESS
from autopilot_treasury.exceptions import ConfigurationError, RelayError
from autopilot_treasury.relay import BundlerClient, EntryPointReader
from autopilot_treasury.signing import AutomationIdentity, OwnerIdentity

_LOGGER = logging.getLogger("check_automation")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Verify configuration and relay health without submitting anything.",
    )
    parser.add_argument(
        "--wallet",
        default=None,
        help="Optional smart account to preview automation and owner nonces for.",
    )
    parser.add_argument("--asset", default=USDC_ADDRESS, help="Asset used for the dry-run rebalance hash.")
    parser.add_argument("--json", action="store_true", help="Emit the report as JSON.")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging verbosity (DEBUG, INFO, WARNING)",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _wallet_report(
    config: AutomationConfig,
    relay: BundlerClient,
    reader: EntryPointReader,
    wallet: str,
    asset: str,
) -> Dict[str, Any]:
    codec = config.codec
    automation_key = codec.encode(config.validator_address, AutomationIdentity.identity_type)
    owner_key = codec.encode(config.owner_validator_address, OwnerIdentity.identity_type)
    report: Dict[str, Any] = {
        "wallet": wallet,
        "automation_nonce": hex(reader.get_nonce(wallet, automation_key)),
        "owner_nonce": hex(reader.get_nonce(wallet, owner_key)),
    }
    if config.has_signer:
        identity = AutomationIdentity.from_private_key(config.automation_private_key or "", config.validator_address)
        builder = OperationBuilder(
            relay,
            reader,
            entry_point=config.entry_point,
            chain_id=config.chain_id,
            codec=codec,
            module_address=config.module_address,
            sponsored=False,
        )
        built = builder.build_rebalance(identity, wallet, asset)
        report["automation_key"] = identity.address
        report["rebalance_preview"] = built.as_dict()
    return report


def main(
    argv: Sequence[str] | None = None,
    *,
    relay: BundlerClient | None = None,
    reader: EntryPointReader | None = None,
) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_config(require_signer=False)
        relay = relay or BundlerClient(config.bundler_url, entry_point=config.entry_point, chain_id=config.chain_id)
    except ConfigurationError as exc:
        _LOGGER.error("%s", exc)
        return 2

    healthy = relay.is_healthy()
    report: Dict[str, Any] = {"config": config.as_dict(), "relay_healthy": healthy}

    if args.wallet:
        try:
            reader = reader or EntryPointReader(config.rpc_url, config.entry_point)
            report["wallet"] = _wallet_report(config, relay, reader, args.wallet, args.asset)
        except (ConfigurationError, RelayError) as exc:
            _LOGGER.error("Wallet preview failed: %s", exc)
            report["wallet_error"] = str(exc)

    if args.json:
        json.dump(report, sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        print(f"Relay {config.bundler_url}: {'healthy' if healthy else 'UNAVAILABLE'}")
        print(f"Automation key configured: {config.has_signer}")
        wallet_report = report.get("wallet")
        if wallet_report:
            print(f"Automation nonce: {wallet_report['automation_nonce']}")
            print(f"Owner nonce: {wallet_report['owner_nonce']}")
            preview = wallet_report.get("rebalance_preview")
            if preview:
                print(f"Rebalance preview hash: {preview['userOpHash']}")
        elif "wallet_error" in report:
            print(f"Wallet preview failed: {report['wallet_error']}")
    return 0 if healthy and "wallet_error" not in report else 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
