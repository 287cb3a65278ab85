#!/usr/bin/env python3
"""Submit a treasury automation operation signed by the automation key."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

from autopilot_treasury.automation import AutomationResult, AutomationService
from autopilot_treasury.config import load_config
from autopilot_treasury.constants import USDC_ADDRESS
from autopilot_treasury.exceptions import ConfigurationError, ConfirmationTimeout, RelayError

_LOGGER = logging.getLogger("submit_automation")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build, sign and submit a rebalance, migrate or sweep operation for a wallet.",
    )
    parser.add_argument("--wallet", required=True, help="Smart account address (0x...)")
    parser.add_argument("--asset", default=USDC_ADDRESS, help="Treasury asset. Defaults to USDC.")
    parser.add_argument("--json", action="store_true", help="Emit the result as JSON.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging verbosity (DEBUG, INFO, WARNING)",
    )

    actions = parser.add_subparsers(dest="action", required=True)
    actions.add_parser("rebalance", help="Move liquid funds above the threshold into the strategy.")

    migrate = actions.add_parser("migrate", help="Move the position to a new strategy.")
    migrate.add_argument("--strategy", required=True, help="Address of the new strategy")

    sweep = actions.add_parser("sweep", help="Swap dust balances into the asset and compound.")
    sweep.add_argument("--router", required=True, help="Swap router address")
    sweep.add_argument("--dust", nargs="+", required=True, help="Dust token addresses")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _run(service: AutomationService, args: argparse.Namespace) -> AutomationResult:
    if args.action == "rebalance":
        return service.submit_rebalance(args.wallet, args.asset)
    if args.action == "migrate":
        return service.submit_migrate_strategy(args.wallet, args.asset, args.strategy)
    return service.submit_sweep_dust(args.wallet, args.router, args.asset, args.dust)


def main(argv: Sequence[str] | None = None, *, service: AutomationService | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if service is None:
        try:
            service = AutomationService.from_config(load_config())
        except ConfigurationError as exc:
            _LOGGER.error("%s", exc)
            return 2

    try:
        result = _run(service, args)
    except (RelayError, ConfirmationTimeout) as exc:
        _LOGGER.error("%s failed for %s: %s", args.action, args.wallet, exc)
        return 1

    if args.json:
        json.dump(result.as_dict(), sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        outcome = "confirmed" if result.success else "reverted"
        print(f"{args.action} for {result.wallet} {outcome}: {result.operation_id}")
        if result.status.transaction_hash:
            print(f"Transaction: {result.status.transaction_hash}")
    return 0 if result.success else 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
