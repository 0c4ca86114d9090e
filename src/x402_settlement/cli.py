"""
Command-line interface for talking to an x402 facilitator.

    x402-settlement supported
    x402-settlement verify  --header <X-PAYMENT> --requirements req.json
    x402-settlement settle  --header <X-PAYMENT> --requirements req.json
    x402-settlement process --header <X-PAYMENT> --requirements req.json

Exit status is 0 on success, 1 on failure and 2 when a settlement was sent
but its outcome is unknown.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import requests

from .api import create_facilitator_client, create_pipeline
from .core.config import ConfigError, GatewayConfig, load_gateway_config
from .core.errors import FacilitatorError, SettlementAmbiguousError, ValidationError
from .core.pipeline import PaymentOutcome, PaymentState
from .core.types import SettlementResult

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AMBIGUOUS = 2


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def _env_override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key must not be empty")
    return key, val


def _collect_overrides(pairs: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    return {key: value for key, value in pairs}


def _load_requirements(path: str) -> Dict[str, Any]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ValidationError(f"cannot read requirements file '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"requirements file '{path}' must contain a JSON object")
    return data


def _emit(document: Any) -> None:
    print(json.dumps(document, indent=2, sort_keys=True))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="x402-settlement",
        description="Verify and settle x402 payments through a facilitator",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing X402_* settings (default: .env)",
    )
    parser.add_argument(
        "--set",
        action="append",
        type=_env_override,
        metavar="KEY=VALUE",
        default=None,
        help="Override an environment variable without editing the .env file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("supported", help="List the scheme/network pairs the facilitator accepts")
    for name, help_text in (
        ("verify", "Ask the facilitator whether a payment header is valid"),
        ("settle", "Settle a previously verified payment header"),
        ("process", "Run the full validate/verify/settle pipeline"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--header", required=True, help="Value of the X-PAYMENT header")
        command.add_argument(
            "--requirements",
            required=True,
            help="Path to a JSON file holding the payment requirements",
        )
        if name == "process":
            command.add_argument(
                "--no-settle",
                action="store_true",
                help="Stop after verification (no on-chain settlement)",
            )
    return parser


def _handle_settlement(settlement: SettlementResult) -> int:
    if not settlement.success:
        logging.error("Settlement failed: %s", settlement.error_reason or settlement.raw)
        return EXIT_FAILED

    logging.info(
        "Payment settled on %s. Transaction hash: %s",
        settlement.network,
        settlement.transaction,
    )
    return EXIT_OK


def _handle_outcome(outcome: PaymentOutcome) -> int:
    summary: Dict[str, Any] = {"state": outcome.state.value}
    if outcome.settlement is not None:
        summary["settlement"] = outcome.settlement.to_dict()
    if outcome.state is PaymentState.FAILED:
        summary["failedStage"] = outcome.failed_stage.value if outcome.failed_stage else None
        summary["errorCode"] = outcome.error_code
        summary["metadata"] = dict(outcome.metadata)
    _emit(summary)

    if outcome.settlement_ambiguous:
        return EXIT_AMBIGUOUS
    if outcome.state is PaymentState.FAILED:
        return EXIT_FAILED
    return EXIT_OK


def _run_command(args: argparse.Namespace, config: GatewayConfig) -> int:
    session = requests.Session()

    if args.command == "process":
        if args.no_settle:
            config = config.with_overrides(auto_settle=False)
        pipeline = create_pipeline(config=config, session=session)
        return _handle_outcome(pipeline.process(args.header, _load_requirements(args.requirements)))

    client = create_facilitator_client(config=config, session=session)
    if args.command == "supported":
        _emit([kind._asdict() for kind in client.get_supported()])
        return EXIT_OK

    requirements = _load_requirements(args.requirements)
    if args.command == "verify":
        verification = client.verify(args.header, requirements)
        _emit(verification.raw)
        if not verification.is_valid:
            logging.error("Payment rejected: %s", verification.invalid_reason)
            return EXIT_FAILED
        logging.info("Facilitator accepted payment payload for payer %s", verification.payer)
        return EXIT_OK

    settlement = client.settle(args.header, requirements)
    _emit(settlement.to_dict())
    return _handle_settlement(settlement)


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    overrides = _collect_overrides(args.set or ())

    try:
        config = load_gateway_config(env_file=args.env_file, overrides=overrides)
    except ConfigError as exc:
        logging.error("Invalid configuration: %s", exc)
        return EXIT_FAILED

    try:
        return _run_command(args, config)
    except SettlementAmbiguousError as exc:
        logging.error("Settlement outcome unknown, reconcile before retrying: %s", exc)
        return EXIT_AMBIGUOUS
    except (FacilitatorError, ValidationError) as exc:
        logging.error("%s request failed: %s", args.command.capitalize(), exc)
        return EXIT_FAILED


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
