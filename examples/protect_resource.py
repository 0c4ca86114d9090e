"""
Minimal resource-server flow built on the public API.

Without ``--header`` the script prints the 402 body a client would receive.
With it, the header is run through the pipeline and the ``X-PAYMENT-RESPONSE``
value is printed on success.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from x402_settlement import (
    ConfigError,
    InMemoryMetrics,
    create_payment_requirements,
    create_pipeline,
    payment_required_response,
)
from x402_settlement.core.encoding import PAYMENT_RESPONSE_HEADER, encode_payment_response
from x402_settlement.core.events import EventKind


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Protect a resource with an x402 payment")
    parser.add_argument("--env-file", default=".env", help="Path to the .env file with X402_* settings")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO)")
    parser.add_argument("--header", help="X-PAYMENT header presented by the client")
    parser.add_argument("--pay-to", required=True, help="Address receiving the payment")
    parser.add_argument("--asset", required=True, help="Token contract address")
    parser.add_argument("--amount", default="10000", help="Price in atomic token units")
    parser.add_argument("--network", default="base-sepolia", help="Network identifier")
    parser.add_argument(
        "--resource",
        default="https://example.com/protected-resource",
        help="URL of the protected resource",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    requirements = create_payment_requirements(
        pay_to=args.pay_to,
        amount=args.amount,
        resource=args.resource,
        description="Example x402-protected resource",
        asset=args.asset,
        network=args.network,
        extra={"name": "USDC", "version": "2"},
    )
    if not args.header:
        print(json.dumps(payment_required_response(requirements), indent=2))
        return 0

    metrics = InMemoryMetrics()
    try:
        pipeline = create_pipeline(env_file=args.env_file, metrics=metrics)
    except ConfigError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    pipeline.dispatcher.listen(
        EventKind.SETTLED.value,
        lambda event: logging.info("Settled in %s", event.transaction_hash),
    )
    outcome = pipeline.process(args.header, requirements)
    logging.info("Pipeline metrics: %s", metrics.get_metrics()["counters"])

    if not outcome.succeeded:
        print(json.dumps(payment_required_response(requirements, error=outcome.error_code or ""), indent=2))
        return 2 if outcome.settlement_ambiguous else 1

    print(f"{PAYMENT_RESPONSE_HEADER}: {encode_payment_response(outcome.settlement)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
