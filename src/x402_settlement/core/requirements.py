"""
Resource-server helpers around payment requirements and the 402 response.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence, Union

from .encoding import PAYMENT_HEADER
from .types import X402_VERSION, PaymentRequirements
from .validation import (
    is_evm_network,
    sanitize_string,
    validate_eip712_domain,
    validate_payment_requirements,
)

__all__ = [
    "create_payment_requirements",
    "extract_payment_header",
    "payment_required_response",
]


def create_payment_requirements(
    *,
    pay_to: str,
    amount: str,
    resource: str,
    description: str,
    asset: str,
    network: str = "base-sepolia",
    scheme: str = "exact",
    max_timeout_seconds: int = 300,
    mime_type: str = "application/json",
    extra: Optional[Mapping[str, Any]] = None,
    payment_id: Optional[str] = None,
) -> PaymentRequirements:
    """
    Build validated requirements for a protected resource.

    ``amount`` is in atomic units of ``asset`` (``"1000000"`` is one USDC).
    ``description`` is HTML-escaped once here; do not escape it again.
    """
    requirements = PaymentRequirements(
        scheme=scheme,
        network=network,
        max_amount_required=amount,
        resource=resource,
        description=sanitize_string(description),
        mime_type=mime_type,
        pay_to=pay_to,
        max_timeout_seconds=max_timeout_seconds,
        asset=asset,
        extra=dict(extra or {}),
        id=payment_id,
    )
    validate_payment_requirements(requirements.to_dict())
    if extra and is_evm_network(network):
        validate_eip712_domain(extra)
    return requirements


def payment_required_response(
    accepts: Union[PaymentRequirements, Sequence[PaymentRequirements]],
    error: str = "",
) -> Dict[str, Any]:
    """JSON body for an HTTP 402 answer."""
    if isinstance(accepts, PaymentRequirements):
        accepts = [accepts]
    return {
        "x402Version": X402_VERSION,
        "accepts": [requirements.to_dict() for requirements in accepts],
        "error": error,
    }


def extract_payment_header(headers: Mapping[str, Any]) -> Optional[str]:
    """
    Find the ``X-PAYMENT`` header in ``headers`` regardless of case.

    Multi-valued headers (lists) yield their first value.
    """
    wanted = PAYMENT_HEADER.lower()
    for key, value in headers.items():
        if key.lower() != wanted:
            continue
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value
    return None
