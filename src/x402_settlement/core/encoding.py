"""
Helpers for the base64 JSON envelopes carried in x402 HTTP headers.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Mapping

from .errors import ValidationError
from .types import PaymentPayload, SettlementResult
from .validation import validate_payment_payload

__all__ = [
    "PAYMENT_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "decode_payment_header",
    "encode_json_header",
    "encode_payment_header",
    "encode_payment_response",
]

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


def encode_json_header(data: Mapping[str, Any]) -> str:
    body = json.dumps(dict(data), separators=(",", ":"))
    return base64.b64encode(body.encode("utf-8")).decode("ascii")


def encode_payment_header(payload: PaymentPayload) -> str:
    return encode_json_header(payload.to_dict())


def encode_payment_response(settlement: SettlementResult) -> str:
    """Value for the ``X-PAYMENT-RESPONSE`` header returned to the payer."""
    return encode_json_header(settlement.to_dict())


def decode_payment_header(header: str) -> PaymentPayload:
    """
    Decode and structurally validate an ``X-PAYMENT`` header value.

    Raises :class:`ValidationError` for empty input, bad base64, bad JSON,
    a non-object document or a payload that fails
    :func:`~x402_settlement.core.validation.validate_payment_payload`.
    """
    if not isinstance(header, str) or not header.strip():
        raise ValidationError("payment header is empty", field=PAYMENT_HEADER)

    try:
        raw = base64.b64decode(header.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(
            "invalid base64 encoding in payment header", field=PAYMENT_HEADER
        ) from exc

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(
            f"invalid JSON in payment header: {exc}", field=PAYMENT_HEADER
        ) from exc

    if not isinstance(data, dict):
        raise ValidationError("payment header must decode to an object", field=PAYMENT_HEADER)

    validate_payment_payload(data)
    return PaymentPayload.from_mapping(data)
