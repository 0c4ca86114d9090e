"""
Value objects exchanged with the facilitator and between pipeline stages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, NamedTuple, Optional

__all__ = [
    "X402_VERSION",
    "PaymentPayload",
    "PaymentRequirements",
    "SettlementResult",
    "SupportedKind",
    "VerificationResult",
]

X402_VERSION = 1


def _first(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _mapping(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _seconds(value: Any) -> int:
    text = str(value)
    return int(text) if text.isascii() and text.isdigit() else 0


@dataclass(frozen=True)
class PaymentRequirements:
    """
    What a resource server accepts in exchange for a specific resource.

    Amounts are atomic token units kept as decimal strings so that uint256
    values survive JSON round trips untouched.
    """

    scheme: str
    network: str
    max_amount_required: str
    resource: str
    description: str
    mime_type: str
    pay_to: str
    max_timeout_seconds: int
    asset: str
    extra: Mapping[str, Any] = field(default_factory=dict)
    output_schema: Optional[Mapping[str, Any]] = None
    id: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PaymentRequirements":
        """Build from wire data, accepting camelCase or snake_case keys."""
        timeout = _first(data, "maxTimeoutSeconds", "max_timeout_seconds", default=0)
        return cls(
            scheme=_first(data, "scheme", default=""),
            network=_first(data, "network", default=""),
            max_amount_required=str(
                _first(data, "maxAmountRequired", "max_amount_required", default="")
            ),
            resource=_first(data, "resource", default=""),
            description=_first(data, "description", default=""),
            mime_type=_first(data, "mimeType", "mime_type", default=""),
            pay_to=_first(data, "payTo", "pay_to", default=""),
            max_timeout_seconds=_seconds(timeout),
            asset=_first(data, "asset", default=""),
            extra=_mapping(_first(data, "extra")),
            output_schema=_mapping(_first(data, "outputSchema", "output_schema")) or None,
            id=data.get("id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "extra": dict(self.extra),
        }
        if self.output_schema is not None:
            result["outputSchema"] = dict(self.output_schema)
        if self.id is not None:
            result["id"] = self.id
        return result


@dataclass(frozen=True)
class PaymentPayload:
    """The decoded contents of the payer's ``X-PAYMENT`` header."""

    x402_version: int
    scheme: str
    network: str
    payload: Mapping[str, Any]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PaymentPayload":
        return cls(
            x402_version=int(_first(data, "x402Version", "x402_version", default=X402_VERSION)),
            scheme=_first(data, "scheme", default=""),
            network=_first(data, "network", default=""),
            payload=_mapping(_first(data, "payload")),
        )

    @property
    def payer(self) -> Optional[str]:
        """The authorising address for EVM payloads, ``None`` otherwise."""
        authorization = self.payload.get("authorization")
        if isinstance(authorization, Mapping):
            return authorization.get("from")
        return None

    @property
    def nonce(self) -> Optional[str]:
        authorization = self.payload.get("authorization")
        if isinstance(authorization, Mapping):
            return authorization.get("nonce")
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x402Version": self.x402_version,
            "scheme": self.scheme,
            "network": self.network,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    invalid_reason: Optional[str]
    payer: Optional[str]
    details: Optional[Mapping[str, Any]]
    raw: Dict[str, Any]

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "VerificationResult":
        return cls(
            is_valid=bool(_first(payload, "isValid", "is_valid", default=False)),
            invalid_reason=_first(payload, "invalidReason", "invalid_reason"),
            payer=payload.get("payer"),
            details=payload.get("details"),
            raw=payload,
        )


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    transaction: Optional[str]
    network: Optional[str]
    payer: Optional[str]
    error_reason: Optional[str]
    raw: Dict[str, Any]

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "SettlementResult":
        return cls(
            success=bool(payload.get("success")),
            transaction=_first(
                payload, "transactionHash", "transaction", "txHash", "tx_hash"
            ),
            network=_first(payload, "network", "networkId", "network_id"),
            payer=payload.get("payer"),
            error_reason=_first(payload, "errorReason", "error_reason", "error"),
            raw=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "transaction": self.transaction,
            "network": self.network,
            "payer": self.payer,
            "errorReason": self.error_reason,
        }
        return {key: value for key, value in result.items() if value is not None}


class SupportedKind(NamedTuple):
    """One scheme/network pair advertised by a facilitator."""

    x402_version: int
    scheme: str
    network: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SupportedKind":
        return cls(
            x402_version=int(_first(data, "x402Version", "x402_version", default=X402_VERSION)),
            scheme=str(data["scheme"]),
            network=str(data["network"]),
        )
