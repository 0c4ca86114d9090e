"""
Format checks and sanitisers for x402 protocol data.

Everything in this module is pure: no I/O, no logging, no shared state.
"""

from __future__ import annotations

import base64
import binascii
import html
import re
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from eth_utils import is_hex_address

from .errors import ValidationError

__all__ = [
    "SUPPORTED_NETWORKS",
    "SUPPORTED_SCHEMES",
    "UINT256_MAX",
    "is_evm_network",
    "is_supported_scheme",
    "is_svm_network",
    "is_valid_address",
    "is_valid_network",
    "is_valid_nonce",
    "is_valid_uint_string",
    "sanitize_string",
    "sanitize_url",
    "validate_eip712_domain",
    "validate_payment_payload",
    "validate_payment_requirements",
]

SUPPORTED_NETWORKS = (
    "ethereum-mainnet",
    "ethereum-sepolia",
    "ethereum-holesky",
    "base",
    "base-mainnet",
    "base-sepolia",
    "optimism-mainnet",
    "optimism-sepolia",
    "arbitrum-mainnet",
    "arbitrum-sepolia",
    "polygon-mainnet",
    "polygon-amoy",
    "avalanche",
    "avalanche-fuji",
    "bsc",
    "solana-mainnet",
    "solana-devnet",
    "solana-testnet",
)

SUPPORTED_SCHEMES = ("exact",)

UINT256_MAX = 2**256 - 1
_UINT256_MAX_DIGITS = len(str(UINT256_MAX))

_UINT_RE = re.compile(r"0|[1-9][0-9]*")
_DIGITS_RE = re.compile(r"[0-9]+")
_SOLANA_ADDRESS_RE = re.compile(r"[1-9A-HJ-NP-Za-km-z]{32,44}")
_NONCE_RE = re.compile(r"0x[0-9a-fA-F]{64}")
_EVM_SIGNATURE_RE = re.compile(r"0x[0-9a-fA-F]{130}")
_BASE64_RE = re.compile(r"[A-Za-z0-9+/]+=*")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_CAMEL_BOUNDARY_RE = re.compile(r"(?<!^)(?=[A-Z])")

_REQUIRED_REQUIREMENT_FIELDS = (
    "scheme",
    "network",
    "maxAmountRequired",
    "resource",
    "description",
    "mimeType",
    "payTo",
    "maxTimeoutSeconds",
    "asset",
)
_REQUIRED_AUTHORIZATION_FIELDS = (
    "from",
    "to",
    "value",
    "validAfter",
    "validBefore",
    "nonce",
)

_SVM_TRANSACTION_MIN_BYTES = 100
_SVM_TRANSACTION_MAX_BYTES = 1500
_EIP712_NAME_MAX = 100
_EIP712_VERSION_MAX = 20


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", name).lower()


def _lookup(data: Mapping[str, Any], name: str) -> Any:
    """Read ``name`` accepting either its camelCase or snake_case spelling."""
    value = data.get(name)
    if value is None:
        value = data.get(_snake_case(name))
    return value


def is_svm_network(network: str) -> bool:
    return network.startswith("solana")


def is_evm_network(network: str) -> bool:
    return not is_svm_network(network)


def is_valid_network(network: str) -> bool:
    return network in SUPPORTED_NETWORKS


def is_supported_scheme(scheme: str) -> bool:
    return scheme in SUPPORTED_SCHEMES


def is_valid_address(address: Any, network: str) -> bool:
    """
    Check ``address`` against the address grammar of ``network``.

    EVM addresses must carry the ``0x`` prefix followed by exactly 40 hex
    characters (any case). Solana addresses are base58, 32-44 characters.
    """
    if not isinstance(address, str) or not isinstance(network, str):
        return False
    if is_svm_network(network):
        return _SOLANA_ADDRESS_RE.fullmatch(address) is not None
    return address.startswith("0x") and is_hex_address(address)


def is_valid_uint_string(value: Any) -> bool:
    """
    True for ``"0"`` or a run of digits without a leading zero that fits in
    a uint256.
    """
    if not isinstance(value, str) or _UINT_RE.fullmatch(value) is None:
        return False
    if len(value) > _UINT256_MAX_DIGITS:
        return False
    return int(value) <= UINT256_MAX


def is_valid_nonce(nonce: Any) -> bool:
    return isinstance(nonce, str) and _NONCE_RE.fullmatch(nonce) is not None


def _is_http_url(value: Any) -> bool:
    if not isinstance(value, str) or not value or value != value.strip():
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme.lower() in ("http", "https") and bool(parsed.netloc)


def _is_positive_int(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value > 0
    if isinstance(value, str) and _DIGITS_RE.fullmatch(value) is not None:
        return int(value) > 0
    return False


def validate_payment_requirements(data: Mapping[str, Any]) -> None:
    """
    Raise :class:`ValidationError` unless ``data`` describes well-formed
    payment requirements.
    """
    for name in _REQUIRED_REQUIREMENT_FIELDS:
        value = _lookup(data, name)
        if value is None or value == "":
            raise ValidationError("missing required field", field=name)

    payment_id = data.get("id")
    if payment_id is not None and (not isinstance(payment_id, str) or not payment_id.strip()):
        raise ValidationError("payment id must be a non-empty string", field="id")

    network = _lookup(data, "network")
    if not is_valid_network(network):
        raise ValidationError(f"unsupported network '{network}'", field="network")

    scheme = _lookup(data, "scheme")
    if not is_supported_scheme(scheme):
        raise ValidationError(f"unsupported payment scheme '{scheme}'", field="scheme")

    if not is_valid_uint_string(_lookup(data, "maxAmountRequired")):
        raise ValidationError(
            "must be a valid unsigned integer string", field="maxAmountRequired"
        )

    address_kind = "Solana" if is_svm_network(network) else "EVM"
    if not is_valid_address(_lookup(data, "payTo"), network):
        raise ValidationError(f"must be a valid {address_kind} address", field="payTo")
    if not is_valid_address(_lookup(data, "asset"), network):
        raise ValidationError(
            f"must be a valid {address_kind} token address", field="asset"
        )

    if not _is_http_url(_lookup(data, "resource")):
        raise ValidationError("must be an absolute http(s) URL", field="resource")

    if not _is_positive_int(_lookup(data, "maxTimeoutSeconds")):
        raise ValidationError("must be a positive integer", field="maxTimeoutSeconds")


def validate_eip712_domain(extra: Optional[Mapping[str, Any]]) -> None:
    """Check the EIP-712 ``name``/``version`` carried in ``extra``."""
    extra = extra or {}
    for key, limit in (("name", _EIP712_NAME_MAX), ("version", _EIP712_VERSION_MAX)):
        value = extra.get(key)
        if not isinstance(value, str):
            raise ValidationError("EIP-712 domain value required", field=f"extra.{key}")
        value = value.strip()
        if not value:
            raise ValidationError("EIP-712 domain value cannot be empty", field=f"extra.{key}")
        if len(value) > limit:
            raise ValidationError(
                f"EIP-712 domain value is too long (max {limit} characters)",
                field=f"extra.{key}",
            )


def _validate_exact_evm_payload(payload: Any) -> None:
    if not isinstance(payload, Mapping):
        raise ValidationError("exact EVM payload must be an object", field="payload")

    signature = payload.get("signature")
    if not isinstance(signature, str) or _EVM_SIGNATURE_RE.fullmatch(signature) is None:
        raise ValidationError(
            "must be a 65-byte hex string", field="payload.signature"
        )

    authorization = payload.get("authorization")
    if not isinstance(authorization, Mapping):
        raise ValidationError("must be an object", field="payload.authorization")

    for name in _REQUIRED_AUTHORIZATION_FIELDS:
        if _lookup(authorization, name) is None:
            raise ValidationError(
                "missing required field", field=f"payload.authorization.{name}"
            )

    for name in ("from", "to"):
        if not is_valid_address(authorization[name], "ethereum-mainnet"):
            raise ValidationError(
                "must be a valid EVM address", field=f"payload.authorization.{name}"
            )
    for name in ("value", "validAfter", "validBefore"):
        if not is_valid_uint_string(_lookup(authorization, name)):
            raise ValidationError(
                "must be a valid unsigned integer string",
                field=f"payload.authorization.{name}",
            )
    if not is_valid_nonce(authorization["nonce"]):
        raise ValidationError(
            "must be a 32-byte hex string", field="payload.authorization.nonce"
        )


def _validate_exact_svm_payload(payload: Any) -> None:
    if not isinstance(payload, Mapping):
        raise ValidationError("exact SVM payload must be an object", field="payload")

    transaction = payload.get("transaction")
    if not isinstance(transaction, str) or not transaction:
        raise ValidationError("missing Solana transaction", field="payload.transaction")
    if _BASE64_RE.fullmatch(transaction) is None:
        raise ValidationError("must be base64 encoded", field="payload.transaction")
    try:
        raw = base64.b64decode(transaction, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("must be base64 encoded", field="payload.transaction") from exc
    if not _SVM_TRANSACTION_MIN_BYTES <= len(raw) <= _SVM_TRANSACTION_MAX_BYTES:
        raise ValidationError(
            f"transaction must be {_SVM_TRANSACTION_MIN_BYTES}-"
            f"{_SVM_TRANSACTION_MAX_BYTES} bytes",
            field="payload.transaction",
        )


def validate_payment_payload(data: Mapping[str, Any]) -> None:
    """Raise :class:`ValidationError` unless ``data`` is a usable payment payload."""
    for name in ("x402Version", "scheme", "network", "payload"):
        if _lookup(data, name) is None:
            raise ValidationError("missing required field", field=name)

    version = _lookup(data, "x402Version")
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ValidationError("must be a positive integer", field="x402Version")

    scheme = data["scheme"]
    network = data["network"]
    if not is_supported_scheme(scheme):
        raise ValidationError(f"unsupported payment scheme '{scheme}'", field="scheme")
    if not isinstance(network, str):
        raise ValidationError("must be a string", field="network")

    if is_svm_network(network):
        _validate_exact_svm_payload(data["payload"])
    else:
        _validate_exact_evm_payload(data["payload"])


def sanitize_string(value: str, max_length: int = 1000) -> str:
    """
    Strip control characters, truncate to ``max_length`` and HTML-escape.

    Not idempotent: escaping an already escaped string escapes the
    ampersands again. Sanitise each value exactly once.
    """
    cleaned = _CONTROL_CHARS_RE.sub("", value)
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return html.escape(cleaned, quote=True)


def sanitize_url(url: str) -> str:
    """Return ``url`` unchanged if it is an absolute http(s) URL."""
    if not _is_http_url(url):
        raise ValidationError("invalid URL format, expected an absolute http(s) URL", field="url")
    return url
