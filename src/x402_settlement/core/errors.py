"""
Exception hierarchy shared by every stage of the payment pipeline.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

__all__ = [
    "CircuitOpenError",
    "ComplianceError",
    "ConfigError",
    "ErrorCode",
    "FacilitatorError",
    "SettlementAmbiguousError",
    "ValidationError",
    "WebhookError",
    "X402Error",
]

_BODY_SNIPPET_LENGTH = 500


class ErrorCode:
    """Machine-readable x402 error codes attached to failed outcomes."""

    INVALID_VERSION = "invalid_version"
    INVALID_SCHEME = "invalid_scheme"
    INVALID_NETWORK = "invalid_network"
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_REQUIREMENTS = "invalid_requirements"
    PAYMENT_REQUIRED = "payment_required"
    FACILITATOR_ERROR = "facilitator_error"
    FACILITATOR_VERIFICATION_FAILED = "facilitator_verification_failed"
    SETTLEMENT_FAILED = "settlement_failed"
    SETTLEMENT_AMBIGUOUS = "settlement_ambiguous"
    COMPLIANCE_CHECK_FAILED = "compliance_check_failed"
    ADDRESS_BLOCKED = "address_blocked"
    NONCE_ALREADY_USED = "nonce_already_used"
    CIRCUIT_OPEN = "circuit_open"


class X402Error(Exception):
    """Base class for every error raised by this package."""


class ConfigError(X402Error):
    """Raised when the supplied configuration is invalid."""


class ValidationError(X402Error):
    """
    Raised when protocol data has the wrong shape.

    ``field`` names the offending field (``None`` when the whole document is
    unusable) and ``reason`` is the human readable explanation.
    """

    def __init__(self, reason: str, field: Optional[str] = None) -> None:
        super().__init__(f"{field}: {reason}" if field else reason)
        self.field = field
        self.reason = reason


class WebhookError(ValidationError):
    """Raised when an inbound webhook fails signature or shape checks."""


class ComplianceError(X402Error):
    """
    Raised when a compliance provider cannot complete a check.

    A sanctioned address is *not* an error: it is reported through a blocked
    :class:`~x402_settlement.core.compliance.ComplianceResult`.
    """

    def __init__(
        self,
        message: str = "Compliance check failed",
        *,
        address: str = "",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.address = address
        self.metadata: Dict[str, Any] = dict(metadata or {})


class FacilitatorError(X402Error):
    """
    Raised when talking to the facilitator fails.

    ``status_code`` is set when the facilitator answered (it rejected the
    call); it is ``None`` when the facilitator could not be reached.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body[:_BODY_SNIPPET_LENGTH] if body is not None else None
        self.operation = operation

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "message": str(self),
            "operation": self.operation,
            "statusCode": self.status_code,
            "body": self.body,
        }


class SettlementAmbiguousError(FacilitatorError):
    """
    The settle request reached the wire but no usable answer came back.

    The payment may or may not have been settled on-chain. Retrying risks a
    double settlement; callers should reconcile out-of-band first.
    """


class CircuitOpenError(FacilitatorError):
    """
    Raised instead of calling the facilitator while its circuit breaker is
    open. Nothing was sent, so the call is safe to retry after
    ``retry_after`` seconds.
    """

    def __init__(self, message: str, *, operation: Optional[str] = None, retry_after: float = 0.0) -> None:
        super().__init__(message, operation=operation)
        self.retry_after = retry_after
