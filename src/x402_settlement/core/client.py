"""
HTTP client for the x402 facilitator protocol.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse

import requests
from urllib3.exceptions import MaxRetryError, ProtocolError

from .circuit import CircuitBreaker
from .encoding import decode_payment_header
from .errors import FacilitatorError, SettlementAmbiguousError, ValidationError
from .types import (
    PaymentRequirements,
    SettlementResult,
    SupportedKind,
    VerificationResult,
)

if TYPE_CHECKING:
    from .config import GatewayConfig

__all__ = [
    "DEFAULT_TIMEOUT",
    "FacilitatorClient",
]

DEFAULT_TIMEOUT = 30

RequirementsLike = Union[PaymentRequirements, Mapping[str, Any]]


def _validate_base_url(base_url: str) -> str:
    try:
        parsed = urlparse(base_url) if isinstance(base_url, str) else None
    except ValueError:
        parsed = None
    if parsed is None or not parsed.scheme or not parsed.netloc:
        raise FacilitatorError(f"Invalid facilitator base URL: {base_url!r}")
    if parsed.scheme.lower() != "https":
        raise FacilitatorError(
            f"Facilitator URL must use HTTPS, got scheme '{parsed.scheme}'"
        )
    return base_url.rstrip("/")


def _request_was_sent(exc: requests.RequestException) -> bool:
    """
    Whether ``exc`` happened after the request left this process.

    Connection setup failures (DNS, refused, TLS handshake, connect timeout)
    are safe to report as "not sent"; a read timeout or a connection dropped
    mid-exchange is not.
    """
    if isinstance(
        exc,
        (
            requests.exceptions.ReadTimeout,
            requests.exceptions.ChunkedEncodingError,
            requests.exceptions.ContentDecodingError,
        ),
    ):
        return True
    if isinstance(
        exc,
        (
            requests.exceptions.ConnectTimeout,
            requests.exceptions.SSLError,
            requests.exceptions.ProxyError,
        ),
    ):
        return False
    if isinstance(exc, requests.exceptions.ConnectionError):
        reason = exc.args[0] if exc.args else None
        if isinstance(reason, MaxRetryError):
            reason = reason.reason
        return isinstance(reason, ProtocolError)
    return False


def _coerce_requirements(requirements: RequirementsLike) -> PaymentRequirements:
    if isinstance(requirements, PaymentRequirements):
        return requirements
    if isinstance(requirements, Mapping):
        return PaymentRequirements.from_mapping(requirements)
    raise TypeError(
        f"requirements must be PaymentRequirements or a mapping, got {type(requirements).__name__}"
    )


class FacilitatorClient:
    """
    Talks to a facilitator's ``/supported``, ``/verify`` and ``/settle``
    endpoints.

    The base URL is checked at construction so a misconfigured deployment
    fails on startup rather than on its first paying customer. ``verify`` is
    read-only on the facilitator side and may be repeated; ``settle`` moves
    funds and must be called at most once per verified payment.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        api_key: Optional[str] = None,
        api_key_header: str = "Authorization",
        session: Optional[requests.Session] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.base_url = _validate_base_url(base_url)
        if timeout is not None and timeout <= 0:
            raise FacilitatorError(f"Facilitator timeout must be positive, got {timeout}")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.circuit_breaker = circuit_breaker
        self._headers: Dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if api_key:
            if api_key_header.lower() == "authorization":
                self._headers[api_key_header] = f"Bearer {api_key}"
            else:
                self._headers[api_key_header] = api_key

    @classmethod
    def from_config(
        cls,
        config: "GatewayConfig",
        *,
        session: Optional[requests.Session] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> "FacilitatorClient":
        return cls(
            config.facilitator_url,
            timeout=config.timeout_seconds,
            api_key=config.api_key,
            api_key_header=config.api_key_header,
            session=session,
            circuit_breaker=circuit_breaker,
        )

    def _decode_response(
        self, response: requests.Response, url: str, operation: str
    ) -> Any:
        if not 200 <= response.status_code < 300:
            logging.warning(
                "Facilitator %s at %s responded with %s", operation, url, response.status_code
            )
            raise FacilitatorError(
                f"Facilitator responded with {response.status_code} during {operation}",
                status_code=response.status_code,
                body=response.text,
                operation=operation,
            )
        try:
            return response.json()
        except ValueError as exc:
            error_cls = SettlementAmbiguousError if operation == "settle" else FacilitatorError
            raise error_cls(
                f"Failed to parse JSON from facilitator at {url}",
                status_code=response.status_code,
                body=response.text,
                operation=operation,
            ) from exc

    def _send(
        self,
        method: str,
        path: str,
        operation: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if self.circuit_breaker is None:
            return self._exchange(method, path, operation, body)
        return self.circuit_breaker.call(
            lambda: self._exchange(method, path, operation, body), operation=operation
        )

    def _exchange(
        self,
        method: str,
        path: str,
        operation: str,
        body: Optional[Dict[str, Any]],
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            if method == "GET":
                response = self.session.get(url, headers=self._headers, timeout=self.timeout)
            else:
                response = self.session.post(
                    url, json=body, headers=self._headers, timeout=self.timeout
                )
        except requests.RequestException as exc:
            if operation == "settle" and _request_was_sent(exc):
                logging.error("Settlement outcome unknown after transport failure: %s", exc)
                raise SettlementAmbiguousError(
                    f"Settlement request to {url} failed after it was sent: {exc}",
                    operation=operation,
                ) from exc
            logging.warning("Facilitator %s request to %s failed: %s", operation, url, exc)
            raise FacilitatorError(
                f"Failed to reach facilitator during {operation}: {exc}",
                operation=operation,
            ) from exc
        return self._decode_response(response, url, operation)

    def _payment_body(
        self, payment_header: str, requirements: RequirementsLike
    ) -> Dict[str, Any]:
        try:
            payload = decode_payment_header(payment_header)
        except ValidationError as exc:
            raise FacilitatorError(f"Invalid payment header: {exc}") from exc
        return {
            "x402Version": payload.x402_version,
            "paymentPayload": payload.to_dict(),
            "paymentRequirements": _coerce_requirements(requirements).to_dict(),
        }

    def get_supported(self) -> List[SupportedKind]:
        """Return the scheme/network pairs the facilitator can handle."""
        url = f"{self.base_url}/supported"
        logging.info("Fetching supported payment kinds from %s", url)
        data = self._send("GET", "/supported", "supported")
        kinds = data.get("kinds") if isinstance(data, dict) else data
        if not isinstance(kinds, list):
            raise FacilitatorError(
                "Invalid response from facilitator: expected a list of kinds",
                body=str(data),
                operation="supported",
            )
        try:
            return [SupportedKind.from_mapping(kind) for kind in kinds]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise FacilitatorError(
                f"Invalid supported kind in facilitator response: {exc}",
                body=str(data),
                operation="supported",
            ) from exc

    def verify(
        self, payment_header: str, requirements: RequirementsLike
    ) -> VerificationResult:
        body = self._payment_body(payment_header, requirements)
        logging.info("Submitting payment for verification to %s/verify", self.base_url)
        data = self._send("POST", "/verify", "verify", body)
        if not isinstance(data, dict):
            raise FacilitatorError(
                "Invalid response from facilitator", body=str(data), operation="verify"
            )
        return VerificationResult.from_response(data)

    def settle(
        self, payment_header: str, requirements: RequirementsLike
    ) -> SettlementResult:
        body = self._payment_body(payment_header, requirements)
        logging.info("Submitting payment for settlement to %s/settle", self.base_url)
        data = self._send("POST", "/settle", "settle", body)
        if not isinstance(data, dict):
            raise SettlementAmbiguousError(
                "Invalid response from facilitator", body=str(data), operation="settle"
            )
        return SettlementResult.from_response(data)
