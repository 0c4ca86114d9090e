"""
Signed webhook notifications for payment outcomes.

Outbound: :func:`build_webhook_payload` turns a pipeline event into a JSON
body and :meth:`WebhookHandler.sign_payload` produces the hex HMAC-SHA256
signature to send alongside it. Inbound: :meth:`WebhookHandler.handle`
checks the signature and parses the body back into a :class:`WebhookEvent`.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union

from .errors import ConfigError, WebhookError
from .events import EventKind, PaymentEvent

if TYPE_CHECKING:
    from .config import GatewayConfig

__all__ = [
    "SIGNATURE_HEADER",
    "WebhookEvent",
    "WebhookHandler",
    "build_webhook_payload",
]

SIGNATURE_HEADER = "X-Webhook-Signature"

_WEBHOOK_EVENTS = (EventKind.SETTLED.value, EventKind.FAILED.value)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


@dataclass(frozen=True)
class WebhookEvent:
    event: str
    data: Mapping[str, Any]
    timestamp: datetime

    @property
    def payment_id(self) -> Optional[str]:
        return _first(self.data, "paymentId", "payment_id")

    @property
    def transaction_hash(self) -> Optional[str]:
        if self.event != EventKind.SETTLED.value:
            return None
        return _first(self.data, "transactionHash", "transaction_hash")

    @property
    def failure_reason(self) -> Optional[str]:
        if self.event != EventKind.FAILED.value:
            return None
        return _first(self.data, "reason", "error")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "data": dict(self.data),
            "timestamp": self.timestamp.isoformat(),
        }


def build_webhook_payload(event: PaymentEvent) -> Dict[str, Any]:
    """
    Shape a settled or failed pipeline event as a webhook document.

    Verified events are internal milestones and are not published.
    """
    if event.kind is EventKind.VERIFIED:
        raise WebhookError(f"{event.event_name} events are not published as webhooks", field="event")

    requirements = event.requirements
    data: Dict[str, Any] = {
        "paymentId": requirements.id,
        "network": requirements.network,
        "scheme": requirements.scheme,
        "payTo": requirements.pay_to,
        "amount": requirements.max_amount_required,
        "resource": requirements.resource,
    }
    if event.payload is not None and event.payload.payer:
        data["payer"] = event.payload.payer
    if event.kind is EventKind.SETTLED:
        data["transactionHash"] = event.transaction_hash
    else:
        data["reason"] = event.reason
        if event.error is not None:
            data["error"] = str(event.error)

    return {
        "event": event.event_name,
        "data": {key: value for key, value in data.items() if value is not None},
        "timestamp": event.timestamp.isoformat(),
    }


def _parse_timestamp(raw: Any) -> datetime:
    if raw is None:
        return datetime.now(timezone.utc)
    if not isinstance(raw, str):
        raise WebhookError("timestamp must be an ISO 8601 string", field="timestamp")
    value = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise WebhookError(f"invalid timestamp '{raw}'", field="timestamp") from exc


class WebhookHandler:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ConfigError("Webhook secret cannot be empty")
        self._secret = secret.encode("utf-8")

    @classmethod
    def from_config(cls, config: "GatewayConfig") -> "WebhookHandler":
        if not config.webhook_secret:
            raise ConfigError("X402_WEBHOOK_SECRET is required to sign or verify webhooks")
        return cls(config.webhook_secret)

    def sign_payload(self, body: Union[str, bytes]) -> str:
        if isinstance(body, str):
            body = body.encode("utf-8")
        return hmac.new(self._secret, body, hashlib.sha256).hexdigest()

    def verify_signature(self, body: Union[str, bytes], signature: Union[str, bytes, None]) -> bool:
        if not signature:
            return False
        if isinstance(signature, str):
            signature = signature.encode("utf-8", "surrogatepass")
        if not isinstance(signature, bytes):
            return False
        return hmac.compare_digest(self.sign_payload(body).encode("ascii"), signature)

    def serialize(self, event: PaymentEvent) -> Dict[str, str]:
        """Body and signature header for posting ``event`` to a subscriber."""
        body = json.dumps(build_webhook_payload(event), separators=(",", ":"), sort_keys=True)
        return {"body": body, SIGNATURE_HEADER: self.sign_payload(body)}

    def handle(self, body: Union[str, bytes], signature: Optional[str]) -> WebhookEvent:
        if not self.verify_signature(body, signature):
            raise WebhookError("invalid webhook signature", field=SIGNATURE_HEADER)

        try:
            document = json.loads(body)
        except ValueError as exc:
            raise WebhookError(f"invalid JSON in webhook payload: {exc}") from exc
        if not isinstance(document, dict):
            raise WebhookError("webhook payload must be an object")

        event = document.get("event")
        if event is None:
            raise WebhookError("webhook payload missing event field", field="event")
        if event not in _WEBHOOK_EVENTS:
            raise WebhookError(f"unknown webhook event type '{event}'", field="event")

        data = document.get("data", document)
        if not isinstance(data, Mapping):
            raise WebhookError("webhook data must be an object", field="data")

        return WebhookEvent(
            event=event,
            data=dict(data),
            timestamp=_parse_timestamp(document.get("timestamp")),
        )

    @staticmethod
    def extract_signature(
        headers: Mapping[str, Any], header_name: str = SIGNATURE_HEADER
    ) -> Optional[str]:
        """
        Find the signature header, also under its CGI spelling
        (``HTTP_X_WEBHOOK_SIGNATURE``).
        """
        wanted = {
            header_name.lower(),
            "http_" + header_name.replace("-", "_").lower(),
        }
        for key, value in headers.items():
            if key.lower() not in wanted:
                continue
            if isinstance(value, (list, tuple)):
                return value[0] if value else None
            return value
        return None
