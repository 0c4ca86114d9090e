"""
Payment lifecycle events and the synchronous dispatcher that delivers them.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .types import PaymentPayload, PaymentRequirements

__all__ = [
    "EventDispatcher",
    "EventKind",
    "Listener",
    "PaymentEvent",
    "SimpleEventDispatcher",
    "payment_failed",
    "payment_settled",
    "payment_verified",
]


class EventKind(str, enum.Enum):
    VERIFIED = "payment.verified"
    SETTLED = "payment.settled"
    FAILED = "payment.failed"


@dataclass(frozen=True)
class PaymentEvent:
    """
    A closed set of lifecycle notifications discriminated by ``kind``.

    ``transaction_hash`` is only set for SETTLED; ``reason`` and ``error``
    only for FAILED, where ``reason`` is the stage that failed.
    """

    kind: EventKind
    payload: Optional[PaymentPayload]
    requirements: PaymentRequirements
    timestamp: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)
    transaction_hash: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def event_name(self) -> str:
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "event": self.event_name,
            "payload": self.payload.to_dict() if self.payload is not None else None,
            "requirements": self.requirements.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }
        if self.kind is EventKind.SETTLED:
            result["transactionHash"] = self.transaction_hash
        elif self.kind is EventKind.FAILED:
            result["reason"] = self.reason
            result["exception"] = str(self.error) if self.error is not None else None
        return result


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def payment_verified(
    payload: PaymentPayload,
    requirements: PaymentRequirements,
    *,
    metadata: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> PaymentEvent:
    return PaymentEvent(
        kind=EventKind.VERIFIED,
        payload=payload,
        requirements=requirements,
        timestamp=timestamp or _utcnow(),
        metadata=dict(metadata or {}),
    )


def payment_settled(
    payload: PaymentPayload,
    requirements: PaymentRequirements,
    transaction_hash: str,
    *,
    metadata: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> PaymentEvent:
    return PaymentEvent(
        kind=EventKind.SETTLED,
        payload=payload,
        requirements=requirements,
        timestamp=timestamp or _utcnow(),
        metadata=dict(metadata or {}),
        transaction_hash=transaction_hash,
    )


def payment_failed(
    payload: Optional[PaymentPayload],
    requirements: PaymentRequirements,
    reason: str,
    *,
    error: Optional[BaseException] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> PaymentEvent:
    return PaymentEvent(
        kind=EventKind.FAILED,
        payload=payload,
        requirements=requirements,
        timestamp=timestamp or _utcnow(),
        metadata=dict(metadata or {}),
        reason=reason,
        error=error,
    )


Listener = Callable[[PaymentEvent], Any]


class EventDispatcher(Protocol):
    def listen(self, event_name: str, listener: Listener) -> None:
        ...

    def dispatch(self, event: PaymentEvent) -> None:
        ...


class SimpleEventDispatcher:
    """
    Same-thread broadcaster.

    Listeners run in registration order. The first listener that raises
    stops delivery and the exception reaches the caller of ``dispatch``.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def listen(self, event_name: str, listener: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event_name, []).append(listener)

    def dispatch(self, event: PaymentEvent) -> None:
        with self._lock:
            listeners = tuple(self._listeners.get(event.event_name, ()))
        for listener in listeners:
            listener(event)

    def clear_listeners(self, event_name: str) -> None:
        with self._lock:
            self._listeners.pop(event_name, None)

    def clear_all_listeners(self) -> None:
        with self._lock:
            self._listeners.clear()
