"""
Replay protection for EIP-3009 authorization nonces.

A facilitator rejects a nonce that was already settled on-chain, but only
after the resource server has paid for a verify round trip and possibly
served the resource. Recording nonces locally rejects a replayed
``X-PAYMENT`` header during validation instead.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Protocol

from .errors import ValidationError
from .validation import is_valid_nonce

__all__ = [
    "InMemoryNonceTracker",
    "NonceTracker",
]


class NonceTracker(Protocol):
    def has_nonce(self, nonce: str) -> bool:
        """Whether ``nonce`` was recorded and has not expired."""

    def mark_used(self, nonce: str, ttl_seconds: int) -> bool:
        """
        Record ``nonce`` for ``ttl_seconds``.

        Must be atomic: returns ``False`` without changing anything when the
        nonce is already recorded.
        """

    def remove(self, nonce: str) -> bool:
        """Forget ``nonce``; returns whether it was recorded."""


def _check_nonce(nonce: str) -> None:
    if not is_valid_nonce(nonce):
        raise ValidationError(f"invalid nonce format: {nonce!r}", field="nonce")


class InMemoryNonceTracker:
    """
    Process-local :class:`NonceTracker`.

    Expired entries are purged lazily whenever a nonce is recorded. Suitable
    for a single server process; a fleet of servers needs a shared store.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._expires: Dict[str, float] = {}

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for expires in self._expires.values() if expires > now)

    def has_nonce(self, nonce: str) -> bool:
        _check_nonce(nonce)
        key = nonce.lower()
        with self._lock:
            expires = self._expires.get(key)
            return expires is not None and expires > self._clock()

    def mark_used(self, nonce: str, ttl_seconds: int) -> bool:
        _check_nonce(nonce)
        if ttl_seconds <= 0:
            raise ValidationError("TTL must be positive", field="ttl_seconds")
        key = nonce.lower()
        with self._lock:
            now = self._clock()
            self._purge(now)
            if key in self._expires:
                return False
            self._expires[key] = now + ttl_seconds
            return True

    def mark_nonce_used(self, nonce: str, ttl_seconds: int) -> None:
        """Like :meth:`mark_used`, but raise when the nonce was already used."""
        if not self.mark_used(nonce, ttl_seconds):
            raise ValidationError("nonce has already been used", field="nonce")

    def remove(self, nonce: str) -> bool:
        _check_nonce(nonce)
        with self._lock:
            return self._expires.pop(nonce.lower(), None) is not None

    def _purge(self, now: float) -> None:
        expired = [key for key, expires in self._expires.items() if expires <= now]
        for key in expired:
            del self._expires[key]
