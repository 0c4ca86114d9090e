"""
Health reporting for the components a resource server depends on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from .circuit import CircuitBreaker, CircuitState
from .client import FacilitatorClient
from .errors import FacilitatorError
from .nonce import NonceTracker

__all__ = [
    "HealthChecker",
    "HealthStatus",
]

_CHECK_NONCE = "0x" + "0" * 64


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    checks: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def failed_checks(self) -> Dict[str, Mapping[str, Any]]:
        return {name: check for name, check in self.checks.items() if not check.get("healthy")}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": {name: dict(check) for name, check in self.checks.items()},
            "timestamp": self.timestamp.isoformat(),
        }


class HealthChecker:
    """
    Runs one check per configured component. The overall status is healthy
    when at least one component was checked and every check passed.
    """

    def __init__(
        self,
        facilitator: Optional[FacilitatorClient] = None,
        *,
        nonce_tracker: Optional[NonceTracker] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.facilitator = facilitator
        self.nonce_tracker = nonce_tracker
        self.circuit_breaker = circuit_breaker
        self._clock = clock

    def check(self) -> HealthStatus:
        checks: Dict[str, Dict[str, Any]] = {}
        if self.facilitator is not None:
            checks["facilitator"] = self._check_facilitator()
        if self.nonce_tracker is not None:
            checks["nonce_tracker"] = self._check_nonce_tracker()
        if self.circuit_breaker is not None:
            checks["circuit_breaker"] = self._check_circuit_breaker()

        healthy = bool(checks) and all(check["healthy"] for check in checks.values())
        status = HealthStatus(healthy=healthy, checks=checks, timestamp=self._clock())
        if not healthy:
            logging.warning("Health check failed: %s", ", ".join(status.failed_checks()) or "nothing checked")
        return status

    def _check_facilitator(self) -> Dict[str, Any]:
        try:
            kinds = self.facilitator.get_supported()
        except FacilitatorError as exc:
            return {"healthy": False, "error": str(exc)}
        return {
            "healthy": True,
            "schemes": len({kind.scheme for kind in kinds}),
            "networks": len({kind.network for kind in kinds}),
        }

    def _check_nonce_tracker(self) -> Dict[str, Any]:
        # Trackers may be backed by external stores with their own error types.
        try:
            self.nonce_tracker.has_nonce(_CHECK_NONCE)
        except Exception as exc:
            return {"healthy": False, "error": str(exc)}
        return {"healthy": True}

    def _check_circuit_breaker(self) -> Dict[str, Any]:
        state = self.circuit_breaker.state
        result: Dict[str, Any] = {"healthy": state is not CircuitState.OPEN, "state": state.value}
        if state is CircuitState.OPEN:
            result["retryAfter"] = self.circuit_breaker.retry_after()
        return result
