"""
Sanctions / AML screening contract consumed by the payment pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, runtime_checkable

__all__ = [
    "ComplianceCheck",
    "ComplianceResult",
    "DenylistComplianceCheck",
]


@dataclass(frozen=True)
class ComplianceResult:
    blocked: bool
    reason: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class ComplianceCheck(Protocol):
    """
    Screening provider.

    ``check_address`` reports a sanctioned address through a blocked result
    and only raises :class:`~x402_settlement.core.errors.ComplianceError`
    when the screening itself could not be carried out. ``is_compliant`` is
    the boolean view of the same check. ``get_compliance_status`` returns
    free-form audit detail and is never used for control flow.
    """

    def check_address(self, address: str, network: str) -> ComplianceResult:
        ...

    def is_compliant(self, address: str, network: str) -> bool:
        ...

    def get_compliance_status(self, address: str, network: str) -> Dict[str, Any]:
        ...


class DenylistComplianceCheck:
    """
    In-process screening against a fixed set of addresses.

    Addresses are compared case-insensitively. ``per_network`` entries only
    apply on their network; ``addresses`` apply everywhere.
    """

    def __init__(
        self,
        addresses: Iterable[str] = (),
        *,
        per_network: Optional[Mapping[str, Iterable[str]]] = None,
        source: str = "static-denylist",
    ) -> None:
        self._global = frozenset(address.lower() for address in addresses)
        self._per_network = {
            network: frozenset(address.lower() for address in entries)
            for network, entries in (per_network or {}).items()
        }
        self.source = source

    def _is_listed(self, address: str, network: str) -> bool:
        candidate = address.lower()
        return candidate in self._global or candidate in self._per_network.get(network, ())

    def check_address(self, address: str, network: str) -> ComplianceResult:
        metadata = {"address": address, "network": network, "source": self.source}
        if self._is_listed(address, network):
            return ComplianceResult(
                blocked=True,
                reason="address appears on sanctions denylist",
                metadata=metadata,
            )
        return ComplianceResult(blocked=False, metadata=metadata)

    def is_compliant(self, address: str, network: str) -> bool:
        return not self.check_address(address, network).blocked

    def get_compliance_status(self, address: str, network: str) -> Dict[str, Any]:
        result = self.check_address(address, network)
        return {
            "address": address,
            "network": network,
            "blocked": result.blocked,
            "reason": result.reason,
            "source": self.source,
        }
