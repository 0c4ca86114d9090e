"""
High-level helpers for wiring a facilitator client and payment pipeline.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Union

import requests

from .core.circuit import CircuitBreaker
from .core.client import FacilitatorClient
from .core.compliance import ComplianceCheck
from .core.config import GatewayConfig, load_gateway_config
from .core.events import EventDispatcher
from .core.metrics import Metrics
from .core.nonce import NonceTracker
from .core.pipeline import PaymentOutcome, PaymentPipeline
from .core.types import PaymentRequirements

__all__ = [
    "create_facilitator_client",
    "create_pipeline",
    "process_payment",
]


def _resolve_config(
    config: Optional[GatewayConfig],
    *,
    env_file: Optional[str],
    overrides: Optional[Mapping[str, str]],
    base: Optional[Mapping[str, str]],
    facilitator_url: Optional[str],
    api_key: Optional[str],
) -> GatewayConfig:
    if config is None:
        return load_gateway_config(
            env_file=env_file,
            overrides=overrides,
            base=base,
            facilitator_url=facilitator_url,
            api_key=api_key,
        )
    extras = (overrides, base, facilitator_url, api_key)
    if any(item is not None and item != {} for item in extras):
        raise ValueError(
            "Provide either a pre-built GatewayConfig or individual settings, not both."
        )
    return config


def create_facilitator_client(
    *,
    config: Optional[GatewayConfig] = None,
    session: Optional[requests.Session] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    facilitator_url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> FacilitatorClient:
    """
    Construct a :class:`FacilitatorClient`.

    Callers either pass a ready-made :class:`GatewayConfig` or let the helper
    load one from the environment, a ``.env`` file and keyword overrides.
    """
    cfg = _resolve_config(
        config,
        env_file=env_file,
        overrides=overrides,
        base=base,
        facilitator_url=facilitator_url,
        api_key=api_key,
    )
    return FacilitatorClient.from_config(cfg, session=session)


def create_pipeline(
    *,
    config: Optional[GatewayConfig] = None,
    session: Optional[requests.Session] = None,
    compliance: Optional[ComplianceCheck] = None,
    dispatcher: Optional[EventDispatcher] = None,
    metrics: Optional[Metrics] = None,
    nonce_tracker: Optional[NonceTracker] = None,
    circuit_breaker: Optional[CircuitBreaker] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    facilitator_url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> PaymentPipeline:
    cfg = _resolve_config(
        config,
        env_file=env_file,
        overrides=overrides,
        base=base,
        facilitator_url=facilitator_url,
        api_key=api_key,
    )
    return PaymentPipeline(
        FacilitatorClient.from_config(cfg, session=session, circuit_breaker=circuit_breaker),
        compliance=compliance,
        dispatcher=dispatcher,
        metrics=metrics,
        nonce_tracker=nonce_tracker,
        auto_settle=cfg.auto_settle,
    )


def process_payment(
    payment_header: str,
    requirements: Union[PaymentRequirements, Mapping[str, Any]],
    *,
    config: Optional[GatewayConfig] = None,
    session: Optional[requests.Session] = None,
    compliance: Optional[ComplianceCheck] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
) -> PaymentOutcome:
    """One-shot verify (and, unless disabled, settle) of a single payment."""
    pipeline = create_pipeline(
        config=config,
        session=session,
        compliance=compliance,
        env_file=env_file,
        overrides=overrides,
    )
    return pipeline.process(payment_header, requirements)
