"""
Public facade for the x402 settlement package.

Integrators can ``from x402_settlement import ...`` the pipeline, the
facilitator client and the configuration helpers without navigating the
package.
"""

from .api import create_facilitator_client, create_pipeline, process_payment
from .core import (
    CircuitBreaker,
    CircuitOpenError,
    ComplianceError,
    ConfigError,
    DenylistComplianceCheck,
    ErrorCode,
    FacilitatorClient,
    FacilitatorError,
    GatewayConfig,
    HealthChecker,
    InMemoryMetrics,
    InMemoryNonceTracker,
    PaymentOutcome,
    PaymentPayload,
    PaymentPipeline,
    PaymentRequirements,
    PaymentState,
    SettlementAmbiguousError,
    SettlementResult,
    SimpleEventDispatcher,
    ValidationError,
    VerificationResult,
    WebhookHandler,
    X402Error,
    create_payment_requirements,
    extract_payment_header,
    load_gateway_config,
    payment_required_response,
)

__all__ = (
    "CircuitBreaker",
    "CircuitOpenError",
    "ComplianceError",
    "ConfigError",
    "DenylistComplianceCheck",
    "ErrorCode",
    "FacilitatorClient",
    "FacilitatorError",
    "GatewayConfig",
    "HealthChecker",
    "InMemoryMetrics",
    "InMemoryNonceTracker",
    "PaymentOutcome",
    "PaymentPayload",
    "PaymentPipeline",
    "PaymentRequirements",
    "PaymentState",
    "SettlementAmbiguousError",
    "SettlementResult",
    "SimpleEventDispatcher",
    "ValidationError",
    "VerificationResult",
    "WebhookHandler",
    "X402Error",
    "create_facilitator_client",
    "create_payment_requirements",
    "create_pipeline",
    "extract_payment_header",
    "load_gateway_config",
    "payment_required_response",
    "process_payment",
)
