"""
Core primitives of the x402 verify-then-settle pipeline.
"""

from .circuit import CircuitBreaker, CircuitState
from .client import FacilitatorClient
from .compliance import ComplianceCheck, ComplianceResult, DenylistComplianceCheck
from .config import GatewayConfig, load_gateway_config
from .encoding import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    decode_payment_header,
    encode_payment_header,
    encode_payment_response,
)
from .environment import GatewayEnvironment, build_environment
from .errors import (
    CircuitOpenError,
    ComplianceError,
    ConfigError,
    ErrorCode,
    FacilitatorError,
    SettlementAmbiguousError,
    ValidationError,
    WebhookError,
    X402Error,
)
from .events import EventKind, PaymentEvent, SimpleEventDispatcher
from .health import HealthChecker, HealthStatus
from .metrics import InMemoryMetrics, NullMetrics
from .nonce import InMemoryNonceTracker, NonceTracker
from .pipeline import PaymentOutcome, PaymentPipeline, PaymentStage, PaymentState
from .requirements import (
    create_payment_requirements,
    extract_payment_header,
    payment_required_response,
)
from .types import (
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
    SupportedKind,
    VerificationResult,
)
from .webhook import WebhookEvent, WebhookHandler, build_webhook_payload

__all__ = [
    "PAYMENT_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ComplianceCheck",
    "ComplianceError",
    "ComplianceResult",
    "ConfigError",
    "DenylistComplianceCheck",
    "ErrorCode",
    "EventKind",
    "FacilitatorClient",
    "FacilitatorError",
    "GatewayConfig",
    "GatewayEnvironment",
    "HealthChecker",
    "HealthStatus",
    "InMemoryMetrics",
    "InMemoryNonceTracker",
    "NonceTracker",
    "NullMetrics",
    "PaymentEvent",
    "PaymentOutcome",
    "PaymentPayload",
    "PaymentPipeline",
    "PaymentRequirements",
    "PaymentStage",
    "PaymentState",
    "SettlementAmbiguousError",
    "SettlementResult",
    "SimpleEventDispatcher",
    "SupportedKind",
    "ValidationError",
    "VerificationResult",
    "WebhookError",
    "WebhookEvent",
    "WebhookHandler",
    "X402Error",
    "build_environment",
    "build_webhook_payload",
    "create_payment_requirements",
    "decode_payment_header",
    "encode_payment_header",
    "encode_payment_response",
    "extract_payment_header",
    "load_gateway_config",
    "payment_required_response",
]
