"""
The verify-then-settle pipeline.

One call to :meth:`PaymentPipeline.process` walks a single payment through

    CREATED -> REQUIREMENTS_VALIDATED -> COMPLIANCE_CHECKED -> VERIFIED -> SETTLED

and stops in FAILED at the first stage that does not succeed. Every stage
boundary records metrics; verification and settlement dispatch
``payment.verified`` / ``payment.settled``, and any failure dispatches exactly
one ``payment.failed`` naming the stage.

Nothing here retries. ``settle`` is not idempotent, so an ambiguous
settlement is reported as such and left to the caller to reconcile.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from .client import FacilitatorClient
from .compliance import ComplianceCheck
from .encoding import decode_payment_header
from .errors import (
    CircuitOpenError,
    ComplianceError,
    ErrorCode,
    FacilitatorError,
    SettlementAmbiguousError,
    ValidationError,
    X402Error,
)
from .events import (
    EventDispatcher,
    SimpleEventDispatcher,
    payment_failed,
    payment_settled,
    payment_verified,
)
from .metrics import Metrics, NullMetrics
from .nonce import NonceTracker
from .types import PaymentPayload, PaymentRequirements, SettlementResult, VerificationResult
from .validation import validate_payment_requirements

__all__ = [
    "PaymentOutcome",
    "PaymentPipeline",
    "PaymentStage",
    "PaymentState",
]

METRIC_PREFIX = "x402.payment"


class PaymentState(str, enum.Enum):
    CREATED = "created"
    REQUIREMENTS_VALIDATED = "requirements_validated"
    COMPLIANCE_CHECKED = "compliance_checked"
    VERIFIED = "verified"
    SETTLED = "settled"
    FAILED = "failed"

    def valid_transitions(self) -> Tuple["PaymentState", ...]:
        return _TRANSITIONS[self]

    def can_transition_to(self, target: "PaymentState") -> bool:
        return target in _TRANSITIONS[self]

    @property
    def is_final(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS: Dict[PaymentState, Tuple[PaymentState, ...]] = {
    PaymentState.CREATED: (PaymentState.REQUIREMENTS_VALIDATED, PaymentState.FAILED),
    PaymentState.REQUIREMENTS_VALIDATED: (PaymentState.COMPLIANCE_CHECKED, PaymentState.FAILED),
    PaymentState.COMPLIANCE_CHECKED: (PaymentState.VERIFIED, PaymentState.FAILED),
    PaymentState.VERIFIED: (PaymentState.SETTLED, PaymentState.FAILED),
    PaymentState.SETTLED: (),
    PaymentState.FAILED: (),
}


class PaymentStage(str, enum.Enum):
    """Pipeline stages; the value doubles as the ``payment.failed`` reason."""

    VALIDATION = "validation"
    COMPLIANCE = "compliance"
    VERIFICATION = "verification"
    SETTLEMENT = "settlement"


class _SettlementClaim:
    """Single-use latch guarding the one settle call a verification allows."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed = False

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True


@dataclass(frozen=True)
class PaymentOutcome:
    state: PaymentState
    requirements: PaymentRequirements
    payload: Optional[PaymentPayload] = None
    verification: Optional[VerificationResult] = None
    settlement: Optional[SettlementResult] = None
    failed_stage: Optional[PaymentStage] = None
    error: Optional[BaseException] = None
    error_code: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    payment_header: Optional[str] = field(default=None, repr=False)
    _claim: _SettlementClaim = field(
        default_factory=_SettlementClaim, repr=False, compare=False
    )

    @property
    def succeeded(self) -> bool:
        return self.state is PaymentState.SETTLED

    @property
    def verified(self) -> bool:
        return self.state in (PaymentState.VERIFIED, PaymentState.SETTLED)

    @property
    def settlement_ambiguous(self) -> bool:
        return isinstance(self.error, SettlementAmbiguousError)

    @property
    def transaction_hash(self) -> Optional[str]:
        return self.settlement.transaction if self.settlement is not None else None

    def raise_for_failure(self) -> None:
        """Re-raise the underlying error of a failed outcome."""
        if self.state is not PaymentState.FAILED:
            return
        if self.error is not None:
            raise self.error
        stage = self.failed_stage.value if self.failed_stage else "unknown"
        raise X402Error(f"Payment failed during {stage}: {self.error_code}")


def _advance(current: PaymentState, target: PaymentState) -> PaymentState:
    if not current.can_transition_to(target):
        raise X402Error(
            f"Invalid payment state transition from {current.value} to {target.value}"
        )
    return target


class PaymentPipeline:
    """
    Orchestrates validation, compliance screening, verification and
    settlement for one payment at a time.

    Collaborators are injected; a pipeline holds no per-payment state, so
    one instance may serve concurrent requests as long as its metrics
    backend is thread-safe.
    """

    def __init__(
        self,
        facilitator: FacilitatorClient,
        *,
        compliance: Optional[ComplianceCheck] = None,
        dispatcher: Optional[EventDispatcher] = None,
        metrics: Optional[Metrics] = None,
        nonce_tracker: Optional[NonceTracker] = None,
        auto_settle: bool = True,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.facilitator = facilitator
        self.compliance = compliance
        self.nonce_tracker = nonce_tracker
        self.dispatcher = dispatcher if dispatcher is not None else SimpleEventDispatcher()
        self.metrics = metrics if metrics is not None else NullMetrics()
        self.auto_settle = auto_settle
        self._clock = clock

    def process(
        self,
        payment_header: str,
        requirements: Union[PaymentRequirements, Mapping[str, Any]],
    ) -> PaymentOutcome:
        if isinstance(requirements, PaymentRequirements):
            raw_requirements: Mapping[str, Any] = requirements.to_dict()
        else:
            raw_requirements = requirements

        started = self._clock()
        try:
            validate_payment_requirements(raw_requirements)
        except ValidationError as exc:
            outcome = _created(payment_header, requirements)
            return self._reject(outcome, exc, ErrorCode.INVALID_REQUIREMENTS)
        outcome = _created(payment_header, requirements)
        requirements = outcome.requirements
        tags = _tags(requirements)

        try:
            code = ErrorCode.INVALID_PAYLOAD
            payload = decode_payment_header(payment_header)
            code = ErrorCode.INVALID_SCHEME
            _check_consistency(payload, requirements)
            code = ErrorCode.NONCE_ALREADY_USED
            self._claim_nonce(payload, requirements)
        except ValidationError as exc:
            if exc.field == "network" and code == ErrorCode.INVALID_SCHEME:
                code = ErrorCode.INVALID_NETWORK
            return self._reject(outcome, exc, code)
        outcome = replace(
            outcome,
            state=_advance(outcome.state, PaymentState.REQUIREMENTS_VALIDATED),
            payload=payload,
        )
        self._record_success(PaymentStage.VALIDATION, tags, started)

        started = self._clock()
        failure = self._screen(outcome, tags)
        if failure is not None:
            return failure
        outcome = replace(outcome, state=_advance(outcome.state, PaymentState.COMPLIANCE_CHECKED))
        if self.compliance is not None:
            self._record_success(PaymentStage.COMPLIANCE, tags, started)

        started = self._clock()
        try:
            verification = self.facilitator.verify(payment_header, requirements)
        except FacilitatorError as exc:
            self._release_nonce(payload)
            return self._fail(
                outcome,
                PaymentStage.VERIFICATION,
                tags,
                error=exc,
                code=_facilitator_code(exc),
                metadata=exc.as_dict(),
            )
        if not verification.is_valid:
            return self._fail(
                replace(outcome, verification=verification),
                PaymentStage.VERIFICATION,
                tags,
                code=ErrorCode.FACILITATOR_VERIFICATION_FAILED,
                metadata={"invalidReason": verification.invalid_reason},
            )
        outcome = replace(
            outcome,
            state=_advance(outcome.state, PaymentState.VERIFIED),
            verification=verification,
        )
        self._record_success(PaymentStage.VERIFICATION, tags, started)
        self.dispatcher.dispatch(
            payment_verified(payload, requirements, metadata={"payer": verification.payer})
        )

        if not self.auto_settle:
            logging.debug("Payment verified; settlement deferred to caller")
            return outcome
        return self.settle_verified(outcome)

    def settle_verified(self, outcome: PaymentOutcome) -> PaymentOutcome:
        """
        Settle a payment that :meth:`process` verified with ``auto_settle``
        disabled (or that it is settling itself).

        Each verified outcome may be settled once; a second attempt raises
        :class:`X402Error` without contacting the facilitator.
        """
        if outcome.state is not PaymentState.VERIFIED or outcome.payload is None:
            raise X402Error(
                f"Only verified payments can be settled, payment is {outcome.state.value}"
            )
        if not outcome._claim.claim():
            raise X402Error("Payment has already been submitted for settlement")

        requirements = outcome.requirements
        tags = _tags(requirements)
        started = self._clock()
        try:
            settlement = self.facilitator.settle(outcome.payment_header or "", requirements)
        except SettlementAmbiguousError as exc:
            logging.error(
                "Settlement outcome unknown for payment to %s on %s: %s",
                requirements.pay_to,
                requirements.network,
                exc,
            )
            self.metrics.increment_counter(f"{METRIC_PREFIX}.settlement.ambiguous", tags=tags)
            return self._fail(
                outcome,
                PaymentStage.SETTLEMENT,
                tags,
                error=exc,
                code=ErrorCode.SETTLEMENT_AMBIGUOUS,
                metadata=dict(exc.as_dict(), ambiguous=True),
            )
        except FacilitatorError as exc:
            return self._fail(
                outcome,
                PaymentStage.SETTLEMENT,
                tags,
                error=exc,
                code=_facilitator_code(exc),
                metadata=dict(exc.as_dict(), ambiguous=False),
            )
        if not settlement.success:
            return self._fail(
                replace(outcome, settlement=settlement),
                PaymentStage.SETTLEMENT,
                tags,
                code=ErrorCode.SETTLEMENT_FAILED,
                metadata={"errorReason": settlement.error_reason, "ambiguous": False},
            )

        outcome = replace(
            outcome,
            state=_advance(outcome.state, PaymentState.SETTLED),
            settlement=settlement,
        )
        self._record_success(PaymentStage.SETTLEMENT, tags, started)
        logging.info(
            "Payment settled on %s. Transaction hash: %s",
            settlement.network or requirements.network,
            settlement.transaction,
        )
        self.dispatcher.dispatch(
            payment_settled(
                outcome.payload,
                requirements,
                settlement.transaction,
                metadata={"payer": settlement.payer, "network": settlement.network},
            )
        )
        return outcome

    def _claim_nonce(self, payload: PaymentPayload, requirements: PaymentRequirements) -> None:
        if self.nonce_tracker is None or payload.nonce is None:
            return
        if not self.nonce_tracker.mark_used(payload.nonce, requirements.max_timeout_seconds):
            raise ValidationError(
                "authorization nonce has already been used", field="payload.authorization.nonce"
            )

    def _release_nonce(self, payload: PaymentPayload) -> None:
        # Verification never completed, so the payer may retry the same authorization.
        if self.nonce_tracker is not None and payload.nonce is not None:
            self.nonce_tracker.remove(payload.nonce)

    def _screen(self, outcome: PaymentOutcome, tags: Dict[str, str]) -> Optional[PaymentOutcome]:
        if self.compliance is None:
            return None
        requirements = outcome.requirements
        parties = (
            ("payer", outcome.payload.payer if outcome.payload else None),
            ("payee", requirements.pay_to),
        )
        for role, address in parties:
            if not address:
                continue
            try:
                result = self.compliance.check_address(address, requirements.network)
            except ComplianceError as exc:
                return self._fail(
                    outcome,
                    PaymentStage.COMPLIANCE,
                    tags,
                    error=exc,
                    code=ErrorCode.COMPLIANCE_CHECK_FAILED,
                    metadata=dict(exc.metadata, role=role, address=address),
                )
            if result.blocked:
                return self._fail(
                    outcome,
                    PaymentStage.COMPLIANCE,
                    tags,
                    code=ErrorCode.ADDRESS_BLOCKED,
                    metadata=dict(
                        result.metadata, role=role, address=address, reason=result.reason
                    ),
                )
        return None

    def _record_success(self, stage: PaymentStage, tags: Dict[str, str], started: float) -> None:
        elapsed_ms = (self._clock() - started) * 1000.0
        self.metrics.increment_counter(f"{METRIC_PREFIX}.{stage.value}.success", tags=tags)
        self.metrics.record_timing(f"{METRIC_PREFIX}.{stage.value}.duration_ms", elapsed_ms, tags=tags)
        logging.debug("Payment stage %s succeeded in %.1fms", stage.value, elapsed_ms)

    def _reject(self, outcome: PaymentOutcome, error: ValidationError, code: str) -> PaymentOutcome:
        return self._fail(
            outcome,
            PaymentStage.VALIDATION,
            _tags(outcome.requirements),
            error=error,
            code=code,
            metadata={"field": error.field, "detail": error.reason},
        )

    def _fail(
        self,
        outcome: PaymentOutcome,
        stage: PaymentStage,
        tags: Dict[str, str],
        *,
        code: str,
        error: Optional[BaseException] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> PaymentOutcome:
        details = dict(metadata or {}, errorCode=code)
        failed = replace(
            outcome,
            state=_advance(outcome.state, PaymentState.FAILED),
            failed_stage=stage,
            error=error,
            error_code=code,
            metadata=details,
        )
        self.metrics.increment_counter(f"{METRIC_PREFIX}.failed", tags=dict(tags, stage=stage.value))
        logging.warning("Payment failed during %s (%s): %s", stage.value, code, error or details)
        self.dispatcher.dispatch(
            payment_failed(
                failed.payload,
                failed.requirements,
                stage.value,
                error=error,
                metadata=details,
            )
        )
        return failed


def _created(
    payment_header: str, requirements: Union[PaymentRequirements, Mapping[str, Any]]
) -> PaymentOutcome:
    if not isinstance(requirements, PaymentRequirements):
        requirements = PaymentRequirements.from_mapping(requirements)
    return PaymentOutcome(
        state=PaymentState.CREATED,
        requirements=requirements,
        payment_header=payment_header,
    )


def _facilitator_code(exc: FacilitatorError) -> str:
    if isinstance(exc, CircuitOpenError):
        return ErrorCode.CIRCUIT_OPEN
    return ErrorCode.FACILITATOR_ERROR


def _tags(requirements: PaymentRequirements) -> Dict[str, str]:
    return {
        "scheme": requirements.scheme or "unknown",
        "network": requirements.network or "unknown",
    }


def _check_consistency(payload: PaymentPayload, requirements: PaymentRequirements) -> None:
    if payload.scheme != requirements.scheme:
        raise ValidationError(
            f"payment scheme '{payload.scheme}' does not match required '{requirements.scheme}'",
            field="scheme",
        )
    if payload.network != requirements.network:
        raise ValidationError(
            f"payment network '{payload.network}' does not match required '{requirements.network}'",
            field="network",
        )
