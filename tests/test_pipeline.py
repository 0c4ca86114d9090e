"""Tests for the verify-then-settle pipeline."""

import itertools

import pytest
import requests

from conftest import (
    NONCE,
    PAY_TO,
    PAYER,
    TX_HASH,
    FakeClock,
    FakeResponse,
    FakeSession,
    build_payload,
    encode_header,
    make_pipeline,
)
from x402_settlement.core.circuit import CircuitBreaker
from x402_settlement.core.compliance import ComplianceResult, DenylistComplianceCheck
from x402_settlement.core.errors import (
    CircuitOpenError,
    ComplianceError,
    ErrorCode,
    FacilitatorError,
    SettlementAmbiguousError,
    X402Error,
)
from x402_settlement.core.nonce import InMemoryNonceTracker
from x402_settlement.core.pipeline import PaymentStage, PaymentState

TAGS = {"scheme": "exact", "network": "base-sepolia"}


class RecordingCompliance:
    """Compliance double that remembers which addresses it screened."""

    def __init__(self, error=None):
        self.checked = []
        self.error = error

    def check_address(self, address, network):
        self.checked.append(address)
        if self.error is not None:
            raise self.error
        return ComplianceResult(blocked=False)

    def is_compliant(self, address, network):
        return not self.check_address(address, network).blocked

    def get_compliance_status(self, address, network):
        return {"address": address, "blocked": False}


def _session(verify=None, settle=None):
    return FakeSession(
        {
            "/verify": verify or FakeResponse(200, {"isValid": True, "payer": PAYER}),
            "/settle": settle
            or FakeResponse(200, {"success": True, "transaction": TX_HASH, "network": "base-sepolia"}),
        }
    )


class TestPaymentState:
    """Test lifecycle transitions."""

    def test_forward_transitions(self):
        """Test the happy-path chain."""
        chain = [
            PaymentState.CREATED,
            PaymentState.REQUIREMENTS_VALIDATED,
            PaymentState.COMPLIANCE_CHECKED,
            PaymentState.VERIFIED,
            PaymentState.SETTLED,
        ]
        for current, target in zip(chain, chain[1:]):
            assert current.can_transition_to(target) is True

    def test_failed_reachable_from_non_terminal(self):
        """Test that every non-terminal state can fail."""
        for state in PaymentState:
            if not state.is_final:
                assert state.can_transition_to(PaymentState.FAILED) is True

    def test_terminal_states(self):
        """Test that settled and failed are final."""
        assert PaymentState.SETTLED.is_final is True
        assert PaymentState.FAILED.is_final is True
        assert PaymentState.SETTLED.valid_transitions() == ()
        assert PaymentState.CREATED.can_transition_to(PaymentState.VERIFIED) is False


class TestHappyPath:
    """Test a payment that verifies and settles."""

    def test_events_in_order(self, payment_header, requirements_data, dispatcher, recorded_events):
        """Test exactly one verified then one settled event."""
        pipeline = make_pipeline(_session(), dispatcher=dispatcher)
        outcome = pipeline.process(payment_header, requirements_data)

        assert outcome.state is PaymentState.SETTLED
        assert outcome.succeeded is True
        assert outcome.transaction_hash == TX_HASH
        assert [event.event_name for event in recorded_events] == [
            "payment.verified",
            "payment.settled",
        ]
        assert recorded_events[1].transaction_hash == TX_HASH

    def test_one_success_counter_per_stage(self, payment_header, requirements_data, metrics):
        """Test counters and timings for each stage that ran."""
        pipeline = make_pipeline(_session(), metrics=metrics)
        pipeline.process(payment_header, requirements_data)

        for stage in ("validation", "verification", "settlement"):
            assert metrics.get_counter(f"x402.payment.{stage}.success", TAGS) == 1
        assert metrics.get_counter("x402.payment.compliance.success", TAGS) == 0

        timings = metrics.get_metrics()["timings"]
        assert timings["x402.payment.settlement.duration_ms{network=base-sepolia,scheme=exact}"]["count"] == 1

    def test_stage_duration_uses_clock(self, payment_header, requirements_data, metrics):
        """Test that timings come from the injected clock."""
        ticks = itertools.count()
        pipeline = make_pipeline(_session(), metrics=metrics, clock=lambda: float(next(ticks)))
        pipeline.process(payment_header, requirements_data)

        stats = metrics.get_metrics()["timings"]
        key = "x402.payment.validation.duration_ms{network=base-sepolia,scheme=exact}"
        assert stats[key]["max"] == pytest.approx(1000.0)

    def test_compliance_screens_both_parties(self, payment_header, requirements_data, metrics):
        """Test that payer and payee are screened when a check is configured."""
        compliance = RecordingCompliance()
        pipeline = make_pipeline(_session(), metrics=metrics, compliance=compliance)
        outcome = pipeline.process(payment_header, requirements_data)

        assert outcome.succeeded is True
        assert compliance.checked == [PAYER, PAY_TO]
        assert metrics.get_counter("x402.payment.compliance.success", TAGS) == 1


class TestValidationFailures:
    """Test failures before any remote call."""

    def test_bad_requirements(self, payment_header, requirements_data, dispatcher, recorded_events, metrics):
        """Test that invalid requirements fail without network or compliance activity."""
        requirements_data["payTo"] = "nobody"
        session = _session()
        compliance = RecordingCompliance()
        pipeline = make_pipeline(
            session, dispatcher=dispatcher, metrics=metrics, compliance=compliance
        )
        outcome = pipeline.process(payment_header, requirements_data)

        assert outcome.state is PaymentState.FAILED
        assert outcome.failed_stage is PaymentStage.VALIDATION
        assert outcome.error_code == ErrorCode.INVALID_REQUIREMENTS
        assert session.calls == []
        assert compliance.checked == []
        assert [event.reason for event in recorded_events] == ["validation"]
        assert metrics.get_counter("x402.payment.failed", dict(TAGS, stage="validation")) == 1

    def test_undecodable_header(self, requirements_data):
        """Test that a garbage header fails validation."""
        session = _session()
        outcome = make_pipeline(session).process("%%%", requirements_data)
        assert outcome.failed_stage is PaymentStage.VALIDATION
        assert outcome.error_code == ErrorCode.INVALID_PAYLOAD
        assert session.calls == []

    def test_network_mismatch(self, requirements_data):
        """Test that a payload for another network is rejected."""
        header = encode_header(build_payload(network="base"))
        outcome = make_pipeline(_session()).process(header, requirements_data)
        assert outcome.failed_stage is PaymentStage.VALIDATION
        assert outcome.error_code == ErrorCode.INVALID_NETWORK
        assert outcome.metadata["field"] == "network"

    @pytest.mark.parametrize("timeout", ["²", "٣٠"])
    def test_non_ascii_timeout_digits(self, timeout, payment_header, requirements_data, dispatcher, recorded_events, metrics):
        """Test that Unicode digits in the timeout fail validation instead of raising."""
        requirements_data["maxTimeoutSeconds"] = timeout
        session = _session()
        pipeline = make_pipeline(session, dispatcher=dispatcher, metrics=metrics)
        outcome = pipeline.process(payment_header, requirements_data)

        assert outcome.state is PaymentState.FAILED
        assert outcome.failed_stage is PaymentStage.VALIDATION
        assert outcome.error_code == ErrorCode.INVALID_REQUIREMENTS
        assert outcome.metadata["field"] == "maxTimeoutSeconds"
        assert outcome.requirements.max_timeout_seconds == 0
        assert session.calls == []
        assert [event.reason for event in recorded_events] == ["validation"]
        assert metrics.get_counter("x402.payment.failed", dict(TAGS, stage="validation")) == 1


class TestComplianceFailures:
    """Test screening outcomes."""

    def test_blocked_payer(self, payment_header, requirements_data, dispatcher, recorded_events):
        """Test that a denylisted payer fails with the compliance metadata."""
        session = _session()
        pipeline = make_pipeline(
            session,
            dispatcher=dispatcher,
            compliance=DenylistComplianceCheck([PAYER], source="ofac-sdn"),
        )
        outcome = pipeline.process(payment_header, requirements_data)

        assert outcome.failed_stage is PaymentStage.COMPLIANCE
        assert outcome.error_code == ErrorCode.ADDRESS_BLOCKED
        assert outcome.error is None
        assert outcome.metadata["source"] == "ofac-sdn"
        assert outcome.metadata["role"] == "payer"
        assert session.calls == []
        assert recorded_events[0].reason == "compliance"
        assert recorded_events[0].metadata["source"] == "ofac-sdn"

    def test_provider_failure(self, payment_header, requirements_data):
        """Test that a screening outage is distinct from a block."""
        error = ComplianceError("provider down", metadata={"provider": "chain-screen"})
        outcome = make_pipeline(_session(), compliance=RecordingCompliance(error)).process(
            payment_header, requirements_data
        )
        assert outcome.failed_stage is PaymentStage.COMPLIANCE
        assert outcome.error_code == ErrorCode.COMPLIANCE_CHECK_FAILED
        assert outcome.error is error
        assert outcome.metadata["provider"] == "chain-screen"


class TestVerificationFailures:
    """Test the verify stage."""

    def test_invalid_payment_never_settles(self, payment_header, requirements_data, dispatcher, recorded_events):
        """Test one failed event with reason verification and no settle call."""
        session = _session(
            verify=FakeResponse(200, {"isValid": False, "invalidReason": "insufficient_funds"})
        )
        outcome = make_pipeline(session, dispatcher=dispatcher).process(
            payment_header, requirements_data
        )

        assert outcome.state is PaymentState.FAILED
        assert outcome.failed_stage is PaymentStage.VERIFICATION
        assert outcome.metadata["invalidReason"] == "insufficient_funds"
        assert session.paths() == ["/verify"]
        assert len(recorded_events) == 1
        assert recorded_events[0].event_name == "payment.failed"
        assert recorded_events[0].reason == "verification"

    def test_facilitator_unreachable(self, payment_header, requirements_data):
        """Test that a transport error during verify fails the stage."""
        session = _session(verify=requests.exceptions.ConnectionError("refused"))
        outcome = make_pipeline(session).process(payment_header, requirements_data)
        assert outcome.failed_stage is PaymentStage.VERIFICATION
        assert isinstance(outcome.error, FacilitatorError)
        assert outcome.metadata["statusCode"] is None


class TestSettlementFailures:
    """Test the settle stage."""

    def test_settlement_rejected(self, payment_header, requirements_data, dispatcher, recorded_events):
        """Test success=false from the facilitator."""
        session = _session(settle=FakeResponse(200, {"success": False, "errorReason": "nonce_used"}))
        outcome = make_pipeline(session, dispatcher=dispatcher).process(
            payment_header, requirements_data
        )

        assert outcome.failed_stage is PaymentStage.SETTLEMENT
        assert outcome.error_code == ErrorCode.SETTLEMENT_FAILED
        assert outcome.settlement_ambiguous is False
        assert [event.event_name for event in recorded_events] == [
            "payment.verified",
            "payment.failed",
        ]

    def test_ambiguous_settlement(self, payment_header, requirements_data, metrics):
        """Test that a read timeout during settle is reported as unknown."""
        session = _session(settle=requests.exceptions.ReadTimeout("read timed out"))
        outcome = make_pipeline(session, metrics=metrics).process(payment_header, requirements_data)

        assert outcome.state is PaymentState.FAILED
        assert outcome.settlement_ambiguous is True
        assert outcome.error_code == ErrorCode.SETTLEMENT_AMBIGUOUS
        assert outcome.metadata["ambiguous"] is True
        assert session.paths() == ["/verify", "/settle"]
        assert metrics.get_counter("x402.payment.settlement.ambiguous", TAGS) == 1
        with pytest.raises(SettlementAmbiguousError):
            outcome.raise_for_failure()


class TestReplayProtection:
    """Test authorization nonce tracking during validation."""

    def test_replayed_header_is_rejected(self, payment_header, requirements_data, recorded_events, dispatcher):
        """Test that the second use of a nonce fails before contacting the facilitator."""
        session = _session()
        tracker = InMemoryNonceTracker()
        pipeline = make_pipeline(session, dispatcher=dispatcher, nonce_tracker=tracker)

        assert pipeline.process(payment_header, requirements_data).succeeded is True
        replay = pipeline.process(payment_header, requirements_data)

        assert replay.failed_stage is PaymentStage.VALIDATION
        assert replay.error_code == ErrorCode.NONCE_ALREADY_USED
        assert replay.metadata["field"] == "payload.authorization.nonce"
        assert session.paths() == ["/verify", "/settle"]
        assert recorded_events[-1].reason == "validation"

    def test_nonce_expires_with_requirements_timeout(self, payment_header, requirements_data):
        """Test that the nonce is held for maxTimeoutSeconds."""
        clock = FakeClock()
        tracker = InMemoryNonceTracker(clock=clock)
        pipeline = make_pipeline(_session(), nonce_tracker=tracker)
        pipeline.process(payment_header, requirements_data)

        clock.advance(59)
        assert tracker.has_nonce(NONCE) is True
        clock.advance(1)
        assert tracker.has_nonce(NONCE) is False
        assert pipeline.process(payment_header, requirements_data).succeeded is True

    def test_unreachable_facilitator_releases_nonce(self, payment_header, requirements_data):
        """Test that a verify call that never completed lets the payer retry."""
        tracker = InMemoryNonceTracker()
        session = _session(verify=requests.exceptions.ConnectionError("refused"))
        outcome = make_pipeline(session, nonce_tracker=tracker).process(payment_header, requirements_data)

        assert outcome.failed_stage is PaymentStage.VERIFICATION
        assert tracker.has_nonce(NONCE) is False

    def test_rejected_payment_keeps_nonce(self, payment_header, requirements_data):
        """Test that a facilitator rejection still consumes the nonce."""
        tracker = InMemoryNonceTracker()
        session = _session(verify=FakeResponse(200, {"isValid": False, "invalidReason": "expired"}))
        make_pipeline(session, nonce_tracker=tracker).process(payment_header, requirements_data)
        assert tracker.has_nonce(NONCE) is True


class TestCircuitBreaker:
    """Test the pipeline behind an open facilitator circuit."""

    def test_open_circuit_fails_fast(self, payment_header, requirements_data, metrics):
        """Test that an open circuit fails verification without a request."""
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=FakeClock())
        session = _session(verify=requests.exceptions.ConnectionError("refused"))
        pipeline = make_pipeline(session, metrics=metrics, circuit_breaker=breaker)

        for _ in range(2):
            outcome = pipeline.process(payment_header, requirements_data)
            assert outcome.error_code == ErrorCode.FACILITATOR_ERROR
        outcome = pipeline.process(payment_header, requirements_data)

        assert outcome.failed_stage is PaymentStage.VERIFICATION
        assert outcome.error_code == ErrorCode.CIRCUIT_OPEN
        assert isinstance(outcome.error, CircuitOpenError)
        assert len(session.calls) == 2
        assert metrics.get_counter("x402.payment.failed", dict(TAGS, stage="verification")) == 3


class TestDeferredSettlement:
    """Test verify now, settle later."""

    def test_settle_once(self, payment_header, requirements_data, dispatcher, recorded_events):
        """Test that a verified outcome can be settled exactly once."""
        session = _session()
        pipeline = make_pipeline(session, dispatcher=dispatcher, auto_settle=False)
        verified = pipeline.process(payment_header, requirements_data)

        assert verified.state is PaymentState.VERIFIED
        assert verified.verified is True
        assert session.paths() == ["/verify"]

        settled = pipeline.settle_verified(verified)
        assert settled.state is PaymentState.SETTLED
        with pytest.raises(X402Error, match="already been submitted"):
            pipeline.settle_verified(verified)
        assert session.paths() == ["/verify", "/settle"]
        assert [event.event_name for event in recorded_events] == [
            "payment.verified",
            "payment.settled",
        ]

    def test_cannot_settle_failed(self, requirements_data):
        """Test that only verified outcomes settle."""
        pipeline = make_pipeline(_session())
        failed = pipeline.process("", requirements_data)
        with pytest.raises(X402Error, match="Only verified payments"):
            pipeline.settle_verified(failed)

    def test_raise_for_failure_noop_on_success(self, payment_header, requirements_data):
        """Test that successful outcomes do not raise."""
        make_pipeline(_session()).process(payment_header, requirements_data).raise_for_failure()


class TestListenerErrors:
    """Test that listener exceptions are not swallowed."""

    def test_listener_exception_propagates(self, payment_header, requirements_data, dispatcher):
        """Test that a failing listener aborts processing."""
        session = _session()

        def explode(event):
            raise RuntimeError("listener bug")

        dispatcher.listen("payment.verified", explode)
        with pytest.raises(RuntimeError, match="listener bug"):
            make_pipeline(session, dispatcher=dispatcher).process(payment_header, requirements_data)
        assert session.paths() == ["/verify"]
