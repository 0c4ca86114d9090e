"""Pytest fixtures for x402 settlement tests."""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, List, Optional

import pytest

from x402_settlement.core.client import FacilitatorClient
from x402_settlement.core.events import SimpleEventDispatcher
from x402_settlement.core.metrics import InMemoryMetrics
from x402_settlement.core.pipeline import PaymentPipeline

FACILITATOR_URL = "https://facilitator.example.com"
PAYER = "0x857b06519E91e3A54538791bDbb0E22373e36b66"
PAY_TO = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"
ASSET = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
SIGNATURE = "0x" + "ab" * 65
NONCE = "0x" + "11" * 32
TX_HASH = "0x" + "cd" * 32


class FakeResponse:
    """Stand-in for :class:`requests.Response`."""

    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload)

    def json(self) -> Any:
        return json.loads(self.text)


class FakeSession:
    """
    Records every call and answers from a table keyed by URL path.

    A table value may be a :class:`FakeResponse` or an exception instance to
    raise.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []

    def _answer(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        path = url[len(FACILITATOR_URL):]
        answer = self.routes[path]
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer("POST", url, **kwargs)

    def paths(self) -> List[str]:
        return [call["url"][len(FACILITATOR_URL):] for call in self.calls]


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_payload(**overrides: Any) -> Dict[str, Any]:
    authorization = {
        "from": PAYER,
        "to": PAY_TO,
        "value": "10000",
        "validAfter": "0",
        "validBefore": "9999999999",
        "nonce": NONCE,
    }
    authorization.update(overrides.pop("authorization", {}))
    payload = {
        "x402Version": 1,
        "scheme": "exact",
        "network": "base-sepolia",
        "payload": {"signature": SIGNATURE, "authorization": authorization},
    }
    payload.update(overrides)
    return payload


def encode_header(document: Any) -> str:
    return base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")


@pytest.fixture
def requirements_data() -> Dict[str, Any]:
    """Well-formed requirements in wire (camelCase) form."""
    return {
        "scheme": "exact",
        "network": "base-sepolia",
        "maxAmountRequired": "10000",
        "resource": "https://api.example.com/premium",
        "description": "Premium market data",
        "mimeType": "application/json",
        "payTo": PAY_TO,
        "maxTimeoutSeconds": 60,
        "asset": ASSET,
        "extra": {"name": "USDC", "version": "2"},
    }


@pytest.fixture
def payment_header() -> str:
    return encode_header(build_payload())


@pytest.fixture
def happy_session() -> FakeSession:
    """Facilitator that accepts and settles everything."""
    return FakeSession(
        {
            "/verify": FakeResponse(200, {"isValid": True, "payer": PAYER}),
            "/settle": FakeResponse(
                200,
                {"success": True, "transaction": TX_HASH, "network": "base-sepolia", "payer": PAYER},
            ),
            "/supported": FakeResponse(
                200, {"kinds": [{"x402Version": 1, "scheme": "exact", "network": "base-sepolia"}]}
            ),
        }
    )


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def dispatcher() -> SimpleEventDispatcher:
    return SimpleEventDispatcher()


@pytest.fixture
def recorded_events(dispatcher):
    """Every event the dispatcher delivers, in order."""
    seen = []
    for name in ("payment.verified", "payment.settled", "payment.failed"):
        dispatcher.listen(name, seen.append)
    return seen


def make_pipeline(
    session, *, dispatcher=None, metrics=None, circuit_breaker=None, **kwargs
) -> PaymentPipeline:
    client = FacilitatorClient(FACILITATOR_URL, session=session, circuit_breaker=circuit_breaker)
    return PaymentPipeline(client, dispatcher=dispatcher, metrics=metrics, **kwargs)
