import os

# Test settings must be in place before the app (and its cached settings) is imported
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("WORKFLOW_ENGINE_URL", "http://engine.test")
os.environ.setdefault("WORKFLOW_ENGINE_API_KEY", "engine-key")

import hashlib
import hmac
from typing import Any, Generator

import httpx
import orjson
import pytest
from fastapi.testclient import TestClient

from creditledger.core.security import create_session_cookie, sign_razorpay_payment
from creditledger.deps import SESSION_COOKIE_NAME
from creditledger.ledger.base import get_ledger_store
from creditledger.ledger.memory import MemoryLedgerStore
from creditledger.ledger.records import AgentRecord
from creditledger.main import app
from creditledger.services.payments import get_payment_gateway
from creditledger.services.rate_limit import MemoryRateLimitStore, get_rate_limit_store
from creditledger.services.workflow_engine import WorkflowEngineClient, get_workflow_engine

KEY_SECRET = os.environ["RAZORPAY_KEY_SECRET"]
WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]


class FakeEngine:
    """MockTransport handler standing in for the workflow engine."""

    def __init__(self) -> None:
        self.status_code = 200
        self.payload: Any = {"output": "done"}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


class FakeGateway:
    key_id = "rzp_test_key"

    def __init__(self) -> None:
        self.orders: list[dict[str, Any]] = []

    async def create_order(self, amount, currency, receipt, notes):
        order = {"id": f"order_{len(self.orders) + 1}", "amount": amount, "currency": currency, "notes": notes}
        self.orders.append(order)
        return order


@pytest.fixture
def store() -> MemoryLedgerStore:
    return MemoryLedgerStore()


@pytest.fixture
def rate_store() -> MemoryRateLimitStore:
    return MemoryRateLimitStore()


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def engine(fake_engine) -> WorkflowEngineClient:
    return WorkflowEngineClient(
        "http://engine.test", "engine-key", timeout_seconds=5, transport=httpx.MockTransport(fake_engine)
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def client(store, rate_store, engine, gateway) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_ledger_store] = lambda: store
    app.dependency_overrides[get_rate_limit_store] = lambda: rate_store
    app.dependency_overrides[get_workflow_engine] = lambda: engine
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()


def login(client: TestClient, user_id: str, email: str = "", role: str = "user") -> None:
    cookie = create_session_cookie({"user_id": user_id, "email": email, "role": role})
    client.cookies.set(SESSION_COOKIE_NAME, cookie)


def verify_body(order_id: str, payment_id: str, **extra: Any) -> dict[str, Any]:
    return {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": sign_razorpay_payment(order_id, payment_id, KEY_SECRET),
        **extra,
    }


def webhook_request(event: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
    body = orjson.dumps(event)
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return body, {"X-Razorpay-Signature": signature, "Content-Type": "application/json"}


def seed_agent(store: MemoryLedgerStore, agent_id: str = "agent-1", credit_cost: int = 3, **kw: Any) -> AgentRecord:
    kw.setdefault("workflow_id", "wf-1")
    return store.put_agent(AgentRecord(id=agent_id, name=f"Agent {agent_id}", credit_cost=credit_cost, **kw))
