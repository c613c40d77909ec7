"""Order creation, checkout verification and webhook convergence."""

import asyncio

import pytest

from conftest import KEY_SECRET, login, seed_agent, verify_body, webhook_request
from creditledger.core.audit import AuditAction
from creditledger.core.exceptions import DuplicatePaymentError
from creditledger.core.security import CurrentUser, sign_razorpay_payment
from creditledger.ledger.records import CreditPackageRecord, PurchaseStatus
from creditledger.services import payments as payments_service


def _balance(client) -> int:
    return client.get("/v1/credits/balance").json()["balance"]


def _open_order(store, account_id="user-1", order_id="order_1", credits=10, amount=500, **kw):
    return asyncio.run(
        store.record_order(account_id, order_id, amount_paid=amount, credits_purchased=credits, **kw)
    )


def _captured(order_id: str, payment_id: str, amount: int = 500, notes: dict | None = None) -> dict:
    return {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {"id": payment_id, "order_id": order_id, "amount": amount, "currency": "INR", "notes": notes or {}}
            }
        },
    }


def test_verify_applies_credits_once(client, store):
    login(client, "user-1")
    _open_order(store)

    r = client.post("/v1/payments/verify", json=verify_body("order_1", "pay_1"))
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["credits"] == 10
    assert body["credits_added"] == 10
    assert body["purchase_id"]

    again = client.post("/v1/payments/verify", json=verify_body("order_1", "pay_1"))
    assert again.status_code == 409
    assert again.json()["code"] == "DUPLICATE_PAYMENT"
    assert again.json()["details"]["purchase_id"] == body["purchase_id"]
    assert _balance(client) == 10
    assert any(e.action == AuditAction.CREDIT_PURCHASE for e in store.audit_log)


def test_tampered_signature_changes_nothing(client, store):
    login(client, "user-1")
    _open_order(store)
    body = verify_body("order_1", "pay_1")
    body["razorpay_signature"] = sign_razorpay_payment("order_1", "pay_2", KEY_SECRET)

    r = client.post("/v1/payments/verify", json=body)
    assert r.status_code == 402
    assert r.json()["code"] == "INVALID_SIGNATURE"
    assert _balance(client) == 0
    order = asyncio.run(store.get_purchase_by_order("order_1"))
    assert order.status is PurchaseStatus.CREATED
    assert order.gateway_payment_id is None
    assert [e.action for e in store.audit_log] == [AuditAction.PAYMENT_SIGNATURE_INVALID]


def test_verify_requires_authentication(client):
    r = client.post("/v1/payments/verify", json=verify_body("order_1", "pay_1"))
    assert r.status_code == 401
    assert r.json()["code"] == "AUTH_ERROR"


def test_order_of_another_account_is_forbidden(client, store):
    login(client, "user-2")
    _open_order(store, account_id="user-1")
    r = client.post("/v1/payments/verify", json=verify_body("order_1", "pay_1"))
    assert r.status_code == 403
    assert asyncio.run(store.get_account("user-2")) is None


def test_body_disagreeing_with_order_is_rejected(client, store):
    login(client, "user-1")
    _open_order(store, credits=10)
    r = client.post("/v1/payments/verify", json=verify_body("order_1", "pay_1", credits=1000))
    assert r.status_code == 400
    assert r.json()["details"]["fields"] == [{"field": "credits", "message": "Does not match the order"}]
    assert _balance(client) == 0


def test_verify_without_order_row_uses_active_package(client, store):
    store.put_package(CreditPackageRecord(id="pkg-10", name="Starter", credits=10, price=500))
    login(client, "user-1")
    r = client.post("/v1/payments/verify", json=verify_body("order_9", "pay_9", package_id="pkg-10", amount=500, credits=10))
    assert r.status_code == 200
    assert r.json()["credits"] == 10
    [purchase] = asyncio.run(store.list_purchases("user-1"))
    assert purchase.package_id == "pkg-10"
    assert purchase.status is PurchaseStatus.PAID


def test_unknown_or_inactive_package_is_a_validation_error(client, store):
    store.put_package(CreditPackageRecord(id="pkg-old", name="Retired", credits=10, price=500, is_active=False))
    login(client, "user-1")
    for package_id in ("pkg-missing", "pkg-old"):
        r = client.post("/v1/payments/verify", json=verify_body("o", f"p-{package_id}", package_id=package_id, amount=500, credits=10))
        assert r.status_code == 400
        assert r.json()["details"]["fields"][0]["field"] == "package_id"
    assert _balance(client) == 0


def test_verify_rejects_terms_that_differ_from_the_package(client, store):
    store.put_package(CreditPackageRecord(id="pkg-10", name="Starter", credits=10, price=500))
    login(client, "user-1")
    r = client.post("/v1/payments/verify", json=verify_body("order_c", "pay_c", package_id="pkg-10", amount=100, credits=1000))
    assert r.status_code == 400
    fields = {f["field"] for f in r.json()["details"]["fields"]}
    assert fields == {"amount", "credits"}
    assert _balance(client) == 0
    assert asyncio.run(store.list_purchases("user-1")) == []


def test_create_order_rejects_terms_that_differ_from_the_package(client, store, gateway):
    store.put_package(CreditPackageRecord(id="pkg-10", name="Starter", credits=10, price=500))
    login(client, "user-1")
    r = client.post("/v1/payments/orders", json={"package_id": "pkg-10", "amount": 500, "credits": 50})
    assert r.status_code == 400
    assert r.json()["details"]["fields"] == [{"field": "credits", "message": "Does not match the package"}]
    assert gateway.orders == []


def test_agent_package_grants_access(client, store):
    seed_agent(store, "agent-1")
    login(client, "user-1")
    r = client.post("/v1/payments/verify", json=verify_body("order_a", "pay_a", package_id="agent_agent-1", amount=500, credits=10))
    assert r.status_code == 200
    assert asyncio.run(store.has_agent_access("user-1", "agent-1"))
    [purchase] = asyncio.run(store.list_purchases("user-1"))
    package = asyncio.run(store.get_package(purchase.package_id))
    assert package.name == payments_service.AGENT_PACKAGE_NAME
    assert purchase.agent_id == "agent-1"


def test_unknown_agent_still_applies_credits(client, store):
    login(client, "user-1")
    r = client.post("/v1/payments/verify", json=verify_body("order_a", "pay_a", package_id="agent_ghost", amount=500, credits=10))
    assert r.status_code == 200
    assert r.json()["credits"] == 10
    assert not asyncio.run(store.has_agent_access("user-1", "ghost"))


def test_missing_fields_without_order_row(client):
    login(client, "user-1")
    r = client.post("/v1/payments/verify", json=verify_body("order_z", "pay_z"))
    assert r.status_code == 400
    fields = {f["field"] for f in r.json()["details"]["fields"]}
    assert fields == {"package_id", "amount", "credits"}


def test_create_order_records_created_row(client, store, gateway):
    store.put_package(CreditPackageRecord(id="pkg-10", name="Starter", credits=10, price=500))
    login(client, "user-1", email="u1@example.com")
    r = client.post("/v1/payments/orders", json={"package_id": "pkg-10", "amount": 500, "credits": 10})
    assert r.status_code == 201
    body = r.json()
    assert body == {"order_id": "order_1", "amount": 500, "currency": "INR", "key_id": "rzp_test_key"}
    assert gateway.orders[0]["notes"] == {"user_id": "user-1", "package_id": "pkg-10", "credits": "10"}
    order = asyncio.run(store.get_purchase_by_order("order_1"))
    assert order.status is PurchaseStatus.CREATED
    assert order.account_id == "user-1"
    assert asyncio.run(store.get_account("user-1")).email == "u1@example.com"

    verified = client.post("/v1/payments/verify", json=verify_body("order_1", "pay_1"))
    assert verified.json()["credits"] == 10


def test_create_order_validates_ranges(client):
    login(client, "user-1")
    r = client.post("/v1/payments/orders", json={"package_id": "pkg", "amount": 0, "credits": 100_001})
    assert r.status_code == 400
    fields = {f["field"] for f in r.json()["details"]["fields"]}
    assert fields == {"amount", "credits"}


def test_create_order_without_gateway(client):
    from creditledger.main import app

    app.dependency_overrides[payments_service.get_payment_gateway] = lambda: None
    login(client, "user-1")
    r = client.post("/v1/payments/orders", json={"package_id": "pkg", "amount": 500, "credits": 10})
    assert r.status_code == 503
    assert r.json()["code"] == "PAYMENTS_NOT_CONFIGURED"


def test_webhook_and_verify_converge(client, store):
    login(client, "user-1")
    _open_order(store)

    body, headers = webhook_request(_captured("order_1", "pay_1"))
    r = client.post("/v1/payments/webhook", content=body, headers=headers)
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "credits_added": 10}

    again = client.post("/v1/payments/webhook", content=body, headers=headers)
    assert again.json() == {"status": "ok", "duplicate": True}

    verified = client.post("/v1/payments/verify", json=verify_body("order_1", "pay_1"))
    assert verified.status_code == 409
    assert _balance(client) == 10


def test_webhook_without_order_row_uses_notes(client, store):
    login(client, "user-7")
    body, headers = webhook_request(_captured("order_n", "pay_n", notes={"user_id": "user-7", "credits": "25"}))
    r = client.post("/v1/payments/webhook", content=body, headers=headers)
    assert r.json()["credits_added"] == 25
    assert _balance(client) == 25


def test_webhook_rejects_bad_signature(client, store):
    _open_order(store)
    body, headers = webhook_request(_captured("order_1", "pay_1"))
    headers["X-Razorpay-Signature"] = "0" * 64
    r = client.post("/v1/payments/webhook", content=body, headers=headers)
    assert r.status_code == 402
    assert r.json()["code"] == "INVALID_SIGNATURE"
    assert asyncio.run(store.get_account("user-1")) is None
    [entry] = [e for e in store.audit_log if e.action == AuditAction.PAYMENT_SIGNATURE_INVALID]
    assert entry.actor_id is None
    assert entry.details == {"source": "webhook"}


def test_webhook_payment_failed_then_late_capture(client, store):
    _open_order(store)
    failed = {
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"id": "pay_x", "order_id": "order_1", "error_description": "declined"}}},
    }
    body, headers = webhook_request(failed)
    assert client.post("/v1/payments/webhook", content=body, headers=headers).status_code == 200
    order = asyncio.run(store.get_purchase_by_order("order_1"))
    assert order.status is PurchaseStatus.FAILED
    assert order.failure_reason == "declined"

    body, headers = webhook_request(_captured("order_1", "pay_2"))
    assert client.post("/v1/payments/webhook", content=body, headers=headers).json()["credits_added"] == 10
    assert asyncio.run(store.get_purchase_by_order("order_1")).status is PurchaseStatus.PAID


def test_webhook_ignores_other_events(client):
    body, headers = webhook_request({"event": "order.paid", "payload": {}})
    r = client.post("/v1/payments/webhook", content=body, headers=headers)
    assert r.json() == {"status": "ok", "ignored": True}


@pytest.mark.asyncio
async def test_concurrent_verifications_credit_once(store):
    await store.record_order("user-1", "order_1", amount_paid=500, credits_purchased=10)
    user = CurrentUser(id="user-1")

    async def attempt():
        try:
            return await payments_service.verify_payment(
                store, user, "order_1", "pay_1", sign_razorpay_payment("order_1", "pay_1", KEY_SECRET)
            )
        except DuplicatePaymentError:
            return None

    results = await asyncio.gather(*[attempt() for _ in range(5)])
    assert sum(r is not None for r in results) == 1
    assert (await store.get_account("user-1")).credits == 10
