"""Ledger stores: atomic operations, idempotency and order bookkeeping.

Each test runs against the in-memory store and, when ``MONGODB_URI`` answers a
ping, against a throwaway MongoDB database.
"""

import asyncio
import os

import pytest
import pytest_asyncio
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from creditledger.db.init import DOCUMENT_MODELS
from creditledger.ledger.memory import MemoryLedgerStore
from creditledger.ledger.mongo import MongoLedgerStore, _duplicate_fields
from creditledger.ledger.records import (
    ExecutionStatus,
    FailureKind,
    PurchaseStatus,
    StoreError,
    TransactionType,
    new_id,
)

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture(params=["memory", "mongo"])
async def ledger(request):
    if request.param == "memory":
        yield MemoryLedgerStore()
        return
    client = AsyncIOMotorClient(os.environ.get("MONGODB_URI", "mongodb://localhost:27017"), serverSelectionTimeoutMS=500)
    try:
        hello = await client.admin.command("hello")
    except PyMongoError:
        client.close()
        pytest.skip("MongoDB not reachable")
    database = client[f"creditledger_test_{new_id()[:8]}"]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    # Multi-document transactions need a replica set
    yield MongoLedgerStore(use_transactions="setName" in hello)
    await client.drop_database(database.name)
    client.close()


async def _purchase(store, payment_id="pay_1", order_id="order_1", credits=10, account_id="acct-1", **kw):
    return await store.apply_purchase_atomic(
        account_id=account_id,
        package_id="pkg-1",
        gateway_order_id=order_id,
        gateway_payment_id=payment_id,
        signature="sig",
        amount_paid=500,
        credits_purchased=credits,
        **kw,
    )


async def test_same_payment_id_credits_once(ledger):
    first = await _purchase(ledger)
    assert first.success
    assert first.new_balance == 10

    second = await _purchase(ledger)
    assert not second.success
    assert second.failure.kind is FailureKind.CONSTRAINT_VIOLATION
    assert second.failure.is_duplicate_payment
    assert second.purchase_id == first.purchase_id
    assert (await ledger.get_account("acct-1")).credits == 10


async def test_concurrent_applies_of_one_payment_credit_once(ledger):
    outcomes = await asyncio.gather(*[_purchase(ledger) for _ in range(8)])
    assert sum(o.success for o in outcomes) == 1
    assert all(o.failure.is_duplicate_payment for o in outcomes if not o.success)
    account = await ledger.get_account("acct-1")
    assert account.credits == 10
    assert account.total_purchased == 10
    assert len(await ledger.list_transactions("acct-1")) == 1


async def test_concurrent_applies_on_one_order_row_credit_once(ledger):
    await ledger.record_order("acct-1", "order_1", amount_paid=500, credits_purchased=10)
    outcomes = await asyncio.gather(*[_purchase(ledger) for _ in range(6)])
    assert sum(o.success for o in outcomes) == 1
    assert len(await ledger.list_purchases("acct-1")) == 1
    assert (await ledger.get_account("acct-1")).credits == 10


async def test_concurrent_first_purchases_for_new_account_all_land(ledger):
    outcomes = await asyncio.gather(
        *[_purchase(ledger, payment_id=f"pay_{i}", order_id=f"order_{i}", credits=5) for i in range(5)]
    )
    assert all(o.success for o in outcomes)
    assert (await ledger.get_account("acct-1")).credits == 25


async def test_concurrent_deductions_never_overspend(ledger):
    await _purchase(ledger, credits=5)
    outcomes = await asyncio.gather(*[ledger.deduct_credits_atomic("acct-1", 1) for _ in range(12)])
    successes = [o for o in outcomes if o.success]
    failures = [o for o in outcomes if not o.success]
    assert len(successes) == 5
    assert len(failures) == 7
    assert all(o.failure.kind is FailureKind.INSUFFICIENT_CREDITS for o in failures)
    assert (await ledger.get_account("acct-1")).credits == 0
    usage = [t for t in await ledger.list_transactions("acct-1") if t.type is TransactionType.USAGE]
    assert sorted(t.balance_after for t in usage) == [0, 1, 2, 3, 4]


async def test_concurrent_credits_all_apply(ledger):
    await ledger.ensure_account("acct-1")
    outcomes = await asyncio.gather(
        *[ledger.credit_account_atomic("acct-1", 2, TransactionType.BONUS) for _ in range(6)]
    )
    assert all(o.success for o in outcomes)
    assert (await ledger.get_account("acct-1")).credits == 12


async def test_zero_cost_deduction_succeeds_on_empty_account(ledger):
    await ledger.ensure_account("acct-1")
    outcome = await ledger.deduct_credits_atomic("acct-1", 0, agent_id="free-agent")
    assert outcome.success
    assert outcome.new_balance == 0


async def test_deduct_reports_current_and_required(ledger):
    await _purchase(ledger, credits=2)
    outcome = await ledger.deduct_credits_atomic("acct-1", 3)
    assert outcome.failure.detail == {"current_credits": 2, "required_credits": 3}
    assert (await ledger.get_account("acct-1")).credits == 2


async def test_deduct_and_credit_unknown_account(ledger):
    deducted = await ledger.deduct_credits_atomic("nobody", 1)
    assert deducted.failure.kind is FailureKind.NOT_FOUND
    credited = await ledger.credit_account_atomic("nobody", 5, TransactionType.BONUS)
    assert credited.failure.kind is FailureKind.NOT_FOUND


async def test_credit_account_appends_transaction(ledger):
    await ledger.ensure_account("acct-1")
    outcome = await ledger.credit_account_atomic(
        "acct-1", 4, TransactionType.REFUND, reference_id="p-9", description="goodwill"
    )
    assert outcome.new_balance == 4
    [txn] = await ledger.list_transactions("acct-1")
    assert txn.type is TransactionType.REFUND
    assert txn.purchase_id == "p-9"
    assert txn.balance_after == 4


async def test_purchase_claims_open_order_row(ledger):
    order = await ledger.record_order("acct-1", "order_1", amount_paid=500, credits_purchased=10)
    outcome = await _purchase(ledger)
    assert outcome.purchase_id == order.id
    row = await ledger.get_purchase_by_order("order_1")
    assert row.status is PurchaseStatus.PAID
    assert row.gateway_payment_id == "pay_1"
    assert len(await ledger.list_purchases("acct-1")) == 1


async def test_late_capture_claims_failed_order(ledger):
    order = await ledger.record_order("acct-1", "order_1", amount_paid=500, credits_purchased=10)
    assert await ledger.mark_order_failed("order_1", "card declined")
    assert not await ledger.mark_order_failed("order_1", "again")
    outcome = await _purchase(ledger)
    assert outcome.purchase_id == order.id
    assert (await ledger.get_purchase_by_order("order_1")).status is PurchaseStatus.PAID


async def test_record_order_twice_is_a_constraint_violation(ledger):
    await ledger.record_order("acct-1", "order_1", amount_paid=500, credits_purchased=10)
    with pytest.raises(StoreError) as exc:
        await ledger.record_order("acct-1", "order_1", amount_paid=500, credits_purchased=10)
    assert exc.value.failure.kind is FailureKind.CONSTRAINT_VIOLATION
    assert exc.value.failure.constraint == "gateway_order_id"


async def test_purchase_with_agent_grants_access(ledger):
    assert not await ledger.has_agent_access("acct-1", "agent-1")
    await _purchase(ledger, agent_id="agent-1")
    assert await ledger.has_agent_access("acct-1", "agent-1")


async def test_get_or_create_package_is_idempotent(ledger):
    first = await ledger.get_or_create_package("Agent Purchase Credits", "desc", 0, 0)
    results = await asyncio.gather(
        *[ledger.get_or_create_package("Agent Purchase Credits", "other", 5, 5) for _ in range(5)]
    )
    assert {p.id for p in results} == {first.id}
    assert results[0].description == "desc"


async def test_concurrent_package_creation_converges(ledger):
    results = await asyncio.gather(
        *[ledger.get_or_create_package("Agent Purchase Credits", f"desc-{i}", 0, 0) for i in range(6)]
    )
    assert len({p.id for p in results}) == 1


async def test_ensure_account_reports_creation_once(ledger):
    _, created = await ledger.ensure_account("acct-1", "a@example.com")
    assert created
    account, created = await ledger.ensure_account("acct-1", "b@example.com")
    assert not created
    assert account.email == "a@example.com"


async def test_execution_lifecycle(ledger):
    execution = await ledger.create_execution("acct-1", "agent-1", "wf-1", {"q": 1}, 3)
    assert execution.status is ExecutionStatus.PENDING
    await ledger.update_execution(execution.id, ExecutionStatus.RUNNING)
    assert (await ledger.get_execution(execution.id)).completed_at is None
    await ledger.update_execution(execution.id, ExecutionStatus.SUCCESS, result={"ok": True})
    done = await ledger.get_execution(execution.id)
    assert done.status is ExecutionStatus.SUCCESS
    assert done.result == {"ok": True}
    assert done.completed_at is not None


async def test_update_unknown_execution_raises(ledger):
    with pytest.raises(StoreError) as exc:
        await ledger.update_execution("missing", ExecutionStatus.FAILED)
    assert exc.value.failure.kind is FailureKind.NOT_FOUND


async def test_transactions_newest_first_and_paginated():
    # Memory only: Mongo stores millisecond timestamps, so back-to-back rows can tie
    store = MemoryLedgerStore()
    await _purchase(store, credits=10)
    for _ in range(3):
        await store.deduct_credits_atomic("acct-1", 1)
    rows = await store.list_transactions("acct-1")
    assert [r.balance_after for r in rows] == sorted((r.balance_after for r in rows))
    assert rows[-1].type is TransactionType.PURCHASE
    page = await store.list_transactions("acct-1", limit=2, offset=1)
    assert len(page) == 2


async def test_duplicate_key_classification():
    on_payment = DuplicateKeyError("E11000", 11000, {"keyPattern": {"gateway_payment_id": 1}})
    assert _duplicate_fields(on_payment) == {"gateway_payment_id"}
    legacy = DuplicateKeyError("E11000 duplicate key error index: uniq_gateway_payment_id", 11000, {})
    assert _duplicate_fields(legacy) == {"gateway_payment_id"}
    other = DuplicateKeyError("E11000", 11000, {"keyPattern": {"account_id": 1, "agent_id": 1}})
    assert _duplicate_fields(other) == {"account_id", "agent_id"}
