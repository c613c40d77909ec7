"""MongoDB ledger: Beanie documents for plain reads, Motor collections for atomic ops.

Balance changes are single-document conditional updates (``credits >= amount``),
so they are linearizable per account without any application-level lock. With
``use_transactions`` (replica set required) each balance change and its history
row commit together through ``ClientSession.with_transaction``, which retries on
write conflicts between concurrent transactions. Either way the unique partial
index on ``gateway_payment_id`` is what prevents a double credit.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from creditledger.core.logging import get_logger
from creditledger.ledger.base import LedgerStore
from creditledger.ledger.records import (
    PAYMENT_ID_CONSTRAINT,
    AccountRecord,
    AgentRecord,
    AuditLogRecord,
    BalanceOutcome,
    CreditPackageRecord,
    CreditPurchaseRecord,
    CreditTransactionRecord,
    ExecutionRecord,
    ExecutionStatus,
    FailureKind,
    PurchaseOutcome,
    PurchaseStatus,
    StoreError,
    StoreFailure,
    TransactionType,
    new_id,
)
from creditledger.models.account import Account
from creditledger.models.agent import Agent, AgentAccess
from creditledger.models.audit_log import AuditLog
from creditledger.models.credit_package import CreditPackage
from creditledger.models.credit_purchase import CreditPurchase
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.execution import Execution

log = get_logger(__name__)

_CLAIMABLE = [PurchaseStatus.CREATED.value, PurchaseStatus.FAILED.value]
_TERMINAL = (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


def _from_raw(model, raw: dict[str, Any]):
    data = dict(raw)
    data["id"] = data.pop("_id")
    return model.model_validate(data)


def _from_doc(model, doc):
    return model.model_validate(doc.model_dump())


def _duplicate_fields(exc: DuplicateKeyError) -> set[str]:
    details = exc.details or {}
    pattern = details.get("keyPattern") or {}
    if pattern:
        return set(pattern)
    return {PAYMENT_ID_CONSTRAINT} if PAYMENT_ID_CONSTRAINT in str(exc) else set()


def _transient(exc: PyMongoError) -> StoreFailure:
    return StoreFailure(FailureKind.TRANSIENT, f"Store unavailable: {exc.__class__.__name__}")


@contextmanager
def _store_errors():
    try:
        yield
    except DuplicateKeyError as e:
        fields = sorted(_duplicate_fields(e))
        raise StoreError(
            StoreFailure(
                FailureKind.CONSTRAINT_VIOLATION,
                "Duplicate key",
                constraint=fields[0] if fields else None,
            )
        ) from e
    except PyMongoError as e:
        raise StoreError(_transient(e)) from e


class MongoLedgerStore(LedgerStore):
    def __init__(self, use_transactions: bool = True) -> None:
        self.use_transactions = use_transactions

    async def _atomic(self, body):
        """Run ``body(session)``; in transaction mode Motor retries it on TransientTransactionError."""
        if not self.use_transactions:
            return await body(None)
        client = Account.get_motor_collection().database.client
        async with await client.start_session() as session:
            return await session.with_transaction(body)

    async def _duplicate_payment(self, gateway_payment_id: str) -> PurchaseOutcome:
        existing = await CreditPurchase.get_motor_collection().find_one(
            {"gateway_payment_id": gateway_payment_id}, {"_id": 1}
        )
        purchase_id = existing["_id"] if existing else None
        return PurchaseOutcome(
            success=False,
            purchase_id=purchase_id,
            failure=StoreFailure(
                FailureKind.CONSTRAINT_VIOLATION,
                "Payment already processed",
                constraint=PAYMENT_ID_CONSTRAINT,
                detail={"purchase_id": purchase_id, "payment_id": gateway_payment_id},
            ),
        )

    async def _add_purchased_credits(self, account_id: str, credits: int, now: datetime, session=None) -> dict:
        update = {
            "$inc": {"credits": credits, "total_purchased": credits},
            "$set": {"updated_at": now},
            "$setOnInsert": {"email": "", "created_at": now},
        }
        try:
            return await Account.get_motor_collection().find_one_and_update(
                {"_id": account_id}, update, upsert=True, return_document=ReturnDocument.AFTER, session=session
            )
        except DuplicateKeyError as e:
            if session is not None or "_id" not in _duplicate_fields(e):
                raise
            # Lost an upsert race on a new account: the document exists now
            return await Account.get_motor_collection().find_one_and_update(
                {"_id": account_id}, update, return_document=ReturnDocument.AFTER
            )

    async def apply_purchase_atomic(
        self,
        account_id: str,
        package_id: str | None,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        amount_paid: int,
        credits_purchased: int,
        agent_id: str | None = None,
        currency: str = "INR",
    ) -> PurchaseOutcome:
        purchases = CreditPurchase.get_motor_collection()

        async def body(session) -> PurchaseOutcome | None:
            # A retried attempt sees the payment committed by the winner
            if await purchases.find_one({"gateway_payment_id": gateway_payment_id}, {"_id": 1}, session=session):
                return None
            now = datetime.utcnow()
            paid = {
                "account_id": account_id,
                "package_id": package_id,
                "gateway_payment_id": gateway_payment_id,
                "gateway_signature": signature,
                "amount_paid": amount_paid,
                "credits_purchased": credits_purchased,
                "agent_id": agent_id,
                "currency": currency,
                "status": PurchaseStatus.PAID.value,
                "updated_at": now,
            }
            claimed = await purchases.find_one_and_update(
                {"gateway_order_id": gateway_order_id, "status": {"$in": _CLAIMABLE}},
                {"$set": paid},
                sort=[("created_at", 1)],
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if claimed is not None:
                purchase_id = claimed["_id"]
            else:
                purchase = CreditPurchase(gateway_order_id=gateway_order_id, **paid)
                await purchase.insert(session=session)
                purchase_id = purchase.id

            account = await self._add_purchased_credits(account_id, credits_purchased, now, session=session)
            await CreditTransaction(
                account_id=account_id,
                type=TransactionType.PURCHASE,
                amount=credits_purchased,
                balance_after=account["credits"],
                purchase_id=purchase_id,
                agent_id=agent_id,
            ).insert(session=session)
            if agent_id:
                await self._grant_access(account_id, agent_id, session=session)
            return PurchaseOutcome(success=True, new_balance=account["credits"], purchase_id=purchase_id)

        try:
            outcome = await self._atomic(body)
        except DuplicateKeyError as e:
            if PAYMENT_ID_CONSTRAINT in _duplicate_fields(e):
                return await self._duplicate_payment(gateway_payment_id)
            log.warning("purchase_constraint_violation", order_id=gateway_order_id, error=str(e))
            return PurchaseOutcome(
                success=False,
                failure=StoreFailure(FailureKind.CONSTRAINT_VIOLATION, "Constraint violation", constraint=None),
            )
        except PyMongoError as e:
            log.warning("purchase_store_error", order_id=gateway_order_id, error=str(e))
            return PurchaseOutcome(success=False, failure=_transient(e))
        if outcome is None:
            return await self._duplicate_payment(gateway_payment_id)
        return outcome

    async def deduct_credits_atomic(
        self,
        account_id: str,
        amount: int,
        agent_id: str | None = None,
        execution_id: str | None = None,
    ) -> BalanceOutcome:
        accounts = Account.get_motor_collection()

        async def body(session) -> BalanceOutcome:
            # Check and decrement in one conditional update: never negative
            account = await accounts.find_one_and_update(
                {"_id": account_id, "credits": {"$gte": amount}},
                {"$inc": {"credits": -amount}, "$set": {"updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if account is None:
                current = await accounts.find_one({"_id": account_id}, {"credits": 1}, session=session)
                if current is None:
                    return BalanceOutcome(
                        success=False,
                        failure=StoreFailure(FailureKind.NOT_FOUND, "User not found", detail={"resource": "Account"}),
                    )
                return BalanceOutcome(
                    success=False,
                    failure=StoreFailure(
                        FailureKind.INSUFFICIENT_CREDITS,
                        "Insufficient credits",
                        detail={"current_credits": current["credits"], "required_credits": amount},
                    ),
                )
            await CreditTransaction(
                account_id=account_id,
                type=TransactionType.USAGE,
                amount=-amount,
                balance_after=account["credits"],
                execution_id=execution_id,
                agent_id=agent_id,
            ).insert(session=session)
            return BalanceOutcome(success=True, new_balance=account["credits"])

        try:
            return await self._atomic(body)
        except PyMongoError as e:
            log.warning("deduct_store_error", account_id=account_id, error=str(e))
            return BalanceOutcome(success=False, failure=_transient(e))

    async def credit_account_atomic(
        self,
        account_id: str,
        amount: int,
        reason: TransactionType,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> BalanceOutcome:
        accounts = Account.get_motor_collection()

        async def body(session) -> BalanceOutcome:
            account = await accounts.find_one_and_update(
                {"_id": account_id},
                {"$inc": {"credits": amount}, "$set": {"updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if account is None:
                return BalanceOutcome(
                    success=False,
                    failure=StoreFailure(FailureKind.NOT_FOUND, "User not found", detail={"resource": "Account"}),
                )
            await CreditTransaction(
                account_id=account_id,
                type=reason,
                amount=amount,
                balance_after=account["credits"],
                purchase_id=reference_id if reason is TransactionType.REFUND else None,
                description=description,
            ).insert(session=session)
            return BalanceOutcome(success=True, new_balance=account["credits"])

        try:
            return await self._atomic(body)
        except PyMongoError as e:
            log.warning("credit_store_error", account_id=account_id, error=str(e))
            return BalanceOutcome(success=False, failure=_transient(e))

    async def get_account(self, account_id: str) -> AccountRecord | None:
        with _store_errors():
            account = await Account.get(account_id)
        return _from_doc(AccountRecord, account) if account else None

    async def ensure_account(self, account_id: str, email: str = "") -> tuple[AccountRecord, bool]:
        now = datetime.utcnow()
        with _store_errors():
            result = await Account.get_motor_collection().update_one(
                {"_id": account_id},
                {"$setOnInsert": {"email": email, "credits": 0, "total_purchased": 0, "created_at": now, "updated_at": now}},
                upsert=True,
            )
            account = await Account.get(account_id)
        return _from_doc(AccountRecord, account), result.upserted_id is not None

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        with _store_errors():
            agent = await Agent.get(agent_id)
        return _from_doc(AgentRecord, agent) if agent else None

    async def has_agent_access(self, account_id: str, agent_id: str) -> bool:
        with _store_errors():
            access = await AgentAccess.find_one(
                AgentAccess.account_id == account_id,
                AgentAccess.agent_id == agent_id,
            )
        return access is not None

    async def _grant_access(self, account_id: str, agent_id: str, session=None) -> None:
        try:
            await AgentAccess.get_motor_collection().update_one(
                {"account_id": account_id, "agent_id": agent_id},
                {"$setOnInsert": {"_id": new_id(), "granted_at": datetime.utcnow()}},
                upsert=True,
                session=session,
            )
        except DuplicateKeyError:
            # Concurrent grant for the same pair already inserted it
            pass

    async def grant_agent_access(self, account_id: str, agent_id: str) -> None:
        with _store_errors():
            await self._grant_access(account_id, agent_id)

    async def get_package(self, package_id: str) -> CreditPackageRecord | None:
        with _store_errors():
            pkg = await CreditPackage.get(package_id)
        return _from_doc(CreditPackageRecord, pkg) if pkg else None

    async def get_or_create_package(
        self, name: str, description: str, credits: int, price: int
    ) -> CreditPackageRecord:
        coll = CreditPackage.get_motor_collection()
        with _store_errors():
            try:
                raw = await coll.find_one_and_update(
                    {"name": name},
                    {
                        "$setOnInsert": {
                            "_id": new_id(),
                            "description": description,
                            "credits": credits,
                            "price": price,
                            "is_active": True,
                            "created_at": datetime.utcnow(),
                        }
                    },
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                # Lost the upsert race on the unique name; the winner's row exists now
                raw = await coll.find_one({"name": name})
        return _from_raw(CreditPackageRecord, raw)

    async def record_order(
        self,
        account_id: str,
        gateway_order_id: str,
        amount_paid: int,
        credits_purchased: int,
        package_id: str | None = None,
        agent_id: str | None = None,
        currency: str = "INR",
    ) -> CreditPurchaseRecord:
        with _store_errors():
            if await CreditPurchase.find_one(CreditPurchase.gateway_order_id == gateway_order_id):
                raise StoreError(
                    StoreFailure(FailureKind.CONSTRAINT_VIOLATION, "Order already recorded", constraint="gateway_order_id")
                )
            purchase = CreditPurchase(
                account_id=account_id,
                package_id=package_id,
                gateway_order_id=gateway_order_id,
                amount_paid=amount_paid,
                credits_purchased=credits_purchased,
                agent_id=agent_id,
                currency=currency,
            )
            await purchase.insert()
        return _from_doc(CreditPurchaseRecord, purchase)

    async def get_purchase_by_order(self, gateway_order_id: str) -> CreditPurchaseRecord | None:
        with _store_errors():
            purchase = await (
                CreditPurchase.find(CreditPurchase.gateway_order_id == gateway_order_id)
                .sort(+CreditPurchase.created_at)
                .first_or_none()
            )
        return _from_doc(CreditPurchaseRecord, purchase) if purchase else None

    async def mark_order_failed(self, gateway_order_id: str, reason: str) -> bool:
        with _store_errors():
            result = await CreditPurchase.get_motor_collection().update_one(
                {"gateway_order_id": gateway_order_id, "status": PurchaseStatus.CREATED.value},
                {
                    "$set": {
                        "status": PurchaseStatus.FAILED.value,
                        "failure_reason": reason,
                        "updated_at": datetime.utcnow(),
                    }
                },
            )
        return result.modified_count > 0

    async def list_purchases(self, account_id: str, limit: int = 50, offset: int = 0) -> list[CreditPurchaseRecord]:
        with _store_errors():
            rows = (
                await CreditPurchase.find(CreditPurchase.account_id == account_id)
                .sort(-CreditPurchase.created_at)
                .skip(offset)
                .limit(limit)
                .to_list()
            )
        return [_from_doc(CreditPurchaseRecord, r) for r in rows]

    async def list_transactions(self, account_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransactionRecord]:
        with _store_errors():
            rows = (
                await CreditTransaction.find(CreditTransaction.account_id == account_id)
                .sort(-CreditTransaction.created_at)
                .skip(offset)
                .limit(limit)
                .to_list()
            )
        return [_from_doc(CreditTransactionRecord, r) for r in rows]

    async def create_execution(
        self,
        account_id: str,
        agent_id: str,
        workflow_id: str | None,
        inputs: dict[str, Any],
        credits_charged: int,
    ) -> ExecutionRecord:
        execution = Execution(
            account_id=account_id,
            agent_id=agent_id,
            workflow_id=workflow_id,
            inputs=inputs,
            credits_charged=credits_charged,
        )
        with _store_errors():
            await execution.insert()
        return _from_doc(ExecutionRecord, execution)

    async def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        fields: dict[str, Any] = {"status": status.value, "result": result, "error": error}
        if status in _TERMINAL:
            fields["completed_at"] = datetime.utcnow()
        with _store_errors():
            res = await Execution.get_motor_collection().update_one({"_id": execution_id}, {"$set": fields})
        if res.matched_count == 0:
            raise StoreError(StoreFailure(FailureKind.NOT_FOUND, "Execution not found", detail={"resource": "Execution"}))

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with _store_errors():
            execution = await Execution.get(execution_id)
        return _from_doc(ExecutionRecord, execution) if execution else None

    async def append_audit(self, entry: AuditLogRecord) -> None:
        with _store_errors():
            await AuditLog(**entry.model_dump()).insert()
