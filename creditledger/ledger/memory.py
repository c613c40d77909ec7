"""Process-local ledger for development and tests.

A single lock guards all state; no critical section awaits, so each operation is
atomic with respect to every other coroutine and thread using the store.
"""

import threading
from datetime import datetime
from typing import Any

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
)

_CLAIMABLE = (PurchaseStatus.CREATED, PurchaseStatus.FAILED)
_TERMINAL = (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


def _newest_first(rows: list, limit: int, offset: int) -> list:
    # stable sort keeps insertion order for equal timestamps
    ordered = sorted(rows, key=lambda r: r.created_at)[::-1]
    return [r.model_copy() for r in ordered[offset:offset + limit]]


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accounts: dict[str, AccountRecord] = {}
        self._agents: dict[str, AgentRecord] = {}
        self._access: set[tuple[str, str]] = set()
        self._packages: dict[str, CreditPackageRecord] = {}
        self._purchases: dict[str, CreditPurchaseRecord] = {}
        self._purchase_by_payment: dict[str, str] = {}
        self._purchase_by_order: dict[str, str] = {}
        self._transactions: list[CreditTransactionRecord] = []
        self._executions: dict[str, ExecutionRecord] = {}
        self.audit_log: list[AuditLogRecord] = []

    def put_agent(self, agent: AgentRecord) -> AgentRecord:
        """Seed an agent (agents are managed outside the ledger)."""
        with self._lock:
            self._agents[agent.id] = agent.model_copy()
        return agent

    def _credit_locked(self, account_id: str, amount: int) -> AccountRecord:
        account = self._accounts.get(account_id)
        if account is None:
            account = AccountRecord(id=account_id)
            self._accounts[account_id] = account
        account.credits += amount
        account.updated_at = datetime.utcnow()
        return account

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
        with self._lock:
            existing_id = self._purchase_by_payment.get(gateway_payment_id)
            if existing_id is not None:
                return PurchaseOutcome(
                    success=False,
                    purchase_id=existing_id,
                    failure=StoreFailure(
                        FailureKind.CONSTRAINT_VIOLATION,
                        "Payment already processed",
                        constraint=PAYMENT_ID_CONSTRAINT,
                        detail={"purchase_id": existing_id, "payment_id": gateway_payment_id},
                    ),
                )
            now = datetime.utcnow()
            order_row_id = self._purchase_by_order.get(gateway_order_id)
            purchase = self._purchases.get(order_row_id) if order_row_id else None
            if purchase is None or purchase.status not in _CLAIMABLE:
                purchase = CreditPurchaseRecord(
                    account_id=account_id,
                    gateway_order_id=gateway_order_id,
                    amount_paid=amount_paid,
                    credits_purchased=credits_purchased,
                )
                self._purchases[purchase.id] = purchase
                self._purchase_by_order.setdefault(gateway_order_id, purchase.id)
            purchase.package_id = package_id
            purchase.gateway_payment_id = gateway_payment_id
            purchase.gateway_signature = signature
            purchase.amount_paid = amount_paid
            purchase.credits_purchased = credits_purchased
            purchase.agent_id = agent_id
            purchase.currency = currency
            purchase.status = PurchaseStatus.PAID
            purchase.updated_at = now
            self._purchase_by_payment[gateway_payment_id] = purchase.id

            account = self._credit_locked(account_id, credits_purchased)
            account.total_purchased += credits_purchased
            self._transactions.append(
                CreditTransactionRecord(
                    account_id=account_id,
                    type=TransactionType.PURCHASE,
                    amount=credits_purchased,
                    balance_after=account.credits,
                    purchase_id=purchase.id,
                    agent_id=agent_id,
                )
            )
            if agent_id:
                self._access.add((account_id, agent_id))
            return PurchaseOutcome(success=True, new_balance=account.credits, purchase_id=purchase.id)

    async def deduct_credits_atomic(
        self,
        account_id: str,
        amount: int,
        agent_id: str | None = None,
        execution_id: str | None = None,
    ) -> BalanceOutcome:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return BalanceOutcome(
                    success=False,
                    failure=StoreFailure(FailureKind.NOT_FOUND, "User not found", detail={"resource": "Account"}),
                )
            if account.credits < amount:
                return BalanceOutcome(
                    success=False,
                    failure=StoreFailure(
                        FailureKind.INSUFFICIENT_CREDITS,
                        "Insufficient credits",
                        detail={"current_credits": account.credits, "required_credits": amount},
                    ),
                )
            account.credits -= amount
            account.updated_at = datetime.utcnow()
            self._transactions.append(
                CreditTransactionRecord(
                    account_id=account_id,
                    type=TransactionType.USAGE,
                    amount=-amount,
                    balance_after=account.credits,
                    execution_id=execution_id,
                    agent_id=agent_id,
                )
            )
            return BalanceOutcome(success=True, new_balance=account.credits)

    async def credit_account_atomic(
        self,
        account_id: str,
        amount: int,
        reason: TransactionType,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> BalanceOutcome:
        with self._lock:
            if account_id not in self._accounts:
                return BalanceOutcome(
                    success=False,
                    failure=StoreFailure(FailureKind.NOT_FOUND, "User not found", detail={"resource": "Account"}),
                )
            account = self._credit_locked(account_id, amount)
            self._transactions.append(
                CreditTransactionRecord(
                    account_id=account_id,
                    type=reason,
                    amount=amount,
                    balance_after=account.credits,
                    purchase_id=reference_id if reason is TransactionType.REFUND else None,
                    description=description,
                )
            )
            return BalanceOutcome(success=True, new_balance=account.credits)

    async def get_account(self, account_id: str) -> AccountRecord | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return account.model_copy() if account else None

    async def ensure_account(self, account_id: str, email: str = "") -> tuple[AccountRecord, bool]:
        with self._lock:
            account = self._accounts.get(account_id)
            created = account is None
            if created:
                account = AccountRecord(id=account_id, email=email)
                self._accounts[account_id] = account
            elif email and not account.email:
                account.email = email
            return account.model_copy(), created

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.model_copy() if agent else None

    async def has_agent_access(self, account_id: str, agent_id: str) -> bool:
        with self._lock:
            return (account_id, agent_id) in self._access

    async def grant_agent_access(self, account_id: str, agent_id: str) -> None:
        with self._lock:
            self._access.add((account_id, agent_id))

    async def get_package(self, package_id: str) -> CreditPackageRecord | None:
        with self._lock:
            pkg = self._packages.get(package_id)
            return pkg.model_copy() if pkg else None

    async def get_or_create_package(
        self, name: str, description: str, credits: int, price: int
    ) -> CreditPackageRecord:
        with self._lock:
            for pkg in self._packages.values():
                if pkg.name == name:
                    return pkg.model_copy()
            pkg = CreditPackageRecord(name=name, description=description, credits=credits, price=price)
            self._packages[pkg.id] = pkg
            return pkg.model_copy()

    def put_package(self, package: CreditPackageRecord) -> CreditPackageRecord:
        with self._lock:
            if any(p.name == package.name and p.id != package.id for p in self._packages.values()):
                raise StoreError(
                    StoreFailure(FailureKind.CONSTRAINT_VIOLATION, "Package name already exists", constraint="name")
                )
            self._packages[package.id] = package.model_copy()
        return package

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
        with self._lock:
            if gateway_order_id in self._purchase_by_order:
                raise StoreError(
                    StoreFailure(
                        FailureKind.CONSTRAINT_VIOLATION,
                        "Order already recorded",
                        constraint="gateway_order_id",
                    )
                )
            purchase = CreditPurchaseRecord(
                account_id=account_id,
                package_id=package_id,
                gateway_order_id=gateway_order_id,
                amount_paid=amount_paid,
                credits_purchased=credits_purchased,
                agent_id=agent_id,
                currency=currency,
            )
            self._purchases[purchase.id] = purchase
            self._purchase_by_order[gateway_order_id] = purchase.id
            return purchase.model_copy()

    async def get_purchase_by_order(self, gateway_order_id: str) -> CreditPurchaseRecord | None:
        with self._lock:
            purchase_id = self._purchase_by_order.get(gateway_order_id)
            purchase = self._purchases.get(purchase_id) if purchase_id else None
            return purchase.model_copy() if purchase else None

    async def mark_order_failed(self, gateway_order_id: str, reason: str) -> bool:
        with self._lock:
            purchase_id = self._purchase_by_order.get(gateway_order_id)
            purchase = self._purchases.get(purchase_id) if purchase_id else None
            if purchase is None or purchase.status is not PurchaseStatus.CREATED:
                return False
            purchase.status = PurchaseStatus.FAILED
            purchase.failure_reason = reason
            purchase.updated_at = datetime.utcnow()
            return True

    async def list_purchases(self, account_id: str, limit: int = 50, offset: int = 0) -> list[CreditPurchaseRecord]:
        with self._lock:
            rows = [p for p in self._purchases.values() if p.account_id == account_id]
            return _newest_first(rows, limit, offset)

    async def list_transactions(self, account_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransactionRecord]:
        with self._lock:
            rows = [t for t in self._transactions if t.account_id == account_id]
            return _newest_first(rows, limit, offset)

    async def create_execution(
        self,
        account_id: str,
        agent_id: str,
        workflow_id: str | None,
        inputs: dict[str, Any],
        credits_charged: int,
    ) -> ExecutionRecord:
        execution = ExecutionRecord(
            account_id=account_id,
            agent_id=agent_id,
            workflow_id=workflow_id,
            inputs=dict(inputs),
            credits_charged=credits_charged,
        )
        with self._lock:
            self._executions[execution.id] = execution
        return execution.model_copy()

    async def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise StoreError(
                    StoreFailure(FailureKind.NOT_FOUND, "Execution not found", detail={"resource": "Execution"})
                )
            execution.status = status
            execution.result = result
            execution.error = error
            if status in _TERMINAL:
                execution.completed_at = datetime.utcnow()

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy() if execution else None

    async def append_audit(self, entry: AuditLogRecord) -> None:
        with self._lock:
            self.audit_log.append(entry.model_copy())
