from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any

from creditledger.core.config import get_settings
from creditledger.ledger.records import (
    AccountRecord,
    AgentRecord,
    AuditLogRecord,
    BalanceOutcome,
    CreditPackageRecord,
    CreditPurchaseRecord,
    CreditTransactionRecord,
    ExecutionRecord,
    ExecutionStatus,
    PurchaseOutcome,
    TransactionType,
)


class LedgerStore(ABC):
    """Boundary to the durable ledger.

    The three ``*_atomic`` operations are the only way balances change; each one
    performs its check and its mutation as a single store-enforced unit.
    """

    # Atomic balance operations

    @abstractmethod
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
        """Record a paid purchase and credit the account once per payment id."""
        ...

    @abstractmethod
    async def deduct_credits_atomic(
        self,
        account_id: str,
        amount: int,
        agent_id: str | None = None,
        execution_id: str | None = None,
    ) -> BalanceOutcome:
        """Check-and-decrement the balance; fails with INSUFFICIENT_CREDITS."""
        ...

    @abstractmethod
    async def credit_account_atomic(
        self,
        account_id: str,
        amount: int,
        reason: TransactionType,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> BalanceOutcome:
        """Refunds, bonuses and admin adjustments."""
        ...

    # Accounts

    @abstractmethod
    async def get_account(self, account_id: str) -> AccountRecord | None: ...

    @abstractmethod
    async def ensure_account(self, account_id: str, email: str = "") -> tuple[AccountRecord, bool]:
        """Return (account, created)."""
        ...

    # Agents

    @abstractmethod
    async def get_agent(self, agent_id: str) -> AgentRecord | None: ...

    @abstractmethod
    async def has_agent_access(self, account_id: str, agent_id: str) -> bool: ...

    @abstractmethod
    async def grant_agent_access(self, account_id: str, agent_id: str) -> None: ...

    # Packages

    @abstractmethod
    async def get_package(self, package_id: str) -> CreditPackageRecord | None: ...

    @abstractmethod
    async def get_or_create_package(
        self, name: str, description: str, credits: int, price: int
    ) -> CreditPackageRecord:
        """Idempotent upsert keyed by the unique package name."""
        ...

    # Purchases

    @abstractmethod
    async def record_order(
        self,
        account_id: str,
        gateway_order_id: str,
        amount_paid: int,
        credits_purchased: int,
        package_id: str | None = None,
        agent_id: str | None = None,
        currency: str = "INR",
    ) -> CreditPurchaseRecord: ...

    @abstractmethod
    async def get_purchase_by_order(self, gateway_order_id: str) -> CreditPurchaseRecord | None: ...

    @abstractmethod
    async def mark_order_failed(self, gateway_order_id: str, reason: str) -> bool:
        """Move a still-created order to failed; return whether it changed."""
        ...

    @abstractmethod
    async def list_purchases(self, account_id: str, limit: int = 50, offset: int = 0) -> list[CreditPurchaseRecord]: ...

    @abstractmethod
    async def list_transactions(self, account_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransactionRecord]: ...

    # Executions

    @abstractmethod
    async def create_execution(
        self,
        account_id: str,
        agent_id: str,
        workflow_id: str | None,
        inputs: dict[str, Any],
        credits_charged: int,
    ) -> ExecutionRecord: ...

    @abstractmethod
    async def update_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: Any = None,
        error: str | None = None,
    ) -> None: ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> ExecutionRecord | None: ...

    # Audit

    @abstractmethod
    async def append_audit(self, entry: AuditLogRecord) -> None: ...


@lru_cache
def get_ledger_store() -> LedgerStore:
    settings = get_settings()
    if settings.ledger_backend == "memory":
        from creditledger.ledger.memory import MemoryLedgerStore
        return MemoryLedgerStore()
    from creditledger.ledger.mongo import MongoLedgerStore
    return MongoLedgerStore(use_transactions=settings.mongodb_transactions)
