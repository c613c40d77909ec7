"""Store-agnostic ledger records and operation outcomes.

Every LedgerStore implementation returns these types, so services and routers
never see raw driver documents or backend-specific error codes.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def new_id() -> str:
    return uuid.uuid4().hex


class PurchaseStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class AccountRecord(BaseModel):
    id: str
    email: str = ""
    credits: int = 0
    total_purchased: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AgentRecord(BaseModel):
    id: str
    name: str
    credit_cost: int = Field(ge=0)
    is_active: bool = True
    workflow_id: str | None = None


class CreditPackageRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    credits: int
    price: int  # minor units
    is_active: bool = True


class CreditPurchaseRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    package_id: str | None = None
    gateway_order_id: str
    gateway_payment_id: str | None = None
    gateway_signature: str | None = None
    amount_paid: int  # minor units
    credits_purchased: int
    status: PurchaseStatus = PurchaseStatus.CREATED
    currency: str = "INR"
    agent_id: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CreditTransactionRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    type: TransactionType
    amount: int  # positive = credit, negative = debit
    balance_after: int
    purchase_id: str | None = None
    execution_id: str | None = None
    agent_id: str | None = None
    description: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ExecutionRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    agent_id: str
    workflow_id: str | None = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    credits_charged: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    result: Any = None
    error: str | None = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None


class AuditLogRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    actor_id: str | None = None  # None for system actions
    action: str
    resource: str
    resource_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class FailureKind(str, Enum):
    CONSTRAINT_VIOLATION = "constraint_violation"
    NOT_FOUND = "not_found"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    TRANSIENT = "transient"


PAYMENT_ID_CONSTRAINT = "gateway_payment_id"


@dataclass(frozen=True)
class StoreFailure:
    kind: FailureKind
    message: str
    constraint: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def is_duplicate_payment(self) -> bool:
        return self.kind is FailureKind.CONSTRAINT_VIOLATION and self.constraint == PAYMENT_ID_CONSTRAINT


class StoreError(Exception):
    """Raised by non-atomic store operations; carries a StoreFailure."""

    def __init__(self, failure: StoreFailure):
        self.failure = failure
        super().__init__(failure.message)


@dataclass(frozen=True)
class PurchaseOutcome:
    success: bool
    new_balance: int | None = None
    purchase_id: str | None = None
    failure: StoreFailure | None = None


@dataclass(frozen=True)
class BalanceOutcome:
    success: bool
    new_balance: int | None = None
    failure: StoreFailure | None = None
