from datetime import datetime

from beanie import Document
from pydantic import Field

from creditledger.ledger.records import TransactionType, new_id


class CreditTransaction(Document):
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

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("account_id", 1), ("created_at", -1)],
            [("type", 1)],
        ]
