from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from creditledger.ledger.records import PurchaseStatus, new_id


class CreditPurchase(Document):
    """Razorpay order -> account; becomes paid exactly once per payment id."""
    id: str = Field(default_factory=new_id)
    account_id: str
    package_id: str | None = None
    gateway_order_id: str
    gateway_payment_id: str | None = None  # set on capture
    gateway_signature: str | None = None
    amount_paid: int  # minor units (paise)
    credits_purchased: int
    status: PurchaseStatus = PurchaseStatus.CREATED
    currency: str = "INR"
    agent_id: str | None = None
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_purchases"
        indexes = [
            # Idempotency boundary: one purchase per captured payment
            IndexModel(
                [("gateway_payment_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"gateway_payment_id": {"$type": "string"}},
                name="uniq_gateway_payment_id",
            ),
            [("gateway_order_id", 1)],
            IndexModel([("account_id", ASCENDING), ("created_at", DESCENDING)]),
            [("status", 1)],
        ]
