from datetime import datetime

from beanie import Document
from pydantic import Field


class Account(Document):
    """Credit balance per identity-provider user; mutated only by atomic ledger ops."""
    id: str  # identity-provider user id
    email: str = ""
    credits: int = 0
    total_purchased: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"
        indexes = [[("credits", 1)], [("created_at", -1)]]
