from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from creditledger.ledger.records import new_id


class CreditPackage(Document):
    id: str = Field(default_factory=new_id)
    name: Indexed(str, unique=True)
    description: str = ""
    credits: int
    price: int  # minor units
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_packages"
