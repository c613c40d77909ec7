from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel

from creditledger.ledger.records import new_id


class Agent(Document):
    """Metered workflow; managed outside the ledger, read-only here."""
    id: str = Field(default_factory=new_id)
    name: str
    credit_cost: int = Field(ge=0)
    is_active: bool = True
    workflow_id: str | None = None  # workflow engine job id
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "agents"
        indexes = [[("is_active", 1)]]


class AgentAccess(Document):
    """Account has acquired an agent."""
    id: str = Field(default_factory=new_id)
    account_id: str
    agent_id: str
    granted_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "agent_access"
        indexes = [
            IndexModel([("account_id", ASCENDING), ("agent_id", ASCENDING)], unique=True),
            [("agent_id", 1)],
        ]
