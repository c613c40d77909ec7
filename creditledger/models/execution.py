from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field

from creditledger.ledger.records import ExecutionStatus, new_id


class Execution(Document):
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

    class Settings:
        name = "executions"
        indexes = [
            [("account_id", 1), ("started_at", -1)],
            [("agent_id", 1)],
            [("status", 1)],
        ]
