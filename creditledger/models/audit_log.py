from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field

from creditledger.ledger.records import new_id


class AuditLog(Document):
    id: str = Field(default_factory=new_id)
    actor_id: str | None = None  # optional for system events
    action: str
    resource: str
    resource_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("actor_id", 1), ("created_at", -1)],
            [("resource", 1), ("resource_id", 1)],
            [("action", 1)],
        ]
