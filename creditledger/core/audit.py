"""Audit log for critical actions.

Writes are best-effort: a failed audit write is logged and never fails the
operation being audited.
"""

from dataclasses import dataclass
from typing import Any

from fastapi import Request

from creditledger.core.logging import get_logger
from creditledger.core.security import client_address
from creditledger.ledger.base import LedgerStore
from creditledger.ledger.records import AuditLogRecord

log = get_logger(__name__)


class AuditAction:
    CREATE = "create"
    LOGIN = "login"
    PAYMENT = "payment"
    CREDIT_PURCHASE = "credit_purchase"
    WORKFLOW_EXECUTION = "workflow_execution"
    ADMIN_ACTION = "admin_action"
    PAYMENT_SIGNATURE_INVALID = "payment_signature_invalid"


class AuditResource:
    USER = "user"
    AGENT = "agent"
    WORKFLOW = "workflow"
    PAYMENT = "payment"
    CREDIT = "credit"


@dataclass(frozen=True)
class AuditContext:
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Request | None) -> "AuditContext":
        if request is None:
            return cls()
        return cls(ip_address=client_address(request), user_agent=request.headers.get("user-agent"))


async def record_audit(
    store: LedgerStore,
    actor_id: str | None,
    action: str,
    resource: str,
    resource_id: str | None = None,
    details: dict[str, Any] | None = None,
    context: AuditContext | None = None,
) -> None:
    """Append to the audit log; never raises."""
    context = context or AuditContext()
    try:
        await store.append_audit(
            AuditLogRecord(
                actor_id=actor_id,
                action=action,
                resource=resource,
                resource_id=resource_id,
                details=details or {},
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
        )
    except Exception as e:
        log.warning("audit_write_failed", action=action, resource=resource, resource_id=resource_id, error=str(e))
