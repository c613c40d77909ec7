"""Balance reads and admin credit grants."""

from typing import Any

from creditledger.core.audit import AuditAction, AuditContext, AuditResource, record_audit
from creditledger.core.exceptions import store_failure_to_error
from creditledger.core.logging import get_logger
from creditledger.core.security import CurrentUser
from creditledger.ledger.base import LedgerStore
from creditledger.ledger.records import TransactionType

log = get_logger(__name__)


async def get_balance(store: LedgerStore, account_id: str) -> int:
    """Return current balance for account (0 if no record)."""
    account = await store.get_account(account_id)
    return account.credits if account else 0


async def grant_credits(
    store: LedgerStore,
    admin: CurrentUser,
    account_id: str,
    amount: int,
    reason: TransactionType,
    note: str | None = None,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    outcome = await store.credit_account_atomic(account_id, amount, reason, description=note)
    if not outcome.success:
        raise store_failure_to_error(outcome.failure)
    log.info("admin_credit_grant", admin_id=admin.id, account_id=account_id, amount=amount, reason=reason.value)
    await record_audit(
        store,
        admin.id,
        AuditAction.ADMIN_ACTION,
        AuditResource.CREDIT,
        account_id,
        {"amount": amount, "reason": reason.value, "note": note, "new_balance": outcome.new_balance},
        context,
    )
    return {"success": True, "account_id": account_id, "new_balance": outcome.new_balance}
