from fastapi import APIRouter, Depends, Request, Response

from creditledger.core.audit import AuditAction, AuditContext, AuditResource, record_audit
from creditledger.core.security import CurrentUser
from creditledger.deps import SESSION_COOKIE_NAME, get_current_user, rate_limit
from creditledger.ledger.base import LedgerStore, get_ledger_store

router = APIRouter()


@router.get("/me", dependencies=[Depends(rate_limit("auth"))])
async def auth_me(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Return current user and balance. First call creates the account."""
    account, created = await store.ensure_account(user.id, user.email)
    if created:
        await record_audit(
            store,
            user.id,
            AuditAction.LOGIN,
            AuditResource.USER,
            user.id,
            {"first_login": True},
            AuditContext.from_request(request),
        )
    return {
        "id": account.id,
        "email": account.email or user.email,
        "role": user.role,
        "credits": account.credits,
    }


@router.post("/logout", dependencies=[Depends(rate_limit("auth"))])
async def auth_logout(response: Response):
    """Clear session cookie."""
    response.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}
