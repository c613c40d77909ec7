from fastapi import APIRouter, Depends, Query

from creditledger.core.security import CurrentUser
from creditledger.deps import get_current_user, rate_limit
from creditledger.ledger.base import LedgerStore, get_ledger_store
from creditledger.services import credits as credits_service

router = APIRouter(dependencies=[Depends(rate_limit("default"))])


@router.get("/balance")
async def credits_balance(
    user: CurrentUser = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Return current credit balance."""
    balance = await credits_service.get_balance(store, user.id)
    return {"balance": balance}


@router.get("/transactions")
async def credits_transactions(
    user: CurrentUser = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return balance history for current user (newest first)."""
    rows = await store.list_transactions(user.id, limit=limit, offset=offset)
    out = [
        {
            "id": t.id,
            "type": t.type.value,
            "amount": t.amount,
            "balance_after": t.balance_after,
            "purchase_id": t.purchase_id,
            "execution_id": t.execution_id,
            "agent_id": t.agent_id,
            "description": t.description,
            "created_at": t.created_at.isoformat(),
        }
        for t in rows
    ]
    return {"transactions": out, "limit": limit, "offset": offset}


@router.get("/purchases")
async def credits_purchases(
    user: CurrentUser = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    rows = await store.list_purchases(user.id, limit=limit, offset=offset)
    out = [
        {
            "id": p.id,
            "package_id": p.package_id,
            "gateway_order_id": p.gateway_order_id,
            "gateway_payment_id": p.gateway_payment_id,
            "amount_paid": p.amount_paid,
            "credits_purchased": p.credits_purchased,
            "currency": p.currency,
            "status": p.status.value,
            "agent_id": p.agent_id,
            "created_at": p.created_at.isoformat(),
        }
        for p in rows
    ]
    return {"purchases": out, "limit": limit, "offset": offset}
