from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from creditledger.core.audit import AuditContext
from creditledger.core.security import CurrentUser
from creditledger.deps import rate_limit, require_admin
from creditledger.ledger.base import LedgerStore, get_ledger_store
from creditledger.ledger.records import TransactionType
from creditledger.services import credits as credits_service

router = APIRouter()


class GrantCreditsRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int = Field(gt=0, le=1_000_000)
    reason: Literal["refund", "bonus", "admin_adjustment"]
    note: str | None = Field(default=None, max_length=500)


@router.post("/credits", dependencies=[Depends(rate_limit("default"))])
async def admin_grant_credits(
    body: GrantCreditsRequest,
    request: Request,
    admin: CurrentUser = Depends(require_admin),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Admin: credit an account (refund, bonus or manual adjustment)."""
    return await credits_service.grant_credits(
        store,
        admin,
        body.account_id,
        body.amount,
        TransactionType(body.reason),
        note=body.note,
        context=AuditContext.from_request(request),
    )
