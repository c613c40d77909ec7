from fastapi import APIRouter, Depends, Header, Request, status
from pydantic import BaseModel, Field

from creditledger.core.audit import AuditContext
from creditledger.core.security import CurrentUser
from creditledger.deps import get_current_user, rate_limit
from creditledger.ledger.base import LedgerStore, get_ledger_store
from creditledger.services import payments as payments_service

router = APIRouter()


class CreateOrderRequest(BaseModel):
    package_id: str = Field(min_length=1)
    amount: int = Field(ge=1, le=100_000_000)  # minor units, e.g. 50000 for ₹500
    credits: int = Field(ge=1, le=100_000)
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
    package_id: str | None = None
    amount: int | None = Field(default=None, ge=1, le=100_000_000)
    credits: int | None = Field(default=None, ge=1, le=100_000)
    currency: str | None = Field(default=None, min_length=3, max_length=3)


@router.post("/orders", status_code=status.HTTP_201_CREATED, dependencies=[Depends(rate_limit("payment"))])
async def create_order(
    body: CreateOrderRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
    gateway: payments_service.PaymentGateway | None = Depends(payments_service.get_payment_gateway),
):
    """Create Razorpay order; frontend uses order_id for checkout."""
    return await payments_service.create_order(
        store,
        gateway,
        user,
        package_id=body.package_id,
        amount=body.amount,
        credits=body.credits,
        currency=body.currency,
        context=AuditContext.from_request(request),
    )


@router.post("/verify", dependencies=[Depends(rate_limit("payment"))])
async def verify_payment(
    body: VerifyPaymentRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Verify checkout signature and apply credits (idempotent on payment id)."""
    return await payments_service.verify_payment(
        store,
        user,
        order_id=body.razorpay_order_id,
        payment_id=body.razorpay_payment_id,
        signature=body.razorpay_signature,
        package_id=body.package_id,
        amount=body.amount,
        credits=body.credits,
        currency=body.currency,
        context=AuditContext.from_request(request),
    )


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    store: LedgerStore = Depends(get_ledger_store),
    x_razorpay_signature: str | None = Header(default=None, alias="X-Razorpay-Signature"),
):
    """Razorpay webhook: payment.captured -> apply credits (idempotent), payment.failed -> mark order."""
    body = await request.body()
    return await payments_service.handle_webhook(
        store, body, x_razorpay_signature, context=AuditContext.from_request(request)
    )
