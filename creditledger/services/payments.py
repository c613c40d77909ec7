"""Razorpay orders, checkout verification and webhook: credits applied once per payment id."""

import time
from typing import Any

import orjson
from fastapi import status
from starlette.concurrency import run_in_threadpool

from creditledger.core.audit import AuditAction, AuditContext, AuditResource, record_audit
from creditledger.core.config import get_settings
from creditledger.core.exceptions import (
    AuthorizationError,
    DuplicatePaymentError,
    InternalError,
    PaymentError,
    ValidationError,
    store_failure_to_error,
)
from creditledger.core.logging import get_logger
from creditledger.core.security import (
    CurrentUser,
    verify_razorpay_payment_signature,
    verify_razorpay_webhook,
)
from creditledger.ledger.base import LedgerStore
from creditledger.ledger.records import CreditPackageRecord, PurchaseOutcome

log = get_logger(__name__)

AGENT_PACKAGE_PREFIX = "agent_"
AGENT_PACKAGE_NAME = "Agent Purchase Credits"
AGENT_PACKAGE_DESCRIPTION = "Credits for individual agent purchases"


def _not_configured() -> InternalError:
    return InternalError(
        "Payments are not configured",
        code="PAYMENTS_NOT_CONFIGURED",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    )


class PaymentGateway:
    """Thin async wrapper over the synchronous Razorpay SDK."""

    def __init__(self, key_id: str, key_secret: str):
        self.key_id = key_id
        self.key_secret = key_secret

    async def create_order(self, amount: int, currency: str, receipt: str, notes: dict[str, str]) -> dict[str, Any]:
        import razorpay
        client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return await run_in_threadpool(
            client.order.create,
            {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes},
        )


def get_payment_gateway() -> PaymentGateway | None:
    settings = get_settings()
    if not settings.payments_configured:
        return None
    return PaymentGateway(settings.razorpay_key_id, settings.razorpay_key_secret)


async def resolve_package(store: LedgerStore, package_id: str) -> tuple[CreditPackageRecord, str | None]:
    """Return (package, agent_id). ``agent_<id>`` buys credits for that agent via the shared package."""
    if package_id.startswith(AGENT_PACKAGE_PREFIX):
        agent_id: str | None = package_id[len(AGENT_PACKAGE_PREFIX):]
        package = await store.get_or_create_package(
            AGENT_PACKAGE_NAME, AGENT_PACKAGE_DESCRIPTION, credits=0, price=0
        )
        if not agent_id or await store.get_agent(agent_id) is None:
            # Credits still apply; only the access grant is skipped
            log.warning("purchase_agent_not_found", package_id=package_id)
            agent_id = None
        return package, agent_id
    package = await store.get_package(package_id)
    if package is None or not package.is_active:
        raise ValidationError(
            "Invalid package",
            fields=[{"field": "package_id", "message": "Unknown or inactive package"}],
        )
    return package, None


def check_package_terms(package_id: str, package: CreditPackageRecord, amount: int, credits: int) -> None:
    """Listed packages sell at their own price and size; agent purchases are priced by the caller."""
    if package_id.startswith(AGENT_PACKAGE_PREFIX):
        return
    mismatched = [
        {"field": name, "message": "Does not match the package"}
        for name, sent, listed in (("credits", credits, package.credits), ("amount", amount, package.price))
        if sent != listed
    ]
    if mismatched:
        raise ValidationError("Payment details do not match the package", fields=mismatched)


def _raise_for_outcome(outcome: PurchaseOutcome) -> None:
    if outcome.success:
        return
    failure = outcome.failure
    if failure.is_duplicate_payment:
        raise DuplicatePaymentError(details={"purchase_id": outcome.purchase_id})
    raise store_failure_to_error(failure)


async def create_order(
    store: LedgerStore,
    gateway: PaymentGateway | None,
    user: CurrentUser,
    package_id: str,
    amount: int,
    credits: int,
    currency: str | None = None,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    """Open a gateway order and record it as a created purchase row."""
    if gateway is None:
        raise _not_configured()
    currency = currency or get_settings().default_currency
    await store.ensure_account(user.id, user.email)
    package, agent_id = await resolve_package(store, package_id)
    check_package_terms(package_id, package, amount, credits)

    notes = {
        "user_id": user.id,
        "package_id": package_id,
        "credits": str(credits),
    }
    if agent_id:
        notes["agent_id"] = agent_id
    try:
        order = await gateway.create_order(amount, currency, f"cp_{str(int(time.time()))[-8:]}", notes)
    except Exception as e:
        log.error("payment_order_create_failed", user_id=user.id, error=str(e))
        raise InternalError(
            "Failed to create payment order",
            code="PAYMENT_GATEWAY_ERROR",
            status_code=status.HTTP_502_BAD_GATEWAY,
        ) from e

    await store.record_order(
        account_id=user.id,
        gateway_order_id=order["id"],
        amount_paid=amount,
        credits_purchased=credits,
        package_id=package.id,
        agent_id=agent_id,
        currency=currency,
    )
    log.info("payment_order_created", order_id=order["id"], user_id=user.id, amount=amount, credits=credits)
    await record_audit(
        store,
        user.id,
        AuditAction.CREATE,
        AuditResource.PAYMENT,
        order["id"],
        {"amount": amount, "credits": credits, "currency": currency, "package_id": package_id},
        context,
    )
    return {
        "order_id": order["id"],
        "amount": order.get("amount", amount),
        "currency": order.get("currency", currency),
        "key_id": gateway.key_id,
    }


async def verify_payment(
    store: LedgerStore,
    user: CurrentUser,
    order_id: str,
    payment_id: str,
    signature: str,
    package_id: str | None = None,
    amount: int | None = None,
    credits: int | None = None,
    currency: str | None = None,
    context: AuditContext | None = None,
) -> dict[str, Any]:
    """Verify a checkout signature and apply its credits exactly once."""
    settings = get_settings()
    if not settings.payments_configured:
        raise _not_configured()

    if not verify_razorpay_payment_signature(order_id, payment_id, signature, settings.razorpay_key_secret):
        log.warning("payment_signature_invalid", user_id=user.id, order_id=order_id, payment_id=payment_id)
        await record_audit(
            store,
            user.id,
            AuditAction.PAYMENT_SIGNATURE_INVALID,
            AuditResource.PAYMENT,
            payment_id,
            {"order_id": order_id},
            context,
        )
        raise PaymentError("Invalid payment signature", code="INVALID_SIGNATURE")

    order = await store.get_purchase_by_order(order_id)
    agent_id: str | None = None
    if order is not None:
        if order.account_id != user.id:
            raise AuthorizationError("Order does not belong to this account")
        mismatched = [
            {"field": name, "message": "Does not match the order"}
            for name, sent, recorded in (
                ("credits", credits, order.credits_purchased),
                ("amount", amount, order.amount_paid),
            )
            if sent is not None and sent != recorded
        ]
        if mismatched:
            raise ValidationError("Payment details do not match the order", fields=mismatched)
        credits, amount, currency = order.credits_purchased, order.amount_paid, order.currency
        resolved_package_id, agent_id = order.package_id, order.agent_id
    else:
        missing = [
            {"field": name, "message": "Field required"}
            for name, value in (("package_id", package_id), ("amount", amount), ("credits", credits))
            if value is None
        ]
        if missing:
            raise ValidationError("Invalid request", fields=missing)
        package, agent_id = await resolve_package(store, package_id)
        check_package_terms(package_id, package, amount, credits)
        resolved_package_id = package.id
        currency = currency or settings.default_currency

    outcome = await store.apply_purchase_atomic(
        account_id=user.id,
        package_id=resolved_package_id,
        gateway_order_id=order_id,
        gateway_payment_id=payment_id,
        signature=signature,
        amount_paid=amount,
        credits_purchased=credits,
        agent_id=agent_id,
        currency=currency,
    )
    if outcome.failure is not None and outcome.failure.is_duplicate_payment:
        log.info("payment_duplicate", user_id=user.id, payment_id=payment_id, purchase_id=outcome.purchase_id)
    _raise_for_outcome(outcome)

    log.info("payment_verified", user_id=user.id, payment_id=payment_id, credits=credits, balance=outcome.new_balance)
    await record_audit(
        store,
        user.id,
        AuditAction.CREDIT_PURCHASE,
        AuditResource.CREDIT,
        outcome.purchase_id,
        {"order_id": order_id, "payment_id": payment_id, "credits": credits, "amount": amount, "agent_id": agent_id},
        context,
    )
    return {
        "success": True,
        "credits": outcome.new_balance,
        "credits_added": credits,
        "purchase_id": outcome.purchase_id,
        "message": f"Successfully added {credits} credits!",
    }


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _apply_captured(
    store: LedgerStore, payment: dict[str, Any], signature: str, context: AuditContext | None
) -> dict[str, Any]:
    order_id = payment.get("order_id")
    payment_id = payment.get("id")
    if not order_id or not payment_id:
        log.warning("webhook_payment_incomplete", payment_id=payment_id, order_id=order_id)
        return {"status": "ok", "ignored": True}

    order = await store.get_purchase_by_order(order_id)
    notes = payment.get("notes") or {}
    if order is not None:
        account_id = order.account_id
        package_id, agent_id = order.package_id, order.agent_id
        credits, amount, currency = order.credits_purchased, order.amount_paid, order.currency
    else:
        account_id = notes.get("user_id")
        package_id, agent_id = notes.get("package_id"), notes.get("agent_id") or None
        credits = _int_or_none(notes.get("credits"))
        amount = _int_or_none(payment.get("amount")) or 0
        currency = payment.get("currency") or get_settings().default_currency
        if package_id and package_id.startswith(AGENT_PACKAGE_PREFIX):
            package, agent_id = await resolve_package(store, package_id)
            package_id = package.id

    if not account_id or not credits or credits <= 0:
        log.warning("webhook_missing_attribution", order_id=order_id, payment_id=payment_id)
        return {"status": "ok", "ignored": True}

    outcome = await store.apply_purchase_atomic(
        account_id=account_id,
        package_id=package_id,
        gateway_order_id=order_id,
        gateway_payment_id=payment_id,
        signature=signature,
        amount_paid=amount,
        credits_purchased=credits,
        agent_id=agent_id,
        currency=currency,
    )
    if outcome.failure is not None and outcome.failure.is_duplicate_payment:
        log.info("webhook_payment_duplicate", payment_id=payment_id, purchase_id=outcome.purchase_id)
        return {"status": "ok", "duplicate": True}
    _raise_for_outcome(outcome)

    log.info("webhook_payment_applied", account_id=account_id, payment_id=payment_id, credits=credits)
    await record_audit(
        store,
        None,
        AuditAction.CREDIT_PURCHASE,
        AuditResource.CREDIT,
        outcome.purchase_id,
        {"order_id": order_id, "payment_id": payment_id, "credits": credits, "account_id": account_id, "source": "webhook"},
        context,
    )
    return {"status": "ok", "credits_added": credits}


async def handle_webhook(
    store: LedgerStore, payload: bytes, signature: str | None, context: AuditContext | None = None
) -> dict[str, Any]:
    """Verify HMAC of the raw body, then apply captures and record failures."""
    settings = get_settings()
    if not settings.razorpay_webhook_secret:
        raise _not_configured()
    if not verify_razorpay_webhook(payload, signature or "", settings.razorpay_webhook_secret):
        log.warning("webhook_signature_invalid")
        await record_audit(
            store,
            None,
            AuditAction.PAYMENT_SIGNATURE_INVALID,
            AuditResource.PAYMENT,
            None,
            {"source": "webhook"},
            context,
        )
        raise PaymentError("Invalid webhook signature", code="INVALID_SIGNATURE")
    try:
        data = orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        raise ValidationError("Invalid webhook payload") from e

    event = data.get("event")
    payment = data.get("payload", {}).get("payment", {}).get("entity", {})
    if event == "payment.captured":
        return await _apply_captured(store, payment, signature, context)
    if event == "payment.failed":
        order_id = payment.get("order_id")
        reason = payment.get("error_description") or "Payment failed"
        changed = await store.mark_order_failed(order_id, reason) if order_id else False
        log.info("webhook_payment_failed", order_id=order_id, changed=changed)
        return {"status": "ok"}
    log.debug("webhook_event_ignored", webhook_event=event)
    return {"status": "ok", "ignored": True}
