import hashlib
import hmac
from typing import Any

from fastapi import Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import BaseModel

from creditledger.core.config import get_settings

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600


class CurrentUser(BaseModel):
    """Authenticated caller decoded from the session cookie."""

    id: str
    email: str = ""
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="creditledger-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None


def _hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_razorpay_payment(order_id: str, payment_id: str, secret: str) -> str:
    """Signature Razorpay checkout returns for a captured payment."""
    return _hmac_sha256_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))


def verify_razorpay_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = sign_razorpay_payment(order_id, payment_id, secret)
    return hmac.compare_digest(expected, signature)


def verify_razorpay_webhook(payload: bytes, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = _hmac_sha256_hex(secret, payload)
    return hmac.compare_digest(expected, signature)


def client_address(request: Request, trusted_proxies: frozenset[str] | None = None) -> str | None:
    """Caller's address. Forwarding headers count only when the direct peer is a trusted proxy."""
    if trusted_proxies is None:
        trusted_proxies = get_settings().trusted_proxies
    peer = request.client.host if request.client else None
    if peer is not None and ("*" in trusted_proxies or peer in trusted_proxies):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return peer or None
