"""Shared FastAPI dependencies."""

from fastapi import Depends, Request, Response

from creditledger.core.exceptions import AuthenticationError, AuthorizationError, RateLimitedError
from creditledger.core.logging import get_logger
from creditledger.core.security import CurrentUser, load_session_cookie
from creditledger.services.rate_limit import (
    RateLimitStore,
    get_policies,
    get_rate_limit_store,
    rate_limit_key,
)

SESSION_COOKIE_NAME = "creditledger_session"

log = get_logger(__name__)


async def get_current_user(request: Request) -> CurrentUser:
    """Dependency: load session from cookie and return the caller."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise AuthenticationError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise AuthenticationError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise AuthenticationError("Invalid session")
    return CurrentUser(id=str(user_id), email=payload.get("email") or "", role=payload.get("role") or "user")


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Dependency: require current user to have role admin."""
    if not user.is_admin:
        raise AuthorizationError("Admin access required")
    return user


def rate_limit(policy_name: str):
    """Return a dependency enforcing the named policy and setting X-RateLimit-* headers."""
    policy = get_policies()[policy_name]

    async def _dependency(
        request: Request,
        response: Response,
        store: RateLimitStore = Depends(get_rate_limit_store),
    ) -> None:
        result = await store.admit(rate_limit_key(policy, request), policy.limit, policy.window_seconds)
        request.state.rate_limit = result
        for name, value in result.headers().items():
            response.headers[name] = value
        if not result.allowed:
            log.warning("rate_limited", policy=policy.name, path=request.url.path, retry_after=result.retry_after_seconds)
            raise RateLimitedError(result.retry_after_seconds)

    return _dependency
