"""
Shared API Dependencies

Component accessors (built once in the app lifespan and kept on
``app.state``), bearer-token authorization and per-route rate limiting.
"""
import logging
from typing import Callable, Optional

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..exceptions import RateLimitError
from ..models.auth import AuthenticatedUser
from ..services.auth_service import AuthGuard
from ..services.orchestrator import PaymentOrchestrator
from ..services.rate_limiter import Rejected
from ..services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


def get_auth_guard(request: Request) -> AuthGuard:
    return request.app.state.auth_guard


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Optional[str]:
    return credentials.credentials if credentials else None


def require_roles(*roles: str) -> Callable:
    """
    Dependency factory enforcing that the caller holds any of ``roles``.

    With no roles, any authenticated caller passes.
    """
    async def dependency(
        token: Optional[str] = Depends(get_bearer_token),
        guard: AuthGuard = Depends(get_auth_guard)
    ) -> AuthenticatedUser:
        result = await guard.authorize(token, roles)
        if not result.ok:
            raise result.error
        return result.value

    return dependency


def client_key(request: Request) -> str:
    """Throttle identity: first X-Forwarded-For hop, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limited(route_key: str) -> Callable:
    """
    Dependency factory applying the configured limit for ``route_key``.

    Adds the ``X-RateLimit-*`` headers to the response, and raises
    RateLimitError (429 with ``Retry-After``) once the window is spent.
    """
    async def dependency(request: Request, response: Response) -> None:
        rule = request.app.state.settings.rate_limit_for(route_key)
        if rule is None:
            return

        outcome = await request.app.state.rate_limiter.check(
            client_key(request), route_key, rule.limit, rule.window_seconds
        )
        if isinstance(outcome, Rejected):
            raise RateLimitError(outcome.retry_after_seconds, headers=outcome.to_headers())
        response.headers.update(outcome.to_headers())

    return dependency
