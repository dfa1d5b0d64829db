"""
Auth API Endpoints
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..models.auth import AuthenticatedUser
from ..services.auth_service import AuthGuard
from .deps import get_auth_guard, get_bearer_token, require_roles

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/auth/revoke")
async def revoke_token_endpoint(
    user: AuthenticatedUser = Depends(require_roles()),
    token: str = Depends(get_bearer_token),
    guard: AuthGuard = Depends(get_auth_guard)
) -> Dict[str, Any]:
    """
    Revoke the caller's bearer token (sign out).

    The token is rejected by every route from the next request on.
    """
    await guard.revoke(token)
    logger.info(f"User {user.id} revoked their token")
    return {"success": True}
