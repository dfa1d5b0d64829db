from datetime import datetime, timedelta, timezone

import jwt
import pytest

from payflow.exceptions import ForbiddenError, UnauthorizedError
from payflow.services.auth_service import AuthGuard, hash_token

SECRET = "test-jwt-secret"


@pytest.fixture
def guard(session_factory) -> AuthGuard:
    return AuthGuard(session_factory, SECRET)


async def test_valid_token_with_required_role(guard):
    token = guard.issue_token("u1", "u1@example.com", roles=["payment:read"])

    result = await guard.authorize(token, {"payment:read"})

    assert result.ok
    assert result.value.id == "u1"
    assert result.value.email == "u1@example.com"
    assert "payment:read" in result.value.roles


async def test_permissions_also_grant_access(guard):
    token = guard.issue_token("u1", "u1@example.com", permissions=["refund:write"])
    result = await guard.authorize(token, {"refund:write"})
    assert result.ok


async def test_missing_token_is_unauthorized(guard):
    result = await guard.authorize(None, {"payment:read"})
    assert not result.ok
    assert isinstance(result.error, UnauthorizedError)


async def test_expired_token_is_unauthorized(guard):
    token = guard.issue_token("u1", "u1@example.com", roles=["payment:read"], expires_in=timedelta(seconds=-5))
    result = await guard.authorize(token, {"payment:read"})
    assert isinstance(result.error, UnauthorizedError)


async def test_token_signed_with_other_secret_is_unauthorized(guard):
    token = jwt.encode({"sub": "u1", "roles": ["payment:read"]}, "another-secret", algorithm="HS256")
    result = await guard.authorize(token, {"payment:read"})
    assert isinstance(result.error, UnauthorizedError)


async def test_missing_role_is_forbidden(guard):
    token = guard.issue_token("u1", "u1@example.com", roles=["payment:read"])
    result = await guard.authorize(token, {"refund:write"})
    assert isinstance(result.error, ForbiddenError)
    assert result.error.status_code == 403


async def test_no_required_roles_admits_any_authenticated_caller(guard):
    token = guard.issue_token("u1", "u1@example.com")
    assert (await guard.authorize(token, ())).ok


async def test_revoked_token_is_rejected_immediately(guard):
    token = guard.issue_token("u1", "u1@example.com", roles=["payment:read"])
    assert (await guard.authorize(token, {"payment:read"})).ok

    await guard.revoke(token)

    result = await guard.authorize(token, {"payment:read"})
    assert isinstance(result.error, UnauthorizedError)
    assert result.error.message == "Token has been revoked"


async def test_revoking_twice_is_harmless(guard):
    token = guard.issue_token("u1", "u1@example.com")
    await guard.revoke(token)
    await guard.revoke(token)
    assert await guard.is_revoked(token)


async def test_revocation_lasts_as_long_as_the_token(guard, session_factory):
    from payflow.db.models import RevokedTokenModel

    token = guard.issue_token("u1", "u1@example.com", expires_in=timedelta(hours=2))
    await guard.revoke(token)

    claims = jwt.decode(token, SECRET, algorithms=["HS256"])
    async with session_factory() as session:
        row = await session.get(RevokedTokenModel, hash_token(token))
    assert row is not None
    assert row.expires_at == datetime.fromtimestamp(claims["exp"], tz=timezone.utc).replace(tzinfo=None)


async def test_roles_come_from_each_token(guard):
    reader = guard.issue_token("u1", "u1@example.com", roles=["payment:read"])
    refunder = guard.issue_token("u1", "u1@example.com", roles=["refund:write"])

    assert (await guard.authorize(reader, {"payment:read"})).ok
    result = await guard.authorize(refunder, {"payment:read"})
    assert isinstance(result.error, ForbiddenError)
    assert (await guard.authorize(refunder, {"refund:write"})).value.roles == frozenset({"refund:write"})
