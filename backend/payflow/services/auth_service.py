"""
Auth Guard

Verifies HS256 bearer tokens, checks the token deny-list, and enforces role
requirements per route.

Roles and permissions come from the verified token claims on every request;
there is no open-permission fallback.
"""
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

import jwt
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.models import RevokedTokenModel
from ..exceptions import ForbiddenError, PersistenceError, UnauthorizedError
from ..models.auth import AuthenticatedUser
from ..models.results import Err, Ok, Result
from ..models.transactions import utcnow

logger = logging.getLogger(__name__)

DEFAULT_REVOCATION_TTL = timedelta(hours=24)


def hash_token(token: str) -> str:
    """Deny-list key. Raw tokens are never stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthGuard:
    """Bearer-token verification, role checks and token revocation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secret_key: str,
        algorithm: str = "HS256"
    ):
        self._session_factory = session_factory
        self._secret_key = secret_key
        self._algorithm = algorithm

    # ========================================================================
    # Tokens
    # ========================================================================

    def issue_token(
        self,
        user_id: str,
        email: str,
        roles: Iterable[str] = (),
        permissions: Iterable[str] = (),
        expires_in: timedelta = timedelta(hours=1)
    ) -> str:
        """
        Create a signed access token.

        Used by the sign-in flow and by tests; the storefront's identity
        provider issues tokens with the same claims in production.
        """
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "email": email,
            "roles": sorted(set(roles)),
            "permissions": sorted(set(permissions)),
            "iat": now,
            "exp": now + expires_in,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def _decode(self, token: str, verify_exp: bool = True) -> Dict[str, Any]:
        return jwt.decode(
            token,
            self._secret_key,
            algorithms=[self._algorithm],
            options={"verify_exp": verify_exp, "require": ["sub"]},
        )

    # ========================================================================
    # Authorization
    # ========================================================================

    async def authorize(
        self,
        token: Optional[str],
        required_roles: Iterable[str] = ()
    ) -> Result[AuthenticatedUser]:
        """
        Authenticate a bearer token and check its roles.

        Args:
            token: Raw bearer token (without the "Bearer " prefix)
            required_roles: Any one of these grants access; empty means any
                authenticated caller

        Returns:
            Ok(AuthenticatedUser), Err(UnauthorizedError) or Err(ForbiddenError)
        """
        if not token:
            return Err(UnauthorizedError("Authentication token is required"))

        if await self.is_revoked(token):
            logger.info("Rejected revoked bearer token")
            return Err(UnauthorizedError("Token has been revoked"))

        try:
            claims = self._decode(token)
        except jwt.ExpiredSignatureError:
            return Err(UnauthorizedError("Invalid or expired token"))
        except jwt.InvalidTokenError as e:
            logger.warning(f"Token verification failed: {e}")
            return Err(UnauthorizedError("Invalid or expired token"))

        user = self._user_from_claims(claims)
        required = frozenset(required_roles)

        if not user.has_any(required):
            logger.info(
                f"Forbidden: user={user.id} lacks any of {sorted(required)}"
            )
            return Err(ForbiddenError())

        return Ok(user)

    @staticmethod
    def _user_from_claims(claims: Dict[str, Any]) -> AuthenticatedUser:
        return AuthenticatedUser(
            id=str(claims["sub"]),
            email=str(claims.get("email") or ""),
            roles=frozenset(str(r) for r in claims.get("roles") or []),
            permissions=frozenset(str(p) for p in claims.get("permissions") or []),
        )

    # ========================================================================
    # Revocation
    # ========================================================================

    async def is_revoked(self, token: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RevokedTokenModel.token_hash).where(
                        RevokedTokenModel.token_hash == hash_token(token),
                        RevokedTokenModel.expires_at > utcnow(),
                    )
                )
                return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            logger.error(f"Revocation lookup failed: {e}")
            raise PersistenceError() from e

    async def revoke(self, token: str) -> None:
        """
        Add a token to the deny-list.

        The entry lives at least as long as the token itself. Tokens that
        fail signature verification are ignored since they are never
        accepted anyway.
        """
        try:
            claims = self._decode(token, verify_exp=False)
        except jwt.InvalidTokenError:
            logger.info("Ignoring revocation of an unverifiable token")
            return

        now = utcnow()
        if "exp" in claims:
            expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc).replace(tzinfo=None)
        else:
            expires_at = now + DEFAULT_REVOCATION_TTL

        if expires_at <= now:
            return

        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(RevokedTokenModel).where(RevokedTokenModel.expires_at <= now)
                )
                session.add(RevokedTokenModel(
                    token_hash=hash_token(token),
                    expires_at=expires_at,
                    revoked_at=now,
                ))
                await session.commit()
        except IntegrityError:
            # Already revoked
            return
        except SQLAlchemyError as e:
            logger.error(f"Failed to store token revocation: {e}")
            raise PersistenceError() from e

        logger.info(f"Token revoked for subject {claims.get('sub')} until {expires_at.isoformat()}")
