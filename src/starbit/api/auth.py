"""Bearer-token authentication.

Tokens are HS256 JWTs issued elsewhere. ``sub`` is the account's external id,
``role`` is optional and ``admin`` (configurable) unlocks the admin routes.
Accounts are created the first time a valid token is seen.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from starbit.config import get_settings
from starbit.errors import AuthenticationError, AuthorizationError
from starbit.ledger.database import get_db
from starbit.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""

    user_id: int
    external_id: str
    username: Optional[str]
    role: Optional[str]

    @property
    def is_admin(self) -> bool:
        return self.role == get_settings().admin_role

    @property
    def actor(self) -> str:
        """Label recorded on admin actions and audit rows."""
        return f"admin:{self.external_id}" if self.is_admin else f"user:{self.external_id}"

    def member_info(self) -> dict:
        return {"id": self.user_id, "username": self.username, "role": self.role or "user"}


def create_access_token(
    subject: str,
    role: Optional[str] = None,
    username: Optional[str] = None,
    expires_minutes: int = 60,
) -> str:
    """Create a signed access token (tooling and tests)."""
    settings = get_settings()
    payload = {
        "sub": subject,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    if role:
        payload["role"] = role
    if username:
        payload["username"] = username
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a bearer token."""
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired") from None
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token") from None
    if not claims.get("sub"):
        raise AuthenticationError("Token has no subject")
    return claims


async def authenticate(token: Optional[str]) -> Principal:
    """Resolve a raw token to a principal, creating the account on first use."""
    if not token:
        raise AuthenticationError("Missing bearer token")
    claims = decode_token(token)
    external_id = str(claims["sub"])
    username = claims.get("username")

    async with get_db() as session:
        repo = LedgerRepository(session)
        user = await repo.get_or_create_user(external_id, username)
        principal = Principal(
            user_id=user.id,
            external_id=external_id,
            username=user.username,
            role=claims.get("role"),
        )
    return principal


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """FastAPI dependency for authenticated routes."""
    return await authenticate(credentials.credentials if credentials else None)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """FastAPI dependency for admin routes."""
    if not principal.is_admin:
        logger.warning(f"Non-admin {principal.external_id} attempted an admin operation")
        raise AuthorizationError("Admin role required")
    return principal
