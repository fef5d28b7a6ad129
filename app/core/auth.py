"""
Bearer token verification.

Tokens are issued by the external identity provider (HS256, shared secret)
and carry the subject and its roles. This service only verifies them and
turns them into a Principal with a resolved capability set.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel, Field

from app.core.capabilities import Capability, resolve_capabilities
from app.core.config import settings
from app.core.exceptions import ForbiddenError
from app.core.logging import get_logger

logger = get_logger(__name__)


class TokenPayload(BaseModel):
    """JWT claims used by this service"""
    sub: str
    roles: list[str] = Field(default_factory=list)
    # legacy single-role tokens
    role: Optional[str] = None
    name: Optional[str] = None
    exp: int


class Principal(BaseModel):
    """Authenticated caller with capabilities resolved once per request"""
    user_id: str
    name: Optional[str] = None
    roles: tuple[str, ...] = ()
    capabilities: frozenset[Capability] = frozenset()

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        if capability not in self.capabilities:
            raise ForbiddenError(
                f"Missing capability: {capability.value}",
                details={"user_id": self.user_id, "capability": capability.value},
            )

    @classmethod
    def from_token(cls, payload: TokenPayload) -> "Principal":
        roles = list(payload.roles)
        if not roles and payload.role:
            roles = [payload.role]
        return cls(
            user_id=payload.sub,
            name=payload.name,
            roles=tuple(roles),
            capabilities=resolve_capabilities(roles),
        )


def create_access_token(user_id: str, roles: list[str], name: str | None = None) -> str:
    """Issue a token the way the identity provider does; used by tooling and tests"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not configured")
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": user_id,
        "roles": roles,
        "exp": int(expire.timestamp()),
    }
    if name:
        payload["name"] = name
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[TokenPayload]:
    """Returns None if the token is invalid or expired"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty, tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None
