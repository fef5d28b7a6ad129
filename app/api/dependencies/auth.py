"""
FastAPI dependencies resolving the caller into a Principal

Usage:
    @router.post("/reconcile")
    async def reconcile(
        principal: Principal = Depends(require_capability(Capability.RUN_RECONCILIATION)),
    ):
        ...
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.auth import Principal, verify_token
from app.core.capabilities import Capability
from app.core.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Principal:
    """401 when the bearer token is missing, invalid or expired"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = verify_token(credentials.credentials)
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Principal.from_token(token_data)


def require_capability(capability: Capability):
    """Dependency factory: the authenticated principal, 403 without `capability`"""
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.can(capability):
            logger.warning(
                "Access denied, missing capability",
                extra_data={"user_id": principal.user_id, "capability": capability.value},
            )
        principal.require(capability)
        return principal

    return _dependency
