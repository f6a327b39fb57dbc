"""
FastAPI dependencies for authenticating API requests

שימוש:
    @router.post("/{order_id}/accept")
    async def accept(
        rider: User = Depends(require_role(UserRole.RIDER)),
        db: AsyncSession = Depends(get_db),
    ):
        ...
"""
from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import verify_token
from app.db.database import get_db
from app.db.models.user import User, UserRole
from app.core.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the bearer token to an active user.

    401 for a bad or expired token, 403 when the user no longer exists or was
    disabled. Blocked riders are still authenticated - each operation decides
    what a blocked rider may do.
    """
    token_data = verify_token(credentials.credentials)
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    result = await db.execute(select(User).where(User.id == token_data.user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        logger.warning(
            "API access denied - user missing or inactive",
            extra_data={"user_id": token_data.user_id, "user_found": user is not None},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is not active",
        )

    if user.role.value != token_data.role:
        # התפקיד השתנה מאז שהטוקן הונפק
        logger.warning(
            "API access denied - role changed since token was issued",
            extra_data={"user_id": user.id, "token_role": token_data.role, "role": user.role.value},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token role no longer matches the account",
        )
    return user


def require_role(*roles: UserRole) -> Callable:
    """Dependency factory: the current user must hold one of ``roles``"""

    async def _dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(r.value for r in roles)}",
            )
        return user

    return _dependency


require_customer = require_role(UserRole.CUSTOMER)
require_rider = require_role(UserRole.RIDER)
require_admin = require_role(UserRole.ADMIN)
