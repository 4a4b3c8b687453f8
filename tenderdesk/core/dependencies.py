"""
Route dependencies: DB session, caller identity, storage backend.
"""

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import AuthenticatedUser, get_current_user, get_optional_user
from .database import get_db as _session_scope
from .storage import StorageBackend, get_storage


async def get_db() -> AsyncSession:
    async for session in _session_scope():
        yield session


def _unauthorized(reason: PermissionError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=str(reason),
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_user(authorization: str = Header(default="")) -> AuthenticatedUser:
    """Authenticated caller (dev member when FF_USE_AUTH0 is off)."""
    try:
        return await get_current_user(authorization)
    except PermissionError as e:
        raise _unauthorized(e)


async def get_caller(authorization: str = Header(default="")) -> AuthenticatedUser:
    """Member or public visitor, for routes that also serve published tenders."""
    try:
        return await get_optional_user(authorization)
    except PermissionError as e:
        raise _unauthorized(e)


async def require_org(user: AuthenticatedUser = Depends(get_user)) -> AuthenticatedUser:
    if not user.org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Caller does not belong to an organization",
        )
    return user


async def require_admin(user: AuthenticatedUser = Depends(require_org)) -> AuthenticatedUser:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only organization admins can do this",
        )
    return user


def get_storage_dep() -> StorageBackend:
    return get_storage()
