from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.auth.models import User
from discipline.auth.schemas import CurrentUser
from discipline.auth.security import decode_access_token
from discipline.db.session import get_db


# Token issuance is handled by the auth service; this backend only verifies.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login-oauth")


def token_claims(token: str) -> Optional[tuple]:
    """Return (user_id, tenant_id, role) from a valid token, or None."""
    try:
        payload = decode_access_token(token)
    except JWTError:
        return None

    user_id_str = payload.get("user_id") or payload.get("sub")
    tenant_id_str = payload.get("tenant_id")
    role_name = payload.get("role")
    if not user_id_str or not tenant_id_str or not role_name:
        return None

    try:
        return UUID(user_id_str), UUID(tenant_id_str), role_name
    except ValueError:
        return None


async def resolve_active_user(db: AsyncSession, token: str) -> Optional[CurrentUser]:
    """Active user behind a valid token, or None."""
    claims = token_claims(token)
    if claims is None:
        return None
    user_id, tenant_id, _role = claims

    stmt = select(User).where(User.id == user_id, User.tenant_id == tenant_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if not user or user.status != "ACTIVE":
        return None

    return CurrentUser(
        id=user.id,
        tenant_id=user.tenant_id,
        role=user.role,
    )


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """Resolve the authenticated user from the access token."""
    current_user = await resolve_active_user(db, token)
    if current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_user
