from fastapi import Depends, HTTPException, status

from discipline.auth.dependencies import get_current_user
from discipline.auth.models import ADMIN_ROLES
from discipline.auth.schemas import CurrentUser


STAFF_ROLES = ADMIN_ROLES + ("TEACHER",)


def require_roles(*roles: str):
    """
    Dependency factory restricting an endpoint to the given tenant roles.

    Example:
        Depends(require_roles(*ADMIN_ROLES))
    """

    async def _checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not current_user.has_role(*roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return current_user

    return _checker
