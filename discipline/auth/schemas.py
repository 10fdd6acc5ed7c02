from uuid import UUID

from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Authenticated tenant user as seen by the detention endpoints."""

    id: UUID
    tenant_id: UUID
    role: str

    def has_role(self, *roles: str) -> bool:
        return self.role in roles
