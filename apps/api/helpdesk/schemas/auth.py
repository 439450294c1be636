"""Identity context schemas."""

from uuid import UUID

from pydantic import BaseModel

from helpdesk.db.enums import Department, Role


class UserSession(BaseModel):
    """
    Identity context for authenticated requests.

    The bulk mutation core trusts it without re-deriving role or department.
    """
    user_id: UUID
    role: Role
    name: str
    email: str
    department: Department | None = None
    is_head: bool = False

    @classmethod
    def from_user(cls, user) -> "UserSession":
        return cls(
            user_id=user.id,
            role=user.role,
            name=user.name,
            email=user.email,
            department=user.department,
            is_head=user.is_head,
        )

    @property
    def is_department_head(self) -> bool:
        return self.role == Role.DEPARTMENT_USER and self.is_head and self.department is not None
