from dataclasses import dataclass

from models.database import UserRole


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as resolved once by the auth layer."""

    user_id: str
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN

    def can_access(self, owner_id: str) -> bool:
        return self.is_admin or self.user_id == owner_id
