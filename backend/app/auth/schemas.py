"""Pydantic schemas for authenticated identities."""
from pydantic import BaseModel, Field

from app.courses.schemas import UserRole


class Identity(BaseModel):
    """The user behind a verified credential.

    Attributes:
        user_id: Directory id of the user.
        role: Platform role (student, teacher or admin).
        display_name: Name shown to other room members.
        email: Contact address, used as a display fallback.
    """
    user_id: str = Field(..., min_length=1)
    role: UserRole
    display_name: str = ""
    email: str = ""

    def presence(self) -> dict:
        """Public presence info sent with user-joined/user-left events."""
        return {
            "userId": self.user_id,
            "userName": self.display_name,
            "userEmail": self.email,
            "userRole": self.role.value,
        }
