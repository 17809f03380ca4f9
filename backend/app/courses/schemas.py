"""Pydantic schemas for the course directory.

The directory answers one question for the chat core: what is a user's
standing in a course. ``CourseAccess`` carries that answer together with
the capability checks (access, announce, moderate) so role rules live in
exactly one place.
"""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field

from app.chat.store import utcnow


class UserRole(str, Enum):
    """Platform role of a user.

    Attributes:
        STUDENT: Takes courses; may chat in courses they are enrolled in.
        TEACHER: Instructs courses; moderates and announces in their own.
        ADMIN: Full access to every course.
    """
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class EnrollmentStatus(str, Enum):
    ENROLLED = "enrolled"
    DROPPED = "dropped"
    COMPLETED = "completed"


class UserRecord(BaseModel):
    """A user as known to the directory."""
    id: str = Field(..., min_length=1)
    email: str = ""
    display_name: str = ""
    role: UserRole = UserRole.STUDENT
    is_active: bool = True


class CourseRecord(BaseModel):
    """A course and its instructor."""
    id: str = Field(..., min_length=1)
    title: str = ""
    instructor_id: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)


class CourseAccess(BaseModel):
    """A user's standing in one course.

    Attributes:
        course_id: The course that was checked.
        user_id: The user that was checked.
        is_instructor: User is the course instructor.
        is_enrolled: User is an actively enrolled student.
        is_admin: User has the admin role.
    """
    course_id: str
    user_id: str
    is_instructor: bool = False
    is_enrolled: bool = False
    is_admin: bool = False

    @property
    def can_access(self) -> bool:
        """Join the room, read history, send and react."""
        return self.is_instructor or self.is_enrolled or self.is_admin

    @property
    def can_announce(self) -> bool:
        """Send announcement messages."""
        return self.is_instructor or self.is_admin

    @property
    def can_moderate(self) -> bool:
        """Delete other users' messages."""
        return self.is_instructor or self.is_admin


class EnrollmentSeed(BaseModel):
    course_id: str
    student_id: str
    status: EnrollmentStatus = EnrollmentStatus.ENROLLED


class DirectorySeed(BaseModel):
    """Shape of the optional YAML seed file."""
    users: list[UserRecord] = Field(default_factory=list)
    courses: list[CourseRecord] = Field(default_factory=list)
    enrollments: list[EnrollmentSeed] = Field(default_factory=list)
