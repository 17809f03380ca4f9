"""Course membership directory consulted by the chat core."""

from .schemas import CourseAccess, CourseRecord, EnrollmentStatus, UserRecord, UserRole
from .service import CourseDirectory

__all__ = [
    "CourseAccess",
    "CourseDirectory",
    "CourseRecord",
    "EnrollmentStatus",
    "UserRecord",
    "UserRole",
]
