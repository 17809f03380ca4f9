"""CourseDirectory: DuckDB-backed users, courses and enrollments.

This is the course membership oracle consulted by the chat core on every
room join, send and reaction. It is deliberately small: the LMS CRUD layer
owns these records; the directory only needs enough of them to answer
``get_course_access`` and to resolve a credential to a user.

Database Schema:
    users:       id, email, display_name, role, is_active
    courses:     id, title, instructor_id, created_at
    enrollments: (course_id, student_id) primary key, status, enrolled_at

Usage:
    directory = CourseDirectory.get_instance()
    access = directory.get_course_access(user_id, course_id)
    if not access.can_access: ...
"""
import logging
import threading
from pathlib import Path
from typing import Optional

import duckdb
import yaml

from app.chat.store import utcnow
from app.errors import NotFound

from .schemas import (
    CourseAccess,
    CourseRecord,
    DirectorySeed,
    EnrollmentStatus,
    UserRecord,
    UserRole,
)

logger = logging.getLogger(__name__)

_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    id           VARCHAR PRIMARY KEY,
    email        VARCHAR NOT NULL DEFAULT '',
    display_name VARCHAR NOT NULL DEFAULT '',
    role         VARCHAR NOT NULL DEFAULT 'student',
    is_active    BOOLEAN NOT NULL DEFAULT TRUE
)
"""

_CREATE_COURSES = """
CREATE TABLE IF NOT EXISTS courses (
    id            VARCHAR PRIMARY KEY,
    title         VARCHAR NOT NULL DEFAULT '',
    instructor_id VARCHAR NOT NULL,
    created_at    TIMESTAMP NOT NULL
)
"""

_CREATE_ENROLLMENTS = """
CREATE TABLE IF NOT EXISTS enrollments (
    course_id   VARCHAR NOT NULL,
    student_id  VARCHAR NOT NULL,
    status      VARCHAR NOT NULL DEFAULT 'enrolled',
    enrolled_at TIMESTAMP NOT NULL,
    PRIMARY KEY (course_id, student_id)
)
"""


class CourseDirectory:
    """Singleton directory of users, courses and enrollments.

    All calls are synchronous; a lock serialises access to the single
    DuckDB connection because the TestClient and uvicorn worker threads
    may both reach it.
    """

    _instance: Optional["CourseDirectory"] = None
    _default_db_path: str = "directory.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._lock = threading.Lock()
        self._conn = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_USERS)
        self._conn.execute(_CREATE_COURSES)
        self._conn.execute(_CREATE_ENROLLMENTS)
        logger.info("[CourseDirectory] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "CourseDirectory":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def upsert_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO users (id, email, display_name, role, is_active)
                VALUES (?, ?, ?, ?, ?)
                """,
                [user.id, user.email, user.display_name, user.role.value, user.is_active],
            )
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, email, display_name, role, is_active FROM users WHERE id = ?",
                [user_id],
            ).fetchone()
        if row is None:
            return None
        return UserRecord(
            id=row[0],
            email=row[1],
            display_name=row[2],
            role=UserRole(row[3]),
            is_active=row[4],
        )

    # -----------------------------------------------------------------------
    # Courses and enrollments
    # -----------------------------------------------------------------------

    def create_course(self, course: CourseRecord) -> CourseRecord:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO courses (id, title, instructor_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                [course.id, course.title, course.instructor_id, course.created_at],
            )
        return course

    def get_course(self, course_id: str) -> Optional[CourseRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, title, instructor_id, created_at FROM courses WHERE id = ?",
                [course_id],
            ).fetchone()
        if row is None:
            return None
        return CourseRecord(id=row[0], title=row[1], instructor_id=row[2], created_at=row[3])

    def set_enrollment(
        self,
        course_id: str,
        student_id: str,
        status: EnrollmentStatus = EnrollmentStatus.ENROLLED,
    ) -> None:
        """Enroll a student, or change the status of an existing enrollment."""
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO enrollments (course_id, student_id, status, enrolled_at)
                VALUES (?, ?, ?, ?)
                """,
                [course_id, student_id, status.value, utcnow()],
            )

    def enroll(self, course_id: str, student_id: str) -> None:
        self.set_enrollment(course_id, student_id, EnrollmentStatus.ENROLLED)

    def drop(self, course_id: str, student_id: str) -> None:
        self.set_enrollment(course_id, student_id, EnrollmentStatus.DROPPED)

    def get_course_access(self, user_id: str, course_id: str) -> CourseAccess:
        """Answer "is instructor / is enrolled / is admin" for one course.

        Raises:
            NotFound: If the course does not exist.
        """
        course = self.get_course(course_id)
        if course is None:
            raise NotFound("Course not found")

        user = self.get_user(user_id)
        with self._lock:
            enrolled = self._conn.execute(
                """
                SELECT 1 FROM enrollments
                WHERE course_id = ? AND student_id = ? AND status = ?
                """,
                [course_id, user_id, EnrollmentStatus.ENROLLED.value],
            ).fetchone()

        return CourseAccess(
            course_id=course_id,
            user_id=user_id,
            is_instructor=course.instructor_id == user_id,
            is_enrolled=enrolled is not None,
            is_admin=user is not None and user.role == UserRole.ADMIN,
        )

    # -----------------------------------------------------------------------
    # Seeding
    # -----------------------------------------------------------------------

    def load_seed(self, path: Path) -> DirectorySeed:
        """Load users, courses and enrollments from a YAML file."""
        with Path(path).open(encoding="utf-8") as fh:
            seed = DirectorySeed(**(yaml.safe_load(fh) or {}))

        for user in seed.users:
            self.upsert_user(user)
        for course in seed.courses:
            self.create_course(course)
        for enrollment in seed.enrollments:
            self.set_enrollment(
                enrollment.course_id, enrollment.student_id, enrollment.status
            )
        logger.info(
            "[CourseDirectory] Seeded %d users, %d courses, %d enrollments from %s",
            len(seed.users),
            len(seed.courses),
            len(seed.enrollments),
            path,
        )
        return seed
