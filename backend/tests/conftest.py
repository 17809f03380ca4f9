"""Shared test fixtures and configuration for backend tests.

Every test gets fresh in-memory DuckDB stores, a seeded course directory
and a clean connection registry. The directory holds:

    course-1  instructor teacher-1; students student-1, student-2 enrolled,
              dropped-1 dropped
    course-2  instructor teacher-2; student-3 enrolled

plus admin-1 (admin) and inactive-1 (deactivated student).
"""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from app.auth.schemas import Identity
from app.auth.service import set_verifier
from app.chat.coordinator import set_coordinator
from app.chat.manager import registry
from app.chat.store import MessageStore, utcnow
from app.config import (
    AppSettings,
    ChatSettings,
    DatabaseSettings,
    JWTSecrets,
    Secrets,
    set_config,
)
from app.courses.schemas import CourseRecord, EnrollmentStatus, UserRecord, UserRole
from app.courses.service import CourseDirectory
from app.main import app

TEST_SECRET = "test-secret-key"

USERS = [
    UserRecord(id="teacher-1", email="ada@lms.test", display_name="Dr. Ada", role=UserRole.TEACHER),
    UserRecord(id="teacher-2", email="grace@lms.test", display_name="Prof. Grace", role=UserRole.TEACHER),
    UserRecord(id="student-1", email="sam@lms.test", display_name="Sam", role=UserRole.STUDENT),
    UserRecord(id="student-2", email="riley@lms.test", display_name="Riley", role=UserRole.STUDENT),
    UserRecord(id="student-3", email="jo@lms.test", display_name="Jo", role=UserRole.STUDENT),
    UserRecord(id="dropped-1", email="max@lms.test", display_name="Max", role=UserRole.STUDENT),
    UserRecord(id="admin-1", email="root@lms.test", display_name="Admin", role=UserRole.ADMIN),
    UserRecord(
        id="inactive-1", email="gone@lms.test", display_name="Gone",
        role=UserRole.STUDENT, is_active=False,
    ),
]


def make_token(user_id: str, expires_in: timedelta = timedelta(hours=1), **claims) -> str:
    """Sign a credential the way the LMS login service does."""
    payload = {"id": user_id, "exp": utcnow() + expires_in, **claims}
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


def seed_directory(directory: CourseDirectory) -> None:
    for user in USERS:
        directory.upsert_user(user)
    directory.create_course(CourseRecord(id="course-1", title="Databases", instructor_id="teacher-1"))
    directory.create_course(CourseRecord(id="course-2", title="Compilers", instructor_id="teacher-2"))
    directory.enroll("course-1", "student-1")
    directory.enroll("course-1", "student-2")
    directory.set_enrollment("course-1", "dropped-1", EnrollmentStatus.DROPPED)
    directory.enroll("course-2", "student-3")


@pytest.fixture(autouse=True)
def chat_env():
    """Fresh config, in-memory stores and an empty registry for each test."""
    config = AppSettings(
        database=DatabaseSettings(chat_db_path=":memory:", directory_db_path=":memory:"),
        chat=ChatSettings(auth_timeout_seconds=2.0),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )
    set_config(config)

    CourseDirectory.reset_instance()
    MessageStore.reset_instance()
    directory = CourseDirectory.get_instance(db_path=":memory:")
    MessageStore.get_instance(db_path=":memory:")
    seed_directory(directory)

    set_verifier(None)
    set_coordinator(None)
    registry.reset()

    yield config

    registry.reset()
    set_coordinator(None)
    set_verifier(None)
    MessageStore.reset_instance()
    CourseDirectory.reset_instance()
    set_config(None)


@pytest.fixture
def client(chat_env):
    """TestClient running the app lifespan.

    Used as a context manager so every socket and request in a test shares
    one event loop, like uvicorn does.
    """
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def token_for():
    return make_token


@pytest.fixture
def auth_headers():
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return _headers


@pytest.fixture
def directory() -> CourseDirectory:
    return CourseDirectory.get_instance()


@pytest.fixture
def store() -> MessageStore:
    return MessageStore.get_instance()


class FakeSocket:
    """Stand-in for a WebSocket that records every frame sent to it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def of_type(self, event_type: str) -> list:
        return [frame for frame in self.sent if frame["type"] == event_type]

    def clear(self) -> None:
        self.sent.clear()


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, now: datetime = datetime(2024, 9, 2, 9, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def fake_socket():
    return FakeSocket


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def identity_of():
    """Build the Identity a verified credential for ``user_id`` resolves to."""
    def _identity(user_id: str) -> Identity:
        user = CourseDirectory.get_instance().get_user(user_id)
        return Identity(
            user_id=user.id,
            role=user.role,
            display_name=user.display_name,
            email=user.email,
        )
    return _identity
