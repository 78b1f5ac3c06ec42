"""
Pytest configuration for CourseHub tests.

Why: Every test gets a fresh in-memory MongoDB (mongomock) wired through the
same StorageContext the app uses, so conditional updates and unique indexes
behave like the real server. AnyIO is pinned to asyncio.
"""
from datetime import datetime, timedelta
from itertools import count

import httpx
import mongomock
import pytest
from httpx import ASGITransport

from auth import TOKEN_COOKIE, issue_token
from config import Settings
from database import StorageContext
from enrollment import AdmissionController
from main import create_app


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        database_name="coursehub_test",
        jwt_secret="test-secret",
        cookie_secure=False,
        compensation_retries=2,
        firebase_credentials="",
        log_level="WARNING",
    )


@pytest.fixture
def storage(settings):
    ctx = StorageContext(mongomock.MongoClient(), settings.database_name)
    ctx.ensure_indexes()
    yield ctx
    ctx.close()


@pytest.fixture
def admission(storage):
    return AdmissionController(storage, max_enrollments=3, compensation_retries=2, retry_backoff=0)


@pytest.fixture
def app(settings, storage):
    return create_app(settings=settings, storage=storage)


@pytest.fixture
def make_course(storage):
    """Insert a course document directly and return its id as a string."""
    clock = count()

    def _make(seats=5, status="approved", instructor="owner@example.com", enrollment_count=0, title="Python 101"):
        doc = {
            "course_title": title,
            "image": "https://img.example.com/c.png",
            "description": "Learn things",
            "duration": "6 weeks",
            "instructor_email": instructor,
            "seats": seats,
            "price": 49.0,
            "enrollment_count": enrollment_count,
            "created_at": datetime(2024, 1, 1) + timedelta(minutes=next(clock)),
        }
        if status is not None:
            doc["status"] = status
        return str(storage.courses.collection.insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def make_user(storage):
    def _make(email, role="student", name=None):
        storage.users.collection.insert_one({"email": email, "role": role, "name": name or email.split("@")[0]})
        return email

    return _make


@pytest.fixture
def client_for(app, settings):
    """Build an httpx client, optionally logged in as ``email``."""

    def _client(email=None):
        cookies = {TOKEN_COOKIE: issue_token(settings, email, uid="uid-" + email)} if email else None
        return httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test", cookies=cookies)

    return _client
