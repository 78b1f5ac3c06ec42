"""
HTTP-level tests for the CourseHub API.

Requirements:
- Error kinds reach the client as {"error", "detail", "retryable"} with their status
- Role-aware public listings hide unapproved courses from non-admins
- Role changes take effect on the very next request
- Course deletion by a foreign instructor is forbidden, by an admin it cascades
"""
from dataclasses import replace

import httpx
import pytest
from bson import ObjectId
from httpx import ASGITransport

from auth import verify_token
import main
from main import create_app

pytestmark = pytest.mark.anyio


async def test_root_is_public(client_for):
    async with client_for() as client:
        r = await client.get("/")
    assert r.status_code == 200


async def test_protected_route_without_token_is_401(client_for, make_course):
    async with client_for() as client:
        r = await client.post("/enrollments", json={"user_email": "a@example.com", "course_id": make_course(), "course_title": "T"})
    assert r.status_code == 401
    assert r.json()["error"] == "unauthorized"


async def test_enroll_and_unenroll_over_http(client_for, make_course, storage):
    course_id = make_course(seats=3, enrollment_count=2)
    async with client_for("a@example.com") as client:
        r = await client.post("/enrollments", json={"user_email": "a@example.com", "course_id": course_id, "course_title": "Python 101"})
        assert r.status_code == 201
        assert r.json()["enrolled_id"]

        status = await client.get("/enrolled-status", params={"email": "a@example.com", "course_id": course_id})
        assert status.json()["enrolled"] is True

        mine = await client.get("/my-enrolled-courses/a@example.com")
        assert [e["course_id"] for e in mine.json()] == [course_id]

        again = await client.post("/enrollments", json={"user_email": "a@example.com", "course_id": course_id, "course_title": "Python 101"})
        assert again.status_code == 409
        assert again.json() == {"error": "already_enrolled", "detail": "Already enrolled", "retryable": False}

        r = await client.delete(f"/enrollments/a@example.com/{course_id}")
        assert r.status_code == 200

    course = storage.courses.find_by_id(ObjectId(course_id))
    assert (course["seats"], course["enrollment_count"]) == (3, 2)


async def test_enroll_missing_fields_is_400(client_for):
    async with client_for("a@example.com") as client:
        r = await client.post("/enrollments", json={"user_email": "a@example.com"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_input"


async def test_enroll_for_other_user_is_403(client_for, make_course):
    async with client_for("a@example.com") as client:
        r = await client.post("/enrollments", json={"user_email": "b@example.com", "course_id": make_course(), "course_title": "T"})
    assert r.status_code == 403


async def test_seat_conflict_is_retryable(client_for, make_course, storage, monkeypatch):
    course_id = make_course(seats=1)
    snapshot = dict(storage.courses.find_by_id(ObjectId(course_id)))
    monkeypatch.setattr(storage.courses, "find_by_id", lambda oid: dict(snapshot))

    async with client_for("a@example.com") as a:
        first = await a.post("/enrollments", json={"user_email": "a@example.com", "course_id": course_id, "course_title": "T"})
    async with client_for("b@example.com") as b:
        second = await b.post("/enrollments", json={"user_email": "b@example.com", "course_id": course_id, "course_title": "T"})

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["error"] == "seat_conflict"
    assert second.json()["retryable"] is True


async def test_public_listing_hides_unapproved_from_guests(client_for, make_course, make_user):
    approved = make_course(title="Approved")
    legacy = make_course(status=None, title="Legacy")
    pending = make_course(status="pending", title="Pending")
    make_user("root@example.com", role="admin")

    async with client_for() as guest:
        r = await guest.get("/courses")
        assert {c["id"] for c in r.json()} == {approved, legacy}
        hidden = await guest.get(f"/courses/{pending}")
        assert hidden.status_code == 404

    async with client_for("root@example.com") as admin:
        r = await admin.get("/courses")
        assert {c["id"] for c in r.json()} == {approved, legacy, pending}
        shown = await admin.get(f"/courses/{pending}")
        assert shown.status_code == 200


async def test_listing_search_and_instructor_filter(client_for, make_course):
    make_course(title="Intro to Python", instructor="x@example.com")
    rust = make_course(title="Rust (advanced)", instructor="y@example.com")

    async with client_for() as client:
        r = await client.get("/courses", params={"search": "rust ("})
        assert [c["id"] for c in r.json()] == [rust]
        r = await client.get("/courses", params={"instructor_email": "y@example.com"})
        assert [c["id"] for c in r.json()] == [rust]


async def test_invalid_token_on_public_route_is_guest(app, make_course):
    make_course(status="pending")
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test", cookies={"token": "junk"}) as client:
        r = await client.get("/courses")
    assert r.status_code == 200
    assert r.json() == []


async def test_student_cannot_create_course(client_for):
    async with client_for("a@example.com") as client:
        r = await client.post("/courses", json={
            "course_title": "T", "image": "i", "seats": 3, "price": 10,
            "duration": "1w", "description": "d",
        })
    assert r.status_code == 403


async def test_instructor_creates_pending_course_they_own(client_for, make_user, storage):
    make_user("teach@example.com", role="instructor")
    async with client_for("teach@example.com") as client:
        r = await client.post("/courses", json={
            "course_title": "T", "image": "i", "seats": 3, "price": 10,
            "duration": "1w", "description": "d", "instructor_email": "someone@example.com",
        })
    assert r.status_code == 201
    course = storage.courses.find_by_id(ObjectId(r.json()["inserted_id"]))
    assert course["instructor_email"] == "teach@example.com"
    assert course["status"] == "pending"
    assert course["enrollment_count"] == 0


async def test_admin_must_name_instructor(client_for, make_user):
    make_user("root@example.com", role="admin")
    async with client_for("root@example.com") as client:
        r = await client.post("/courses", json={
            "course_title": "T", "image": "i", "seats": 3, "price": 10,
            "duration": "1w", "description": "d",
        })
    assert r.status_code == 400


async def test_course_update_cannot_touch_seats(client_for, make_user, make_course, storage):
    make_user("owner@example.com", role="instructor")
    course_id = make_course(seats=5, instructor="owner@example.com")
    async with client_for("owner@example.com") as client:
        r = await client.put(f"/courses/{course_id}", json={"price": 99, "seats": 1000, "enrollment_count": 0})
    assert r.status_code == 200
    course = storage.courses.find_by_id(ObjectId(course_id))
    assert course["price"] == 99
    assert course["seats"] == 5


async def test_foreign_instructor_delete_forbidden_admin_cascades(client_for, make_user, make_course, storage):
    make_user("rival@example.com", role="instructor")
    make_user("root@example.com", role="admin")
    course_id = make_course(instructor="owner@example.com")
    storage.enrollments.insert("a@example.com", course_id, "T")
    storage.create_document("review", {"course_id": course_id, "user_email": "a@example.com", "rating": 4, "comment": "ok"})

    async with client_for("rival@example.com") as rival:
        r = await rival.delete(f"/courses/{course_id}")
    assert r.status_code == 403
    assert storage.courses.find_by_id(ObjectId(course_id)) is not None

    async with client_for("root@example.com") as admin:
        r = await admin.delete(f"/courses/{course_id}")
    assert r.status_code == 200
    assert storage.courses.find_by_id(ObjectId(course_id)) is None
    assert storage.enrollments.find_one("a@example.com", course_id) is None
    assert storage.reviews.list_for_course(course_id) == []


async def test_role_change_applies_on_next_request(client_for, make_user):
    make_user("root@example.com", role="admin")
    make_user("a@example.com", role="student")

    async with client_for("a@example.com") as student:
        before = await student.get("/admin/users")
        assert before.status_code == 403

        async with client_for("root@example.com") as admin:
            r = await admin.patch("/admin/users/a@example.com/role", json={"role": "admin"})
            assert r.status_code == 200

        after = await student.get("/admin/users")
        assert after.status_code == 200


async def test_admin_role_and_status_validation(client_for, make_user, make_course, storage):
    make_user("root@example.com", role="admin")
    course_id = make_course(status="pending")
    async with client_for("root@example.com") as admin:
        assert (await admin.patch("/admin/users/a@example.com/role", json={"role": "superuser"})).status_code == 400
        assert (await admin.patch("/admin/users/ghost@example.com/role", json={"role": "student"})).status_code == 404
        assert (await admin.patch(f"/admin/courses/{course_id}/status", json={"status": "live"})).status_code == 400
        r = await admin.patch(f"/admin/courses/{course_id}/status", json={"status": "approved"})
        assert r.status_code == 200
    assert storage.courses.find_by_id(ObjectId(course_id))["status"] == "approved"


async def test_profile_upsert_and_default(client_for, storage):
    async with client_for("a@example.com") as client:
        r = await client.get("/users/a@example.com")
        assert r.json()["email"] == "a@example.com"
        assert r.json()["role"] == "student"

        r = await client.put("/users/a@example.com", json={"name": "Ada", "photo_url": "p.png"})
        assert r.status_code == 201
        r = await client.put("/users/a@example.com", json={"name": "Ada L", "photo_url": "p.png"})
        assert r.status_code == 200

        other = await client.get("/users/b@example.com")
        assert other.status_code == 403

    user = storage.users.find_by_email("a@example.com")
    assert user["name"] == "Ada L"
    assert user["role"] == "student"


async def test_reviews_require_enrollment_and_are_unique(client_for, make_course, storage):
    course_id = make_course()
    async with client_for("a@example.com") as client:
        r = await client.post(f"/courses/{course_id}/reviews", json={"rating": 5, "comment": "great"})
        assert r.status_code == 403

        storage.enrollments.insert("a@example.com", course_id, "T")
        assert (await client.post(f"/courses/{course_id}/reviews", json={"rating": 6, "comment": "x"})).status_code == 400
        assert (await client.post(f"/courses/{course_id}/reviews", json={"rating": 4, "comment": "  "})).status_code == 400
        r = await client.post(f"/courses/{course_id}/reviews", json={"rating": 4, "comment": "good"})
        assert r.status_code == 201
        r = await client.post(f"/courses/{course_id}/reviews", json={"rating": 5, "comment": "again"})
        assert r.status_code == 409

    async with client_for() as guest:
        reviews = (await guest.get(f"/courses/{course_id}/reviews")).json()
        course = (await guest.get(f"/courses/{course_id}")).json()
    assert [rv["comment"] for rv in reviews] == ["good"]
    assert course["review_count"] == 1
    assert course["average_rating"] == 4


async def test_popular_courses_orders_by_enrollment(client_for, make_course):
    low = make_course(enrollment_count=1)
    high = make_course(enrollment_count=9)
    make_course(status="rejected", enrollment_count=50)
    async with client_for() as client:
        r = await client.get("/popular-courses")
    assert [c["id"] for c in r.json()] == [high, low]


async def test_jwt_exchange_sets_session_cookie(settings, storage):
    def verifier(id_token):
        if id_token != "good":
            raise ValueError("bad token")
        return {"email": "a@example.com", "uid": "firebase-uid"}

    app = create_app(settings=settings, storage=storage, id_token_verifier=verifier)
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        bad = await client.post("/jwt", json={"token": "bad"})
        assert bad.status_code == 401
        r = await client.post("/jwt", json={"token": "good"})
    assert r.status_code == 200
    token = r.cookies.get("token")
    assert verify_token(settings, token).email == "a@example.com"


async def test_jwt_exchange_without_provider_is_503(client_for):
    async with client_for() as client:
        r = await client.post("/jwt", json={"token": "anything"})
    assert r.status_code == 503


async def test_jwt_exchange_uses_firebase_when_credentials_are_configured(settings, storage, monkeypatch):
    paths = []

    def fake_factory(path):
        paths.append(path)
        return lambda id_token: {"email": "a@example.com", "uid": "fb-1"}

    monkeypatch.setattr(main, "firebase_id_token_verifier", fake_factory)
    app = create_app(settings=replace(settings, firebase_credentials="/secrets/sa.json"), storage=storage)
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        r = await client.post("/jwt", json={"token": "from-browser"})
    assert paths == ["/secrets/sa.json"]
    assert r.status_code == 200
    assert verify_token(settings, r.cookies.get("token")).email == "a@example.com"


async def test_invalid_token_on_public_route_clears_cookie(app, client_for):
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test", cookies={"token": "junk"}) as client:
        r = await client.get("/courses")
    assert r.status_code == 200
    cookie = r.headers.get("set-cookie", "")
    assert cookie.startswith("token=")
    assert "Max-Age=0" in cookie

    async with client_for("a@example.com") as client:
        r = await client.get("/courses")
    assert "set-cookie" not in r.headers


async def test_course_update_rejects_blank_fields(client_for, make_user, make_course, storage):
    make_user("owner@example.com", role="instructor")
    course_id = make_course(instructor="owner@example.com", title="Python 101")
    async with client_for("owner@example.com") as client:
        r = await client.put(f"/courses/{course_id}", json={"course_title": ""})
    assert r.status_code == 422
    assert storage.courses.find_by_id(ObjectId(course_id))["course_title"] == "Python 101"


async def test_upper_case_course_id_is_accepted_everywhere(client_for, make_course, storage):
    course_id = make_course(seats=5)
    upper = course_id.upper()
    async with client_for("a@example.com") as client:
        r = await client.post("/enrollments", json={"user_email": "a@example.com", "course_id": upper, "course_title": "T"})
        assert r.status_code == 201
        again = await client.post("/enrollments", json={"user_email": "a@example.com", "course_id": course_id, "course_title": "T"})
        assert again.status_code == 409

        status = await client.get("/enrolled-status", params={"email": "a@example.com", "course_id": upper})
        assert status.json()["enrolled"] is True

        r = await client.post(f"/courses/{upper}/reviews", json={"rating": 5, "comment": "great"})
        assert r.status_code == 201

        assert (await client.get(f"/courses/{upper}")).json()["review_count"] == 1
        assert len((await client.get(f"/courses/{course_id}/reviews")).json()) == 1

    assert storage.enrollments.find_one("a@example.com", course_id) is not None
    assert storage.courses.find_by_id(ObjectId(course_id))["seats"] == 4


async def test_course_analytics_for_owner_and_admin_only(client_for, make_user, make_course, storage):
    make_user("owner@example.com", role="instructor")
    make_user("rival@example.com", role="instructor")
    make_user("root@example.com", role="admin")
    course_id = make_course(instructor="owner@example.com", title="Python 101")
    storage.enrollments.insert("a@example.com", course_id, "Python 101")
    storage.enrollments.insert("b@example.com", course_id, "Python 101")
    storage.create_document("review", {"course_id": course_id, "user_email": "a@example.com", "rating": 4, "comment": "ok"})
    storage.create_document("review", {"course_id": course_id, "user_email": "b@example.com", "rating": 2, "comment": "meh"})
    url = f"/instructor/courses/{course_id}/analytics"

    async with client_for("owner@example.com") as owner:
        r = await owner.get(url)
    assert r.status_code == 200
    body = r.json()
    assert body["course_title"] == "Python 101"
    assert body["total_enrollments"] == 2
    assert {s["user_email"] for s in body["enrolled_students"]} == {"a@example.com", "b@example.com"}
    assert body["average_rating"] == 3
    assert body["review_count"] == 2

    async with client_for("rival@example.com") as rival:
        assert (await rival.get(url)).status_code == 403
    async with client_for("a@example.com") as student:
        assert (await student.get(url)).status_code == 403
    async with client_for("root@example.com") as admin:
        assert (await admin.get(url)).status_code == 200
        assert (await admin.get(f"/instructor/courses/{ObjectId()}/analytics")).status_code == 404
