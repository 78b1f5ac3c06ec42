import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Callable, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

from auth import (
    AuthorizationGuard,
    Caller,
    Identity,
    admin_caller,
    clear_session_cookie,
    current_caller,
    current_identity,
    ensure_course_owner,
    ensure_same_user,
    firebase_id_token_verifier,
    get_settings,
    get_storage,
    instructor_caller,
    issue_token,
    optional_caller,
    set_session_cookie,
)
from config import Settings
from database import VISIBLE_STATUS_FILTER, StorageContext, canonical_id, parse_object_id, serialize
from enrollment import AdmissionController
from errors import AuthError, Conflict, CourseHubError, Forbidden, InvalidInput, NotFound
from schemas import COURSE_STATUSES, ROLES, Course, Review, User

logger = logging.getLogger(__name__)


def get_admission(request: Request) -> AdmissionController:
    return request.app.state.admission


def _wire_state(app: FastAPI, settings: Settings, storage: StorageContext) -> None:
    app.state.storage = storage
    app.state.guard = AuthorizationGuard(storage.users)
    app.state.admission = AdmissionController(
        storage,
        max_enrollments=settings.max_enrollments_per_user,
        compensation_retries=settings.compensation_retries,
    )


# ---------- Request payloads ----------
class IdTokenRequest(BaseModel):
    token: Optional[str] = None


class ProfileRequest(BaseModel):
    name: str = Field(..., min_length=1)
    photo_url: str = Field(..., min_length=1)
    phone: str = ""
    address: str = ""


class CourseRequest(BaseModel):
    course_title: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    seats: int = Field(..., ge=0)
    price: float = Field(..., ge=0)
    duration: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    instructor_email: Optional[EmailStr] = None


class CourseUpdateRequest(BaseModel):
    # Seats, enrollment_count, status and ownership are not editable here.
    course_title: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    duration: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)


class EnrollRequest(BaseModel):
    user_email: Optional[str] = None
    course_id: Optional[str] = None
    course_title: Optional[str] = None


class RoleRequest(BaseModel):
    role: Optional[str] = None


class StatusRequest(BaseModel):
    status: Optional[str] = None


class ReviewRequest(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None


def create_app(settings: Optional[Settings] = None, storage: Optional[StorageContext] = None,
               id_token_verifier: Optional[Callable[[str], dict]] = None) -> FastAPI:
    settings = settings or Settings()
    if id_token_verifier is None and settings.firebase_credentials:
        id_token_verifier = firebase_id_token_verifier(settings.firebase_credentials)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if getattr(app.state, "storage", None) is None:
            _wire_state(app, settings, StorageContext.from_settings(settings))
            owned = True
        try:
            app.state.storage.ensure_indexes()
        except PyMongoError as e:
            logger.error("Could not ensure indexes: %s", e)
        logger.info("CourseHub API ready on database %s", app.state.storage.name)
        yield
        if owned:
            app.state.storage.close()
            app.state.storage = None

    app = FastAPI(title="CourseHub API", lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = None
    app.state.id_token_verifier = id_token_verifier
    if storage is not None:
        _wire_state(app, settings, storage)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CourseHubError)
    async def coursehub_error_handler(request: Request, exc: CourseHubError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(PyMongoError)
    async def storage_error_handler(request: Request, exc: PyMongoError):
        logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"error": "server_error", "detail": "Storage failure", "retryable": False},
        )

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    @app.get("/")
    def read_root():
        return {"message": "CourseHub API is running"}

    @app.get("/health")
    def health(storage: StorageContext = Depends(get_storage)):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
            "database_name": None,
            "connection_status": "Not Connected",
        }
        if storage is None:
            return JSONResponse(status_code=503, content=response)
        try:
            storage.ping()
            response["database"] = "✅ Connected & Working"
            response["database_name"] = storage.name
            response["connection_status"] = "Connected"
        except PyMongoError as e:
            response["database"] = f"❌ Error: {str(e)[:50]}"
            return JSONResponse(status_code=503, content=response)
        return response

    # ---------- Session ----------
    @app.post("/jwt")
    def exchange_id_token(payload: IdTokenRequest, request: Request, response: Response,
                          settings: Settings = Depends(get_settings)):
        verifier = request.app.state.id_token_verifier
        if verifier is None:
            raise HTTPException(status_code=503, detail="Identity provider not configured")
        if not payload.token:
            raise InvalidInput("Missing ID token")
        try:
            claims = verifier(payload.token)
        except Exception as e:
            logger.info("ID token verification failed: %s", e)
            raise AuthError("Invalid ID token")
        if not claims.get("email"):
            raise AuthError("ID token is missing email")
        set_session_cookie(response, settings, issue_token(settings, claims["email"], claims.get("uid")))
        return {"success": True}

    @app.post("/logout")
    def logout(response: Response, settings: Settings = Depends(get_settings)):
        clear_session_cookie(response, settings)
        return {"success": True}

    # ---------- Users ----------
    @app.get("/users/{email}")
    def get_profile(email: str, identity: Identity = Depends(current_identity),
                    storage: StorageContext = Depends(get_storage)):
        ensure_same_user(identity, email)
        user = storage.users.find_by_email(email)
        return serialize(user) or User(email=email).model_dump(exclude_none=True)

    @app.put("/users/{email}")
    def put_profile(email: str, payload: ProfileRequest, identity: Identity = Depends(current_identity),
                    storage: StorageContext = Depends(get_storage)):
        ensure_same_user(identity, email)
        created = storage.users.upsert(email, payload.model_dump())
        if created:
            logger.info("Profile created for %s", email)
            return JSONResponse(status_code=201, content={"message": "Profile created."})
        return {"message": "Profile updated."}

    # ---------- Courses ----------
    @app.get("/courses")
    def list_courses(instructor_email: Optional[str] = None, search: Optional[str] = None,
                     caller: Caller = Depends(optional_caller),
                     storage: StorageContext = Depends(get_storage)):
        clauses = []
        if caller.role != "admin":
            clauses.append(VISIBLE_STATUS_FILTER)
        if instructor_email:
            clauses.append({"instructor_email": instructor_email})
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            clauses.append({"$or": [{"course_title": pattern}, {"description": pattern}]})
        query = {"$and": clauses} if clauses else {}
        return [serialize(c) for c in storage.courses.find(query)]

    @app.get("/courses/{course_id}")
    def get_course(course_id: str, caller: Caller = Depends(optional_caller),
                   storage: StorageContext = Depends(get_storage)):
        course_id = canonical_id(course_id)
        course = storage.courses.find_by_id(ObjectId(course_id))
        if not course:
            raise NotFound("Course not found")
        status = course.get("status")
        if status is not None and status != "approved" and caller.role != "admin":
            raise NotFound("Course not found or not available.")
        result = serialize(course)
        result.update(storage.reviews.rating_summary(course_id))
        return result

    @app.post("/courses", status_code=201)
    def create_course(payload: CourseRequest, caller: Caller = Depends(instructor_caller),
                      storage: StorageContext = Depends(get_storage)):
        if caller.role == "instructor":
            owner = caller.email
        elif payload.instructor_email:
            owner = payload.instructor_email
        else:
            raise InvalidInput("Admin must specify instructor_email.")
        course = Course(
            course_title=payload.course_title,
            image=payload.image,
            description=payload.description,
            duration=payload.duration,
            instructor_email=owner,
            seats=payload.seats,
            price=payload.price,
            enrollment_count=0,
            status="pending",
        )
        course_id = storage.courses.insert(course)
        logger.info("Course %s created by %s for %s", course_id, caller.email, owner)
        return {"message": "Course added, pending approval.", "inserted_id": course_id}

    @app.put("/courses/{course_id}")
    def update_course(course_id: str, payload: CourseUpdateRequest, caller: Caller = Depends(instructor_caller),
                      storage: StorageContext = Depends(get_storage)):
        course_oid = parse_object_id(course_id)
        course = storage.courses.find_by_id(course_oid)
        if not course:
            raise NotFound("Course not found")
        ensure_course_owner(caller, course)
        fields = payload.model_dump(exclude_none=True)
        if not fields:
            return {"message": "No changes detected"}
        if not storage.courses.update_fields(course_oid, fields):
            raise NotFound("Course not found")
        return {"message": "Course updated successfully"}

    @app.delete("/courses/{course_id}")
    def delete_course(course_id: str, caller: Caller = Depends(instructor_caller),
                      admission: AdmissionController = Depends(get_admission)):
        admission.delete_course(caller, course_id)
        return {"message": "Course and related data deleted"}

    @app.get("/popular-courses")
    def popular_courses(storage: StorageContext = Depends(get_storage)):
        return [
            {
                "id": str(c["_id"]),
                "course_title": c.get("course_title"),
                "image_url": c.get("image"),
                "enroll_count": c.get("enrollment_count", 0),
            }
            for c in storage.courses.popular()
        ]

    @app.get("/instructor/courses/{course_id}/analytics")
    def course_analytics(course_id: str, caller: Caller = Depends(instructor_caller),
                         storage: StorageContext = Depends(get_storage)):
        course_id = canonical_id(course_id)
        course = storage.courses.find_by_id(ObjectId(course_id))
        if not course:
            raise NotFound("Course not found")
        ensure_course_owner(caller, course)
        students = storage.enrollments.list_for_course(course_id)
        return {
            "course_title": course.get("course_title"),
            "total_enrollments": len(students),
            "enrolled_students": students,
            **storage.reviews.rating_summary(course_id),
        }

    # ---------- Enrollment ----------
    @app.post("/enrollments", status_code=201)
    def enroll(payload: EnrollRequest, caller: Caller = Depends(current_caller),
               admission: AdmissionController = Depends(get_admission)):
        enrolled_id = admission.enroll(caller.email, payload.user_email, payload.course_id, payload.course_title)
        return {"message": "Enrolled", "enrolled_id": enrolled_id}

    @app.delete("/enrollments/{email}/{course_id}")
    def unenroll(email: str, course_id: str, identity: Identity = Depends(current_identity),
                 admission: AdmissionController = Depends(get_admission)):
        admission.unenroll(identity.email, email, course_id)
        return {"message": "Unenrolled"}

    @app.get("/enrolled-status")
    def enrolled_status(email: Optional[str] = None, course_id: Optional[str] = None,
                        identity: Identity = Depends(current_identity),
                        storage: StorageContext = Depends(get_storage)):
        if not email or not course_id:
            raise InvalidInput("Missing params")
        course_id = canonical_id(course_id)
        ensure_same_user(identity, email)
        enrollment = storage.enrollments.find_one(email, course_id)
        return {
            "enrolled": enrollment is not None,
            "enrollment_id": str(enrollment["_id"]) if enrollment else None,
        }

    @app.get("/my-enrolled-courses/{email}")
    def my_enrolled_courses(email: str, identity: Identity = Depends(current_identity),
                            storage: StorageContext = Depends(get_storage)):
        ensure_same_user(identity, email)
        return [serialize(e) for e in storage.enrollments.list_for_user(email)]

    # ---------- Reviews ----------
    @app.post("/courses/{course_id}/reviews", status_code=201)
    def add_review(course_id: str, payload: ReviewRequest, identity: Identity = Depends(current_identity),
                   storage: StorageContext = Depends(get_storage)):
        course_id = canonical_id(course_id)
        if payload.rating is None or not 1 <= payload.rating <= 5:
            raise InvalidInput("Invalid rating")
        comment = (payload.comment or "").strip()
        if not comment:
            raise InvalidInput("Comment required")
        if not storage.enrollments.find_one(identity.email, course_id):
            raise Forbidden("Must be enrolled")
        if storage.reviews.find_one(identity.email, course_id):
            raise Conflict("Already reviewed")
        profile = storage.users.find_by_email(identity.email) or {}
        review = Review(
            course_id=course_id,
            user_email=identity.email,
            user_name=profile.get("name") or identity.email,
            user_photo=profile.get("photo_url"),
            rating=payload.rating,
            comment=comment,
        )
        review_id = storage.create_document("review", review)
        return {"message": "Review added", "inserted_id": review_id}

    @app.get("/courses/{course_id}/reviews")
    def list_reviews(course_id: str, storage: StorageContext = Depends(get_storage)):
        course_id = canonical_id(course_id)
        return [serialize(r) for r in storage.reviews.list_for_course(course_id)]

    # ---------- Admin ----------
    @app.get("/admin/users")
    def admin_list_users(caller: Caller = Depends(admin_caller), storage: StorageContext = Depends(get_storage)):
        return [serialize(u) for u in storage.users.list_all()]

    @app.patch("/admin/users/{email}/role")
    def admin_set_role(email: str, payload: RoleRequest, caller: Caller = Depends(admin_caller),
                       storage: StorageContext = Depends(get_storage)):
        if payload.role not in ROLES:
            raise InvalidInput("Invalid role")
        if not storage.users.set_role(email, payload.role):
            raise NotFound("User not found")
        logger.info("Role of %s set to %s by %s", email, payload.role, caller.email)
        return {"message": f"Role updated to {payload.role}"}

    @app.get("/admin/courses")
    def admin_list_courses(caller: Caller = Depends(admin_caller), storage: StorageContext = Depends(get_storage)):
        return [serialize(c) for c in storage.courses.find({})]

    @app.patch("/admin/courses/{course_id}/status")
    def admin_set_status(course_id: str, payload: StatusRequest, caller: Caller = Depends(admin_caller),
                         storage: StorageContext = Depends(get_storage)):
        if payload.status not in COURSE_STATUSES:
            raise InvalidInput("Invalid status")
        if not storage.courses.update_status(parse_object_id(course_id), payload.status):
            raise NotFound("Course not found")
        logger.info("Course %s status set to %s by %s", course_id, payload.status, caller.email)
        return {"message": f"Status updated to {payload.status}"}


app = create_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
