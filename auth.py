"""
Identity verification and role-based authorization.

The session credential is an HS256 JWT in the ``token`` cookie carrying the
caller's ``email`` and ``uid``. Two verification paths exist:

- strict: anything short of a valid token is an ``AuthError``
- lenient: a missing or bad token makes the caller a guest

Roles are looked up in the user collection on every request and never
cached, so an admin's role change applies to the very next request. A
verified caller without a user record is a student.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

import firebase_admin
import jwt
from fastapi import Depends, Request, Response
from firebase_admin import auth as firebase_auth, credentials
from pymongo.errors import PyMongoError

from errors import AuthError, Forbidden, ServerError
from schemas import DEFAULT_ROLE, GUEST

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"
JWT_ALGORITHM = "HS256"

ADMIN_ROLES = frozenset({"admin"})
INSTRUCTOR_ROLES = frozenset({"instructor", "admin"})

FIREBASE_APP_NAME = "coursehub"


@dataclass
class Identity:
    email: str
    uid: Optional[str] = None


@dataclass
class Caller:
    email: Optional[str]
    uid: Optional[str]
    role: str

    @property
    def is_guest(self) -> bool:
        return self.role == GUEST


def issue_token(settings, email: str, uid: Optional[str] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "email": email,
        "uid": uid,
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expires_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def verify_token(settings, token: Optional[str]) -> Identity:
    """Strict verification: raise ``AuthError`` unless the token is valid."""
    if not token:
        raise AuthError("No token provided")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.info("Rejected session token: %s", e)
        raise AuthError("Invalid token")
    email = payload.get("email")
    if not email:
        raise AuthError("Token is missing email")
    return Identity(email=email, uid=payload.get("uid"))


def verify_token_lenient(settings, token: Optional[str]) -> Optional[Identity]:
    """Lenient verification: ``None`` stands for an anonymous caller."""
    try:
        return verify_token(settings, token)
    except AuthError:
        return None


def set_session_cookie(response: Response, settings, token: str) -> None:
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.jwt_expires_days * 24 * 60 * 60,
        path="/",
    )


def clear_session_cookie(response: Response, settings) -> None:
    response.delete_cookie(
        TOKEN_COOKIE,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite,
    )


def firebase_id_token_verifier(credentials_path: str) -> Callable[[str], dict]:
    """Build a ``/jwt`` verifier backed by a Firebase service account.

    The Firebase app is registered under its own name so that it does not
    clash with a default app the host process may have set up.
    """
    try:
        app = firebase_admin.get_app(FIREBASE_APP_NAME)
    except ValueError:
        app = firebase_admin.initialize_app(credentials.Certificate(credentials_path), name=FIREBASE_APP_NAME)

    def verify(id_token: str) -> dict:
        claims = firebase_auth.verify_id_token(id_token, app=app)
        return {"email": claims.get("email"), "uid": claims.get("uid")}

    return verify


def require_role(role: str, allowed: Iterable[str]) -> None:
    if role not in allowed:
        raise Forbidden(f"Requires role: {' or '.join(sorted(allowed))}")


def require_instructor(role: str) -> None:
    require_role(role, INSTRUCTOR_ROLES)


def ensure_course_owner(caller: Caller, course: dict) -> None:
    """Instructors may only touch their own courses; admins may touch any."""
    if caller.role == "admin":
        return
    if caller.role == "instructor" and course.get("instructor_email") == caller.email:
        return
    raise Forbidden("Not your course")


class AuthorizationGuard:
    def __init__(self, users):
        self.users = users

    def resolve_role(self, email: str) -> str:
        try:
            user = self.users.find_by_email(email)
        except PyMongoError as e:
            logger.error("Failed to look up role for %s: %s", email, e)
            raise ServerError("Server error checking user role")
        if not user:
            return DEFAULT_ROLE
        return user.get("role") or DEFAULT_ROLE

    def resolve_caller(self, identity: Identity) -> Caller:
        return Caller(email=identity.email, uid=identity.uid, role=self.resolve_role(identity.email))

    def resolve_caller_lenient(self, identity: Optional[Identity]) -> Caller:
        if identity is None:
            return Caller(email=None, uid=None, role=GUEST)
        try:
            return self.resolve_caller(identity)
        except ServerError:
            # Public pages keep working as guest while the user store is down.
            return Caller(email=identity.email, uid=identity.uid, role=GUEST)


# --- FastAPI dependencies ---

def get_settings(request: Request):
    return request.app.state.settings


def get_storage(request: Request):
    return request.app.state.storage


def get_guard(request: Request) -> AuthorizationGuard:
    return request.app.state.guard


def current_identity(request: Request, settings=Depends(get_settings)) -> Identity:
    return verify_token(settings, request.cookies.get(TOKEN_COOKIE))


def current_caller(identity: Identity = Depends(current_identity), guard: AuthorizationGuard = Depends(get_guard)) -> Caller:
    return guard.resolve_caller(identity)


def optional_caller(request: Request, response: Response, settings=Depends(get_settings),
                    guard: AuthorizationGuard = Depends(get_guard)) -> Caller:
    token = request.cookies.get(TOKEN_COOKIE)
    identity = verify_token_lenient(settings, token)
    if token and identity is None:
        # Stale or forged cookie: drop it so the browser stops sending it.
        clear_session_cookie(response, settings)
    return guard.resolve_caller_lenient(identity)


def instructor_caller(caller: Caller = Depends(current_caller)) -> Caller:
    require_instructor(caller.role)
    return caller


def admin_caller(caller: Caller = Depends(current_caller)) -> Caller:
    require_role(caller.role, ADMIN_ROLES)
    return caller


def ensure_same_user(identity: Identity, email: str) -> None:
    if identity.email != email:
        raise Forbidden("Email mismatch")
