"""
Enrollment admission control.

Admission is a fixed sequence of checks followed by one capacity-consuming
write. The enrollment record is inserted first, then a seat is claimed with a
conditional update (``seats > 0``) that the database evaluates and applies in
one step. If the claim matches nothing, the inserted record is deleted again
and the caller gets ``SeatConflict``. Seat counts read here are only used for
the early rejection, never written back.

Unenrollment deletes the record and then gives the seat back. That second
step is best-effort: a missed seat release can be fixed by an admin, an
oversold course cannot.
"""

import logging
import time
from typing import Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import Caller, ensure_course_owner
from database import parse_object_id
from errors import (
    AlreadyEnrolled,
    CourseNotApproved,
    Forbidden,
    InvalidInput,
    NoSeatsAvailable,
    NotFound,
    QuotaExceeded,
    SeatConflict,
    ServerError,
)

logger = logging.getLogger(__name__)

MAX_ENROLLMENTS_PER_USER = 3


def is_open_for_enrollment(course: dict) -> bool:
    # Courses created before moderation existed have no status.
    return course.get("status") in (None, "approved")


class AdmissionController:
    def __init__(self, storage, max_enrollments: int = MAX_ENROLLMENTS_PER_USER,
                 compensation_retries: int = 3, retry_backoff: float = 0.1):
        self.storage = storage
        self.max_enrollments = max_enrollments
        self.compensation_retries = max(1, compensation_retries)
        self.retry_backoff = retry_backoff

    def enroll(self, caller_email: str, user_email: Optional[str], course_id: Optional[str],
               course_title: Optional[str]) -> str:
        """Admit ``user_email`` to ``course_id`` and return the enrollment id."""
        if not user_email or not course_id or not course_title:
            raise InvalidInput("Missing details")
        course_oid = parse_object_id(course_id, "Course ID")
        course_id = str(course_oid)
        if caller_email != user_email:
            raise Forbidden("Email mismatch")

        enrollments = self.storage.enrollments
        courses = self.storage.courses

        if enrollments.find_one(user_email, course_id):
            raise AlreadyEnrolled()
        if enrollments.count_by_user(user_email) >= self.max_enrollments:
            raise QuotaExceeded(f"Enrollment limit of {self.max_enrollments} reached")

        course = courses.find_by_id(course_oid)
        if not course:
            raise NotFound("Course not found")
        if not is_open_for_enrollment(course):
            raise CourseNotApproved()
        if course.get("seats", 0) <= 0:
            raise NoSeatsAvailable()

        try:
            enrollment_id = enrollments.insert(user_email, course_id, course_title)
        except DuplicateKeyError:
            raise AlreadyEnrolled()

        # A concurrent admission for the same user may have slipped past the quota check.
        try:
            over_quota = enrollments.count_by_user(user_email) > self.max_enrollments
        except PyMongoError as e:
            logger.error("Quota recount failed for %s: %s", user_email, e)
            self._compensate(enrollment_id, "quota recount failed")
            raise ServerError("Enrollment failed")
        if over_quota:
            if not self._compensate(enrollment_id, "quota exceeded"):
                raise ServerError("Enrollment failed")
            raise QuotaExceeded(f"Enrollment limit of {self.max_enrollments} reached")

        try:
            claimed = courses.conditional_decrement_seats(course_oid)
        except PyMongoError as e:
            logger.error("Seat claim failed for course %s: %s", course_id, e)
            self._compensate(enrollment_id, "seat claim failed")
            raise ServerError("Enrollment failed")

        if not claimed:
            logger.info("Lost seat race on course %s for %s", course_id, user_email)
            if not self._compensate(enrollment_id, "seat conflict"):
                raise ServerError("Enrollment failed")
            raise SeatConflict()

        logger.info("Enrolled %s in course %s (enrollment %s)", user_email, course_id, enrollment_id)
        return str(enrollment_id)

    def unenroll(self, caller_email: str, user_email: str, course_id: str) -> None:
        if caller_email != user_email:
            raise Forbidden("Unauthorized")
        course_oid = parse_object_id(course_id)
        course_id = str(course_oid)

        if self.storage.enrollments.delete(user_email, course_id) == 0:
            raise NotFound("Not enrolled")

        try:
            released = self.storage.courses.increment_seats(course_oid, 1)
        except PyMongoError as e:
            logger.error("Seat release failed for course %s after unenrolling %s: %s", course_id, user_email, e)
            return
        if not released:
            logger.info("Course %s is gone; no seat to release for %s", course_id, user_email)
            return
        logger.info("Unenrolled %s from course %s", user_email, course_id)

    def delete_course(self, caller: Caller, course_id: str) -> None:
        """Delete a course with its enrollments and reviews."""
        course_oid = parse_object_id(course_id)
        course_id = str(course_oid)
        course = self.storage.courses.find_by_id(course_oid)
        if not course:
            raise NotFound("Course not found")
        ensure_course_owner(caller, course)

        if not self.storage.courses.delete(course_oid):
            raise NotFound("Delete failed")
        removed_enrollments = self.storage.enrollments.delete_all_for_course(course_id)
        removed_reviews = self.storage.reviews.delete_all_for_course(course_id)
        logger.info(
            "Course %s deleted by %s (%d enrollments, %d reviews removed)",
            course_id, caller.email, removed_enrollments, removed_reviews,
        )

    def _compensate(self, enrollment_id: ObjectId, reason: str) -> bool:
        """Delete a speculative enrollment, retrying a bounded number of times."""
        for attempt in range(1, self.compensation_retries + 1):
            try:
                self.storage.enrollments.delete_by_id(enrollment_id)
                return True
            except PyMongoError as e:
                logger.warning(
                    "Compensation attempt %d/%d for enrollment %s failed: %s",
                    attempt, self.compensation_retries, enrollment_id, e,
                )
                if attempt < self.compensation_retries:
                    time.sleep(self.retry_backoff * attempt)
        logger.error("Orphan enrollment %s needs reconciliation (%s)", enrollment_id, reason)
        return False
