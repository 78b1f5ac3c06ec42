"""
Error kinds raised by the authorization and admission layers.

Each kind carries the HTTP status it maps to and a stable ``kind`` token that
clients can switch on. Only ``SeatConflict`` is worth retrying.
"""


class CourseHubError(Exception):
    status_code = 500
    kind = "server_error"
    retryable = False
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message, "retryable": self.retryable}


class InvalidInput(CourseHubError):
    status_code = 400
    kind = "invalid_input"
    default_message = "Invalid input"


class AuthError(CourseHubError):
    status_code = 401
    kind = "unauthorized"
    default_message = "Unauthorized"


class Forbidden(CourseHubError):
    status_code = 403
    kind = "forbidden"
    default_message = "Forbidden"


class NotFound(CourseHubError):
    status_code = 404
    kind = "not_found"
    default_message = "Not found"


class Conflict(CourseHubError):
    status_code = 409
    kind = "conflict"
    default_message = "Conflict"


class AlreadyEnrolled(Conflict):
    kind = "already_enrolled"
    default_message = "Already enrolled"


class QuotaExceeded(Conflict):
    kind = "quota_exceeded"
    default_message = "Enrollment limit reached"


class CourseNotApproved(Conflict):
    kind = "course_not_approved"
    default_message = "Course not approved"


class NoSeatsAvailable(Conflict):
    kind = "no_seats_available"
    default_message = "No seats available"


class SeatConflict(Conflict):
    kind = "seat_conflict"
    retryable = True
    default_message = "Seat no longer available"


class ServerError(CourseHubError):
    pass
