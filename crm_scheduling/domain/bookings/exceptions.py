"""Booking domain errors.

Every expected business outcome raises a subclass of ``BookingError`` so the
HTTP layer can tell them apart from infrastructure failures. Database and
transport errors are never wrapped and propagate as-is.
"""

from typing import Optional

from ...shared.validators import as_utc


class BookingError(Exception):
    """Base class for booking business errors"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(BookingError):
    """Missing or inconsistent booking input"""

    status_code = 400


class NotFoundError(BookingError):
    status_code = 404


class ForbiddenError(BookingError):
    """The acting user's role does not allow the operation"""

    status_code = 403


class InvalidStateError(BookingError):
    """Transition requested from a state that does not allow it"""

    status_code = 400


class ConflictError(BookingError):
    """The requested slot overlaps active bookings of the same owner.

    Conflicts are copied out of the ORM objects when the error is raised:
    the transaction is rolled back and the session may be closed before the
    error is rendered.
    """

    status_code = 409

    def __init__(self, conflicts: list, message: Optional[str] = None):
        super().__init__(message or "Time slot conflict")
        self.conflicts = [
            {
                "id": b.id,
                "title": b.title,
                "startTime": as_utc(b.start_time),
                "endTime": as_utc(b.end_time),
            }
            for b in conflicts
        ]

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "conflicts": [
                {
                    **c,
                    "startTime": c["startTime"].isoformat(),
                    "endTime": c["endTime"].isoformat(),
                }
                for c in self.conflicts
            ],
        }
