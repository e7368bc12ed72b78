"""Failures raised by the token queue and its store.

Each error carries the HTTP status the API answers with and a short
machine-readable code.  None of them is fatal: the caller shows a notice
and retries on the next refresh.
"""

from __future__ import annotations


class QueueError(Exception):
    http_status = 400
    code = "queue_error"

    def __init__(self, message: str = "") -> None:
        self.message = message or (self.__doc__ or self.code).strip()
        super().__init__(self.message)


class PrerequisiteNotMet(QueueError):
    """Fees, hostel/mess and insurance steps must be complete before a token is issued."""

    http_status = 400
    code = "prerequisite_not_met"


class AlreadyAssigned(QueueError):
    """Student already holds an approval token."""

    http_status = 409
    code = "already_assigned"


class NoAssignedToken(QueueError):
    """Volunteer does not hold a token to skip."""

    http_status = 409
    code = "no_assigned_token"


class SkipFailed(QueueError):
    """Skip could not be completed; the queue will settle on the next refresh."""

    http_status = 500
    code = "skip_failed"


class PersistenceUnavailable(QueueError):
    """The data store could not be reached."""

    http_status = 503
    code = "persistence_unavailable"


class TokenConflict(PersistenceUnavailable):
    """Token number or student already taken by a concurrent write."""

    http_status = 409
    code = "token_conflict"


class InvalidStep(QueueError):
    """No such checklist step."""

    http_status = 400
    code = "invalid_step"


class NotFound(QueueError):
    http_status = 404
    code = "not_found"


class StudentNotFound(NotFound):
    """No student with that roll number."""


class VolunteerNotFound(NotFound):
    """No such volunteer."""


class TokenNotFound(NotFound):
    """No such approval token."""
