"""
Error taxonomy shared by the lifecycle service, the real-time layer and the
HTTP surface.

Business rejections travel as ``LifecycleFailure`` values. Exceptions are
reserved for conditions the caller cannot act on (corrupt records, lost
optimistic races that survive the retry are converted back into a failure).
"""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Stable error kinds exposed to API and WebSocket clients."""
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    ALREADY_FINALIZED = "already_finalized"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    DELIVERY_FAILURE = "delivery_failure"


# HTTP status used when a failure of the given kind reaches a REST caller
HTTP_STATUS_FOR_KIND = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_FINALIZED: 409,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.DELIVERY_FAILURE: 500,
}


@dataclass(frozen=True)
class LifecycleFailure:
    """A structured, expected failure returned to the caller."""

    kind: ErrorKind
    message: str

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_FOR_KIND[self.kind]


class ConflictError(Exception):
    """A conditional update matched no row: another writer got there first."""

    def __init__(self, submission_id, expected_version: int):
        self.submission_id = submission_id
        self.expected_version = expected_version
        super().__init__(
            f"submission {submission_id} changed concurrently (expected version {expected_version})"
        )


class Unauthorized(Exception):
    """Identity could not be established for a connection or request."""

    kind = ErrorKind.UNAUTHORIZED


class CorruptSubmissionState(Exception):
    """A stored submission holds a status the lifecycle does not know."""
