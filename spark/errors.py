"""
SPARK — Error taxonomy

Every user-facing failure raised by the engine is a ``SparkError`` subclass.
The ``code`` mirrors the gRPC-style status names used by the mobile clients
and ``http_status`` is what the FastAPI exception handler renders.
"""

from __future__ import annotations


class SparkError(Exception):
    """Base class for all engine errors surfaced to callers."""

    code: str = "internal"
    http_status: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class UnauthenticatedError(SparkError):
    code = "unauthenticated"
    http_status = 401


class PermissionDeniedError(SparkError):
    code = "permission_denied"
    http_status = 403


class NotFoundError(SparkError):
    code = "not_found"
    http_status = 404


class InvalidArgumentError(SparkError):
    code = "invalid_argument"
    http_status = 400


class FailedPreconditionError(SparkError):
    code = "failed_precondition"
    http_status = 409


class InternalError(SparkError):
    code = "internal"
    http_status = 500


class StoreUnavailableError(InternalError):
    """The document store could not be reached or did not answer in time.

    Retryable: scheduled jobs abort the run and are re-invoked next cycle.
    """

    code = "unavailable"
    http_status = 503


class ConcurrentUpdateError(InternalError):
    """A compare-and-set update kept losing to concurrent writers."""

    code = "aborted"
    http_status = 503
