"""
Callable Errors

Every failure a callable handler reports to its client is a CallableError
carrying one of a fixed set of kinds. The kind decides the HTTP status and the
wire status string; the optional details are echoed back as JSON.
"""

from __future__ import annotations
from typing import Any, Optional
from enum import Enum


class ErrorKind(str, Enum):
    """Error kinds understood by callable clients."""
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission-denied"
    INVALID_ARGUMENT = "invalid-argument"
    FAILED_PRECONDITION = "failed-precondition"
    NOT_FOUND = "not-found"
    ALREADY_EXISTS = "already-exists"
    RESOURCE_EXHAUSTED = "resource-exhausted"
    UNAVAILABLE = "unavailable"
    DEADLINE_EXCEEDED = "deadline-exceeded"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self]

    @property
    def wire_status(self) -> str:
        """INVALID_ARGUMENT style status string."""
        return self.value.replace("-", "_").upper()


HTTP_STATUS = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.FAILED_PRECONDITION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.RESOURCE_EXHAUSTED: 429,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.DEADLINE_EXCEEDED: 504,
    ErrorKind.INTERNAL: 500,
}


class CallableError(Exception):
    """Base callable error."""
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Any = None, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if kind is not None:
            self.kind = ErrorKind(kind)

    @property
    def status_code(self) -> int:
        return self.kind.http_status

    def to_response(self) -> dict:
        error = {
            "status": self.kind.wire_status,
            "message": self.message,
        }
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


class UnauthenticatedError(CallableError):
    """No verified caller identity."""
    kind = ErrorKind.UNAUTHENTICATED


class PermissionDeniedError(CallableError):
    kind = ErrorKind.PERMISSION_DENIED


class InvalidArgumentError(CallableError):
    """Payload is missing a required field or is malformed."""
    kind = ErrorKind.INVALID_ARGUMENT


class FailedPreconditionError(CallableError):
    """Server side configuration is missing."""
    kind = ErrorKind.FAILED_PRECONDITION


class NotFoundError(CallableError):
    kind = ErrorKind.NOT_FOUND


class AlreadyExistsError(CallableError):
    kind = ErrorKind.ALREADY_EXISTS


class ResourceExhaustedError(CallableError):
    """Daily quota exceeded."""
    kind = ErrorKind.RESOURCE_EXHAUSTED


class InternalError(CallableError):
    kind = ErrorKind.INTERNAL


def kind_for_vendor_status(status_code: int) -> ErrorKind:
    """Map an upstream HTTP status onto an error kind."""
    if status_code == 401:
        return ErrorKind.UNAUTHENTICATED
    if status_code == 400:
        return ErrorKind.INVALID_ARGUMENT
    if status_code == 429:
        return ErrorKind.RESOURCE_EXHAUSTED
    if status_code >= 500:
        return ErrorKind.UNAVAILABLE
    return ErrorKind.INTERNAL
