"""
Error taxonomy and tagged results for the messaging core.

Expected outcomes (bad input, rate limiting, session-window violations,
missing configuration) are returned as ``Err`` values so callers branch
explicitly. ``InfrastructureError`` is raised for genuine failures of the
queue, database or provider transport.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    AUTH = "auth_error"
    RATE_LIMITED = "rate_limit_exceeded"
    CONFIGURATION = "configuration_error"
    OUTSIDE_SESSION_WINDOW = "outside_session_window"
    NOT_FOUND = "not_found"
    INFRASTRUCTURE = "infrastructure_error"
    DUPLICATE_EVENT = "duplicate_event"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.http_status < 500


_HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.CONFIGURATION: 400,
    ErrorKind.OUTSIDE_SESSION_WINDOW: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INFRASTRUCTURE: 500,
    ErrorKind.DUPLICATE_EVENT: 200,
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[Any], Err]


class InfrastructureError(Exception):
    """Queue, database or provider transport failure."""


# Substrings that mark an unexpected exception as the caller's fault
CLIENT_ERROR_MARKERS = ("required", "invalid", "missing", "configured for company")


def classify_failure(exc: BaseException) -> ErrorKind:
    """
    Classify an exception that escaped the intake pipeline.

    Known client-error messages map to VALIDATION (or CONFIGURATION for
    credential lookups); anything else is treated as infrastructure.
    """
    if isinstance(exc, InfrastructureError):
        return ErrorKind.INFRASTRUCTURE
    message = str(exc).lower()
    if "configured for company" in message:
        return ErrorKind.CONFIGURATION
    if any(marker in message for marker in CLIENT_ERROR_MARKERS):
        return ErrorKind.VALIDATION
    return ErrorKind.INFRASTRUCTURE
