"""
core/errors.py -- Error taxonomy and the Failure result type.

Validation and domain outcomes are returned, not raised. Every component below
the route layer returns either its success value or a Failure, and callers
branch with isinstance(result, Failure). Only the route layer converts a
Failure into an HTTP response (see api/errors.py).

DependencyUnavailable is the one exception in the taxonomy. Stores and
transports raise it from inside a boundary call; the component that made the
call catches it and returns Failure(DEPENDENCY_UNAVAILABLE) instead of letting
a raw driver error cross a component boundary.

Layer rule: core/ is the kernel. No imports from other project packages.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, TypeVar, Union


class ErrorKind(str, Enum):
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_CODE = "INVALID_CODE"
    CODE_EXPIRED = "CODE_EXPIRED"
    CODE_EXHAUSTED = "CODE_EXHAUSTED"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    ALREADY_HAS_CODE = "ALREADY_HAS_CODE"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"
    INTERNAL = "INTERNAL"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INVALID_FORMAT: 400,
    ErrorKind.INVALID_CODE: 400,
    ErrorKind.CODE_EXPIRED: 400,
    ErrorKind.CODE_EXHAUSTED: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.ALREADY_HAS_CODE: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_RUNNING: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
    ErrorKind.DEPENDENCY_UNAVAILABLE: 503,
}

# Caller-facing text per kind. Messages never include the offending input --
# a rejected code, email, or token is not echoed back.
DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_FORMAT: "Input is malformed.",
    ErrorKind.INVALID_CODE: "Signup code is not valid.",
    ErrorKind.CODE_EXPIRED: "Signup code has expired.",
    ErrorKind.CODE_EXHAUSTED: "Signup code has no remaining uses.",
    ErrorKind.UNAUTHENTICATED: "Authentication required.",
    ErrorKind.FORBIDDEN: "You do not have access to this resource.",
    ErrorKind.ALREADY_HAS_CODE: "You already have an active signup code.",
    ErrorKind.NOT_FOUND: "Resource not found.",
    ErrorKind.RATE_LIMITED: "Too many requests.",
    ErrorKind.ALREADY_RUNNING: "A security self-test is already running.",
    ErrorKind.DEPENDENCY_UNAVAILABLE: "A backing service is unavailable. Try again later.",
    ErrorKind.INTERNAL: "An unexpected error occurred.",
}


@dataclass(frozen=True)
class Failure:
    """A structured, non-exceptional error result.

    retry_after is only set for RATE_LIMITED and carries whole seconds.
    """

    kind: ErrorKind
    message: str = ""
    retry_after: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.message:
            object.__setattr__(self, "message", DEFAULT_MESSAGES[self.kind])

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]


T = TypeVar("T")
Result = Union[T, Failure]


class DependencyUnavailable(Exception):
    """Raised by a store or transport when the backing service fails or times out."""
