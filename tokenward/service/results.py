"""Explicit outcomes for auth operations.

Service calls return ``Ok(value)`` or ``Err(kind, detail)`` instead of
raising, so callers branch on the failure kind. The HTTP layer turns an
``Err`` into the matching ``ServiceError`` via ``to_exception``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Literal, TypeVar, Union

from tokenward.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ServerError,
    ServiceError,
)

T = TypeVar("T")


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    BAD_REQUEST = "bad_request"
    FATAL = "fatal"


_KIND_TO_ERROR: Dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.UNAUTHORIZED: AuthenticationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.BAD_REQUEST: BadRequestError,
    ErrorKind.FATAL: ServerError,
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: Literal[True] = field(default=True, init=False)


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str
    context: Dict[str, Any] = field(default_factory=dict)
    ok: Literal[False] = field(default=False, init=False)

    def to_exception(self) -> ServiceError:
        return _KIND_TO_ERROR[self.kind](self.detail, detail=self.context or None)


Result = Union[Ok[T], Err]


def unauthorized(detail: str = "invalid credentials", **context: Any) -> Err:
    return Err(ErrorKind.UNAUTHORIZED, detail, context)


def not_found(detail: str, **context: Any) -> Err:
    return Err(ErrorKind.NOT_FOUND, detail, context)


def conflict(detail: str, **context: Any) -> Err:
    return Err(ErrorKind.CONFLICT, detail, context)


def bad_request(detail: str, **context: Any) -> Err:
    return Err(ErrorKind.BAD_REQUEST, detail, context)


def fatal(detail: str, **context: Any) -> Err:
    return Err(ErrorKind.FATAL, detail, context)


__all__ = [
    "ErrorKind",
    "Ok",
    "Err",
    "Result",
    "unauthorized",
    "not_found",
    "conflict",
    "bad_request",
    "fatal",
]
