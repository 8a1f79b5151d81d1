"""Status values returned across the native runtime boundary.

Every entry point in `xlabridge.native.api` returns a `Status` (alone, or as the
first element of a tuple with the produced value). A non-OK status means the
accompanying value must not be used.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class StatusCode(enum.IntEnum):
    """Canonical status codes, numbered like absl::StatusCode."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15


@dataclass(frozen=True, slots=True)
class Status:
    code: StatusCode = StatusCode.OK
    message: str = ""

    @classmethod
    def ok(cls) -> Status:
        return _OK

    @property
    def is_ok(self) -> bool:
        return self.code == StatusCode.OK

    def __str__(self) -> str:
        if self.is_ok:
            return "OK"
        return f"{self.code.name}: {self.message}"


_OK = Status()


def invalid_argument(message: str) -> Status:
    return Status(StatusCode.INVALID_ARGUMENT, message)


def not_found(message: str) -> Status:
    return Status(StatusCode.NOT_FOUND, message)


def failed_precondition(message: str) -> Status:
    return Status(StatusCode.FAILED_PRECONDITION, message)


def resource_exhausted(message: str) -> Status:
    return Status(StatusCode.RESOURCE_EXHAUSTED, message)


def unavailable(message: str) -> Status:
    return Status(StatusCode.UNAVAILABLE, message)


def unimplemented(message: str) -> Status:
    return Status(StatusCode.UNIMPLEMENTED, message)


def internal(message: str) -> Status:
    return Status(StatusCode.INTERNAL, message)
