"""Error taxonomy of the bridge.

Native calls report failure through `Status` values; `check_status` is the one
place where a non-OK status becomes an exception. Which exception depends on
the call site: a failed upload is a `TransferError` whatever code the runtime
used, while `execute` maps `INVALID_ARGUMENT` to `ArgumentMismatchError`.
"""

from __future__ import annotations

from collections.abc import Mapping

from .native.status import Status, StatusCode


class XlaBridgeError(Exception):
    """Base class of every error raised by xlabridge.

    `status` is set when the error was produced from a native status; the
    message is then the runtime's diagnostic, unmodified.
    """

    def __init__(self, message: str, *, status: Status | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def code(self) -> StatusCode | None:
        return self.status.code if self.status is not None else None


class InvalidShapeError(XlaBridgeError, ValueError):
    """Mismatched dimensions or element type."""


class ShapeMismatchError(InvalidShapeError):
    """Raw bytes reinterpreted with the wrong element type or length."""


class BuilderUsageError(XlaBridgeError):
    """Stale or foreign op handle, or use of a builder that is no longer open."""


class CompilationError(XlaBridgeError):
    """The native compiler rejected a computation."""


class ArgumentMismatchError(XlaBridgeError):
    """Wrong argument count, shape or device at execute time."""


class TransferError(XlaBridgeError):
    """A host/device or device/device copy failed."""


class BackendUnavailableError(XlaBridgeError):
    """The requested device family is absent from this runtime."""


class NativeRuntimeError(XlaBridgeError):
    """A native failure not covered by a more specific class."""


class InvalidHandleError(XlaBridgeError):
    """A buffer or executable was deleted, or its client was closed."""


def check_status(
    status: Status,
    error: type[XlaBridgeError] = NativeRuntimeError,
    *,
    by_code: Mapping[StatusCode, type[XlaBridgeError]] | None = None,
) -> None:
    """Raise if `status` is not OK.

    Args:
        status: Status returned by a native call.
        error: Exception class used for any non-OK code.
        by_code: Per-code overrides of `error`.
    """
    if status.is_ok:
        return
    cls = error
    if by_code is not None:
        cls = by_code.get(status.code, error)
    raise cls(status.message, status=status)
