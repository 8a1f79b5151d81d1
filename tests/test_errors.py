import pytest

from xlabridge import (
    ArgumentMismatchError,
    InvalidHandleError,
    InvalidShapeError,
    NativeRuntimeError,
    ShapeMismatchError,
    Status,
    StatusCode,
    TransferError,
    XlaBridgeError,
)
from xlabridge.errors import check_status
from xlabridge.native import api, platform
from xlabridge.native.engine import guarded
from xlabridge.native.status import invalid_argument, not_found


def test_ok_status_does_not_raise() -> None:
    check_status(Status.ok())
    assert Status.ok().is_ok
    assert str(Status.ok()) == "OK"


def test_error_class_chosen_by_call_site() -> None:
    status = invalid_argument("bad payload")
    with pytest.raises(TransferError, match="bad payload") as exc_info:
        check_status(status, TransferError)
    assert exc_info.value.status is status
    assert exc_info.value.code is StatusCode.INVALID_ARGUMENT


def test_per_code_overrides() -> None:
    by_code = {StatusCode.INVALID_ARGUMENT: ArgumentMismatchError, StatusCode.NOT_FOUND: InvalidHandleError}
    with pytest.raises(ArgumentMismatchError):
        check_status(invalid_argument("x"), NativeRuntimeError, by_code=by_code)
    with pytest.raises(InvalidHandleError):
        check_status(not_found("x"), NativeRuntimeError, by_code=by_code)
    with pytest.raises(NativeRuntimeError):
        check_status(Status(StatusCode.INTERNAL, "x"), NativeRuntimeError, by_code=by_code)


def test_hierarchy() -> None:
    assert issubclass(ShapeMismatchError, InvalidShapeError)
    assert issubclass(InvalidShapeError, ValueError)
    assert issubclass(TransferError, XlaBridgeError)
    assert XlaBridgeError("plain").code is None


def test_native_handles_are_checked() -> None:
    status, _ = api.buffer_to_host(10**9)
    assert status.code is StatusCode.NOT_FOUND
    status = api.executable_destroy(10**9)
    assert status.code is StatusCode.NOT_FOUND
    assert "NOT_FOUND" in str(status)


def test_platform_resolution() -> None:
    status, info = platform.resolve("HOST")
    assert status.is_ok and info.name == "cpu"
    status, _ = platform.resolve("gpu")
    assert status.code is StatusCode.UNAVAILABLE
    status, _ = platform.resolve("quantum")
    assert status.code is StatusCode.NOT_FOUND
    assert platform.known_platforms() == ["cpu", "cuda", "rocm", "tpu"]


@pytest.mark.parametrize("exc", [IndexError("row 9"), KeyError("slot"), RuntimeError("stream broke")])
def test_stream_failures_become_statuses(exc) -> None:
    def work():
        raise exc

    status, value = guarded(work)()
    assert value is None
    assert status.code is StatusCode.INTERNAL
    assert type(exc).__name__ in status.message
    with pytest.raises(NativeRuntimeError):
        check_status(status)
