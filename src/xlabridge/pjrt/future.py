from __future__ import annotations

import threading
import weakref
from typing import Any, Callable, Generic, TypeVar

from ..errors import XlaBridgeError
from ..native import api
from ..native.status import Status

T = TypeVar("T")


class PjRtFuture(Generic[T]):
    """Result of an asynchronous transfer or execution.

    `wait()` blocks until the runtime event fires, then converts the outcome
    with `resolve` exactly once; later calls return the same value or raise
    the same error. Nothing is cancellable.
    """

    def __init__(self, event: int | None, resolve: Callable[[Status, Any], T]) -> None:
        self._event = event
        self._resolve = resolve
        self._lock = threading.Lock()
        self._done = False
        self._value: T | None = None
        self._error: XlaBridgeError | None = None
        self._release = weakref.finalize(self, api.event_destroy, event) if event is not None else None

    @classmethod
    def completed(cls, value: T) -> PjRtFuture[T]:
        future: PjRtFuture[T] = cls(None, lambda status, _: value)
        future._done = True
        future._value = value
        return future

    def is_ready(self) -> bool:
        if self._done or self._event is None:
            return True
        _, ready = api.event_is_ready(self._event)
        return ready

    def wait(self) -> T:
        with self._lock:
            if not self._done:
                status, value = api.event_await(self._event)
                if self._release is not None:
                    self._release()
                try:
                    self._value = self._resolve(status, value)
                except XlaBridgeError as e:
                    self._error = e
                self._done = True
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[return-value]

    def __repr__(self) -> str:
        state = "done" if self._done else "pending"
        return f"PjRtFuture({state})"
