from __future__ import annotations

import collections
import logging
import weakref
from typing import TYPE_CHECKING, Any, Callable

from ..errors import (
    InvalidHandleError,
    NativeRuntimeError,
    TransferError,
    check_status,
)
from ..ir.literal import Literal
from ..ir.shape import Shape
from ..native import api
from ..native.status import Status
from .future import PjRtFuture

if TYPE_CHECKING:
    from .client import PjRtClient
    from .device import PjRtDevice

logger = logging.getLogger(__name__)


_released: collections.deque[tuple[Callable[[int], Status], int]] = collections.deque()


def defer_release(destroy: Callable[[int], Status], handle: int) -> None:
    """Queue a native handle for release. Safe to call from a GC finalizer."""
    _released.append((destroy, handle))


def drain_released() -> None:
    while True:
        try:
            destroy, handle = _released.popleft()
        except IndexError:
            return
        # Handles of a closed client are already gone; nothing to report.
        destroy(handle)


class PjRtBuffer:
    """A device-resident array or tuple owned by a client.

    A buffer is valid until `delete()` or until its client is closed. The
    native allocation is also released when the object is garbage collected.
    """

    def __init__(self, client: PjRtClient, handle: int, shape: Shape, device: PjRtDevice) -> None:
        self._client = client
        self._handle = handle
        self._shape = shape
        self._device = device
        self._generation = client._generation
        self._deleted = False
        self._finalizer = weakref.finalize(self, defer_release, api.buffer_destroy, handle)

    @property
    def client(self) -> PjRtClient:
        return self._client

    @property
    def on_device_shape(self) -> Shape:
        return self._shape

    @property
    def device(self) -> PjRtDevice:
        return self._device

    @property
    def size_bytes(self) -> int:
        return self._shape.byte_size

    def _check_valid(self) -> None:
        if self._deleted:
            raise InvalidHandleError("buffer has been deleted")
        self._client._check_child(self._generation, "buffer")

    def is_deleted(self) -> bool:
        return self._deleted or not self._client._owns(self._generation)

    def delete(self) -> None:
        """Release the device memory. Deleting twice is a no-op."""
        with self._client._lock:
            if self._deleted:
                return
            self._deleted = True
            self._finalizer.detach()
            if self._client._owns(self._generation):
                check_status(api.buffer_destroy(self._handle), InvalidHandleError)

    def block_until_ready(self) -> None:
        with self._client._lock:
            self._check_valid()
            status, event = api.buffer_ready(self._handle)
        check_status(status, NativeRuntimeError)

        def resolve(status: Status, _: Any) -> None:
            check_status(status, NativeRuntimeError)

        PjRtFuture(event, resolve).wait()

    def to_literal(self) -> Literal:
        """Blocking device-to-host copy."""
        return self.to_literal_async().wait()

    def to_literal_async(self) -> PjRtFuture[Literal]:
        with self._client._lock:
            self._check_valid()
            status, event = api.buffer_to_host(self._handle)
        check_status(status, TransferError)
        shape = self._shape

        def resolve(status: Status, payloads: Any) -> Literal:
            check_status(status, TransferError)
            logger.debug("download %s from %s", shape, self._device)
            return Literal._from_leaf_payloads(shape, payloads)

        return PjRtFuture(event, resolve)

    def copy_to_device(self, device: PjRtDevice) -> PjRtBuffer:
        """Copy to another device of the same client; this buffer stays valid."""
        if device.client is not self._client:
            raise TransferError(f"device {device} belongs to another client")
        with self._client._lock:
            self._check_valid()
            status, out = api.buffer_copy_to_device(self._handle, device.ordinal)
            check_status(status, TransferError)
            handle, event = out
            copy = self._client._adopt_buffer(handle, self._shape, device)

        def resolve(status: Status, _: Any) -> PjRtBuffer:
            if not status.is_ok:
                copy.delete()
            check_status(status, TransferError)
            return copy

        return PjRtFuture(event, resolve).wait()

    def __repr__(self) -> str:
        state = " deleted" if self.is_deleted() else ""
        return f"PjRtBuffer({self._shape} on {self._device}{state})"
