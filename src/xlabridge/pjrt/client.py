from __future__ import annotations

import itertools
import logging
import threading
import weakref
from typing import Any

import numpy as np

from ..errors import (
    BackendUnavailableError,
    CompilationError,
    InvalidHandleError,
    NativeRuntimeError,
    TransferError,
    check_status,
)
from ..ir.computation import XlaComputation
from ..ir.literal import Literal
from ..ir.shape import Shape
from ..native import api
from ..native.status import Status, StatusCode
from .buffer import PjRtBuffer, drain_released
from .device import MemorySpace, PjRtDevice
from .executable import CompileOptions, PjRtLoadedExecutable
from .future import PjRtFuture
from .options import BackendOptions, CpuOptions, GpuOptions, TpuOptions

logger = logging.getLogger(__name__)

_generations = itertools.count(1)

_CREATE_ERRORS = {
    StatusCode.UNAVAILABLE: BackendUnavailableError,
    StatusCode.NOT_FOUND: BackendUnavailableError,
}


class PjRtClient:
    """Entry point to one device family.

    The client owns its devices, and every buffer and executable it creates.
    Closing the client destroys the native client; buffers and executables
    created by it then report `is_deleted()` and raise `InvalidHandleError`
    when used.

    Example:
        >>> with PjRtClient.cpu() as client:
        ...     exe = client.compile(computation)
        ...     out = exe.execute([client.buffer_from_literal(Literal.scalar(2.0))])
    """

    def __init__(self, handle: int, backend: str) -> None:
        self._handle = handle
        self._backend = backend
        # Serialises native dispatch and teardown; blocking waits happen outside it.
        self._lock = threading.RLock()
        self._alive = True
        self._generation = next(_generations)
        self._buffers: weakref.WeakSet[PjRtBuffer] = weakref.WeakSet()
        self._executables: weakref.WeakSet[PjRtLoadedExecutable] = weakref.WeakSet()
        self._finalizer = weakref.finalize(self, api.client_destroy, handle)

        status, info = api.client_platform(handle)
        check_status(status, NativeRuntimeError)
        self._platform_name = info["name"]
        self._platform_version = info["version"]

        status, devices = api.client_devices(handle)
        check_status(status, NativeRuntimeError)
        self._devices = [
            PjRtDevice(
                id=d["id"],
                local_hardware_id=d["local_hardware_id"],
                platform=d["platform"],
                device_kind=d["kind"],
                memory_spaces=tuple(MemorySpace(kind, d["id"]) for kind in d["memory_spaces"]),
                _client=self,
            )
            for d in devices
        ]

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, backend: str, options: BackendOptions | None = None) -> PjRtClient:
        """Create a client for `backend` ("cpu", "gpu"/"cuda", "tpu")."""
        native_options: dict[str, Any] = options.to_native() if options is not None else {}
        status, handle = api.client_create(backend, native_options)
        check_status(status, NativeRuntimeError, by_code=_CREATE_ERRORS)
        client = cls(handle, backend)
        logger.debug(
            "created client for %s: %s, %d device(s)",
            backend, client.platform_version, len(client._devices),
        )
        return client

    @classmethod
    def cpu(cls, options: CpuOptions | None = None) -> PjRtClient:
        return cls.create("cpu", options or CpuOptions())

    @classmethod
    def gpu(cls, options: GpuOptions | None = None) -> PjRtClient:
        return cls.create("cuda", options or GpuOptions())

    @classmethod
    def tpu(cls, options: TpuOptions | None = None) -> PjRtClient:
        return cls.create("tpu", options or TpuOptions())

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if not self._alive:
            raise InvalidHandleError(f"{self._platform_name} client has been closed")

    def _owns(self, generation: int) -> bool:
        return self._alive and generation == self._generation

    def _check_child(self, generation: int, what: str) -> None:
        self._check_alive()
        if generation != self._generation:
            raise InvalidHandleError(f"{what} belongs to a previous generation of this client")

    @property
    def is_alive(self) -> bool:
        return self._alive

    def close(self) -> None:
        """Destroy the native client and invalidate everything it produced."""
        with self._lock:
            if not self._alive:
                return
            live = self.live_buffers()
            if live:
                logger.warning(
                    "closing %s client with %d live buffer(s) (%d bytes); they are invalidated",
                    self._platform_name, len(live), sum(b.size_bytes for b in live),
                )
            self._alive = False
            self._generation = next(_generations)
            drain_released()
        # Drains device streams; must not hold the dispatch lock.
        self._finalizer()
        logger.debug("closed %s client", self._platform_name)

    def __enter__(self) -> PjRtClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def live_buffers(self) -> list[PjRtBuffer]:
        with self._lock:
            return [b for b in self._buffers if not b.is_deleted()]

    def live_executables(self) -> list[PjRtLoadedExecutable]:
        with self._lock:
            return [e for e in self._executables if not e.is_deleted()]

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    @property
    def platform_name(self) -> str:
        return self._platform_name

    @property
    def platform_version(self) -> str:
        return self._platform_version

    def devices(self) -> list[PjRtDevice]:
        return list(self._devices)

    def addressable_devices(self) -> list[PjRtDevice]:
        return list(self._devices)

    def device_count(self) -> int:
        return len(self._devices)

    def addressable_device_count(self) -> int:
        return len(self._devices)

    def lookup_device(self, ordinal: int) -> PjRtDevice:
        if not 0 <= ordinal < len(self._devices):
            raise InvalidHandleError(f"no addressable device with ordinal {ordinal}")
        return self._devices[ordinal]

    def _resolve_device(self, device: PjRtDevice | None) -> PjRtDevice:
        if device is None:
            return self._devices[0]
        if device.client is not self:
            raise TransferError(f"device {device} belongs to another client")
        return device

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _adopt_buffer(self, handle: int, shape: Shape, device: PjRtDevice) -> PjRtBuffer:
        buf = PjRtBuffer(self, handle, shape, device)
        self._buffers.add(buf)
        return buf

    def buffer_from_literal_async(
        self, literal: Literal, device: PjRtDevice | None = None
    ) -> PjRtFuture[PjRtBuffer]:
        """Start an upload. The literal's bytes are captured before returning."""
        if not isinstance(literal, Literal):
            raise TransferError(f"expected a Literal, got {type(literal).__name__}")
        target = self._resolve_device(device)
        shape = literal.shape
        with self._lock:
            self._check_alive()
            drain_released()
            status, out = api.buffer_from_host(
                self._handle, target.ordinal, shape.to_dict(), literal._leaf_payloads()
            )
            check_status(status, TransferError)
            handle, event = out
            buf = self._adopt_buffer(handle, shape, target)
        logger.debug("upload %s (%d bytes) to %s", shape, shape.byte_size, target)

        def resolve(status: Status, _: Any) -> PjRtBuffer:
            if not status.is_ok:
                buf.delete()
            check_status(status, TransferError)
            return buf

        return PjRtFuture(event, resolve)

    def buffer_from_literal(self, literal: Literal, device: PjRtDevice | None = None) -> PjRtBuffer:
        """Upload and wait until the buffer is defined on the device."""
        return self.buffer_from_literal_async(literal, device).wait()

    def buffer_from_numpy(self, array: np.ndarray, device: PjRtDevice | None = None) -> PjRtBuffer:
        return self.buffer_from_literal(Literal.from_array(array), device)

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def compile(
        self, computation: XlaComputation, options: CompileOptions | None = None
    ) -> PjRtLoadedExecutable:
        """Compile for one device; native diagnostics surface as CompilationError."""
        if not isinstance(computation, XlaComputation):
            raise CompilationError(f"expected an XlaComputation, got {type(computation).__name__}")
        options = options or CompileOptions()
        device = self.lookup_device(options.device_ordinal)
        serialized = computation.serialize()
        with self._lock:
            self._check_alive()
            drain_released()
            status, handle = api.compile(self._handle, serialized, options.to_native())
            check_status(status, CompilationError)
            exe = PjRtLoadedExecutable(self, handle, computation, device)
            self._executables.add(exe)
        logger.debug("compiled %r for %s", computation.name, device)
        return exe

    def __repr__(self) -> str:
        state = "" if self._alive else ", closed"
        return f"PjRtClient({self._platform_name}, {len(self._devices)} device(s){state})"
