from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

from ..errors import (
    ArgumentMismatchError,
    InvalidHandleError,
    NativeRuntimeError,
    check_status,
)
from ..ir.computation import XlaComputation
from ..ir.literal import Literal
from ..ir.shape import ProgramShape, Shape
from ..native import api
from ..native.status import Status, StatusCode
from .buffer import PjRtBuffer, defer_release
from .future import PjRtFuture

if TYPE_CHECKING:
    from .client import PjRtClient
    from .device import PjRtDevice

logger = logging.getLogger(__name__)

_EXECUTE_ERRORS = {
    StatusCode.INVALID_ARGUMENT: ArgumentMismatchError,
    StatusCode.NOT_FOUND: InvalidHandleError,
}


@dataclass(frozen=True, slots=True)
class CompileOptions:
    """Target configuration for `PjRtClient.compile`.

    Attributes:
        device_ordinal: Device the executable is bound to.
        optimize: Run dead-code elimination before lowering.
    """

    device_ordinal: int = 0
    optimize: bool = True

    def __post_init__(self) -> None:
        if self.device_ordinal < 0:
            raise ValueError(f"device_ordinal must be non-negative, got {self.device_ordinal}")

    def to_native(self) -> dict[str, Any]:
        return {"device_ordinal": self.device_ordinal, "optimize": self.optimize}


class PjRtLoadedExecutable:
    """A computation compiled for one device of a client.

    Executions can be repeated any number of times and issued from several
    threads at once.
    """

    def __init__(
        self,
        client: PjRtClient,
        handle: int,
        computation: XlaComputation,
        device: PjRtDevice,
    ) -> None:
        self._client = client
        self._handle = handle
        self._computation = computation
        self._program_shape = computation.program_shape()
        self._device = device
        self._generation = client._generation
        self._deleted = False
        result = self._program_shape.result_shape
        self._output_shapes = tuple(result.tuple_shapes) if result.is_tuple else (result,)
        self._finalizer = weakref.finalize(self, defer_release, api.executable_destroy, handle)

    @property
    def name(self) -> str:
        return self._computation.name

    @property
    def client(self) -> PjRtClient:
        return self._client

    @property
    def device(self) -> PjRtDevice:
        return self._device

    @property
    def program_shape(self) -> ProgramShape:
        return self._program_shape

    @property
    def parameter_shapes(self) -> tuple[Shape, ...]:
        return self._program_shape.parameter_shapes

    @property
    def output_shapes(self) -> tuple[Shape, ...]:
        """One shape per output buffer; a tuple result is unpacked."""
        return self._output_shapes

    def as_hlo_text(self) -> str:
        return self._computation.as_hlo_text()

    def is_deleted(self) -> bool:
        return self._deleted or not self._client._owns(self._generation)

    def delete(self) -> None:
        with self._client._lock:
            if self._deleted:
                return
            self._deleted = True
            self._finalizer.detach()
            if self._client._owns(self._generation):
                check_status(api.executable_destroy(self._handle), InvalidHandleError)

    def _check_valid(self) -> None:
        if self._deleted:
            raise InvalidHandleError(f"executable '{self.name}' has been deleted")
        self._client._check_child(self._generation, "executable")

    def _check_arguments(self, buffers: Sequence[PjRtBuffer]) -> None:
        params = self.parameter_shapes
        if len(buffers) != len(params):
            raise ArgumentMismatchError(
                f"'{self.name}' takes {len(params)} arguments, got {len(buffers)}"
            )
        for i, (buf, want) in enumerate(zip(buffers, params)):
            if not isinstance(buf, PjRtBuffer):
                raise ArgumentMismatchError(f"argument {i} is a {type(buf).__name__}, expected a PjRtBuffer")
            buf._check_valid()
            if buf.client is not self._client:
                raise ArgumentMismatchError(f"argument {i} belongs to another client")
            if buf.on_device_shape != want:
                raise ArgumentMismatchError(
                    f"argument {i} has shape {buf.on_device_shape}, parameter {i} expects {want}"
                )
            if buf.device is not self._device:
                raise ArgumentMismatchError(
                    f"argument {i} is on {buf.device}, '{self.name}' runs on {self._device}"
                )

    def execute(self, buffers: Sequence[PjRtBuffer]) -> list[PjRtBuffer]:
        """Run once; returns one buffer per output."""
        return self.execute_async(buffers).wait()

    def execute_async(self, buffers: Sequence[PjRtBuffer]) -> PjRtFuture[list[PjRtBuffer]]:
        buffers = list(buffers)
        with self._client._lock:
            self._check_valid()
            self._check_arguments(buffers)
            status, out = api.executable_execute(self._handle, [b._handle for b in buffers])
            check_status(status, NativeRuntimeError, by_code=_EXECUTE_ERRORS)
            handles, event = out
            outputs = [
                self._client._adopt_buffer(h, shape, self._device)
                for h, shape in zip(handles, self._output_shapes)
            ]
        logger.debug("execute %r on %s with %d arguments", self.name, self._device, len(buffers))

        def resolve(status: Status, _: Any) -> list[PjRtBuffer]:
            if not status.is_ok:
                for buf in outputs:
                    buf.delete()
            check_status(status, NativeRuntimeError, by_code=_EXECUTE_ERRORS)
            return outputs

        return PjRtFuture(event, resolve)

    def execute_literals(self, literals: Sequence[Literal]) -> list[PjRtBuffer]:
        """Upload host literals to the bound device, then execute."""
        if len(literals) != len(self.parameter_shapes):
            raise ArgumentMismatchError(
                f"'{self.name}' takes {len(self.parameter_shapes)} arguments, got {len(literals)}"
            )
        uploaded: list[PjRtBuffer] = []
        try:
            for lit in literals:
                uploaded.append(self._client.buffer_from_literal(lit, self._device))
            return self.execute(uploaded)
        finally:
            for buf in uploaded:
                buf.delete()

    def __repr__(self) -> str:
        return f"PjRtLoadedExecutable({self.name}: {self._program_shape} on {self._device})"
