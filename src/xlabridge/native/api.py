"""Handle-based entry points of the reference runtime.

Every function returns a `Status`, or a `(Status, value)` pair whose value
must be ignored unless the status is OK. Objects cross the boundary only as
integer handles; the bridge never sees runtime internals.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from ..errors import InvalidShapeError
from ..ir.shape import Shape
from . import platform as platforms
from .compiler import CompileError, Program, VerifierPass, compile_module, parse_module
from .engine import Device, DeviceBuffer, Event, Interpreter, guarded, wait_inputs
from .memory import ArenaConfig, DeviceOutOfMemoryError
from .status import (
    Status,
    StatusCode,
    failed_precondition,
    invalid_argument,
    not_found,
)

logger = logging.getLogger(__name__)

_lock = threading.RLock()
_handles: dict[int, Any] = {}
_ids = itertools.count(1)


@dataclass(eq=False)
class _Client:
    platform: platforms.PlatformInfo
    devices: list[Device]
    buffers: set[int] = field(default_factory=set)
    executables: set[int] = field(default_factory=set)


@dataclass(eq=False)
class _Buffer:
    client: int
    buffer: DeviceBuffer


@dataclass(eq=False)
class _Executable:
    client: int
    program: Program
    device: Device


def _register(obj: Any) -> int:
    with _lock:
        handle = next(_ids)
        _handles[handle] = obj
        return handle


def _lookup(handle: int, kind: type) -> tuple[Status, Any]:
    with _lock:
        obj = _handles.get(handle)
    if not isinstance(obj, kind):
        return not_found(f"no live {kind.__name__.strip('_').lower()} with handle {handle}"), None
    return Status.ok(), obj


def _device(client: _Client, ordinal: int) -> tuple[Status, Device | None]:
    if not 0 <= ordinal < len(client.devices):
        return invalid_argument(f"device ordinal {ordinal} out of range [0, {len(client.devices)})"), None
    return Status.ok(), client.devices[ordinal]


def live_handle_count() -> int:
    with _lock:
        return len(_handles)


# =============================================================================
# Clients and devices
# =============================================================================


def client_create(platform_name: str, options: dict[str, Any]) -> tuple[Status, int | None]:
    """Create a client with `device_count` devices of `memory_bytes` each."""

    status, info = platforms.resolve(platform_name)
    if not status.is_ok:
        return status, None
    count = int(options.get("device_count", 1))
    memory = int(options.get("memory_bytes", 1 << 30) * float(options.get("memory_fraction", 1.0)))
    if count < 1:
        return invalid_argument(f"device_count must be at least 1, got {count}"), None
    try:
        arena = ArenaConfig(total_bytes=memory, alignment=int(options.get("alignment", 64)))
    except ValueError as e:
        return invalid_argument(str(e)), None
    devices = [Device(i, info.name, info.device_kind, arena) for i in range(count)]
    handle = _register(_Client(info, devices))
    logger.debug("created %s client %d: %d devices x %d bytes", info.name, handle, count, memory)
    return Status.ok(), handle


def client_destroy(handle: int) -> Status:
    """Drain device streams, then drop every buffer and executable of the client."""

    status, client = _lookup(handle, _Client)
    if not status.is_ok:
        return status
    with _lock:
        _handles.pop(handle, None)
        owned = [*client.buffers, *client.executables]
        for h in owned:
            _handles.pop(h, None)
        client.buffers.clear()
        client.executables.clear()
    for device in client.devices:
        device.shutdown()
    logger.debug("destroyed client %d (%d owned handles)", handle, len(owned))
    return Status.ok()


def client_platform(handle: int) -> tuple[Status, dict[str, str] | None]:
    status, client = _lookup(handle, _Client)
    if not status.is_ok:
        return status, None
    return Status.ok(), {"name": client.platform.name, "version": client.platform.version}


def client_devices(handle: int) -> tuple[Status, list[dict[str, Any]] | None]:
    status, client = _lookup(handle, _Client)
    if not status.is_ok:
        return status, None
    return Status.ok(), [
        {
            "id": d.ordinal,
            "local_hardware_id": d.ordinal,
            "platform": d.platform,
            "kind": d.kind,
            "memory_spaces": ["device", "pinned_host"],
        }
        for d in client.devices
    ]


def device_memory_stats(handle: int, ordinal: int) -> tuple[Status, dict[str, int] | None]:
    status, client = _lookup(handle, _Client)
    if not status.is_ok:
        return status, None
    status, device = _device(client, ordinal)
    if not status.is_ok:
        return status, None
    return Status.ok(), device.arena.stats()


# =============================================================================
# Events
# =============================================================================


def event_await(handle: int) -> tuple[Status, Any]:
    """Block until the event fires. Returns the status and value of the work."""

    status, event = _lookup(handle, Event)
    if not status.is_ok:
        return status, None
    return event.result()


def event_is_ready(handle: int) -> tuple[Status, bool]:
    status, event = _lookup(handle, Event)
    if not status.is_ok:
        return status, False
    return Status.ok(), event.done()


def event_destroy(handle: int) -> Status:
    with _lock:
        _handles.pop(handle, None)
    return Status.ok()


# =============================================================================
# Buffers
# =============================================================================


def _new_buffer(client_h: int, client: _Client, device: Device, shape: Shape) -> tuple[DeviceBuffer, int]:
    buf = DeviceBuffer(device, shape)
    handle = _register(_Buffer(client_h, buf))
    with _lock:
        client.buffers.add(handle)
    return buf, handle


def _submit(stream: Any, fn: Any) -> tuple[Status, Event | None]:
    try:
        return Status.ok(), stream.submit(guarded(fn))
    except RuntimeError as e:
        # Stream already shut down.
        return failed_precondition(f"device stream is closed: {e}"), None


def buffer_from_host(
    client_h: int,
    ordinal: int,
    shape: dict[str, Any],
    payloads: Sequence[np.ndarray | None],
) -> tuple[Status, tuple[int, int] | None]:
    """Enqueue a host-to-device upload.

    The payloads are copied before this returns. Allocation happens on the
    transfer stream; an allocation failure frees partial allocations and is
    reported through the event.
    """

    status, client = _lookup(client_h, _Client)
    if not status.is_ok:
        return status, None
    status, device = _device(client, ordinal)
    if not status.is_ok:
        return status, None
    try:
        on_device = Shape.from_dict(shape)
    except InvalidShapeError as e:
        return invalid_argument(str(e)), None
    leaves = on_device.leaves()
    if len(leaves) != len(payloads):
        return invalid_argument(f"{on_device} has {len(leaves)} leaves, got {len(payloads)} payloads"), None
    snapshot = []
    for leaf_shape, payload in zip(leaves, payloads):
        if leaf_shape.is_token:
            snapshot.append(None)
            continue
        if payload is None or payload.dtype != leaf_shape.element_type.numpy_dtype or tuple(payload.shape) != leaf_shape.dimensions:
            return invalid_argument(f"payload does not match leaf shape {leaf_shape}"), None
        snapshot.append(np.array(payload, copy=True))

    buf, handle = _new_buffer(client_h, client, device, on_device)
    tag = f"buffer {handle}"

    def upload() -> tuple[Status, None]:
        buf.materialize(_unflatten_payloads(on_device, snapshot), tag)
        return Status.ok(), None

    status, event = _submit(device.transfer, upload)
    if not status.is_ok:
        buffer_destroy(handle)
        return status, None
    buf.ready = event
    logger.debug("upload %s -> %s:%d as buffer %d", on_device, device.platform, ordinal, handle)
    return Status.ok(), (handle, _register(event))


def _unflatten_payloads(shape: Shape, payloads: list[np.ndarray | None]) -> Any:
    it = iter(payloads)

    def build(s: Shape) -> Any:
        if s.is_tuple:
            return tuple(build(c) for c in s.tuple_shapes)
        return next(it)

    return build(shape)


def buffer_to_host(handle: int) -> tuple[Status, int | None]:
    """Enqueue a download. The event's value is the list of leaf arrays."""

    status, entry = _lookup(handle, _Buffer)
    if not status.is_ok:
        return status, None
    buf = entry.buffer

    def download() -> tuple[Status, Any]:
        status = wait_inputs([buf])
        if not status.is_ok:
            return status, None
        return Status.ok(), [None if leaf is None else leaf.copy() for leaf in buf.leaves]

    status, event = _submit(buf.device.transfer, download)
    if not status.is_ok:
        return status, None
    return Status.ok(), _register(event)


def buffer_ready(handle: int) -> tuple[Status, int | None]:
    status, entry = _lookup(handle, _Buffer)
    if not status.is_ok:
        return status, None
    event = entry.buffer.ready
    if event is None:
        event = Event()
        event.set_result((Status.ok(), None))
    return Status.ok(), _register(event)


def buffer_copy_to_device(handle: int, ordinal: int) -> tuple[Status, tuple[int, int] | None]:
    status, entry = _lookup(handle, _Buffer)
    if not status.is_ok:
        return status, None
    status, client = _lookup(entry.client, _Client)
    if not status.is_ok:
        return status, None
    status, device = _device(client, ordinal)
    if not status.is_ok:
        return status, None
    src = entry.buffer
    dst, dst_handle = _new_buffer(entry.client, client, device, src.shape)
    tag = f"buffer {dst_handle}"

    def copy() -> tuple[Status, None]:
        status = wait_inputs([src])
        if not status.is_ok:
            return status, None
        dst.materialize(src.value(), tag)
        return Status.ok(), None

    status, event = _submit(device.transfer, copy)
    if not status.is_ok:
        buffer_destroy(dst_handle)
        return status, None
    dst.ready = event
    logger.debug("copy buffer %d -> %s:%d as buffer %d", handle, device.platform, ordinal, dst_handle)
    return Status.ok(), (dst_handle, _register(event))


def buffer_destroy(handle: int) -> Status:
    status, entry = _lookup(handle, _Buffer)
    if not status.is_ok:
        return status
    with _lock:
        _handles.pop(handle, None)
        client = _handles.get(entry.client)
        if isinstance(client, _Client):
            client.buffers.discard(handle)
    entry.buffer.release()
    return Status.ok()


# =============================================================================
# Compilation and execution
# =============================================================================


def hlo_module_parse(data: bytes, verify: bool = False) -> tuple[Status, dict[str, Any] | None]:
    """Decode a serialized module; with `verify`, also type-check every instruction."""

    try:
        module = parse_module(data)
        if verify:
            VerifierPass().run(module)
        return Status.ok(), module
    except CompileError as e:
        return Status(StatusCode[e.code], str(e)), None


def compile(client_h: int, module: bytes, options: dict[str, Any]) -> tuple[Status, int | None]:
    """Compile a serialized module for one device of the client."""

    status, client = _lookup(client_h, _Client)
    if not status.is_ok:
        return status, None
    status, device = _device(client, int(options.get("device_ordinal", 0)))
    if not status.is_ok:
        return status, None
    try:
        program = compile_module(parse_module(module), optimize=bool(options.get("optimize", True)))
    except CompileError as e:
        return Status(StatusCode[e.code], str(e)), None
    handle = _register(_Executable(client_h, program, device))
    with _lock:
        client.executables.add(handle)
    stats = program.stats
    logger.debug(
        "compiled %r for %s:%d (%d -> %d instructions, %d fast reductions)",
        program.name, device.platform, device.ordinal,
        stats.instructions_in, stats.instructions_out, stats.fast_reductions,
    )
    return Status.ok(), handle


def executable_destroy(handle: int) -> Status:
    status, entry = _lookup(handle, _Executable)
    if not status.is_ok:
        return status
    with _lock:
        _handles.pop(handle, None)
        client = _handles.get(entry.client)
        if isinstance(client, _Client):
            client.executables.discard(handle)
    return Status.ok()


def executable_execute(handle: int, arguments: Sequence[int]) -> tuple[Status, tuple[list[int], int] | None]:
    """Enqueue one execution on the bound device's compute stream.

    Returns one output buffer per top-level result (tuple results are
    unpacked) and the event that fires when they are defined.
    """

    status, entry = _lookup(handle, _Executable)
    if not status.is_ok:
        return status, None
    status, client = _lookup(entry.client, _Client)
    if not status.is_ok:
        return status, None
    program, device = entry.program, entry.device
    params = program.parameter_shapes
    if len(arguments) != len(params):
        return invalid_argument(f"'{program.name}' takes {len(params)} arguments, got {len(arguments)}"), None
    inputs: list[DeviceBuffer] = []
    for i, (arg, want) in enumerate(zip(arguments, params)):
        status, arg_entry = _lookup(arg, _Buffer)
        if not status.is_ok:
            return status, None
        buf = arg_entry.buffer
        if buf.shape != want:
            return invalid_argument(f"argument {i} has shape {buf.shape}, parameter {i} expects {want}"), None
        if buf.device is not device:
            return invalid_argument(
                f"argument {i} is on device {buf.device.ordinal}, executable runs on device {device.ordinal}"
            ), None
        inputs.append(buf)

    result = program.result_shape
    out_shapes = list(result.tuple_shapes) if result.is_tuple else [result]
    outputs = [_new_buffer(entry.client, client, device, s) for s in out_shapes]

    def run() -> tuple[Status, None]:
        status = wait_inputs(inputs)
        if not status.is_ok:
            return status, None
        value = Interpreter(program).run([b.value() for b in inputs])
        parts = list(value) if result.is_tuple else [value]
        done: list[DeviceBuffer] = []
        try:
            for (buf, h), part in zip(outputs, parts):
                buf.materialize(part, f"buffer {h}")
                done.append(buf)
        except DeviceOutOfMemoryError:
            for buf in done:
                buf.release()
            raise
        return Status.ok(), None

    status, event = _submit(device.compute, run)
    if not status.is_ok:
        for _, h in outputs:
            buffer_destroy(h)
        return status, None
    for buf, _ in outputs:
        buf.ready = event
    return Status.ok(), ([h for _, h in outputs], _register(event))
