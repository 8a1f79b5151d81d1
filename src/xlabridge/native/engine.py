"""Interpreter and simulated devices of the reference runtime.

Each device has an arena, a compute stream and a transfer stream. A stream is
a single-worker thread pool, so work on one stream runs in enqueue order.
Work items return `(Status, value)`; the futures they produce are the
runtime's events.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import numpy as np

from ..ir.shape import Shape
from . import kernels
from .compiler import LoweredComputation, Program, Step
from .memory import ArenaConfig, DeviceArena, DeviceOutOfMemoryError
from .status import Status, failed_precondition, internal, resource_exhausted

logger = logging.getLogger(__name__)

Value = Any
Event = Future


# =============================================================================
# Devices and buffers
# =============================================================================


class Device:
    def __init__(self, ordinal: int, platform: str, kind: str, arena: ArenaConfig) -> None:
        self.ordinal = ordinal
        self.platform = platform
        self.kind = kind
        self.arena = DeviceArena(arena)
        self.compute = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"xlabridge-{platform}{ordinal}-compute")
        self.transfer = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"xlabridge-{platform}{ordinal}-transfer")

    def shutdown(self) -> None:
        """Drain both streams, then release all device memory."""
        # A stream worker cannot join itself (teardown from a GC finalizer).
        on_stream = threading.current_thread().name.startswith(f"xlabridge-{self.platform}{self.ordinal}-")
        self.compute.shutdown(wait=not on_stream)
        self.transfer.shutdown(wait=not on_stream)
        self.arena.reset()

    def __repr__(self) -> str:  # pragma: no cover
        return f"Device({self.platform}:{self.ordinal})"


def _flatten(shape: Shape, value: Value) -> list[np.ndarray | None]:
    if shape.is_tuple:
        return [leaf for s, v in zip(shape.tuple_shapes, value) for leaf in _flatten(s, v)]
    if shape.is_token:
        return [None]
    return [np.asarray(value, dtype=shape.element_type.numpy_dtype).reshape(shape.dimensions)]


def _unflatten(shape: Shape, leaves: Sequence[np.ndarray | None]) -> Value:
    it = iter(leaves)

    def build(s: Shape) -> Value:
        if s.is_tuple:
            return tuple(build(c) for c in s.tuple_shapes)
        return next(it)

    return build(shape)


@dataclass(eq=False)
class DeviceBuffer:
    """Device-resident value. `ready` resolves once its contents are defined.

    Releasing a buffer returns its memory to the arena but keeps the arrays
    alive for work that was enqueued before the release.
    """

    device: Device
    shape: Shape
    ready: Event | None = None
    leaves: list[np.ndarray | None] = field(default_factory=list, repr=False)
    addrs: list[int] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    released: bool = False

    def materialize(self, value: Value, tag: str) -> None:
        """Allocate every leaf and store a copy of `value`.

        All or nothing: on OOM the leaves allocated so far are freed again.
        """
        leaves = _flatten(self.shape, value)
        addrs: list[int] = []
        try:
            for i, leaf in enumerate(leaves):
                size = 0 if leaf is None else leaf.nbytes
                addrs.append(self.device.arena.alloc(size, tag=f"{tag} leaf {i}"))
        except DeviceOutOfMemoryError:
            for addr in addrs:
                self.device.arena.free(addr)
            raise
        with self._lock:
            self.leaves = [None if leaf is None else np.array(leaf, copy=True) for leaf in leaves]
            self.addrs = addrs
            if self.released:
                self._free_locked()

    def value(self) -> Value:
        return _unflatten(self.shape, self.leaves)

    def release(self) -> None:
        with self._lock:
            self.released = True
            self._free_locked()

    def _free_locked(self) -> None:
        for addr in self.addrs:
            self.device.arena.free(addr)
        self.addrs = []

    def wait(self) -> Status:
        if self.ready is None:
            return Status.ok()
        status, _ = self.ready.result()
        return status


def guarded(fn: Callable[[], tuple[Status, Any]]) -> Callable[[], tuple[Status, Any]]:
    """Wrap a stream work item so failures become statuses."""

    def run() -> tuple[Status, Any]:
        try:
            return fn()
        except DeviceOutOfMemoryError as e:
            return resource_exhausted(str(e)), None
        except Exception as e:
            logger.debug("stream work item failed", exc_info=True)
            return internal(f"{type(e).__name__}: {e}"), None

    return run


def wait_inputs(buffers: Sequence[DeviceBuffer]) -> Status:
    for i, buf in enumerate(buffers):
        status = buf.wait()
        if not status.is_ok:
            return failed_precondition(f"input {i} was never defined: {status}")
    return Status.ok()


# =============================================================================
# Interpreter
# =============================================================================


class Interpreter:
    """Evaluates a lowered program step by step with numpy kernels."""

    def __init__(self, program: Program) -> None:
        self.program = program

    def run(self, args: Sequence[Value]) -> Value:
        return self._run(self.program.entry, list(args))

    def _run(self, comp: LoweredComputation, args: list[Value]) -> Value:
        env: dict[int, Value] = {}
        for step in comp.steps:
            out = self._eval(step, [env[o] for o in step.operands], args)
            if step.shape.is_array:
                out = np.asarray(out).astype(step.shape.element_type.numpy_dtype, copy=False)
            env[step.id] = out
        return env[comp.root_id]

    def _call(self, comp_id: int, args: list[Value]) -> Value:
        return self._run(self.program.computations[comp_id], args)

    def _eval(self, step: Step, xs: list[Value], args: list[Value]) -> Value:
        op, a = step.opcode, step.attrs
        if op == "parameter":
            return args[a["number"]]
        if op == "constant":
            return step.constant
        if op == "iota":
            return kernels.iota(step.shape, a["iota_dimension"])
        if op in kernels.UNARY:
            with np.errstate(all="ignore"):
                return kernels.UNARY[op](xs[0])
        if op in kernels.BINARY:
            with np.errstate(all="ignore"):
                return kernels.BINARY[op](xs[0], xs[1])
        if op == "compare":
            return kernels.COMPARE[a["direction"]](xs[0], xs[1])
        if op == "select":
            return kernels.select(*xs)
        if op == "clamp":
            return kernels.clamp(*xs)
        if op == "convert":
            with np.errstate(all="ignore"):
                return xs[0].astype(step.shape.element_type.numpy_dtype)
        if op == "reshape":
            return xs[0].reshape(step.shape.dimensions)
        if op == "broadcast":
            return kernels.broadcast_in_dim(xs[0], step.shape.dimensions, a["dimensions"])
        if op == "transpose":
            return np.transpose(xs[0], a["permutation"]).copy()
        if op == "slice":
            return kernels.slice_(xs[0], a["start"], a["limit"], a["strides"])
        if op == "concatenate":
            return np.concatenate(xs, axis=a["dimension"])
        if op == "tuple":
            return tuple(xs)
        if op == "get-tuple-element":
            return xs[0][a["index"]]
        if op == "dot":
            return kernels.dot_general(
                xs[0], xs[1],
                a["lhs_contracting_dimensions"], a["rhs_contracting_dimensions"],
                a["lhs_batch_dimensions"], a["rhs_batch_dimensions"],
            )
        if op == "triangular-solve":
            return kernels.triangular_solve(
                xs[0], xs[1], a["left_side"], a["lower"], a["unit_diagonal"], a["transpose_a"]
            )
        if op == "reduce":
            return self._reduce(step, xs[0], xs[1])
        if op == "call":
            return self._call(step.called[0], xs)
        if op == "conditional":
            branch = step.called[0] if bool(xs[0]) else step.called[1]
            return self._call(branch, [xs[1] if bool(xs[0]) else xs[2]])
        if op == "while":
            cond_id, body_id = step.called
            state = xs[0]
            while bool(self._call(cond_id, [state])):
                state = self._call(body_id, [state])
            return state
        raise ValueError(f"no kernel for opcode '{op}'")

    def _reduce(self, step: Step, x: np.ndarray, init: np.ndarray) -> np.ndarray:
        dims = step.attrs["dimensions"]
        if step.reducer is not None:
            return kernels.reduce_with_ufunc(kernels.REDUCER_UFUNCS[step.reducer], x, init, dims)
        body = step.called[0]
        return kernels.reduce_with_callable(lambda acc, v: self._call(body, [acc, v]), x, init, dims)
