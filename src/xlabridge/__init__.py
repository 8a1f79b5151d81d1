"""xlabridge: build tensor computations, compile them, run them on devices.

Graphs are built with `XlaBuilder`, finished into an `XlaComputation`, compiled
by a `PjRtClient` into a `PjRtLoadedExecutable` and executed on `PjRtBuffer`s.
Host data crosses the boundary only as `Literal`s.
"""

from .errors import (
    ArgumentMismatchError,
    BackendUnavailableError,
    BuilderUsageError,
    CompilationError,
    InvalidHandleError,
    InvalidShapeError,
    NativeRuntimeError,
    ShapeMismatchError,
    TransferError,
    XlaBridgeError,
)
from .ir import (
    BuilderState,
    ElementType,
    HloModuleProto,
    Literal,
    PrimitiveType,
    ProgramShape,
    Shape,
    XlaBuilder,
    XlaComputation,
    XlaOp,
)
from .ir.element_type import (
    bf16,
    c64,
    c128,
    f16,
    f32,
    f64,
    pred,
    s8,
    s16,
    s32,
    s64,
    u8,
    u16,
    u32,
    u64,
)
from .logging_config import configure_from_env, disable_logging, setup_logging
from .native.status import Status, StatusCode
from .pjrt import (
    CompileOptions,
    CpuOptions,
    GpuOptions,
    MemorySpace,
    PjRtBuffer,
    PjRtClient,
    PjRtDevice,
    PjRtFuture,
    PjRtLoadedExecutable,
    TpuOptions,
)

__version__ = "0.1.0"

__all__ = [
    # errors
    "XlaBridgeError",
    "InvalidShapeError",
    "ShapeMismatchError",
    "BuilderUsageError",
    "CompilationError",
    "ArgumentMismatchError",
    "TransferError",
    "BackendUnavailableError",
    "NativeRuntimeError",
    "InvalidHandleError",
    "Status",
    "StatusCode",
    # graph construction
    "ElementType",
    "PrimitiveType",
    "Shape",
    "ProgramShape",
    "Literal",
    "XlaBuilder",
    "XlaOp",
    "BuilderState",
    "XlaComputation",
    "HloModuleProto",
    # element types
    "pred",
    "s8",
    "s16",
    "s32",
    "s64",
    "u8",
    "u16",
    "u32",
    "u64",
    "f16",
    "bf16",
    "f32",
    "f64",
    "c64",
    "c128",
    # runtime
    "PjRtClient",
    "PjRtDevice",
    "MemorySpace",
    "PjRtBuffer",
    "PjRtFuture",
    "PjRtLoadedExecutable",
    "CompileOptions",
    "CpuOptions",
    "GpuOptions",
    "TpuOptions",
    # logging
    "setup_logging",
    "disable_logging",
    "configure_from_env",
]
