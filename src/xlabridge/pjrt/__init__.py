from .buffer import PjRtBuffer
from .client import PjRtClient
from .device import MemorySpace, PjRtDevice
from .executable import CompileOptions, PjRtLoadedExecutable
from .future import PjRtFuture
from .options import CpuOptions, GpuOptions, TpuOptions

__all__ = [
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
]
