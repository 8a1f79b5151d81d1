"""Backend options passed to client construction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .. import config


@dataclass(frozen=True, slots=True)
class CpuOptions:
    """Host platform options.

    Attributes:
        device_count: Number of simulated host devices.
        memory_bytes: Memory of each device.
        memory_fraction: Share of `memory_bytes` the allocator may use.
    """

    device_count: int = field(default_factory=config.cpu_device_count)
    memory_bytes: int = field(default_factory=config.cpu_memory_bytes)
    memory_fraction: float = 1.0

    def __post_init__(self) -> None:
        if self.device_count < 1:
            raise ValueError(f"device_count must be at least 1, got {self.device_count}")
        if self.memory_bytes <= 0:
            raise ValueError(f"memory_bytes must be positive, got {self.memory_bytes}")
        if not 0.0 < self.memory_fraction <= 1.0:
            raise ValueError(f"memory_fraction must be in (0, 1], got {self.memory_fraction}")

    def to_native(self) -> dict[str, Any]:
        return {
            "device_count": self.device_count,
            "memory_bytes": self.memory_bytes,
            "memory_fraction": self.memory_fraction,
        }


@dataclass(frozen=True, slots=True)
class GpuOptions:
    memory_fraction: float = 0.75
    preallocate: bool = True
    visible_devices: tuple[int, ...] | None = None

    def __post_init__(self) -> None:
        if not 0.0 < self.memory_fraction <= 1.0:
            raise ValueError(f"memory_fraction must be in (0, 1], got {self.memory_fraction}")
        if self.visible_devices is not None and any(d < 0 for d in self.visible_devices):
            raise ValueError(f"visible_devices must be non-negative ids, got {self.visible_devices}")

    def to_native(self) -> dict[str, Any]:
        opts: dict[str, Any] = {"memory_fraction": self.memory_fraction, "preallocate": self.preallocate}
        if self.visible_devices is not None:
            opts["visible_devices"] = list(self.visible_devices)
        return opts


@dataclass(frozen=True, slots=True)
class TpuOptions:
    max_inflight_computations: int = 32

    def __post_init__(self) -> None:
        if self.max_inflight_computations < 1:
            raise ValueError(
                f"max_inflight_computations must be at least 1, got {self.max_inflight_computations}"
            )

    def to_native(self) -> dict[str, Any]:
        return {"max_inflight_computations": self.max_inflight_computations}


BackendOptions = CpuOptions | GpuOptions | TpuOptions
