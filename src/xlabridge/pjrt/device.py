from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import NativeRuntimeError, check_status
from ..native import api

if TYPE_CHECKING:
    from .client import PjRtClient


@dataclass(frozen=True, slots=True)
class MemorySpace:
    kind: str
    device_id: int

    def __str__(self) -> str:
        return f"{self.kind}:{self.device_id}"


@dataclass(frozen=True, eq=False)
class PjRtDevice:
    """One addressable device of a client. Ordinal 0 is the default device."""

    id: int
    local_hardware_id: int
    platform: str
    device_kind: str
    memory_spaces: tuple[MemorySpace, ...]
    _client: PjRtClient = field(repr=False)

    @property
    def client(self) -> PjRtClient:
        return self._client

    @property
    def ordinal(self) -> int:
        return self.local_hardware_id

    def default_memory_space(self) -> MemorySpace:
        return self.memory_spaces[0]

    def memory_stats(self) -> dict[str, int]:
        """Allocator counters: bytes_in_use, peak_bytes_in_use, bytes_limit, ..."""
        with self._client._lock:
            self._client._check_alive()
            status, stats = api.device_memory_stats(self._client._handle, self.ordinal)
        check_status(status, NativeRuntimeError)
        return stats

    def __str__(self) -> str:
        return f"{self.platform.upper()}_{self.id}({self.device_kind})"
