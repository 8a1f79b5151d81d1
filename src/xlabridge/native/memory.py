"""Address bookkeeping for simulated device memory.

A device's bytes live in numpy arrays owned by its buffers; the arena only
hands out addresses so that capacity, fragmentation and out-of-memory behave
the way they would on a real accelerator. Placement is first-fit over a free
list kept sorted by address, so a given sequence of requests always yields the
same addresses.
"""

from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass
from typing import NamedTuple


@dataclass(frozen=True, slots=True)
class ArenaConfig:
    """Size and placement rules for one device arena.

    Attributes:
        total_bytes: Capacity of the device.
        alignment: Every address and every reservation is a multiple of this.
                   Must be a power of 2.
    """

    total_bytes: int
    alignment: int = 64

    def __post_init__(self) -> None:
        if self.total_bytes <= 0:
            raise ValueError(f"total_bytes must be positive, got {self.total_bytes}")
        if self.alignment <= 0 or self.alignment & (self.alignment - 1):
            raise ValueError(f"alignment must be a positive power of 2, got {self.alignment}")

    def round_up(self, nbytes: int) -> int:
        mask = self.alignment - 1
        return (nbytes + mask) & ~mask


class Allocation(NamedTuple):
    addr: int
    size: int
    tag: str


class DeviceOutOfMemoryError(Exception):
    """No free region of the device can hold the request."""


class DeviceArena:
    """First-fit allocator shared by every stream of one device.

    Requests are rounded up to the alignment and a zero-byte request still
    takes one aligned slot, so every buffer leaf gets its own address.

    Example:
        >>> arena = DeviceArena(ArenaConfig(total_bytes=1 << 20))
        >>> addr = arena.alloc(4096, tag="buffer 3 leaf 0")
        >>> arena.free(addr)
    """

    def __init__(self, config: ArenaConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._live: dict[int, Allocation] = {}
        # (start, length) pairs, sorted by start, never adjacent
        self._holes: list[tuple[int, int]] = [(0, config.total_bytes)]
        self._in_use = 0
        self._peak = 0
        self._count = 0

    def __repr__(self) -> str:
        return f"DeviceArena(total_bytes={self.config.total_bytes}, in_use={self._in_use})"

    @property
    def live_bytes(self) -> int:
        return self._in_use

    @property
    def peak_bytes(self) -> int:
        """Most bytes ever reserved at once. Survives reset()."""
        return self._peak

    @property
    def free_bytes(self) -> int:
        return self.config.total_bytes - self._in_use

    @property
    def largest_free_block(self) -> int:
        with self._lock:
            return self._largest_hole()

    def alloc(self, size: int, tag: str) -> int:
        """Reserve ``size`` bytes and return the aligned start address.

        Raises:
            DeviceOutOfMemoryError: no hole is large enough, whatever the
                total amount of free memory.
        """
        if size < 0:
            raise ValueError(f"allocation size must be non-negative, got {size}")
        need = self.config.round_up(max(size, 1))

        with self._lock:
            for pos, (start, length) in enumerate(self._holes):
                addr = self.config.round_up(start)
                if addr + need <= start + length:
                    self._carve(pos, addr, need)
                    self._live[addr] = Allocation(addr, need, tag)
                    self._in_use += need
                    self._peak = max(self._peak, self._in_use)
                    self._count += 1
                    return addr
            report = self._oom_report(size, need, tag)
        raise DeviceOutOfMemoryError(report)

    def free(self, addr: int) -> None:
        with self._lock:
            record = self._live.pop(addr, None)
            if record is None:
                raise KeyError(f"address 0x{addr:04X} is not allocated")
            self._in_use -= record.size
            self._release(record.addr, record.size)

    def reset(self) -> None:
        """Drop every reservation at once, as when a device is torn down."""
        with self._lock:
            self._live.clear()
            self._holes = [(0, self.config.total_bytes)]
            self._in_use = 0

    def get_allocations(self) -> list[Allocation]:
        with self._lock:
            return sorted(self._live.values())

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "bytes_in_use": self._in_use,
                "peak_bytes_in_use": self._peak,
                "bytes_limit": self.config.total_bytes,
                "num_allocs": self._count,
                "live_allocations": len(self._live),
                "largest_free_block_bytes": self._largest_hole(),
            }

    def format_state(self, *, max_allocs: int = 10) -> str:
        """Multi-line dump of usage and the lowest-addressed reservations."""
        live = self.get_allocations()
        out = [
            f"arena {self.config.total_bytes:,} bytes, align {self.config.alignment}",
            f"  in use {self._in_use:,} / peak {self._peak:,} / free {self.free_bytes:,}",
        ]
        out.extend(f"  0x{a.addr:08X} +{a.size:<8,} {a.tag}" for a in live[:max_allocs])
        if len(live) > max_allocs:
            out.append(f"  ... {len(live) - max_allocs} more")
        return "\n".join(out)

    # hole management, lock held

    def _largest_hole(self) -> int:
        return max((length for _, length in self._holes), default=0)

    def _carve(self, pos: int, addr: int, need: int) -> None:
        start, length = self._holes.pop(pos)
        leftovers = [(start, addr - start), (addr + need, start + length - addr - need)]
        for hole in reversed(leftovers):
            if hole[1] > 0:
                self._holes.insert(pos, hole)

    def _release(self, addr: int, size: int) -> None:
        pos = bisect.bisect_left(self._holes, (addr, 0))
        if pos < len(self._holes) and addr + size == self._holes[pos][0]:
            size += self._holes.pop(pos)[1]
        if pos > 0:
            prev_start, prev_len = self._holes[pos - 1]
            if prev_start + prev_len == addr:
                self._holes[pos - 1] = (prev_start, prev_len + size)
                return
        self._holes.insert(pos, (addr, size))

    def _oom_report(self, size: int, need: int, tag: str) -> str:
        biggest = sorted(self._live.values(), key=lambda a: a.size, reverse=True)[:5]
        out = [
            f"device out of memory: {tag!r} needs {size} bytes ({need} reserved)",
            f"  capacity {self.config.total_bytes:,}, in use {self._in_use:,}, "
            f"largest hole {self._largest_hole():,}",
        ]
        out.extend(f"  holding 0x{a.addr:08X} +{a.size:,} {a.tag}" for a in biggest)
        return "\n".join(out)
