"""DeviceArena tests: the allocator behind simulated device memory.

Tests cover:
1. Alloc/free, alignment, peak tracking
2. Coalescing of adjacent free blocks
3. Out-of-memory diagnostics
"""

import threading

import pytest

from xlabridge.native.memory import ArenaConfig, DeviceArena, DeviceOutOfMemoryError


# =============================================================================
# 1. Basics
# =============================================================================


class TestDeviceArenaBasics:
    """Test basic allocator functionality."""

    def test_alloc_free_roundtrip(self):
        arena = DeviceArena(ArenaConfig(total_bytes=4096))

        addr = arena.alloc(256, tag="buffer 1 leaf 0")
        assert addr == 0
        assert arena.live_bytes == 256

        arena.free(addr)
        assert arena.live_bytes == 0

    def test_alignment_respected(self):
        arena = DeviceArena(ArenaConfig(total_bytes=4096, alignment=128))
        addrs = [arena.alloc(100, tag=f"block_{i}") for i in range(5)]
        for addr in addrs:
            assert addr % 128 == 0, f"Address 0x{addr:04X} not 128-byte aligned"
        assert len(set(addrs)) == 5

    def test_zero_byte_allocations_are_distinct(self):
        arena = DeviceArena(ArenaConfig(total_bytes=4096))
        a = arena.alloc(0, tag="token")
        b = arena.alloc(0, tag="token")
        assert a != b
        assert arena.live_bytes == 128

    def test_peak_bytes_tracked(self):
        arena = DeviceArena(ArenaConfig(total_bytes=4096))
        a = arena.alloc(64, tag="a")
        b = arena.alloc(64, tag="b")
        arena.free(a)
        arena.free(b)
        assert arena.peak_bytes == 128
        assert arena.live_bytes == 0

    def test_double_free_raises(self):
        arena = DeviceArena(ArenaConfig(total_bytes=4096))
        addr = arena.alloc(64, tag="a")
        arena.free(addr)
        with pytest.raises(KeyError):
            arena.free(addr)

    def test_stats_and_reset(self):
        arena = DeviceArena(ArenaConfig(total_bytes=4096))
        arena.alloc(64, tag="a")
        arena.alloc(100, tag="b")

        stats = arena.stats()
        assert stats["bytes_in_use"] == 192
        assert stats["bytes_limit"] == 4096
        assert stats["num_allocs"] == 2
        assert stats["live_allocations"] == 2

        arena.reset()
        assert arena.live_bytes == 0
        assert arena.peak_bytes == 192
        assert arena.largest_free_block == 4096
        assert "in use 0 / peak 192" in arena.format_state()

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            ArenaConfig(total_bytes=0)
        with pytest.raises(ValueError):
            ArenaConfig(total_bytes=1024, alignment=48)


# =============================================================================
# 2. Coalescing
# =============================================================================


class TestCoalescing:
    """Freed neighbours merge back into one block."""

    def test_adjacent_blocks_merge(self):
        arena = DeviceArena(ArenaConfig(total_bytes=1024))
        a = arena.alloc(256, tag="a")
        b = arena.alloc(256, tag="b")
        arena.alloc(256, tag="c")

        arena.free(a)
        arena.free(b)
        assert arena.largest_free_block == 512
        assert arena.alloc(512, tag="big") == 0

    def test_fragmentation_blocks_large_allocations(self):
        arena = DeviceArena(ArenaConfig(total_bytes=1024))
        a = arena.alloc(256, tag="a")
        arena.alloc(256, tag="b")
        c = arena.alloc(256, tag="c")
        arena.alloc(256, tag="d")
        arena.free(a)
        arena.free(c)

        assert arena.free_bytes == 512
        with pytest.raises(DeviceOutOfMemoryError):
            arena.alloc(512, tag="big")


# =============================================================================
# 3. Out of memory
# =============================================================================


class TestOutOfMemory:
    """OOM errors carry enough context to debug."""

    def test_oom_message(self):
        arena = DeviceArena(ArenaConfig(total_bytes=256))
        arena.alloc(200, tag="buffer 7 leaf 0")
        with pytest.raises(DeviceOutOfMemoryError) as exc_info:
            arena.alloc(1, tag="buffer 8 leaf 0")

        message = str(exc_info.value)
        assert "device out of memory" in message
        assert "buffer 8 leaf 0" in message
        assert "buffer 7 leaf 0" in message

    def test_concurrent_allocations_never_overlap(self):
        arena = DeviceArena(ArenaConfig(total_bytes=64 * 1024))
        addrs: list[int] = []
        lock = threading.Lock()

        def worker(n: int) -> None:
            for i in range(32):
                addr = arena.alloc(64, tag=f"t{n}-{i}")
                with lock:
                    addrs.append(addr)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(addrs)) == 256
        assert arena.live_bytes == 256 * 64
