"""Concurrency tests: one client used from many threads.

Tests cover:
1. Concurrent executions of one executable
2. Concurrent uploads and downloads across devices
3. Buffers released by the garbage collector
"""

import gc
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from xlabridge import Literal, XlaBuilder
from xlabridge.ir import element_type as et


# =============================================================================
# 1. Executions
# =============================================================================


class TestConcurrentExecution:
    """Executions issued from several threads agree with serial results."""

    def test_threads_share_an_executable(self, client):
        b = XlaBuilder("affine")
        x = b.parameter(0, et.f32, [8])
        exe = client.compile((x * 2.0 + 1.0).reduce_sum([0]).build())

        def work(seed: int) -> tuple[float, float]:
            data = np.arange(8, dtype=np.float32) + seed
            results = []
            for _ in range(10):
                arg = client.buffer_from_literal(Literal.from_array(data))
                (out,) = exe.execute([arg])
                results.append(out.to_literal().get_first_element())
                out.delete()
                arg.delete()
            assert len(set(results)) == 1
            return results[0], float((data * 2.0 + 1.0).sum())

        with ThreadPoolExecutor(max_workers=8) as pool:
            for got, want in pool.map(work, range(16)):
                assert got == want

        assert client.devices()[0].memory_stats()["bytes_in_use"] == 0

    def test_async_executions_complete(self, client):
        b = XlaBuilder("neg")
        exe = client.compile((-b.parameter(0, et.s32, [4])).build())
        arg = client.buffer_from_literal(Literal.vec1([1, 2, 3, 4], et.s32))

        futures = [exe.execute_async([arg]) for _ in range(32)]
        for future in futures:
            (out,) = future.wait()
            assert out.to_literal().to_list() == [-1, -2, -3, -4]


# =============================================================================
# 2. Transfers
# =============================================================================


class TestConcurrentTransfers:
    """Uploads, copies and downloads interleaved across two devices."""

    def test_copy_chain(self, client2):
        dev0, dev1 = client2.devices()

        def work(i: int) -> list[int]:
            buf = client2.buffer_from_literal(Literal.vec1([i, i + 1], et.s32), dev0)
            there = buf.copy_to_device(dev1)
            back = there.copy_to_device(dev0)
            return back.to_literal().to_list()

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(work, range(20)))
        assert results == [[i, i + 1] for i in range(20)]


# =============================================================================
# 3. Garbage collection
# =============================================================================


class TestCollectedBuffers:
    """Dropped buffers are released on the next client call."""

    def test_dropped_buffers_release_memory(self, client):
        device = client.devices()[0]
        for _ in range(4):
            client.buffer_from_numpy(np.zeros(64, dtype=np.float32))
        gc.collect()

        keep = client.buffer_from_numpy(np.zeros(16, dtype=np.float32))
        assert device.memory_stats()["bytes_in_use"] == 64
        assert client.live_buffers() == [keep]
