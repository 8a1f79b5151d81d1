"""Buffer tests: host/device transfers, copies and deletion."""

import ml_dtypes
import numpy as np
import pytest

from xlabridge import (
    CpuOptions,
    InvalidHandleError,
    Literal,
    PjRtClient,
    Shape,
    TransferError,
)
from xlabridge.ir import element_type as et


# =============================================================================
# 1. Round trips
# =============================================================================


class TestRoundTrip:
    """Upload then download returns the same literal."""

    def test_array_roundtrip(self, client):
        data = np.random.randn(2, 3).astype(np.float32)
        buf = client.buffer_from_numpy(data)
        assert buf.on_device_shape == Shape.array(et.f32, [2, 3])
        assert buf.size_bytes == 24
        np.testing.assert_array_equal(buf.to_literal().to_numpy(), data)

    def test_tuple_roundtrip(self, client):
        lit = Literal.tuple([
            Literal.vec1([1, 2, 3], et.s32),
            Literal.tuple([Literal.scalar(True, et.pred), Literal.scalar(0.5, et.f64)]),
        ])
        buf = client.buffer_from_literal(lit)
        assert buf.on_device_shape == lit.shape
        assert buf.to_literal() == lit

    @pytest.mark.parametrize(
        "ty",
        [et.pred, et.s8, et.s16, et.s32, et.s64, et.u8, et.u16, et.u32, et.u64,
         et.f16, et.bf16, et.f32, et.f64, et.c64, et.c128],
        ids=lambda t: t.name,
    )
    def test_every_element_type(self, client, ty):
        values = [0, 1, 1, 0] if ty is et.pred else [0, 1, 2, 3]
        lit = Literal.from_array(np.array(values).astype(ty.numpy_dtype).reshape(2, 2), ty)
        buf = client.buffer_from_literal(lit)
        assert buf.on_device_shape == Shape.array(ty, [2, 2])
        assert buf.size_bytes == 4 * ty.itemsize
        back = buf.to_literal()
        assert back == lit
        assert back.to_bytes() == lit.to_bytes()

    def test_bf16_roundtrip(self, client):
        data = np.array([1.5, -2.0, 3.25], dtype=ml_dtypes.bfloat16)
        out = client.buffer_from_numpy(data).to_literal().to_numpy()
        assert out.dtype == np.dtype(ml_dtypes.bfloat16)
        np.testing.assert_array_equal(out.astype(np.float32), [1.5, -2.0, 3.25])

    def test_upload_captures_host_data(self, client):
        data = np.ones(4, dtype=np.int32)
        future = client.buffer_from_literal_async(Literal.from_array(data))
        data[:] = 7
        assert future.wait().to_literal().to_list() == [1, 1, 1, 1]

    def test_async_download(self, client):
        buf = client.buffer_from_literal(Literal.vec1([1.0, 2.0], et.f32))
        buf.block_until_ready()
        future = buf.to_literal_async()
        first = future.wait()
        assert future.is_ready()
        assert future.wait() is first
        assert first.to_list() == [1.0, 2.0]


# =============================================================================
# 2. Device copies
# =============================================================================


class TestCopies:
    """copy_to_device between devices of one client."""

    def test_copy_to_second_device(self, client2):
        dev0, dev1 = client2.devices()
        buf = client2.buffer_from_literal(Literal.vec1([1, 2, 3], et.s64), dev0)
        copy = buf.copy_to_device(dev1)

        assert copy.device is dev1
        assert not buf.is_deleted()
        assert copy.to_literal().to_list() == [1, 2, 3]
        assert dev1.memory_stats()["bytes_in_use"] == 64

    def test_copy_to_other_client(self, client, client2):
        buf = client.buffer_from_literal(Literal.scalar(1.0, et.f32))
        with pytest.raises(TransferError):
            buf.copy_to_device(client2.devices()[0])


# =============================================================================
# 3. Deletion and memory pressure
# =============================================================================


class TestDeletion:
    """Deleted buffers free their memory and refuse further use."""

    def test_delete_is_idempotent(self, client):
        buf = client.buffer_from_literal(Literal.scalar(1.0, et.f32))
        buf.delete()
        buf.delete()
        assert buf.is_deleted()
        with pytest.raises(InvalidHandleError):
            buf.to_literal()
        with pytest.raises(InvalidHandleError):
            buf.copy_to_device(client.devices()[0])

    def test_failed_tuple_upload_frees_everything(self):
        with PjRtClient.cpu(CpuOptions(device_count=1, memory_bytes=1024)) as c:
            device = c.devices()[0]
            lit = Literal.tuple([
                Literal.from_array(np.zeros(128, dtype=np.float32)),
                Literal.from_array(np.zeros(256, dtype=np.float32)),
            ])
            with pytest.raises(TransferError, match="out of memory"):
                c.buffer_from_literal(lit)

            assert device.memory_stats()["bytes_in_use"] == 0
            assert c.live_buffers() == []

            small = c.buffer_from_literal(Literal.from_array(np.zeros(256, dtype=np.float32)))
            assert device.memory_stats()["bytes_in_use"] == 1024
            small.delete()
