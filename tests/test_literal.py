"""Literal tests: host data construction, raw bytes and tuples."""

import ml_dtypes
import numpy as np
import pytest

from xlabridge import InvalidShapeError, Literal, Shape, ShapeMismatchError
from xlabridge.ir import element_type as et


# =============================================================================
# 1. Construction
# =============================================================================


class TestConstruction:
    """Literals built from numpy arrays and Python values."""

    def test_from_array_infers_element_type(self):
        lit = Literal.from_array(np.arange(6, dtype=np.float32).reshape(2, 3))
        assert lit.shape == Shape.array(et.f32, [2, 3])
        assert lit.element_count == 6
        assert lit.size_bytes == 24

    def test_python_values_take_requested_type(self):
        lit = Literal.scalar(2, et.f32)
        assert lit.element_type is et.f32
        assert lit.get_first_element() == 2.0

    @pytest.mark.parametrize("value", [0.0, 1.0, 0, 2.5])
    def test_scalar_has_rank_zero(self, value):
        lit = Literal.scalar(value, et.f32)
        assert lit.shape == Shape.array(et.f32, [])
        assert lit.to_numpy().shape == ()
        assert lit.size_bytes == 4
        assert lit.get_first_element() == value

    def test_numpy_scalar_keeps_rank_zero(self):
        lit = Literal.from_array(np.float64(1.5))
        assert lit.shape == Shape.array(et.f64, [])
        assert Literal.from_array(np.array(3, dtype=np.int8), et.s8).shape.rank == 0

    def test_numpy_dtype_must_match(self):
        """numpy input is never converted implicitly."""
        with pytest.raises(InvalidShapeError):
            Literal.from_array(np.zeros(3, dtype=np.float64), et.f32)

    def test_ragged_input_is_rejected(self):
        with pytest.raises(InvalidShapeError):
            Literal.from_array([[1, 2], [3]])

    def test_bool_values_only_as_pred(self):
        with pytest.raises(InvalidShapeError):
            Literal.from_array([True, False], et.s32)
        assert Literal.from_array([True, False], et.pred).to_list() == [True, False]

    def test_integer_out_of_range(self):
        with pytest.raises(InvalidShapeError):
            Literal.from_array([300], et.u8)

    def test_float_values_not_accepted_as_integers(self):
        with pytest.raises(InvalidShapeError):
            Literal.vec1([1.5, 2.5], et.s32)

    def test_bf16_array(self):
        lit = Literal.from_array(np.array([1.0, 2.0], dtype=ml_dtypes.bfloat16))
        assert lit.element_type is et.bf16
        assert lit.size_bytes == 4

    def test_zeros(self):
        assert Literal.zeros(Shape.array(et.s16, [3])).to_list() == [0, 0, 0]

    def test_vec1_rejects_matrix(self):
        with pytest.raises(InvalidShapeError):
            Literal.vec1(np.zeros((2, 2), dtype=np.float32))


# =============================================================================
# 2. Raw bytes
# =============================================================================


class TestRawBytes:
    """from_bytes / to_bytes."""

    def test_from_bytes_copies_data(self):
        raw = bytearray(np.array([1.5, 2.5], dtype=np.float32).tobytes())
        lit = Literal.from_bytes(Shape.array(et.f32, [2]), raw)
        raw[:] = b"\x00" * len(raw)
        assert lit.to_list() == [1.5, 2.5]

    def test_wrong_length_is_shape_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            Literal.from_bytes(Shape.array(et.f32, [2]), b"\x00" * 7)

    def test_dynamic_shape_cannot_be_materialised(self):
        with pytest.raises(InvalidShapeError):
            Literal.from_bytes(Shape.array(et.f32, [-1]), b"")

    def test_tuple_bytes_are_leaf_concatenation(self):
        lit = Literal.tuple([Literal.scalar(7, et.s32), Literal.vec1([1.0, 2.0], et.f32)])
        raw = lit.to_bytes()
        assert len(raw) == 12
        assert Literal.from_bytes(lit.shape, raw) == lit


# =============================================================================
# 3. Access
# =============================================================================


class TestAccess:
    """Typed extraction, reshape and tuple decomposition."""

    def test_typed_read_checks_element_type(self):
        lit = Literal.vec1([1, 2, 3], et.s32)
        assert lit.to_list(et.s32) == [1, 2, 3]
        with pytest.raises(ShapeMismatchError):
            lit.to_numpy(et.f32)

    def test_accessors_return_copies(self):
        lit = Literal.vec1([1.0, 2.0], et.f32)
        arr = lit.to_numpy()
        arr[0] = 99.0
        assert lit.to_list() == [1.0, 2.0]

    def test_reshape(self):
        lit = Literal.vec1([1, 2, 3, 4], et.s32).reshape([2, 2])
        np.testing.assert_array_equal(lit.to_numpy(), [[1, 2], [3, 4]])
        with pytest.raises(InvalidShapeError):
            lit.reshape([3])

    def test_decompose_tuple_moves_children(self):
        lit = Literal.tuple([Literal.scalar(1.0, et.f64), Literal.scalar(2, et.s64)])
        children = lit.decompose_tuple()
        assert [c.get_first_element() for c in children] == [1.0, 2]
        assert lit.tuple_size == 0

    def test_first_element_of_tuple_is_an_error(self):
        lit = Literal.tuple([Literal.scalar(1.0, et.f32)])
        with pytest.raises(InvalidShapeError):
            lit.get_first_element()
