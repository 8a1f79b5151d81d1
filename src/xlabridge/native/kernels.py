"""numpy kernels of the reference runtime.

Runtime values are numpy arrays for array shapes, Python tuples of values
for tuple shapes and `None` for tokens. Every kernel returns a fresh array;
the interpreter casts results to the instruction's element type.
"""

from __future__ import annotations

import base64
from typing import Any, Callable, Sequence

import numpy as np

from ..ir.shape import Shape

Value = Any

# =============================================================================
# Elementwise
# =============================================================================


def _logistic(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


def _not(x: np.ndarray) -> np.ndarray:
    return np.logical_not(x) if x.dtype == np.bool_ else np.invert(x)


UNARY: dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "negate": np.negative,
    "abs": np.abs,
    "exponential": np.exp,
    "log": np.log,
    "sqrt": np.sqrt,
    "rsqrt": lambda x: 1.0 / np.sqrt(x),
    "tanh": np.tanh,
    "logistic": _logistic,
    "sine": np.sin,
    "cosine": np.cos,
    "floor": np.floor,
    "ceil": np.ceil,
    "sign": np.sign,
    "not": _not,
    "is-finite": np.isfinite,
}


def _divide(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    if a.dtype.kind not in "iu":
        return np.true_divide(a, b)
    # Integer division truncates toward zero; x / 0 is -1.
    safe = np.where(b == 0, 1, b)
    q = np.floor_divide(a, safe)
    adjust = (np.remainder(a, safe) != 0) & ((a < 0) != (safe < 0))
    q = q + adjust.astype(q.dtype)
    return np.where(b == 0, np.array(-1).astype(a.dtype), q)


def _remainder(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    if a.dtype.kind in "iu":
        safe = np.where(b == 0, 1, b)
        return np.where(b == 0, a, np.fmod(a, safe))
    return np.fmod(a, b)


def _power(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    if a.dtype.kind in "iu":
        # Negative exponents yield 0 unless the base is 1 or -1.
        nonneg = np.where(b < 0, 0, b)
        out = np.power(a, nonneg)
        neg = b < 0
        if np.any(neg):
            out = np.where(neg & (a == 1), 1, out)
            out = np.where(neg & (a == -1), np.where(b % 2 == 0, 1, -1), out)
            out = np.where(neg & (np.abs(a) != 1), 0, out)
        return out
    return np.power(a, b)


def _maximum(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.logical_or(a, b) if a.dtype == np.bool_ else np.maximum(a, b)


def _minimum(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.logical_and(a, b) if a.dtype == np.bool_ else np.minimum(a, b)


BINARY: dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "add": np.add,
    "subtract": np.subtract,
    "multiply": np.multiply,
    "divide": _divide,
    "remainder": _remainder,
    "maximum": _maximum,
    "minimum": _minimum,
    "power": _power,
    "and": np.bitwise_and,
    "or": np.bitwise_or,
    "xor": np.bitwise_xor,
}

COMPARE: dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "EQ": np.equal,
    "NE": np.not_equal,
    "LT": np.less,
    "LE": np.less_equal,
    "GT": np.greater,
    "GE": np.greater_equal,
}

# Reducers with a numpy ufunc equivalent, used when a reduce body is one of
# these binary ops applied to its two parameters.
REDUCER_UFUNCS: dict[str, np.ufunc] = {
    "add": np.add,
    "multiply": np.multiply,
    "maximum": np.maximum,
    "minimum": np.minimum,
    "and": np.bitwise_and,
    "or": np.bitwise_or,
}


# =============================================================================
# Leaves
# =============================================================================


def decode_constant(shape: Shape, encoded: str) -> Value:
    raw = base64.b64decode(encoded)
    offset = 0

    def build(s: Shape) -> Value:
        nonlocal offset
        if s.is_tuple:
            return tuple(build(c) for c in s.tuple_shapes)
        if s.is_token:
            return None
        end = offset + s.byte_size
        arr = np.frombuffer(raw[offset:end], dtype=s.element_type.numpy_dtype).reshape(s.dimensions).copy()
        offset = end
        return arr

    value = build(shape)
    if offset != len(raw):
        raise ValueError(f"constant payload has {len(raw)} bytes, {shape} needs {offset}")
    return value


def iota(shape: Shape, iota_dimension: int) -> np.ndarray:
    dims = shape.dimensions
    ramp = np.arange(dims[iota_dimension])
    view = [1] * len(dims)
    view[iota_dimension] = dims[iota_dimension]
    return np.broadcast_to(ramp.reshape(view), dims).astype(shape.element_type.numpy_dtype)


# =============================================================================
# Data movement
# =============================================================================


def clamp(lo: np.ndarray, x: np.ndarray, hi: np.ndarray) -> np.ndarray:
    return np.minimum(np.maximum(x, lo), hi)


def select(pred: np.ndarray, on_true: Value, on_false: Value) -> Value:
    if isinstance(on_true, tuple):
        return on_true if bool(pred) else on_false
    return np.where(pred, on_true, on_false)


def broadcast_in_dim(x: np.ndarray, out_dims: Sequence[int], dimensions: Sequence[int]) -> np.ndarray:
    expanded = [1] * len(out_dims)
    for src, dst in enumerate(dimensions):
        expanded[dst] = x.shape[src]
    return np.broadcast_to(x.reshape(expanded), tuple(out_dims)).copy()


def slice_(x: np.ndarray, start: Sequence[int], limit: Sequence[int], strides: Sequence[int]) -> np.ndarray:
    return x[tuple(slice(s, l, st) for s, l, st in zip(start, limit, strides))].copy()


# =============================================================================
# Linear algebra
# =============================================================================


def _compute_dtype(dtype: np.dtype) -> np.dtype:
    """Half-width floats (f16, bf16) are accumulated in f32."""
    if dtype.kind not in "iubc" and dtype.itemsize < 4:
        return np.dtype(np.float32)
    return dtype


def dot_general(
    lhs: np.ndarray,
    rhs: np.ndarray,
    lhs_contracting: Sequence[int],
    rhs_contracting: Sequence[int],
    lhs_batch: Sequence[int],
    rhs_batch: Sequence[int],
) -> np.ndarray:
    lhs_free = [i for i in range(lhs.ndim) if i not in lhs_contracting and i not in lhs_batch]
    rhs_free = [i for i in range(rhs.ndim) if i not in rhs_contracting and i not in rhs_batch]

    def size(arr: np.ndarray, axes: Sequence[int]) -> int:
        return int(np.prod([arr.shape[a] for a in axes], dtype=np.int64))

    batch_dims = [lhs.shape[a] for a in lhs_batch]
    b, k = size(lhs, lhs_batch), size(lhs, lhs_contracting)
    m, n = size(lhs, lhs_free), size(rhs, rhs_free)

    dtype = _compute_dtype(lhs.dtype)
    a = np.transpose(lhs, [*lhs_batch, *lhs_free, *lhs_contracting]).astype(dtype).reshape(b, m, k)
    c = np.transpose(rhs, [*rhs_batch, *rhs_contracting, *rhs_free]).astype(dtype).reshape(b, k, n)
    out = np.matmul(a, c)
    out_dims = [*batch_dims, *(lhs.shape[a] for a in lhs_free), *(rhs.shape[a] for a in rhs_free)]
    return out.reshape(out_dims)


def triangular_solve(
    a: np.ndarray,
    b: np.ndarray,
    left_side: bool,
    lower: bool,
    unit_diagonal: bool,
    transpose_a: int,
) -> np.ndarray:
    """Solve op(a) @ x = b, or x @ op(a) = b when `left_side` is false.

    Only the `lower` (or upper) triangle of `a` is read. With
    `unit_diagonal` the diagonal is taken to be ones. A zero on the diagonal
    is not an error: substitution divides by it and yields inf or nan.
    """

    work = np.result_type(_compute_dtype(a.dtype), np.float32)
    tri = np.tril(a) if lower else np.triu(a)
    tri = tri.astype(work)
    if unit_diagonal:
        n = tri.shape[-1]
        eye = np.eye(n, dtype=bool)
        tri = np.where(eye, np.ones((), dtype=work), tri)
    if transpose_a == 2:
        tri = np.swapaxes(tri, -1, -2)
    elif transpose_a == 3:
        tri = np.conj(np.swapaxes(tri, -1, -2))
    rhs = b.astype(work)
    lower = lower != (transpose_a in (2, 3))
    if left_side:
        return _substitute(tri, rhs, lower)
    # x @ t = b  <=>  t^T @ x^T = b^T
    flipped = _substitute(np.swapaxes(tri, -1, -2), np.swapaxes(rhs, -1, -2), not lower)
    return np.swapaxes(flipped, -1, -2)


def _substitute(tri: np.ndarray, rhs: np.ndarray, lower: bool) -> np.ndarray:
    n = tri.shape[-1]
    x = np.zeros(np.broadcast_shapes(tri.shape[:-2], rhs.shape[:-2]) + rhs.shape[-2:], dtype=rhs.dtype)
    order = range(n) if lower else range(n - 1, -1, -1)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        for i in order:
            known = tri[..., i : i + 1, :] @ x
            x[..., i, :] = (rhs[..., i, :] - known[..., 0, :]) / tri[..., i, i][..., None]
    return x


# =============================================================================
# Reductions
# =============================================================================


def reduce_with_ufunc(ufunc: np.ufunc, x: np.ndarray, init: np.ndarray, dimensions: Sequence[int]) -> np.ndarray:
    axis = tuple(dimensions)
    dtype = _compute_dtype(x.dtype) if ufunc in (np.add, np.multiply) else x.dtype
    out = ufunc.reduce(x.astype(dtype), axis=axis, initial=init.astype(dtype).item())
    return np.asarray(out)


def reduce_with_callable(
    fn: Callable[[np.ndarray, np.ndarray], np.ndarray],
    x: np.ndarray,
    init: np.ndarray,
    dimensions: Sequence[int],
) -> np.ndarray:
    """Fold `fn` over the reduced dimensions, one output element at a time."""

    kept = [i for i in range(x.ndim) if i not in dimensions]
    moved = np.transpose(x, [*kept, *dimensions])
    out_shape = [x.shape[i] for i in kept]
    reduced = int(np.prod([x.shape[i] for i in dimensions], dtype=np.int64))
    rows = moved.reshape(int(np.prod(out_shape, dtype=np.int64)), reduced)
    out = np.empty(rows.shape[0], dtype=x.dtype)
    for r in range(rows.shape[0]):
        acc = init
        for v in rows[r]:
            acc = np.asarray(fn(acc, np.asarray(v, dtype=x.dtype)), dtype=x.dtype)
        out[r] = acc
    return out.reshape(out_shape)
