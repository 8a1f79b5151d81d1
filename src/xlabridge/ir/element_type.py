from __future__ import annotations

import enum
from dataclasses import dataclass

import ml_dtypes
import numpy as np

from ..errors import InvalidShapeError


class PrimitiveType(enum.IntEnum):
	"""Numeric codes the native runtime uses for element types."""

	INVALID = 0
	PRED = 1
	S8 = 2
	S16 = 3
	S32 = 4
	S64 = 5
	U8 = 6
	U16 = 7
	U32 = 8
	U64 = 9
	F16 = 10
	F32 = 11
	F64 = 12
	TUPLE = 13
	OPAQUE_TYPE = 14
	C64 = 15
	BF16 = 16
	TOKEN = 17
	C128 = 18


@dataclass(frozen=True, slots=True)
class ElementType:
	"""Scalar kind of a tensor leaf.

	`itemsize` is the byte width of one element; `alignment` is the natural
	alignment of that element (for complex types, the alignment of one
	component). `token` and `tuple` describe non-array shapes and have no
	numpy representation.
	"""

	name: str
	primitive_type: PrimitiveType
	itemsize: int
	alignment: int
	numpy_name: str | None

	def __str__(self) -> str:  # pragma: no cover
		return self.name

	@property
	def is_array(self) -> bool:
		return self.numpy_name is not None

	@property
	def is_floating(self) -> bool:
		return self.name in ("f16", "bf16", "f32", "f64")

	@property
	def is_complex(self) -> bool:
		return self.name in ("c64", "c128")

	@property
	def is_integral(self) -> bool:
		return self.name[0] in ("s", "u") and self.is_array

	@property
	def is_signed(self) -> bool:
		return self.name[0] == "s" or self.is_floating or self.is_complex

	@property
	def numpy_dtype(self) -> np.dtype:
		if self.numpy_name is None:
			raise InvalidShapeError(f"{self.name} has no array representation")
		if self.name == "bf16":
			return np.dtype(ml_dtypes.bfloat16)
		return np.dtype(self.numpy_name)


pred = ElementType("pred", PrimitiveType.PRED, 1, 1, "bool")
s8 = ElementType("s8", PrimitiveType.S8, 1, 1, "int8")
s16 = ElementType("s16", PrimitiveType.S16, 2, 2, "int16")
s32 = ElementType("s32", PrimitiveType.S32, 4, 4, "int32")
s64 = ElementType("s64", PrimitiveType.S64, 8, 8, "int64")
u8 = ElementType("u8", PrimitiveType.U8, 1, 1, "uint8")
u16 = ElementType("u16", PrimitiveType.U16, 2, 2, "uint16")
u32 = ElementType("u32", PrimitiveType.U32, 4, 4, "uint32")
u64 = ElementType("u64", PrimitiveType.U64, 8, 8, "uint64")
f16 = ElementType("f16", PrimitiveType.F16, 2, 2, "float16")
bf16 = ElementType("bf16", PrimitiveType.BF16, 2, 2, "bfloat16")
f32 = ElementType("f32", PrimitiveType.F32, 4, 4, "float32")
f64 = ElementType("f64", PrimitiveType.F64, 8, 8, "float64")
c64 = ElementType("c64", PrimitiveType.C64, 8, 4, "complex64")
c128 = ElementType("c128", PrimitiveType.C128, 16, 8, "complex128")
token = ElementType("token", PrimitiveType.TOKEN, 0, 1, None)
tuple_ = ElementType("tuple", PrimitiveType.TUPLE, 0, 1, None)

ARRAY_TYPES: tuple[ElementType, ...] = (
	pred, s8, s16, s32, s64, u8, u16, u32, u64, f16, bf16, f32, f64, c64, c128,
)

_BY_NAME: dict[str, ElementType] = {et.name: et for et in (*ARRAY_TYPES, token, tuple_)}
_BY_PRIMITIVE: dict[PrimitiveType, ElementType] = {et.primitive_type: et for et in _BY_NAME.values()}
_BY_NUMPY: dict[np.dtype, ElementType] = {et.numpy_dtype: et for et in ARRAY_TYPES}


def by_name(name: str) -> ElementType:
	try:
		return _BY_NAME[name]
	except KeyError:
		raise InvalidShapeError(f"unknown element type {name!r}") from None


def from_primitive_type(code: int) -> ElementType:
	try:
		return _BY_PRIMITIVE[PrimitiveType(code)]
	except (KeyError, ValueError):
		raise InvalidShapeError(f"primitive type {code} is not an element type") from None


def from_numpy_dtype(dtype: np.dtype | type) -> ElementType:
	dt = np.dtype(dtype)
	try:
		return _BY_NUMPY[dt]
	except KeyError:
		raise InvalidShapeError(f"numpy dtype {dt} has no matching element type") from None
