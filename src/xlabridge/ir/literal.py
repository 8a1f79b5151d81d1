from __future__ import annotations

from typing import Any, Iterable, Sequence

import numpy as np

from ..errors import InvalidShapeError, ShapeMismatchError
from . import element_type as et
from .element_type import ElementType
from .shape import Shape


def _host_array(values: Any, element_type: ElementType | None) -> np.ndarray:
	"""Turn host values into an owned array of exactly `element_type`.

	numpy inputs must already carry the matching dtype. Python scalars and
	lists are accepted when their kind fits the target (bools only as pred,
	ints as any integer or floating type if they are in range, floats as
	floating or complex types, complexes as complex types).
	"""

	if isinstance(values, (np.ndarray, np.generic)):
		arr = np.asarray(values)
		if element_type is None:
			element_type = et.from_numpy_dtype(arr.dtype)
		elif arr.dtype != element_type.numpy_dtype:
			raise InvalidShapeError(
				f"host array has dtype {arr.dtype}, expected {element_type.numpy_dtype} "
				f"for {element_type.name}; convert explicitly"
			)
		return np.array(arr, dtype=element_type.numpy_dtype, order="C", copy=True)

	try:
		arr = np.asarray(values)
	except (ValueError, TypeError) as e:
		raise InvalidShapeError(f"host values are ragged or not numeric: {e}") from e
	if arr.dtype == object:
		raise InvalidShapeError("host values are ragged or not numeric")
	if element_type is None:
		return np.array(arr, order="C", copy=True)
	if not element_type.is_array:
		raise InvalidShapeError(f"{element_type.name} literals cannot hold values")

	kind = arr.dtype.kind
	if kind == "b":
		ok = element_type is et.pred
	elif kind in "iu":
		ok = element_type.is_integral or element_type.is_floating or element_type.is_complex
	elif kind == "f":
		ok = element_type.is_floating or element_type.is_complex
	elif kind == "c":
		ok = element_type.is_complex
	else:
		ok = False
	if not ok:
		raise InvalidShapeError(f"cannot represent {arr.dtype} host values as {element_type.name}")

	out = arr.astype(element_type.numpy_dtype)
	if kind in "iu" and element_type.is_integral and not np.array_equal(out.astype(arr.dtype), arr):
		raise InvalidShapeError(f"integer values out of range for {element_type.name}")
	return np.array(out, order="C", copy=True)


class Literal:
	"""Host-resident tensor data with an explicit shape.

	An array literal owns a C-contiguous numpy array whose byte length is
	exactly `element_count * itemsize`. A tuple literal owns its children.
	Accessors hand out copies, so a literal is never shared mutably.
	"""

	__slots__ = ("_shape", "_data", "_children")

	def __init__(self, shape: Shape, data: np.ndarray | None = None, children: Sequence[Literal] | None = None) -> None:
		self._shape = shape
		self._data = data
		self._children = list(children) if children is not None else None

	# ------------------------------------------------------------------
	# Construction
	# ------------------------------------------------------------------

	@classmethod
	def from_array(cls, values: Any, element_type: ElementType | None = None) -> Literal:
		arr = _host_array(values, element_type)
		ty = element_type or et.from_numpy_dtype(arr.dtype)
		return cls(Shape.array(ty, arr.shape), data=arr)

	@classmethod
	def scalar(cls, value: Any, element_type: ElementType | None = None) -> Literal:
		lit = cls.from_array(value, element_type)
		if lit.shape.rank != 0:
			raise InvalidShapeError(f"scalar literal expects one value, got shape {lit.shape}")
		return lit

	@classmethod
	def vec1(cls, values: Iterable[Any], element_type: ElementType | None = None) -> Literal:
		if not isinstance(values, np.ndarray):
			values = list(values)
		lit = cls.from_array(values, element_type)
		if lit.shape.rank != 1:
			raise InvalidShapeError(f"vec1 expects a flat sequence, got shape {lit.shape}")
		return lit

	@classmethod
	def from_bytes(cls, shape: Shape, data: bytes | bytearray | memoryview) -> Literal:
		"""Copy raw bytes into a new literal.

		Tuple shapes take the concatenation of their leaves' bytes in order.
		The total length must match `shape.byte_size` exactly.
		"""

		raw = bytes(data)
		if not shape.is_static:
			raise InvalidShapeError(f"cannot materialise dynamic shape {shape}")
		if len(raw) != shape.byte_size:
			raise ShapeMismatchError(f"{shape} needs {shape.byte_size} bytes, got {len(raw)}")
		lit, _ = cls._from_raw(shape, raw, 0)
		return lit

	@classmethod
	def _from_raw(cls, shape: Shape, raw: bytes, offset: int) -> tuple[Literal, int]:
		if shape.is_tuple:
			children = []
			for child_shape in shape.tuple_shapes:
				child, offset = cls._from_raw(child_shape, raw, offset)
				children.append(child)
			return cls(shape, children=children), offset
		if shape.is_token:
			return cls(shape), offset
		end = offset + shape.byte_size
		arr = np.frombuffer(raw[offset:end], dtype=shape.element_type.numpy_dtype).reshape(shape.dimensions).copy()
		return cls(shape, data=arr), end

	@classmethod
	def zeros(cls, shape: Shape) -> Literal:
		if shape.is_tuple:
			return cls(shape, children=[cls.zeros(s) for s in shape.tuple_shapes])
		if shape.is_token:
			return cls(shape)
		if not shape.is_static:
			raise InvalidShapeError(f"cannot materialise dynamic shape {shape}")
		return cls(shape, data=np.zeros(shape.dimensions, dtype=shape.element_type.numpy_dtype))

	@classmethod
	def tuple(cls, children: Iterable[Literal]) -> Literal:
		children = list(children)
		for child in children:
			if not isinstance(child, Literal):
				raise InvalidShapeError(f"tuple elements must be literals, got {type(child).__name__}")
		return cls(Shape.tuple(c.shape for c in children), children=[c.copy() for c in children])

	@classmethod
	def token(cls) -> Literal:
		return cls(Shape.token())

	# ------------------------------------------------------------------
	# Inspection
	# ------------------------------------------------------------------

	@property
	def shape(self) -> Shape:
		return self._shape

	@property
	def element_type(self) -> ElementType:
		return self._shape.element_type

	@property
	def element_count(self) -> int:
		return self._shape.element_count

	@property
	def size_bytes(self) -> int:
		return self._shape.byte_size

	@property
	def tuple_size(self) -> int | None:
		return self._shape.tuple_size

	# ------------------------------------------------------------------
	# Extraction
	# ------------------------------------------------------------------

	def to_bytes(self) -> bytes:
		if self._shape.is_tuple:
			return b"".join(c.to_bytes() for c in self._children or ())
		if self._data is None:
			return b""
		return self._data.tobytes()

	def to_numpy(self, element_type: ElementType | None = None) -> np.ndarray:
		self._check_array(element_type)
		return self._data.copy()

	def to_list(self, element_type: ElementType | None = None) -> list[Any]:
		"""Flat list of the elements in row-major order."""

		self._check_array(element_type)
		return self._data.ravel().tolist()

	def get_first_element(self, element_type: ElementType | None = None) -> Any:
		self._check_array(element_type)
		if self._data.size == 0:
			raise InvalidShapeError(f"literal of shape {self._shape} has no elements")
		return self._data.ravel()[0].item()

	def _check_array(self, element_type: ElementType | None) -> None:
		if not self._shape.is_array:
			raise InvalidShapeError(f"expected an array literal, got {self._shape}")
		if element_type is not None and element_type != self.element_type:
			raise ShapeMismatchError(
				f"cannot read {self.element_type.name} literal as {element_type.name}"
			)

	def decompose_tuple(self) -> list[Literal]:
		"""Move the children out; this literal becomes an empty tuple."""

		if not self._shape.is_tuple:
			raise InvalidShapeError(f"decompose_tuple on non-tuple literal {self._shape}")
		children = self._children or []
		self._children = []
		self._shape = Shape.tuple(())
		return children

	def reshape(self, dims: Iterable[int]) -> Literal:
		if not self._shape.is_array:
			raise InvalidShapeError(f"cannot reshape {self._shape}")
		new_shape = Shape.array(self.element_type, dims)
		if not new_shape.is_static or new_shape.element_count != self.element_count:
			raise InvalidShapeError(f"cannot reshape {self._shape} to {new_shape}")
		return Literal(new_shape, data=self._data.reshape(new_shape.dimensions).copy())

	def copy(self) -> Literal:
		if self._shape.is_tuple:
			return Literal(self._shape, children=[c.copy() for c in self._children or ()])
		data = None if self._data is None else self._data.copy()
		return Literal(self._shape, data=data)

	def leaves(self) -> list[Literal]:
		if self._shape.is_tuple:
			return [leaf for c in self._children or () for leaf in c.leaves()]
		return [self]

	def _leaf_payloads(self) -> list[np.ndarray | None]:
		return [leaf._data for leaf in self.leaves()]

	@classmethod
	def _from_leaf_payloads(cls, shape: Shape, payloads: Sequence[np.ndarray | None]) -> Literal:
		"""Rebuild a literal from leaf arrays produced by the native runtime."""

		leaves = shape.leaves()
		if len(leaves) != len(payloads):
			raise ShapeMismatchError(f"{shape} has {len(leaves)} leaves, got {len(payloads)} payloads")
		it = iter(payloads)

		def build(s: Shape) -> Literal:
			if s.is_tuple:
				return cls(s, children=[build(c) for c in s.tuple_shapes])
			payload = next(it)
			if s.is_token:
				return cls(s)
			if payload is None or payload.dtype != s.element_type.numpy_dtype or tuple(payload.shape) != s.dimensions:
				raise ShapeMismatchError(f"payload does not match leaf shape {s}")
			return cls(s, data=np.array(payload, order="C", copy=True))

		return build(shape)

	def __eq__(self, other: object) -> bool:
		if not isinstance(other, Literal):
			return NotImplemented
		return self._shape == other._shape and self.to_bytes() == other.to_bytes()

	__hash__ = None  # type: ignore[assignment]

	def __repr__(self) -> str:
		if self._shape.is_array:
			return f"Literal({self._shape}, {self._data.tolist()!r})"
		return f"Literal({self._shape})"
