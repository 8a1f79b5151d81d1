from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from ..errors import InvalidShapeError
from . import element_type as et
from .element_type import ElementType

Dims = tuple["int | None", ...]


def as_dims(dims: Iterable[int | None]) -> Dims:
	"""Normalise a dimension list; negative sizes and `None` mean dynamic."""

	out: list[int | None] = []
	for d in dims:
		if d is None:
			out.append(None)
			continue
		if isinstance(d, bool) or int(d) != d:
			raise InvalidShapeError(f"dimension sizes must be integers, got {d!r}")
		d = int(d)
		out.append(None if d < 0 else d)
	return tuple(out)


@dataclass(frozen=True, slots=True)
class Shape:
	"""Type + dimensions of an array, or the ordered children of a tuple.

	Exactly one of the three kinds holds:
	- array: `element_type` is an array type, `dimensions` lists sizes;
	- tuple: `element_type` is `tuple`, `tuple_shapes` lists children;
	- token: `element_type` is `token`, no dims, no children.
	"""

	element_type: ElementType
	dimensions: Dims = ()
	tuple_shapes: tuple[Shape, ...] = field(default=())

	def __post_init__(self) -> None:
		if self.element_type is et.tuple_:
			if self.dimensions:
				raise InvalidShapeError("tuple shapes carry no dimension list")
			for child in self.tuple_shapes:
				if not isinstance(child, Shape):
					raise InvalidShapeError(f"tuple children must be shapes, got {type(child).__name__}")
		elif self.tuple_shapes:
			raise InvalidShapeError(f"{self.element_type.name} shape cannot have tuple children")
		elif self.element_type is et.token and self.dimensions:
			raise InvalidShapeError("token shapes carry no dimension list")

	@staticmethod
	def array(element_type: ElementType, dims: Iterable[int | None] = ()) -> Shape:
		if not element_type.is_array:
			raise InvalidShapeError(f"{element_type.name} is not an array element type")
		return Shape(element_type, as_dims(dims))

	@staticmethod
	def scalar(element_type: ElementType) -> Shape:
		return Shape.array(element_type, ())

	@staticmethod
	def tuple(shapes: Iterable[Shape]) -> Shape:
		return Shape(et.tuple_, (), tuple(shapes))

	@staticmethod
	def token() -> Shape:
		return Shape(et.token)

	@property
	def is_array(self) -> bool:
		return self.element_type.is_array

	@property
	def is_tuple(self) -> bool:
		return self.element_type is et.tuple_

	@property
	def is_token(self) -> bool:
		return self.element_type is et.token

	@property
	def rank(self) -> int:
		self._require_array("rank")
		return len(self.dimensions)

	@property
	def tuple_size(self) -> int | None:
		return len(self.tuple_shapes) if self.is_tuple else None

	@property
	def is_static(self) -> bool:
		if self.is_tuple:
			return all(s.is_static for s in self.tuple_shapes)
		return all(d is not None for d in self.dimensions)

	@property
	def element_count(self) -> int:
		self._require_array("element_count")
		if not self.is_static:
			raise InvalidShapeError(f"{self} has dynamic dimensions")
		n = 1
		for dim in self.dimensions:
			n *= dim
		return n

	@property
	def byte_size(self) -> int:
		"""Bytes needed to hold the data; tuples sum their children."""

		if self.is_tuple:
			return sum(s.byte_size for s in self.tuple_shapes)
		if self.is_token:
			return 0
		return self.element_count * self.element_type.itemsize

	def leaves(self) -> list[Shape]:
		if self.is_tuple:
			return [leaf for s in self.tuple_shapes for leaf in s.leaves()]
		return [self]

	def _require_array(self, what: str) -> None:
		if not self.is_array:
			raise InvalidShapeError(f"{what} is only defined for array shapes, got {self}")

	def to_dict(self) -> dict[str, Any]:
		if self.is_tuple:
			return {"element_type": "tuple", "tuple_shapes": [s.to_dict() for s in self.tuple_shapes]}
		return {"element_type": self.element_type.name, "dimensions": list(self.dimensions)}

	@staticmethod
	def from_dict(data: dict[str, Any]) -> Shape:
		ty = et.by_name(data["element_type"])
		if ty is et.tuple_:
			return Shape.tuple(Shape.from_dict(c) for c in data.get("tuple_shapes", ()))
		if ty is et.token:
			return Shape.token()
		return Shape.array(ty, data.get("dimensions", ()))

	def __str__(self) -> str:
		if self.is_tuple:
			return "(" + ", ".join(str(s) for s in self.tuple_shapes) + ")"
		dims = ",".join("?" if d is None else str(d) for d in self.dimensions)
		return f"{self.element_type.name}[{dims}]"

	def __repr__(self) -> str:  # pragma: no cover
		return f"Shape({self})"


@dataclass(frozen=True, slots=True)
class ProgramShape:
	"""Parameter shapes and result shape of a computation."""

	parameter_shapes: tuple[Shape, ...]
	result_shape: Shape
	parameter_names: tuple[str, ...] = ()

	def __str__(self) -> str:
		params = ", ".join(str(s) for s in self.parameter_shapes)
		return f"({params}) -> {self.result_shape}"
