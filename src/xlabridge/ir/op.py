"""Graph instructions and their shape inference.

Shape inference runs when an op is added to a builder, so every instruction in
a finished computation carries a checked result shape. Failures raise
`InvalidShapeError`; the builder latches them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from ..errors import InvalidShapeError
from . import element_type as et
from .shape import Dims, ProgramShape, Shape

UNARY_OPCODES = frozenset({
	"negate", "abs", "exponential", "log", "sqrt", "rsqrt", "tanh", "logistic",
	"sine", "cosine", "floor", "ceil", "sign", "not", "is-finite",
})

BINARY_OPCODES = frozenset({
	"add", "subtract", "multiply", "divide", "remainder", "maximum", "minimum",
	"power", "and", "or", "xor",
})

COMPARISON_DIRECTIONS = frozenset({"EQ", "NE", "LT", "LE", "GT", "GE"})

# triangular_solve transpose_a values.
NO_TRANSPOSE = 1
TRANSPOSE = 2
ADJOINT = 3

_FLOAT_ONLY = frozenset({"exponential", "log", "sqrt", "rsqrt", "tanh", "logistic", "sine", "cosine", "floor", "ceil", "is-finite"})
_BITWISE = frozenset({"and", "or", "xor", "not"})


@dataclass(slots=True)
class Instruction:
	"""One node of a computation graph.

	`operands` are ids of earlier instructions in the same computation;
	`called_computations` are ids of computations embedded in the module.
	"""

	id: int
	opcode: str
	shape: Shape
	operands: tuple[int, ...] = ()
	attrs: dict[str, Any] = field(default_factory=dict)
	called_computations: tuple[int, ...] = ()
	name: str = ""

	def to_dict(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"opcode": self.opcode,
			"name": self.name,
			"shape": self.shape.to_dict(),
			"operands": list(self.operands),
			"attrs": dict(self.attrs),
			"called_computations": list(self.called_computations),
		}

	@staticmethod
	def from_dict(data: dict[str, Any]) -> Instruction:
		return Instruction(
			id=int(data["id"]),
			opcode=str(data["opcode"]),
			shape=Shape.from_dict(data["shape"]),
			operands=tuple(int(i) for i in data.get("operands", ())),
			attrs=dict(data.get("attrs", {})),
			called_computations=tuple(int(i) for i in data.get("called_computations", ())),
			name=str(data.get("name", "")),
		)


# ----------------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------------


def _require_array(shape: Shape, what: str) -> None:
	if not shape.is_array:
		raise InvalidShapeError(f"{what} expects an array operand, got {shape}")


def merge_dim(a: int | None, b: int | None, what: str) -> int | None:
	"""Combine two sizes of the same dimension; `None` is dynamic."""

	if a is None:
		return b
	if b is None or a == b:
		return a
	raise InvalidShapeError(f"{what}: dimension size mismatch {a} != {b}")


def _merge_dims(a: Dims, b: Dims, what: str) -> Dims:
	if len(a) != len(b):
		raise InvalidShapeError(f"{what}: rank mismatch {len(a)} != {len(b)}")
	return tuple(merge_dim(x, y, what) for x, y in zip(a, b))


def _check_same_type(shapes: Sequence[Shape], what: str) -> None:
	first = shapes[0].element_type
	for s in shapes[1:]:
		if s.element_type != first:
			raise InvalidShapeError(f"{what}: element type mismatch {first.name} != {s.element_type.name}")


def _check_axes(axes: Sequence[int], rank: int, what: str) -> None:
	for a in axes:
		if not 0 <= a < rank:
			raise InvalidShapeError(f"{what}: dimension {a} out of range for rank {rank}")
	if len(set(axes)) != len(axes):
		raise InvalidShapeError(f"{what}: repeated dimension in {list(axes)}")


# ----------------------------------------------------------------------------
# Shape inference
# ----------------------------------------------------------------------------


def infer_unary(opcode: str, x: Shape) -> Shape:
	_require_array(x, opcode)
	ty = x.element_type
	if opcode in _FLOAT_ONLY and not (ty.is_floating or ty.is_complex):
		raise InvalidShapeError(f"{opcode} requires a floating-point operand, got {ty.name}")
	if opcode in _BITWISE and not (ty.is_integral or ty is et.pred):
		raise InvalidShapeError(f"{opcode} requires an integral or pred operand, got {ty.name}")
	if opcode == "is-finite":
		if ty.is_complex:
			raise InvalidShapeError("is-finite requires a real floating-point operand")
		return Shape.array(et.pred, x.dimensions)
	if opcode in ("negate", "abs", "sign") and ty is et.pred:
		raise InvalidShapeError(f"{opcode} is not defined for pred")
	if opcode == "abs" and ty.is_complex:
		return Shape.array(et.f32 if ty is et.c64 else et.f64, x.dimensions)
	return x


def infer_binary(opcode: str, lhs: Shape, rhs: Shape) -> Shape:
	_require_array(lhs, opcode)
	_require_array(rhs, opcode)
	_check_same_type([lhs, rhs], opcode)
	ty = lhs.element_type
	if opcode in _BITWISE and not (ty.is_integral or ty is et.pred):
		raise InvalidShapeError(f"{opcode} requires integral or pred operands, got {ty.name}")
	if opcode not in _BITWISE and ty is et.pred and opcode not in ("maximum", "minimum"):
		raise InvalidShapeError(f"{opcode} is not defined for pred")
	return Shape.array(ty, _merge_dims(lhs.dimensions, rhs.dimensions, opcode))


def infer_compare(direction: str, lhs: Shape, rhs: Shape) -> Shape:
	if direction not in COMPARISON_DIRECTIONS:
		raise InvalidShapeError(f"unknown comparison direction {direction!r}")
	_require_array(lhs, "compare")
	_require_array(rhs, "compare")
	_check_same_type([lhs, rhs], "compare")
	if lhs.element_type.is_complex and direction not in ("EQ", "NE"):
		raise InvalidShapeError("complex values are only comparable for equality")
	return Shape.array(et.pred, _merge_dims(lhs.dimensions, rhs.dimensions, "compare"))


def infer_select(pred: Shape, on_true: Shape, on_false: Shape) -> Shape:
	_require_array(pred, "select")
	if pred.element_type is not et.pred:
		raise InvalidShapeError(f"select predicate must be pred, got {pred.element_type.name}")
	if on_true.element_type != on_false.element_type:
		raise InvalidShapeError("select branches differ in element type")
	if on_true.is_array:
		dims = _merge_dims(on_true.dimensions, on_false.dimensions, "select")
		if pred.rank != 0:
			dims = _merge_dims(pred.dimensions, dims, "select predicate")
		return Shape.array(on_true.element_type, dims)
	if on_true != on_false:
		raise InvalidShapeError(f"select branches differ: {on_true} vs {on_false}")
	if pred.rank != 0:
		raise InvalidShapeError("selecting between tuples needs a scalar predicate")
	return on_true


def infer_clamp(lo: Shape, x: Shape, hi: Shape) -> Shape:
	for s in (lo, x, hi):
		_require_array(s, "clamp")
	_check_same_type([lo, x, hi], "clamp")
	for bound in (lo, hi):
		if bound.rank != 0:
			_merge_dims(bound.dimensions, x.dimensions, "clamp")
	return x


def infer_convert(x: Shape, new_type: et.ElementType) -> Shape:
	_require_array(x, "convert")
	if not new_type.is_array:
		raise InvalidShapeError(f"cannot convert to {new_type.name}")
	if x.element_type.is_complex and not new_type.is_complex:
		raise InvalidShapeError("converting complex to real needs an explicit real/imag op")
	return Shape.array(new_type, x.dimensions)


def infer_reshape(x: Shape, dims: Sequence[int]) -> Shape:
	_require_array(x, "reshape")
	new = Shape.array(x.element_type, dims)
	if not new.is_static:
		raise InvalidShapeError(f"reshape target must be static, got {new}")
	if x.is_static and x.element_count != new.element_count:
		raise InvalidShapeError(
			f"reshape from {x} to {new}: element count {x.element_count} != {new.element_count}"
		)
	return new


def infer_broadcast_in_dim(x: Shape, out_dims: Sequence[int], broadcast_dimensions: Sequence[int]) -> Shape:
	_require_array(x, "broadcast")
	if len(broadcast_dimensions) != x.rank:
		raise InvalidShapeError(
			f"broadcast: {len(broadcast_dimensions)} broadcast dimensions for rank-{x.rank} operand"
		)
	out = Shape.array(x.element_type, out_dims)
	_check_axes(broadcast_dimensions, len(out_dims), "broadcast")
	if list(broadcast_dimensions) != sorted(broadcast_dimensions):
		raise InvalidShapeError(f"broadcast dimensions must be increasing, got {list(broadcast_dimensions)}")
	for i, d in enumerate(broadcast_dimensions):
		src, dst = x.dimensions[i], out.dimensions[d]
		if src not in (1, None) and dst is not None and src != dst:
			raise InvalidShapeError(f"broadcast: operand dimension {i} of size {src} cannot expand to {dst}")
	return out


def infer_transpose(x: Shape, permutation: Sequence[int]) -> Shape:
	_require_array(x, "transpose")
	if sorted(permutation) != list(range(x.rank)):
		raise InvalidShapeError(f"transpose: {list(permutation)} is not a permutation of rank {x.rank}")
	return Shape.array(x.element_type, [x.dimensions[p] for p in permutation])


def infer_slice(x: Shape, start: Sequence[int], limit: Sequence[int], strides: Sequence[int]) -> Shape:
	_require_array(x, "slice")
	if not (len(start) == len(limit) == len(strides) == x.rank):
		raise InvalidShapeError(f"slice: start/limit/strides must all have rank {x.rank}")
	dims: list[int] = []
	for i, (s, l, st) in enumerate(zip(start, limit, strides)):
		size = x.dimensions[i]
		if st < 1:
			raise InvalidShapeError(f"slice: stride {st} in dimension {i} must be positive")
		if s < 0 or l < s or (size is not None and l > size):
			raise InvalidShapeError(f"slice: bounds [{s}, {l}) invalid for dimension {i} of size {size}")
		dims.append((l - s + st - 1) // st)
	return Shape.array(x.element_type, dims)


def infer_concatenate(shapes: Sequence[Shape], dimension: int) -> Shape:
	if not shapes:
		raise InvalidShapeError("concatenate needs at least one operand")
	for s in shapes:
		_require_array(s, "concatenate")
	_check_same_type(shapes, "concatenate")
	rank = shapes[0].rank
	if not 0 <= dimension < rank:
		raise InvalidShapeError(f"concatenate: dimension {dimension} out of range for rank {rank}")
	dims = list(shapes[0].dimensions)
	for s in shapes[1:]:
		if s.rank != rank:
			raise InvalidShapeError("concatenate: operands differ in rank")
		for i in range(rank):
			if i == dimension:
				dims[i] = None if dims[i] is None or s.dimensions[i] is None else dims[i] + s.dimensions[i]
			else:
				dims[i] = merge_dim(dims[i], s.dimensions[i], "concatenate")
	return Shape.array(shapes[0].element_type, dims)


def infer_get_tuple_element(x: Shape, index: int) -> Shape:
	if not x.is_tuple:
		raise InvalidShapeError(f"get_tuple_element on non-tuple {x}")
	if not 0 <= index < len(x.tuple_shapes):
		raise InvalidShapeError(f"tuple index {index} out of range for {x}")
	return x.tuple_shapes[index]


def infer_dot_general(
	lhs: Shape,
	rhs: Shape,
	lhs_contracting: Sequence[int],
	rhs_contracting: Sequence[int],
	lhs_batch: Sequence[int] = (),
	rhs_batch: Sequence[int] = (),
) -> Shape:
	_require_array(lhs, "dot")
	_require_array(rhs, "dot")
	_check_same_type([lhs, rhs], "dot")
	if lhs.element_type is et.pred:
		raise InvalidShapeError("dot is not defined for pred")
	if len(lhs_contracting) != len(rhs_contracting) or len(lhs_batch) != len(rhs_batch):
		raise InvalidShapeError("dot: lhs/rhs contracting or batch dimension counts differ")
	_check_axes([*lhs_contracting, *lhs_batch], lhs.rank, "dot lhs")
	_check_axes([*rhs_contracting, *rhs_batch], rhs.rank, "dot rhs")
	batch = [merge_dim(lhs.dimensions[a], rhs.dimensions[b], "dot batch") for a, b in zip(lhs_batch, rhs_batch)]
	for a, b in zip(lhs_contracting, rhs_contracting):
		merge_dim(lhs.dimensions[a], rhs.dimensions[b], "dot contracting")
	lhs_free = [d for i, d in enumerate(lhs.dimensions) if i not in lhs_contracting and i not in lhs_batch]
	rhs_free = [d for i, d in enumerate(rhs.dimensions) if i not in rhs_contracting and i not in rhs_batch]
	return Shape.array(lhs.element_type, [*batch, *lhs_free, *rhs_free])


def infer_triangular_solve(a: Shape, b: Shape, left_side: bool, transpose_a: int) -> Shape:
	_require_array(a, "triangular_solve")
	_require_array(b, "triangular_solve")
	_check_same_type([a, b], "triangular_solve")
	if not (a.element_type.is_floating or a.element_type.is_complex):
		raise InvalidShapeError("triangular_solve requires floating-point operands")
	if transpose_a not in (NO_TRANSPOSE, TRANSPOSE, ADJOINT):
		raise InvalidShapeError(f"triangular_solve: unknown transpose_a {transpose_a}")
	if a.rank < 2 or a.rank != b.rank:
		raise InvalidShapeError(f"triangular_solve: a {a} and b {b} must share a rank >= 2")
	_merge_dims(a.dimensions[:-2], b.dimensions[:-2], "triangular_solve batch")
	m = merge_dim(a.dimensions[-1], a.dimensions[-2], "triangular_solve: a must be square")
	merge_dim(m, b.dimensions[-2] if left_side else b.dimensions[-1], "triangular_solve")
	return b


def check_scalar_computation(program: ProgramShape, arity: int, ty: et.ElementType, what: str) -> None:
	"""Reduction bodies take `arity` scalars of `ty` and return one."""

	scalar = Shape.scalar(ty)
	if len(program.parameter_shapes) != arity or any(p != scalar for p in program.parameter_shapes):
		raise InvalidShapeError(f"{what}: computation must take {arity} {scalar} parameters, has {program}")
	if program.result_shape != scalar:
		raise InvalidShapeError(f"{what}: computation must return {scalar}, returns {program.result_shape}")


def infer_reduce(x: Shape, init: Shape, dimensions: Sequence[int], program: ProgramShape) -> Shape:
	_require_array(x, "reduce")
	if init != Shape.scalar(x.element_type):
		raise InvalidShapeError(f"reduce: init value must be {Shape.scalar(x.element_type)}, got {init}")
	_check_axes(dimensions, x.rank, "reduce")
	check_scalar_computation(program, 2, x.element_type, "reduce")
	return Shape.array(x.element_type, [d for i, d in enumerate(x.dimensions) if i not in dimensions])


def infer_call(operands: Sequence[Shape], program: ProgramShape, what: str = "call") -> Shape:
	if len(operands) != len(program.parameter_shapes):
		raise InvalidShapeError(
			f"{what}: computation takes {len(program.parameter_shapes)} arguments, got {len(operands)}"
		)
	for i, (got, want) in enumerate(zip(operands, program.parameter_shapes)):
		if got != want:
			raise InvalidShapeError(f"{what}: argument {i} has shape {got}, computation expects {want}")
	return program.result_shape


def infer_conditional(
	pred: Shape,
	true_operand: Shape,
	true_program: ProgramShape,
	false_operand: Shape,
	false_program: ProgramShape,
) -> Shape:
	if pred != Shape.scalar(et.pred):
		raise InvalidShapeError(f"conditional predicate must be pred[], got {pred}")
	t = infer_call([true_operand], true_program, "conditional true branch")
	f = infer_call([false_operand], false_program, "conditional false branch")
	if t != f:
		raise InvalidShapeError(f"conditional branches return different shapes: {t} vs {f}")
	return t


def infer_while(init: Shape, cond_program: ProgramShape, body_program: ProgramShape) -> Shape:
	infer_call([init], body_program, "while body")
	if body_program.result_shape != init:
		raise InvalidShapeError(f"while body must return the loop state {init}, returns {body_program.result_shape}")
	if infer_call([init], cond_program, "while condition") != Shape.scalar(et.pred):
		raise InvalidShapeError(f"while condition must return pred[], returns {cond_program.result_shape}")
	return init
