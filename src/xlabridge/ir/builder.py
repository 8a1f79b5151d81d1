"""XlaBuilder / XlaOp: incremental construction of computation graphs.

Construction calls never raise for graph errors. The first failure is latched
inside the builder; that call and every later one return a placeholder op, and
`build()` raises the latched error. Usage errors that can never reach a later
`build()` (an op on a finished builder, an op whose builder was garbage
collected) raise immediately.
"""

from __future__ import annotations

import base64
import copy
import enum
import functools
import itertools
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence, TypeVar

import numpy as np

from ..errors import BuilderUsageError, InvalidShapeError, XlaBridgeError
from . import element_type as et
from . import op as ops
from .computation import XlaComputation, fresh_computation_id
from .element_type import ElementType
from .literal import Literal
from .op import Instruction
from .shape import Shape

logger = logging.getLogger(__name__)

_builder_ids = itertools.count(1)

F = TypeVar("F", bound=Callable[..., Any])


class BuilderState(enum.Enum):
	OPEN = "open"
	FINALIZED = "finalized"
	CONSUMED = "consumed"


@dataclass(frozen=True, slots=True)
class XlaOp:
	"""Handle to one node of a builder's graph: a (builder id, index) pair.

	The op holds only a weak reference to its builder, so it never keeps the
	graph alive. Index -1 is the placeholder returned once an error latched.
	"""

	builder_id: int
	index: int
	_builder_ref: weakref.ref = field(compare=False, repr=False)

	@property
	def builder(self) -> XlaBuilder:
		builder = self._builder_ref()
		if builder is None:
			raise BuilderUsageError(f"op {self.index} outlived its builder (#{self.builder_id})")
		return builder

	@property
	def is_placeholder(self) -> bool:
		return self.index < 0

	@property
	def shape(self) -> Shape:
		return self.builder.get_shape(self)

	def build(self) -> XlaComputation:
		return self.builder.build(self)

	def _lift(self, other: Any) -> XlaOp:
		if isinstance(other, XlaOp):
			return other
		builder = self.builder
		return builder.constant_r0(other, builder._element_type_hint(self))

	def __add__(self, other: Any) -> XlaOp:
		return self.builder.add(self, self._lift(other))

	def __radd__(self, other: Any) -> XlaOp:
		return self.builder.add(self._lift(other), self)

	def __sub__(self, other: Any) -> XlaOp:
		return self.builder.sub(self, self._lift(other))

	def __rsub__(self, other: Any) -> XlaOp:
		return self.builder.sub(self._lift(other), self)

	def __mul__(self, other: Any) -> XlaOp:
		return self.builder.mul(self, self._lift(other))

	def __rmul__(self, other: Any) -> XlaOp:
		return self.builder.mul(self._lift(other), self)

	def __truediv__(self, other: Any) -> XlaOp:
		return self.builder.div(self, self._lift(other))

	def __rtruediv__(self, other: Any) -> XlaOp:
		return self.builder.div(self._lift(other), self)

	def __matmul__(self, other: XlaOp) -> XlaOp:
		return self.builder.matmul(self, other)

	def __neg__(self) -> XlaOp:
		return self.builder.neg(self)

	def __abs__(self) -> XlaOp:
		return self.builder.abs(self)

	def exp(self) -> XlaOp:
		return self.builder.exp(self)

	def log(self) -> XlaOp:
		return self.builder.log(self)

	def sqrt(self) -> XlaOp:
		return self.builder.sqrt(self)

	def tanh(self) -> XlaOp:
		return self.builder.tanh(self)

	def reshape(self, dims: Sequence[int]) -> XlaOp:
		return self.builder.reshape(self, dims)

	def transpose(self, permutation: Sequence[int]) -> XlaOp:
		return self.builder.transpose(self, permutation)

	def broadcast(self, sizes: Sequence[int]) -> XlaOp:
		return self.builder.broadcast(self, sizes)

	def convert(self, element_type: ElementType) -> XlaOp:
		return self.builder.convert_element_type(self, element_type)

	def matmul(self, other: XlaOp) -> XlaOp:
		return self.builder.matmul(self, other)

	def dot(self, other: XlaOp) -> XlaOp:
		return self.builder.dot(self, other)

	def get_tuple_element(self, index: int) -> XlaOp:
		return self.builder.get_tuple_element(self, index)

	def slice_in_dim(self, start: int, limit: int, stride: int = 1, dimension: int = 0) -> XlaOp:
		return self.builder.slice_in_dim(self, start, limit, stride, dimension)

	def reduce_sum(self, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
		return self.builder.reduce_sum(self, dims, keep_dims)

	def reduce_mean(self, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
		return self.builder.reduce_mean(self, dims, keep_dims)

	def reduce_max(self, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
		return self.builder.reduce_max(self, dims, keep_dims)

	def reduce_min(self, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
		return self.builder.reduce_min(self, dims, keep_dims)

	def triangular_solve(
		self,
		b: XlaOp,
		left_side: bool,
		lower: bool,
		unit_diagonal: bool,
		transpose_a: int = ops.NO_TRANSPOSE,
	) -> XlaOp:
		return self.builder.triangular_solve(self, b, left_side, lower, unit_diagonal, transpose_a)


def _latching(method: F) -> F:
	"""Run a construction step, latching the first graph error."""

	@functools.wraps(method)
	def wrapper(self: XlaBuilder, *args: Any, **kwargs: Any) -> XlaOp:
		self._check_open(method.__name__)
		if self._first_error is not None:
			return self._placeholder()
		try:
			return method(self, *args, **kwargs)
		except XlaBridgeError as e:
			self._latch(e)
			return self._placeholder()

	return wrapper  # type: ignore[return-value]


def _normalize_axes(axes: Sequence[int], rank: int) -> list[int]:
	return sorted(a + rank if a < 0 else a for a in axes)


def _lowest(ty: ElementType) -> Any:
	dtype = ty.numpy_dtype
	if ty is et.pred:
		return False
	if ty.is_floating:
		return float("-inf")
	if ty.is_integral:
		return int(np.iinfo(dtype).min)
	raise InvalidShapeError(f"{ty.name} has no ordering")


def _highest(ty: ElementType) -> Any:
	dtype = ty.numpy_dtype
	if ty is et.pred:
		return True
	if ty.is_floating:
		return float("inf")
	if ty.is_integral:
		return int(np.iinfo(dtype).max)
	raise InvalidShapeError(f"{ty.name} has no ordering")


@dataclass(eq=False)
class XlaBuilder:
	"""Accumulates a computation graph.

	Instructions are appended in creation order, so the graph is always a DAG
	in topological order. Lifecycle: OPEN -> FINALIZED (after `build`) ->
	CONSUMED (after `close`). A builder is not thread-safe.

	Example:
		>>> b = XlaBuilder("add")
		>>> x = b.parameter(0, Shape.scalar(et.f32), name="x")
		>>> y = b.parameter(1, Shape.scalar(et.f32), name="y")
		>>> computation = (x + y).build()
	"""

	name: str = "builder"
	id: int = field(init=False, default_factory=lambda: next(_builder_ids))
	_instructions: list[Instruction] = field(init=False, default_factory=list, repr=False)
	_parameters: dict[int, int] = field(init=False, default_factory=dict, repr=False)
	_embedded: dict[int, dict[str, Any]] = field(init=False, default_factory=dict, repr=False)
	_scalar_computations: dict[tuple[str, str], XlaComputation] = field(init=False, default_factory=dict, repr=False)
	_first_error: XlaBridgeError | None = field(init=False, default=None, repr=False)
	_state: BuilderState = field(init=False, default=BuilderState.OPEN)

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------

	@property
	def state(self) -> BuilderState:
		return self._state

	@property
	def first_error(self) -> XlaBridgeError | None:
		"""The latched error, if any, without raising it."""
		return self._first_error

	def close(self) -> None:
		self._state = BuilderState.CONSUMED
		self._instructions = []
		self._parameters = {}
		self._embedded = {}
		self._scalar_computations = {}

	def __enter__(self) -> XlaBuilder:
		return self

	def __exit__(self, *exc: object) -> None:
		self.close()

	def create_sub_builder(self, name: str) -> XlaBuilder:
		"""An independent builder for a nested computation (branch, body, reducer)."""
		self._check_open("create_sub_builder")
		return XlaBuilder(f"{self.name}.{name}")

	def build(self, root: XlaOp | None = None) -> XlaComputation:
		"""Finish the graph.

		Raises the latched error if one was recorded. Otherwise returns a
		computation rooted at `root`, or at the last op added.
		"""

		self._check_open("build")
		self._state = BuilderState.FINALIZED
		if self._first_error is not None:
			raise self._first_error
		if root is None:
			if not self._instructions:
				raise BuilderUsageError(f"builder '{self.name}' has no ops to build")
			root_inst = self._instructions[-1]
		else:
			root_inst = self._operand(root)

		numbers = sorted(self._parameters)
		if numbers != list(range(len(numbers))):
			raise BuilderUsageError(f"builder '{self.name}': parameter numbers {numbers} are not contiguous from 0")
		params = [self._instructions[self._parameters[n]] for n in numbers]

		comp_id = fresh_computation_id()
		entry = {
			"id": comp_id,
			"name": self.name,
			"instructions": [inst.to_dict() for inst in self._instructions],
			"root_id": root_inst.id,
			"parameter_names": [p.attrs["name"] for p in params],
			"program_shape": {
				"parameters": [p.shape.to_dict() for p in params],
				"result": root_inst.shape.to_dict(),
			},
		}
		module = {
			"name": self.name,
			"entry_computation_id": comp_id,
			"computations": [*self._embedded.values(), entry],
		}
		logger.debug(
			"built computation %r: %d instructions, %d embedded computations",
			self.name, len(self._instructions), len(self._embedded),
		)
		return XlaComputation(module)

	def get_shape(self, op: XlaOp) -> Shape:
		if self._state is BuilderState.CONSUMED:
			raise BuilderUsageError(f"builder '{self.name}' is consumed")
		if isinstance(op, XlaOp) and op.builder_id == self.id and op.is_placeholder and self._first_error is not None:
			raise BuilderUsageError(f"op is a placeholder; construction failed earlier: {self._first_error}") from self._first_error
		return self._operand(op).shape

	# ------------------------------------------------------------------
	# Internals
	# ------------------------------------------------------------------

	def _check_open(self, what: str) -> None:
		if self._state is not BuilderState.OPEN:
			raise BuilderUsageError(f"cannot {what}: builder '{self.name}' is {self._state.value}")

	def _latch(self, error: XlaBridgeError) -> None:
		if self._first_error is None:
			logger.debug("builder %r latched error: %s", self.name, error)
			self._first_error = error

	def _placeholder(self) -> XlaOp:
		return XlaOp(self.id, -1, weakref.ref(self))

	def _operand(self, op: Any) -> Instruction:
		if not isinstance(op, XlaOp):
			raise BuilderUsageError(f"expected an XlaOp, got {type(op).__name__}")
		if op.builder_id != self.id:
			raise BuilderUsageError(
				f"op belongs to builder #{op.builder_id}, not to builder '{self.name}' (#{self.id})"
			)
		if op.is_placeholder:
			raise BuilderUsageError("placeholder op used as an operand")
		if op.index >= len(self._instructions):
			raise BuilderUsageError(f"op index {op.index} is not part of builder '{self.name}'")
		return self._instructions[op.index]

	def _element_type_hint(self, op: XlaOp) -> ElementType | None:
		if op.builder_id == self.id and 0 <= op.index < len(self._instructions):
			shape = self._instructions[op.index].shape
			if shape.is_array:
				return shape.element_type
		return None

	def _emit(
		self,
		opcode: str,
		shape: Shape,
		operands: Sequence[Instruction] = (),
		attrs: dict[str, Any] | None = None,
		called: Sequence[int] = (),
		name: str | None = None,
	) -> XlaOp:
		idx = len(self._instructions)
		inst = Instruction(
			id=idx,
			opcode=opcode,
			shape=shape,
			operands=tuple(o.id for o in operands),
			attrs=attrs or {},
			called_computations=tuple(called),
			name=f"{name or opcode}.{idx}",
		)
		self._instructions.append(inst)
		return XlaOp(self.id, idx, weakref.ref(self))

	def _embed(self, computation: Any) -> int:
		if not isinstance(computation, XlaComputation):
			raise BuilderUsageError(f"expected an XlaComputation, got {type(computation).__name__}")
		for comp in computation._computation_dicts():
			if comp["id"] not in self._embedded:
				self._embedded[comp["id"]] = copy.deepcopy(comp)
		return computation.id

	def _broadcast_to(self, inst: Instruction, dims: Sequence[int | None]) -> Instruction:
		shape = Shape.array(inst.shape.element_type, dims)
		op = self._emit("broadcast", shape, (inst,), {"dimensions": []})
		return self._instructions[op.index]

	def _implicit_broadcast(self, a: Instruction, b: Instruction) -> tuple[Instruction, Instruction]:
		if a.shape.is_array and b.shape.is_array:
			if a.shape.rank == 0 and b.shape.rank > 0:
				a = self._broadcast_to(a, b.shape.dimensions)
			elif b.shape.rank == 0 and a.shape.rank > 0:
				b = self._broadcast_to(b, a.shape.dimensions)
		return a, b

	def _unary(self, opcode: str, x: XlaOp) -> XlaOp:
		a = self._operand(x)
		return self._emit(opcode, ops.infer_unary(opcode, a.shape), (a,))

	def _binary(self, opcode: str, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		a, b = self._implicit_broadcast(self._operand(lhs), self._operand(rhs))
		return self._emit(opcode, ops.infer_binary(opcode, a.shape, b.shape), (a, b))

	def _compare(self, direction: str, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		a, b = self._implicit_broadcast(self._operand(lhs), self._operand(rhs))
		shape = ops.infer_compare(direction, a.shape, b.shape)
		return self._emit("compare", shape, (a, b), {"direction": direction})

	def _scalar_computation(self, opcode: str, ty: ElementType) -> XlaComputation:
		key = (opcode, ty.name)
		if key not in self._scalar_computations:
			sub = self.create_sub_builder(f"{opcode}_{ty.name}")
			x = sub.parameter(0, Shape.scalar(ty), name="x")
			y = sub.parameter(1, Shape.scalar(ty), name="y")
			sub._binary_step(opcode, x, y)
			self._scalar_computations[key] = sub.build()
		return self._scalar_computations[key]

	@_latching
	def _binary_step(self, opcode: str, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary(opcode, lhs, rhs)

	# ------------------------------------------------------------------
	# Parameters and constants
	# ------------------------------------------------------------------

	@_latching
	def parameter(
		self,
		index: int,
		shape: Shape | ElementType,
		dims: Sequence[int] | None = None,
		name: str = "",
	) -> XlaOp:
		"""Declare parameter `index` of the computation.

		`shape` is either a full Shape, or an element type combined with
		`dims`. Negative or None dims declare dynamic sizes, which compile
		rejects.
		"""

		if isinstance(shape, ElementType):
			shape = Shape.array(shape, dims or ())
		elif dims is not None:
			raise BuilderUsageError("pass either a Shape or an element type with dims, not both")
		if not isinstance(shape, Shape):
			raise BuilderUsageError(f"parameter shape must be a Shape, got {type(shape).__name__}")
		if index < 0:
			raise BuilderUsageError(f"parameter index must be non-negative, got {index}")
		if index in self._parameters:
			existing = self._instructions[self._parameters[index]]
			raise BuilderUsageError(
				f"parameter {index} already declared as {existing.attrs['name']!r} in builder '{self.name}'"
			)
		pname = name or f"p{index}"
		op = self._emit("parameter", shape, attrs={"number": index, "name": pname}, name=pname)
		self._parameters[index] = op.index
		return op

	@_latching
	def constant_literal(self, literal: Literal) -> XlaOp:
		if not isinstance(literal, Literal):
			raise InvalidShapeError(f"constant_literal expects a Literal, got {type(literal).__name__}")
		data = base64.b64encode(literal.to_bytes()).decode("ascii")
		return self._emit("constant", literal.shape, attrs={"literal": data})

	@_latching
	def constant_r0(self, value: Any, element_type: ElementType | None = None) -> XlaOp:
		return self.constant_literal(Literal.scalar(value, element_type))

	@_latching
	def constant_r1(self, values: Sequence[Any], element_type: ElementType | None = None) -> XlaOp:
		return self.constant_literal(Literal.vec1(values, element_type))

	@_latching
	def constant_r1c(self, value: Any, length: int, element_type: ElementType | None = None) -> XlaOp:
		"""A rank-1 constant of `length` copies of `value`."""
		return self.constant_literal(Literal.vec1([value] * length, element_type))

	@_latching
	def constant_r2(self, rows: Sequence[Sequence[Any]], element_type: ElementType | None = None) -> XlaOp:
		if not isinstance(rows, np.ndarray):
			rows = [list(r) for r in rows]
			if any(len(r) != len(rows[0]) for r in rows):
				raise InvalidShapeError("all rows must have the same number of columns")
		lit = Literal.from_array(rows, element_type)
		if lit.shape.rank != 2:
			raise InvalidShapeError(f"constant_r2 expects a matrix, got {lit.shape}")
		return self.constant_literal(lit)

	@_latching
	def iota(self, element_type: ElementType, dims: Sequence[int], iota_dimension: int = 0) -> XlaOp:
		shape = Shape.array(element_type, dims)
		if not shape.is_static:
			raise InvalidShapeError(f"iota shape must be static, got {shape}")
		if not 0 <= iota_dimension < shape.rank:
			raise InvalidShapeError(f"iota dimension {iota_dimension} out of range for {shape}")
		if element_type is et.pred:
			raise InvalidShapeError("iota is not defined for pred")
		return self._emit("iota", shape, attrs={"iota_dimension": iota_dimension})

	@_latching
	def zeros_like(self, x: XlaOp) -> XlaOp:
		a = self._operand(x)
		if not a.shape.is_array:
			raise InvalidShapeError(f"zeros_like expects an array, got {a.shape}")
		zero = self._operand(self.constant_literal(Literal.zeros(Shape.scalar(a.shape.element_type))))
		if a.shape.rank == 0:
			return XlaOp(self.id, zero.id, weakref.ref(self))
		bcast = self._broadcast_to(zero, a.shape.dimensions)
		return XlaOp(self.id, bcast.id, weakref.ref(self))

	# ------------------------------------------------------------------
	# Elementwise
	# ------------------------------------------------------------------

	@_latching
	def neg(self, x: XlaOp) -> XlaOp:
		return self._unary("negate", x)

	@_latching
	def abs(self, x: XlaOp) -> XlaOp:
		return self._unary("abs", x)

	@_latching
	def exp(self, x: XlaOp) -> XlaOp:
		return self._unary("exponential", x)

	@_latching
	def log(self, x: XlaOp) -> XlaOp:
		return self._unary("log", x)

	@_latching
	def sqrt(self, x: XlaOp) -> XlaOp:
		return self._unary("sqrt", x)

	@_latching
	def rsqrt(self, x: XlaOp) -> XlaOp:
		return self._unary("rsqrt", x)

	@_latching
	def tanh(self, x: XlaOp) -> XlaOp:
		return self._unary("tanh", x)

	@_latching
	def logistic(self, x: XlaOp) -> XlaOp:
		return self._unary("logistic", x)

	@_latching
	def sin(self, x: XlaOp) -> XlaOp:
		return self._unary("sine", x)

	@_latching
	def cos(self, x: XlaOp) -> XlaOp:
		return self._unary("cosine", x)

	@_latching
	def floor(self, x: XlaOp) -> XlaOp:
		return self._unary("floor", x)

	@_latching
	def ceil(self, x: XlaOp) -> XlaOp:
		return self._unary("ceil", x)

	@_latching
	def sign(self, x: XlaOp) -> XlaOp:
		return self._unary("sign", x)

	@_latching
	def not_(self, x: XlaOp) -> XlaOp:
		return self._unary("not", x)

	@_latching
	def is_finite(self, x: XlaOp) -> XlaOp:
		return self._unary("is-finite", x)

	@_latching
	def add(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("add", lhs, rhs)

	@_latching
	def sub(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("subtract", lhs, rhs)

	@_latching
	def mul(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("multiply", lhs, rhs)

	@_latching
	def div(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("divide", lhs, rhs)

	@_latching
	def rem(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("remainder", lhs, rhs)

	@_latching
	def max(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("maximum", lhs, rhs)

	@_latching
	def min(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("minimum", lhs, rhs)

	@_latching
	def pow(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("power", lhs, rhs)

	@_latching
	def and_(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("and", lhs, rhs)

	@_latching
	def or_(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("or", lhs, rhs)

	@_latching
	def xor(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._binary("xor", lhs, rhs)

	@_latching
	def eq(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._compare("EQ", lhs, rhs)

	@_latching
	def ne(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._compare("NE", lhs, rhs)

	@_latching
	def lt(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._compare("LT", lhs, rhs)

	@_latching
	def le(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._compare("LE", lhs, rhs)

	@_latching
	def gt(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._compare("GT", lhs, rhs)

	@_latching
	def ge(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		return self._compare("GE", lhs, rhs)

	@_latching
	def select(self, pred: XlaOp, on_true: XlaOp, on_false: XlaOp) -> XlaOp:
		p, t, f = self._operand(pred), self._operand(on_true), self._operand(on_false)
		return self._emit("select", ops.infer_select(p.shape, t.shape, f.shape), (p, t, f))

	@_latching
	def clamp(self, lo: XlaOp, x: XlaOp, hi: XlaOp) -> XlaOp:
		a, v, b = self._operand(lo), self._operand(x), self._operand(hi)
		return self._emit("clamp", ops.infer_clamp(a.shape, v.shape, b.shape), (a, v, b))

	@_latching
	def convert_element_type(self, x: XlaOp, element_type: ElementType) -> XlaOp:
		a = self._operand(x)
		return self._emit("convert", ops.infer_convert(a.shape, element_type), (a,))

	# ------------------------------------------------------------------
	# Shape manipulation
	# ------------------------------------------------------------------

	@_latching
	def reshape(self, x: XlaOp, dims: Sequence[int]) -> XlaOp:
		a = self._operand(x)
		return self._emit("reshape", ops.infer_reshape(a.shape, dims), (a,))

	@_latching
	def broadcast_in_dim(self, x: XlaOp, out_dims: Sequence[int], broadcast_dimensions: Sequence[int]) -> XlaOp:
		a = self._operand(x)
		shape = ops.infer_broadcast_in_dim(a.shape, out_dims, broadcast_dimensions)
		return self._emit("broadcast", shape, (a,), {"dimensions": list(broadcast_dimensions)})

	@_latching
	def broadcast(self, x: XlaOp, sizes: Sequence[int]) -> XlaOp:
		"""Prepend `sizes` as new major dimensions."""
		a = self._operand(x)
		if not a.shape.is_array:
			raise InvalidShapeError(f"broadcast expects an array, got {a.shape}")
		n = len(sizes)
		out_dims = [*sizes, *a.shape.dimensions]
		return self.broadcast_in_dim(x, out_dims, list(range(n, n + a.shape.rank)))

	@_latching
	def transpose(self, x: XlaOp, permutation: Sequence[int]) -> XlaOp:
		a = self._operand(x)
		shape = ops.infer_transpose(a.shape, permutation)
		return self._emit("transpose", shape, (a,), {"permutation": list(permutation)})

	@_latching
	def slice(
		self,
		x: XlaOp,
		start: Sequence[int],
		limit: Sequence[int],
		strides: Sequence[int] | None = None,
	) -> XlaOp:
		a = self._operand(x)
		strides = list(strides) if strides is not None else [1] * len(start)
		shape = ops.infer_slice(a.shape, start, limit, strides)
		return self._emit(
			"slice", shape, (a,), {"start": list(start), "limit": list(limit), "strides": strides}
		)

	@_latching
	def slice_in_dim(self, x: XlaOp, start: int, limit: int, stride: int = 1, dimension: int = 0) -> XlaOp:
		a = self._operand(x)
		if not a.shape.is_array or not 0 <= dimension < a.shape.rank:
			raise InvalidShapeError(f"slice_in_dim: dimension {dimension} invalid for {a.shape}")
		for i, d in enumerate(a.shape.dimensions):
			if d is None and i != dimension:
				raise InvalidShapeError(f"slice_in_dim: dimension {i} of {a.shape} is dynamic")
		starts = [0] * a.shape.rank
		limits = list(a.shape.dimensions)
		strides = [1] * a.shape.rank
		starts[dimension], limits[dimension], strides[dimension] = start, limit, stride
		return self.slice(x, starts, limits, strides)

	@_latching
	def concat_in_dim(self, xs: Sequence[XlaOp], dimension: int) -> XlaOp:
		args = [self._operand(x) for x in xs]
		shape = ops.infer_concatenate([a.shape for a in args], dimension)
		return self._emit("concatenate", shape, args, {"dimension": dimension})

	@_latching
	def tuple(self, xs: Sequence[XlaOp]) -> XlaOp:
		args = [self._operand(x) for x in xs]
		return self._emit("tuple", Shape.tuple(a.shape for a in args), args)

	@_latching
	def get_tuple_element(self, x: XlaOp, index: int) -> XlaOp:
		a = self._operand(x)
		shape = ops.infer_get_tuple_element(a.shape, index)
		return self._emit("get-tuple-element", shape, (a,), {"index": index})

	# ------------------------------------------------------------------
	# Linear algebra
	# ------------------------------------------------------------------

	@_latching
	def dot_general(
		self,
		lhs: XlaOp,
		rhs: XlaOp,
		lhs_contracting: Sequence[int],
		rhs_contracting: Sequence[int],
		lhs_batch: Sequence[int] = (),
		rhs_batch: Sequence[int] = (),
	) -> XlaOp:
		a, b = self._operand(lhs), self._operand(rhs)
		shape = ops.infer_dot_general(a.shape, b.shape, lhs_contracting, rhs_contracting, lhs_batch, rhs_batch)
		attrs = {
			"lhs_contracting_dimensions": list(lhs_contracting),
			"rhs_contracting_dimensions": list(rhs_contracting),
			"lhs_batch_dimensions": list(lhs_batch),
			"rhs_batch_dimensions": list(rhs_batch),
		}
		return self._emit("dot", shape, (a, b), attrs)

	@_latching
	def dot(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		"""Vector/matrix product of rank-1 and rank-2 operands."""
		a, b = self._operand(lhs), self._operand(rhs)
		if not (a.shape.is_array and b.shape.is_array) or a.shape.rank not in (1, 2) or b.shape.rank not in (1, 2):
			raise InvalidShapeError(f"dot expects rank-1 or rank-2 operands, got {a.shape} and {b.shape}")
		return self.dot_general(lhs, rhs, [a.shape.rank - 1], [0])

	@_latching
	def matmul(self, lhs: XlaOp, rhs: XlaOp) -> XlaOp:
		"""Matrix product; leading dimensions of rank >= 3 operands are batch dims."""
		a, b = self._operand(lhs), self._operand(rhs)
		if not (a.shape.is_array and b.shape.is_array):
			raise InvalidShapeError(f"matmul expects arrays, got {a.shape} and {b.shape}")
		if a.shape.rank <= 2 and b.shape.rank <= 2:
			return self.dot(lhs, rhs)
		rank = a.shape.rank
		if b.shape.rank != rank:
			raise InvalidShapeError(f"batched matmul needs equal ranks, got {a.shape} and {b.shape}")
		batch = list(range(rank - 2))
		return self.dot_general(lhs, rhs, [rank - 1], [rank - 2], batch, batch)

	@_latching
	def triangular_solve(
		self,
		a: XlaOp,
		b: XlaOp,
		left_side: bool,
		lower: bool,
		unit_diagonal: bool,
		transpose_a: int = ops.NO_TRANSPOSE,
	) -> XlaOp:
		"""Solve op(a) x = b (left side) or x op(a) = b for triangular `a`."""
		x, y = self._operand(a), self._operand(b)
		shape = ops.infer_triangular_solve(x.shape, y.shape, left_side, transpose_a)
		attrs = {
			"left_side": bool(left_side),
			"lower": bool(lower),
			"unit_diagonal": bool(unit_diagonal),
			"transpose_a": int(transpose_a),
		}
		return self._emit("triangular-solve", shape, (x, y), attrs)

	# ------------------------------------------------------------------
	# Reductions
	# ------------------------------------------------------------------

	@_latching
	def reduce(self, x: XlaOp, init_value: XlaOp, computation: XlaComputation, dimensions: Sequence[int]) -> XlaOp:
		a, init = self._operand(x), self._operand(init_value)
		comp_id = self._embed(computation)
		dims = sorted(dimensions)
		shape = ops.infer_reduce(a.shape, init.shape, dims, computation.program_shape())
		return self._emit("reduce", shape, (a, init), {"dimensions": dims}, called=(comp_id,))

	def _reduce_with(self, opcode: str, init: Any, x: XlaOp, dims: Sequence[int], keep_dims: bool) -> XlaOp:
		a = self._operand(x)
		if not a.shape.is_array:
			raise InvalidShapeError(f"reduction expects an array, got {a.shape}")
		ty = a.shape.element_type
		axes = _normalize_axes(dims, a.shape.rank)
		init_op = self.constant_r0(init, ty)
		out = self.reduce(x, init_op, self._scalar_computation(opcode, ty), axes)
		if keep_dims:
			kept = [1 if i in axes else d for i, d in enumerate(a.shape.dimensions)]
			out = self.reshape(out, kept)
		return out

	@_latching
	def reduce_sum(self, x: XlaOp, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
		ty = self._operand(x).shape.element_type
		return self._reduce_with("or" if ty is et.pred else "add", False if ty is et.pred else 0, x, dims, keep_dims)

	@_latching
	def reduce_max(self, x: XlaOp, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
		ty = self._operand(x).shape.element_type
		return self._reduce_with("maximum", _lowest(ty), x, dims, keep_dims)

	@_latching
	def reduce_min(self, x: XlaOp, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
		ty = self._operand(x).shape.element_type
		return self._reduce_with("minimum", _highest(ty), x, dims, keep_dims)

	@_latching
	def reduce_mean(self, x: XlaOp, dims: Sequence[int], keep_dims: bool = False) -> XlaOp:
		a = self._operand(x)
		if not a.shape.is_array or a.shape.element_type is et.pred:
			raise InvalidShapeError(f"reduce_mean expects a numeric array, got {a.shape}")
		axes = _normalize_axes(dims, a.shape.rank)
		count = 1
		for axis in axes:
			size = a.shape.dimensions[axis] if 0 <= axis < a.shape.rank else None
			if size is None:
				raise InvalidShapeError(f"reduce_mean over dynamic or invalid dimension {axis} of {a.shape}")
			count *= size
		total = self.reduce_sum(x, axes, keep_dims)
		return self.div(total, self.constant_r0(count, a.shape.element_type))

	# ------------------------------------------------------------------
	# Control flow
	# ------------------------------------------------------------------

	@_latching
	def call(self, computation: XlaComputation, operands: Sequence[XlaOp]) -> XlaOp:
		args = [self._operand(o) for o in operands]
		comp_id = self._embed(computation)
		shape = ops.infer_call([a.shape for a in args], computation.program_shape())
		return self._emit("call", shape, args, called=(comp_id,))

	@_latching
	def conditional(
		self,
		pred: XlaOp,
		true_operand: XlaOp,
		true_computation: XlaComputation,
		false_operand: XlaOp,
		false_computation: XlaComputation,
	) -> XlaOp:
		p, t, f = self._operand(pred), self._operand(true_operand), self._operand(false_operand)
		t_id = self._embed(true_computation)
		f_id = self._embed(false_computation)
		shape = ops.infer_conditional(
			p.shape, t.shape, true_computation.program_shape(), f.shape, false_computation.program_shape()
		)
		return self._emit("conditional", shape, (p, t, f), called=(t_id, f_id))

	@_latching
	def while_loop(self, cond: XlaComputation, body: XlaComputation, init: XlaOp) -> XlaOp:
		a = self._operand(init)
		cond_id = self._embed(cond)
		body_id = self._embed(body)
		shape = ops.infer_while(a.shape, cond.program_shape(), body.program_shape())
		return self._emit("while", shape, (a,), called=(cond_id, body_id))

