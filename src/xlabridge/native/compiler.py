"""Compiler of the reference runtime.

Input is a serialized module (JSON). Compilation runs a small pass pipeline:

1. `VerifierPass`: structure, operand order and shape re-inference for every
   instruction, static shapes only.
2. `DeadCodeEliminationPass`: drops instructions the root does not reach.
3. `LoweringPass`: turns each computation into a list of `Step`s with
   decoded constants and numpy fast paths for simple reductions.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ..errors import InvalidShapeError
from ..ir import op as ops
from ..ir.shape import ProgramShape, Shape
from . import kernels


class CompileError(Exception):
    """A module the compiler cannot accept. `code` is a StatusCode name."""

    def __init__(self, message: str, code: str = "INVALID_ARGUMENT") -> None:
        super().__init__(message)
        self.code = code


_FIXED_ARITY = {
    "parameter": 0, "constant": 0, "iota": 0,
    "compare": 2, "select": 3, "clamp": 3, "convert": 1, "reshape": 1,
    "broadcast": 1, "transpose": 1, "slice": 1, "get-tuple-element": 1,
    "dot": 2, "triangular-solve": 2, "reduce": 2, "conditional": 3, "while": 1,
}
_VARIADIC = frozenset({"tuple", "concatenate", "call"})
_CALLED = {"reduce": 1, "call": 1, "conditional": 2, "while": 2}


def arity(opcode: str) -> int | None:
    if opcode in ops.UNARY_OPCODES:
        return 1
    if opcode in ops.BINARY_OPCODES:
        return 2
    if opcode in _VARIADIC:
        return None
    if opcode in _FIXED_ARITY:
        return _FIXED_ARITY[opcode]
    raise CompileError(f"unsupported opcode '{opcode}'", code="UNIMPLEMENTED")


# =============================================================================
# Parsing
# =============================================================================


def parse_module(data: bytes) -> dict[str, Any]:
    """Decode a serialized module and check its top-level structure."""

    try:
        module = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CompileError(f"module is not valid serialized HLO: {e}") from e
    if not isinstance(module, dict):
        raise CompileError("module must be an object")
    for key in ("name", "entry_computation_id", "computations"):
        if key not in module:
            raise CompileError(f"module is missing '{key}'")
    comps = module["computations"]
    if not isinstance(comps, list) or not comps:
        raise CompileError("module has no computations")
    seen: set[int] = set()
    for comp in comps:
        for key in ("id", "name", "instructions", "root_id"):
            if key not in comp:
                raise CompileError(f"computation is missing '{key}'")
        if comp["id"] in seen:
            raise CompileError(f"duplicate computation id {comp['id']}")
        seen.add(comp["id"])
    if comps[-1]["id"] != module["entry_computation_id"]:
        raise CompileError("entry computation must be listed last")
    if "program_shape" not in comps[-1]:
        raise CompileError("entry computation has no program shape")
    return module


# =============================================================================
# Compiled form
# =============================================================================


@dataclass(slots=True)
class Step:
    id: int
    opcode: str
    shape: Shape
    operands: tuple[int, ...]
    attrs: dict[str, Any]
    called: tuple[int, ...] = ()
    constant: Any = None
    reducer: str | None = None

    def __repr__(self) -> str:
        return f"STEP {self.opcode}#{self.id}{list(self.operands)} -> {self.shape}"


@dataclass(slots=True)
class LoweredComputation:
    id: int
    name: str
    steps: list[Step]
    root_id: int
    program_shape: ProgramShape


@dataclass
class CompileStats:
    computations: int = 0
    instructions_in: int = 0
    instructions_out: int = 0
    fast_reductions: int = 0


@dataclass
class Program:
    """An executable program: lowered computations keyed by id."""

    name: str
    entry_id: int
    computations: dict[int, LoweredComputation]
    stats: CompileStats = field(default_factory=CompileStats)

    @property
    def entry(self) -> LoweredComputation:
        return self.computations[self.entry_id]

    @property
    def parameter_shapes(self) -> tuple[Shape, ...]:
        return self.entry.program_shape.parameter_shapes

    @property
    def result_shape(self) -> Shape:
        return self.entry.program_shape.result_shape


# =============================================================================
# Passes
# =============================================================================


def _derive_program_shape(comp: dict[str, Any], insts: list[ops.Instruction]) -> ProgramShape:
    params = sorted((i for i in insts if i.opcode == "parameter"), key=lambda i: i.attrs.get("number", -1))
    numbers = [p.attrs.get("number") for p in params]
    if numbers != list(range(len(params))):
        raise CompileError(f"computation '{comp['name']}': parameter numbers {numbers} are not 0..{len(params) - 1}")
    root = next((i for i in insts if i.id == comp["root_id"]), None)
    if root is None:
        raise CompileError(f"computation '{comp['name']}': root {comp['root_id']} is not one of its instructions")
    return ProgramShape(
        parameter_shapes=tuple(p.shape for p in params),
        result_shape=root.shape,
        parameter_names=tuple(p.attrs.get("name", "") for p in params),
    )


@dataclass
class VerifierPass:
    """Checks every instruction and collects per-computation program shapes."""

    def run(self, module: dict[str, Any]) -> dict[int, tuple[list[ops.Instruction], ProgramShape]]:
        verified: dict[int, tuple[list[ops.Instruction], ProgramShape]] = {}
        for comp in module["computations"]:
            try:
                insts = [ops.Instruction.from_dict(i) for i in comp["instructions"]]
            except (KeyError, TypeError, ValueError) as e:
                raise CompileError(f"computation '{comp['name']}': malformed instruction: {e}") from e
            shapes: dict[int, Shape] = {}
            for inst in insts:
                self._check(comp["name"], inst, shapes, verified)
                shapes[inst.id] = inst.shape
            verified[comp["id"]] = (insts, _derive_program_shape(comp, insts))
        self._check_entry(module, verified)
        return verified

    def _check(
        self,
        comp_name: str,
        inst: ops.Instruction,
        shapes: dict[int, Shape],
        verified: dict[int, tuple[list[ops.Instruction], ProgramShape]],
    ) -> None:
        where = f"computation '{comp_name}', instruction '{inst.name}' ({inst.opcode})"
        if inst.id in shapes:
            raise CompileError(f"{where}: duplicate instruction id {inst.id}")
        expected = arity(inst.opcode)
        if expected is not None and len(inst.operands) != expected:
            raise CompileError(f"{where}: expects {expected} operands, has {len(inst.operands)}")
        for o in inst.operands:
            if o not in shapes:
                raise CompileError(f"{where}: operand {o} is not defined before use")
        n_called = _CALLED.get(inst.opcode, 0)
        if len(inst.called_computations) != n_called:
            raise CompileError(f"{where}: expects {n_called} called computations, has {len(inst.called_computations)}")
        programs = []
        for c in inst.called_computations:
            if c not in verified:
                raise CompileError(f"{where}: called computation {c} is not defined before use")
            programs.append(verified[c][1])
        if not inst.shape.is_static:
            if inst.opcode == "parameter":
                raise CompileError(
                    f"parameter {inst.attrs.get('number')} '{inst.attrs.get('name', '')}' has dynamic shape "
                    f"{inst.shape}; compilation requires static shapes"
                )
            raise CompileError(f"{where}: shape {inst.shape} is not static")
        try:
            inferred = _infer(inst, [shapes[o] for o in inst.operands], programs)
        except InvalidShapeError as e:
            raise CompileError(f"{where}: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise CompileError(f"{where}: malformed attributes: {e!r}") from e
        if inferred != inst.shape:
            raise CompileError(f"{where}: recorded shape {inst.shape} but operands give {inferred}")

    def _check_entry(self, module: dict[str, Any], verified: dict[int, tuple[list[ops.Instruction], ProgramShape]]) -> None:
        entry = module["computations"][-1]
        declared = entry["program_shape"]
        program = verified[entry["id"]][1]
        params = [Shape.from_dict(p) for p in declared["parameters"]]
        for i, shape in enumerate(params):
            if not shape.is_static:
                name = program.parameter_names[i] if i < len(program.parameter_names) else ""
                raise CompileError(
                    f"parameter {i} '{name}' has dynamic shape {shape}; compilation requires static shapes"
                )
        if tuple(params) != program.parameter_shapes:
            raise CompileError(f"declared parameters do not match the entry computation: {program}")
        if Shape.from_dict(declared["result"]) != program.result_shape:
            raise CompileError(f"declared result does not match the entry root: {program.result_shape}")


def _infer(inst: ops.Instruction, shapes: list[Shape], programs: list[ProgramShape]) -> Shape:
    op, a = inst.opcode, inst.attrs
    if op == "parameter":
        return inst.shape
    if op == "constant":
        kernels.decode_constant(inst.shape, a["literal"])
        return inst.shape
    if op == "iota":
        if inst.shape.element_type.name == "pred" or not 0 <= a["iota_dimension"] < inst.shape.rank:
            raise InvalidShapeError(f"invalid iota {inst.shape} along {a['iota_dimension']}")
        return inst.shape
    if op in ops.UNARY_OPCODES:
        return ops.infer_unary(op, shapes[0])
    if op in ops.BINARY_OPCODES:
        return ops.infer_binary(op, shapes[0], shapes[1])
    if op == "compare":
        return ops.infer_compare(a["direction"], shapes[0], shapes[1])
    if op == "select":
        return ops.infer_select(*shapes)
    if op == "clamp":
        return ops.infer_clamp(*shapes)
    if op == "convert":
        return ops.infer_convert(shapes[0], inst.shape.element_type)
    if op == "reshape":
        return ops.infer_reshape(shapes[0], inst.shape.dimensions)
    if op == "broadcast":
        return ops.infer_broadcast_in_dim(shapes[0], inst.shape.dimensions, a["dimensions"])
    if op == "transpose":
        return ops.infer_transpose(shapes[0], a["permutation"])
    if op == "slice":
        return ops.infer_slice(shapes[0], a["start"], a["limit"], a["strides"])
    if op == "concatenate":
        return ops.infer_concatenate(shapes, a["dimension"])
    if op == "tuple":
        return Shape.tuple(shapes)
    if op == "get-tuple-element":
        return ops.infer_get_tuple_element(shapes[0], a["index"])
    if op == "dot":
        return ops.infer_dot_general(
            shapes[0], shapes[1],
            a["lhs_contracting_dimensions"], a["rhs_contracting_dimensions"],
            a.get("lhs_batch_dimensions", ()), a.get("rhs_batch_dimensions", ()),
        )
    if op == "triangular-solve":
        return ops.infer_triangular_solve(shapes[0], shapes[1], a["left_side"], a["transpose_a"])
    if op == "reduce":
        return ops.infer_reduce(shapes[0], shapes[1], a["dimensions"], programs[0])
    if op == "call":
        return ops.infer_call(shapes, programs[0])
    if op == "conditional":
        return ops.infer_conditional(shapes[0], shapes[1], programs[0], shapes[2], programs[1])
    if op == "while":
        return ops.infer_while(shapes[0], programs[0], programs[1])
    raise CompileError(f"unsupported opcode '{op}'", code="UNIMPLEMENTED")


@dataclass
class DeadCodeEliminationPass:
    """Removes instructions not reachable from the root. Parameters stay."""

    def run(self, insts: list[ops.Instruction], root_id: int) -> list[ops.Instruction]:
        by_id = {i.id: i for i in insts}
        live: set[int] = set()
        stack = [root_id]
        while stack:
            current = stack.pop()
            if current in live:
                continue
            live.add(current)
            stack.extend(by_id[current].operands)
        return [i for i in insts if i.id in live or i.opcode == "parameter"]


@dataclass
class LoweringPass:
    """Lowers verified instructions into interpreter steps."""

    def run(self, comp_id: int, name: str, insts: list[ops.Instruction], root_id: int,
            program_shape: ProgramShape, lowered: dict[int, LoweredComputation]) -> LoweredComputation:
        steps = []
        for inst in insts:
            step = Step(
                id=inst.id,
                opcode=inst.opcode,
                shape=inst.shape,
                operands=inst.operands,
                attrs=dict(inst.attrs),
                called=inst.called_computations,
            )
            if inst.opcode == "constant":
                step.constant = kernels.decode_constant(inst.shape, inst.attrs["literal"])
                step.attrs.pop("literal")
            elif inst.opcode == "reduce":
                step.reducer = _recognize_reducer(lowered[inst.called_computations[0]])
            steps.append(step)
        return LoweredComputation(comp_id, name, steps, root_id, program_shape)


def _recognize_reducer(comp: LoweredComputation) -> str | None:
    """Name of the ufunc a reduce body computes, if it is `x op y` on its parameters."""

    params = {s.id: s.attrs.get("number") for s in comp.steps if s.opcode == "parameter"}
    root = next(s for s in comp.steps if s.id == comp.root_id)
    if len(params) != 2 or root.opcode not in kernels.REDUCER_UFUNCS:
        return None
    if sorted(params.get(o, -1) for o in root.operands) != [0, 1]:
        return None
    return root.opcode


# =============================================================================
# Driver
# =============================================================================


def compile_module(module: dict[str, Any], *, optimize: bool = True) -> Program:
    """Verify and lower a parsed module. Raises CompileError."""

    verified = VerifierPass().run(module)
    stats = CompileStats(computations=len(verified))
    lowered: dict[int, LoweredComputation] = {}
    dce = DeadCodeEliminationPass()
    lowering = LoweringPass()
    for comp in module["computations"]:
        insts, program_shape = verified[comp["id"]]
        stats.instructions_in += len(insts)
        if optimize:
            insts = dce.run(insts, comp["root_id"])
        stats.instructions_out += len(insts)
        lowered[comp["id"]] = lowering.run(comp["id"], comp["name"], insts, comp["root_id"], program_shape, lowered)
    stats.fast_reductions = sum(
        1 for c in lowered.values() for s in c.steps if s.opcode == "reduce" and s.reducer is not None
    )
    return Program(module["name"], module["entry_computation_id"], lowered, stats)
