from __future__ import annotations

import copy
import itertools
import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..errors import check_status
from .shape import ProgramShape, Shape

if TYPE_CHECKING:
	from ..pjrt.client import PjRtClient
	from ..pjrt.executable import CompileOptions, PjRtLoadedExecutable


_computation_ids = itertools.count(1)


def fresh_computation_id() -> int:
	return next(_computation_ids)


def renumber_module(module: dict[str, Any]) -> dict[str, Any]:
	"""Give every computation of a module a fresh process-unique id.

	Ids of deserialized modules may collide with ids handed out to builders in
	this process; embedding would then confuse the two.
	"""

	mapping = {c["id"]: fresh_computation_id() for c in module["computations"]}
	for comp in module["computations"]:
		comp["id"] = mapping[comp["id"]]
		for inst in comp["instructions"]:
			inst["called_computations"] = [mapping[c] for c in inst.get("called_computations", ())]
	module["entry_computation_id"] = mapping[module["entry_computation_id"]]
	return module


class HloInstructionProto:
	"""Read-only view of one serialized instruction."""

	__slots__ = ("_data",)

	def __init__(self, data: dict[str, Any]) -> None:
		self._data = data

	@property
	def opcode(self) -> str:
		return self._data["opcode"]

	@property
	def name(self) -> str:
		return self._data.get("name", "")

	@property
	def id(self) -> int:
		return self._data["id"]

	@property
	def operand_ids(self) -> list[int]:
		return list(self._data.get("operands", ()))

	@property
	def shape(self) -> Shape:
		return Shape.from_dict(self._data["shape"])

	def __repr__(self) -> str:  # pragma: no cover
		return f"HloInstructionProto({self.name}: {self.opcode})"


class HloComputationProto:
	__slots__ = ("_data",)

	def __init__(self, data: dict[str, Any]) -> None:
		self._data = data

	@property
	def name(self) -> str:
		return self._data["name"]

	@property
	def id(self) -> int:
		return self._data["id"]

	@property
	def root_id(self) -> int:
		return self._data["root_id"]

	def instructions(self) -> list[HloInstructionProto]:
		return [HloInstructionProto(i) for i in self._data["instructions"]]

	def __repr__(self) -> str:  # pragma: no cover
		return f"HloComputationProto({self.name}, {len(self._data['instructions'])} instructions)"


class HloModuleProto:
	"""Serialized form of a computation plus everything it calls.

	The entry computation is listed last; embedded computations precede the
	computations that reference them.
	"""

	__slots__ = ("_data",)

	def __init__(self, data: dict[str, Any]) -> None:
		self._data = data

	@classmethod
	def from_serialized(cls, data: bytes) -> HloModuleProto:
		return cls.parse_and_return_unverified_module(data)

	@classmethod
	def parse_and_return_unverified_module(cls, data: bytes | str) -> HloModuleProto:
		"""Decode a module checking only its layout; instructions are type-checked at compile time."""
		return cls._parse(data, verify=False)

	@classmethod
	def parse_proto(cls, data: bytes | str, binary: bool = True) -> HloModuleProto:
		"""Decode a module and type-check every instruction.

		Both forms are JSON. The binary form is the compact encoding written by
		`serialize`; the text form is the indented one written by `to_text` and
		may be passed as `str`.
		"""
		if binary and isinstance(data, str):
			raise TypeError("binary module data must be bytes, not str")
		return cls._parse(data, verify=True)

	@classmethod
	def from_text_file(cls, path: str | os.PathLike[str]) -> HloModuleProto:
		return cls.parse_and_return_unverified_module(Path(path).read_bytes())

	@classmethod
	def from_proto_file(cls, path: str | os.PathLike[str], binary: bool = True) -> HloModuleProto:
		return cls.parse_proto(Path(path).read_bytes(), binary)

	@classmethod
	def _parse(cls, data: bytes | str, verify: bool) -> HloModuleProto:
		from ..native import api

		if isinstance(data, str):
			data = data.encode("utf-8")
		status, module = api.hlo_module_parse(bytes(data), verify=verify)
		check_status(status)
		return cls(module)

	def serialize(self) -> bytes:
		return json.dumps(self._data, sort_keys=True, separators=(",", ":")).encode("utf-8")

	def to_text(self) -> str:
		return json.dumps(self._data, sort_keys=True, indent=2)

	def write_to_file(self, path: str | os.PathLike[str], binary: bool = True) -> None:
		if binary:
			Path(path).write_bytes(self.serialize())
		else:
			Path(path).write_text(self.to_text(), encoding="utf-8")

	@property
	def name(self) -> str:
		return self._data["name"]

	@property
	def entry_computation_id(self) -> int:
		return self._data["entry_computation_id"]

	def computations(self) -> list[HloComputationProto]:
		return [HloComputationProto(c) for c in self._data["computations"]]

	def entry_computation(self) -> HloComputationProto:
		return self.computations()[-1]

	def to_dict(self) -> dict[str, Any]:
		return copy.deepcopy(self._data)


class XlaComputation:
	"""A finished, immutable computation graph.

	Holds no reference to the builder that produced it. Computations are
	device independent; `compile` specialises one for a client.
	"""

	__slots__ = ("_module", "_program_shape")

	def __init__(self, module: dict[str, Any]) -> None:
		self._module = module
		entry = module["computations"][-1]
		ps = entry["program_shape"]
		self._program_shape = ProgramShape(
			parameter_shapes=tuple(Shape.from_dict(p) for p in ps["parameters"]),
			result_shape=Shape.from_dict(ps["result"]),
			parameter_names=tuple(entry.get("parameter_names", ())),
		)

	@classmethod
	def from_proto(cls, proto: HloModuleProto) -> XlaComputation:
		return cls(renumber_module(proto.to_dict()))

	@classmethod
	def from_serialized(cls, data: bytes) -> XlaComputation:
		return cls.from_proto(HloModuleProto.from_serialized(data))

	@property
	def name(self) -> str:
		return self._module["name"]

	@property
	def id(self) -> int:
		return self._module["entry_computation_id"]

	def program_shape(self) -> ProgramShape:
		return self._program_shape

	def proto(self) -> HloModuleProto:
		return HloModuleProto(copy.deepcopy(self._module))

	def serialize(self) -> bytes:
		return HloModuleProto(self._module).serialize()

	def _computation_dicts(self) -> list[dict[str, Any]]:
		return self._module["computations"]

	def compile(self, client: PjRtClient, options: CompileOptions | None = None) -> PjRtLoadedExecutable:
		return client.compile(self, options)

	def as_hlo_text(self) -> str:
		entry_id = self.id
		lines = [f"HloModule {self.name}, entry_computation_layout={{{self._program_shape}}}"]
		names = {c["id"]: c["name"] for c in self._module["computations"]}
		for comp in self._module["computations"]:
			lines.append("")
			prefix = "ENTRY " if comp["id"] == entry_id else ""
			lines.append(f"{prefix}{comp['name']} {{")
			by_id = {i["id"]: i for i in comp["instructions"]}
			for inst in comp["instructions"]:
				args = ", ".join(f"%{by_id[o]['name']}" for o in inst["operands"])
				extras = [f"{k}={_fmt_attr(v)}" for k, v in sorted(inst["attrs"].items()) if k != "literal"]
				extras += [f"to_apply=%{names[c]}" for c in inst["called_computations"]]
				root = "ROOT " if inst["id"] == comp["root_id"] else ""
				shape = Shape.from_dict(inst["shape"])
				tail = (", " + ", ".join(extras)) if extras else ""
				lines.append(f"  {root}%{inst['name']} = {shape} {inst['opcode']}({args}){tail}")
			lines.append("}")
		return "\n".join(lines)

	def __repr__(self) -> str:
		return f"XlaComputation({self.name}: {self._program_shape})"


def _fmt_attr(value: Any) -> str:
	if isinstance(value, list):
		return "{" + ",".join(str(v) for v in value) + "}"
	return str(value)
