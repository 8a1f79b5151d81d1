import json

import pytest

from xlabridge import HloModuleProto, NativeRuntimeError, XlaBuilder, XlaComputation
from xlabridge.ir import element_type as et


def _mlp_layer() -> XlaComputation:
	b = XlaBuilder("layer")
	x = b.parameter(0, et.f32, [2, 3], name="x")
	w = b.parameter(1, et.f32, [3, 4], name="w")
	return (x @ w).tanh().reduce_sum([1]).build()


def test_serialization_is_deterministic() -> None:
	comp = _mlp_layer()
	assert comp.serialize() == comp.serialize()
	module = json.loads(comp.serialize())
	assert module["entry_computation_id"] == module["computations"][-1]["id"]
	assert module["name"] == "layer"


def test_roundtrip_keeps_program_shape() -> None:
	comp = _mlp_layer()
	again = XlaComputation.from_serialized(comp.serialize())
	assert again.program_shape() == comp.program_shape()
	assert again.name == "layer"
	assert again.id != comp.id


def test_proto_view() -> None:
	comp = _mlp_layer()
	proto = comp.proto()
	entry = proto.entry_computation()
	ops = [i.opcode for i in entry.instructions()]
	assert ops[:2] == ["parameter", "parameter"]
	assert "dot" in ops and "reduce" in ops
	assert entry.root_id == entry.instructions()[-1].id
	assert XlaComputation.from_proto(HloModuleProto.from_serialized(proto.serialize())).name == "layer"


def test_garbage_does_not_parse() -> None:
	with pytest.raises(NativeRuntimeError):
		XlaComputation.from_serialized(b"\x00not a module")
	with pytest.raises(NativeRuntimeError):
		XlaComputation.from_serialized(b'{"name": "x"}')


def test_hlo_text() -> None:
	text = _mlp_layer().as_hlo_text()
	assert text.startswith("HloModule layer")
	assert "ENTRY layer {" in text
	assert "ROOT %reduce." in text
	assert "%x.0 = f32[2,3] parameter()" in text
	assert "to_apply=%layer.add_f32" in text


def test_module_files(tmp_path) -> None:
	proto = _mlp_layer().proto()
	proto.write_to_file(tmp_path / "layer.pb")
	proto.write_to_file(tmp_path / "layer.pbtxt", binary=False)
	assert "\n" in (tmp_path / "layer.pbtxt").read_text()

	loaded = [
		HloModuleProto.from_proto_file(tmp_path / "layer.pb"),
		HloModuleProto.from_proto_file(tmp_path / "layer.pbtxt", binary=False),
		HloModuleProto.from_text_file(str(tmp_path / "layer.pbtxt")),
	]
	for m in loaded:
		assert m.serialize() == proto.serialize()
	assert XlaComputation.from_proto(loaded[0]).program_shape() == _mlp_layer().program_shape()


def test_parse_proto_type_checks() -> None:
	b = XlaBuilder("dyn")
	x = b.parameter(0, et.f32, [-1], name="x")
	data = (x + x).build().serialize()

	assert HloModuleProto.parse_and_return_unverified_module(data).name == "dyn"
	with pytest.raises(NativeRuntimeError, match="dynamic shape"):
		HloModuleProto.parse_proto(data)
	with pytest.raises(NativeRuntimeError):
		HloModuleProto.parse_proto(b"\x00not a module")
	with pytest.raises(TypeError):
		HloModuleProto.parse_proto(data.decode())

	text = _mlp_layer().proto().to_text()
	assert HloModuleProto.parse_proto(text, binary=False).name == "layer"
