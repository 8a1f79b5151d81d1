"""End-to-end tests: build, compile, execute, download."""

import numpy as np
import pytest

from xlabridge import (
    ArgumentMismatchError,
    CompilationError,
    CompileOptions,
    InvalidHandleError,
    Literal,
    Shape,
    XlaBuilder,
)
from xlabridge.ir import element_type as et


def _run(client, computation, *literals):
    exe = client.compile(computation)
    args = [client.buffer_from_literal(lit) for lit in literals]
    return [out.to_literal() for out in exe.execute(args)]


# =============================================================================
# 1. Simple programs
# =============================================================================


class TestSimplePrograms:
    """Small graphs with known answers."""

    def test_add_scalars(self, client):
        b = XlaBuilder("add")
        x = b.parameter(0, et.f32, [], name="x")
        y = b.parameter(1, et.f32, [], name="y")
        (out,) = _run(client, (x + y).build(), Literal.scalar(2.0, et.f32), Literal.scalar(3.0, et.f32))
        assert out.get_first_element() == 5.0

    def test_reshape_constant(self, client):
        b = XlaBuilder("reshape")
        c = b.constant_r2([[1, 2], [3, 4]], et.f32)
        (out,) = _run(client, c.reshape([4, 1]).build())
        assert out.shape == Shape.array(et.f32, [4, 1])
        assert out.to_list() == [1.0, 2.0, 3.0, 4.0]

    def test_reshape_parameter(self, client):
        b = XlaBuilder("reshape_param")
        x = b.parameter(0, et.f32, [2, 2], name="x")
        exe = client.compile(x.reshape([4, 1]).build())
        arg = client.buffer_from_literal(Literal.from_array(np.array([[1, 2], [3, 4]], dtype=np.float32)))
        (out,) = exe.execute([arg])
        lit = out.to_literal()
        assert lit.shape == Shape.array(et.f32, [4, 1])
        assert lit.to_list() == [1.0, 2.0, 3.0, 4.0]

    def test_constant_r1c(self, client):
        b = XlaBuilder("fill")
        x = b.parameter(0, et.s32, [3])
        (out,) = _run(client, (x + b.constant_r1c(7, 3, et.s32)).build(), Literal.vec1([1, 2, 3], et.s32))
        assert out.to_list() == [8, 9, 10]

    def test_nested_tuple_result(self, client):
        b = XlaBuilder("nested")
        x = b.parameter(0, et.f32, [2])
        comp = b.tuple([b.tuple([x, -x]), x * 2.0]).build()
        pair, doubled = _run(client, comp, Literal.vec1([1.0, 2.0], et.f32))

        assert pair.tuple_size == 2
        first, second = pair.decompose_tuple()
        assert pair.tuple_size == 0
        assert first.to_list() == [1.0, 2.0]
        assert second.to_list() == [-1.0, -2.0]
        assert doubled.to_list() == [2.0, 4.0]

    def test_add_vector_constant(self, client):
        b = XlaBuilder("add_op")
        x = b.parameter(0, et.s32, [3])
        y = b.add(x, b.constant_r1([100, 110, 120], et.s32))
        (out,) = _run(client, y.build(), Literal.vec1([32, 31, 30], et.s32))
        assert out.to_list() == [132, 141, 150]

    def test_reduce_sum_keep_dims(self, client):
        b = XlaBuilder("sum")
        x = b.parameter(0, et.f32, [2])
        (out,) = _run(client, x.reduce_sum([0], keep_dims=True).build(), Literal.vec1([4.2, 1.337], et.f32))
        assert out.shape == Shape.array(et.f32, [1])
        assert out.to_list()[0] == pytest.approx(5.537, rel=1e-6)

    def test_tuple_result_is_unpacked(self, client):
        b = XlaBuilder("pair")
        x = b.parameter(0, et.f32, [2])
        comp = b.tuple([x + 1.0, x * 2.0]).build()
        exe = client.compile(comp)
        assert exe.output_shapes == (Shape.array(et.f32, [2]),) * 2

        outs = exe.execute([client.buffer_from_literal(Literal.vec1([1.0, 2.0], et.f32))])
        assert [o.to_literal().to_list() for o in outs] == [[2.0, 3.0], [2.0, 4.0]]

    def test_integer_division(self, client):
        b = XlaBuilder("idiv")
        x = b.parameter(0, et.s32, [3])
        y = b.parameter(1, et.s32, [3])
        (out,) = _run(
            client, b.div(x, y).build(),
            Literal.vec1([7, -7, 1], et.s32), Literal.vec1([2, 2, 0], et.s32),
        )
        assert out.to_list() == [3, -3, -1]

    def test_matmul(self, client):
        lhs = np.random.randn(2, 3).astype(np.float32)
        rhs = np.random.randn(3, 4).astype(np.float32)
        b = XlaBuilder("mm")
        x = b.parameter(0, et.f32, [2, 3])
        y = b.parameter(1, et.f32, [3, 4])
        (out,) = _run(client, (x @ y).build(), Literal.from_array(lhs), Literal.from_array(rhs))
        np.testing.assert_allclose(out.to_numpy(), lhs @ rhs, rtol=1e-5, atol=1e-6)

    def test_reduce_max(self, client):
        b = XlaBuilder("max")
        x = b.parameter(0, et.f32, [2, 2])
        (out,) = _run(client, x.reduce_max([0]).build(), Literal.from_array(np.array([[1, 5], [7, 2]], dtype=np.float32)))
        assert out.to_list() == [7.0, 5.0]

    def test_triangular_solve(self, client):
        b = XlaBuilder("trsm")
        a = b.parameter(0, et.f32, [2, 2])
        rhs = b.parameter(1, et.f32, [2, 1])
        comp = a.triangular_solve(rhs, left_side=True, lower=True, unit_diagonal=False).build()
        (out,) = _run(
            client, comp,
            Literal.from_array(np.array([[2, 9], [1, 1]], dtype=np.float32)),
            Literal.from_array(np.array([[2], [3]], dtype=np.float32)),
        )
        np.testing.assert_allclose(out.to_numpy(), [[1.0], [2.0]], rtol=1e-6)

    def test_triangular_solve_singular(self, client):
        b = XlaBuilder("trsm_singular")
        a = b.parameter(0, et.f32, [2, 2])
        rhs = b.parameter(1, et.f32, [2, 1])
        comp = a.triangular_solve(rhs, left_side=True, lower=True, unit_diagonal=False).build()
        (out,) = _run(
            client, comp,
            Literal.from_array(np.array([[0, 0], [1, 1]], dtype=np.float32)),
            Literal.from_array(np.array([[1], [1]], dtype=np.float32)),
        )
        assert not np.isfinite(out.to_numpy()).any()

    def test_triangular_solve_right_upper(self, client):
        a_host = np.array([[2, 1], [0, 4]], dtype=np.float32)
        x_host = np.array([[1, 2], [3, 4]], dtype=np.float32)
        b = XlaBuilder("trsm_right")
        a = b.parameter(0, et.f32, [2, 2])
        rhs = b.parameter(1, et.f32, [2, 2])
        comp = a.triangular_solve(rhs, left_side=False, lower=False, unit_diagonal=False).build()
        (out,) = _run(client, comp, Literal.from_array(a_host), Literal.from_array(x_host @ a_host))
        np.testing.assert_allclose(out.to_numpy(), x_host, rtol=1e-6)


# =============================================================================
# 2. Control flow
# =============================================================================


class TestControlFlow:
    """Calls, conditionals and loops through sub-computations."""

    def test_while_loop(self, client):
        b = XlaBuilder("count")
        cond = b.create_sub_builder("cond")
        cond.lt(cond.parameter(0, et.s32, []), cond.constant_r0(10, et.s32))
        body = b.create_sub_builder("body")
        step = body.parameter(0, et.s32, []) + 3

        out = b.while_loop(cond.build(), step.build(), b.constant_r0(0, et.s32))
        (result,) = _run(client, out.build())
        assert result.get_first_element() == 12

    def test_conditional(self, client):
        b = XlaBuilder("branch")
        t = b.create_sub_builder("double")
        t_out = t.parameter(0, et.f32, []) * 2.0
        f = b.create_sub_builder("decrement")
        f_out = f.parameter(0, et.f32, []) - 1.0

        p = b.parameter(0, et.pred, [])
        x = b.parameter(1, et.f32, [])
        comp = b.conditional(p, x, t_out.build(), x, f_out.build()).build()

        exe = client.compile(comp)
        value = client.buffer_from_literal(Literal.scalar(5.0, et.f32))
        for flag, expected in ((True, 10.0), (False, 4.0)):
            pred = client.buffer_from_literal(Literal.scalar(flag, et.pred))
            (out,) = exe.execute([pred, value])
            assert out.to_literal().get_first_element() == expected

    def test_call(self, client):
        b = XlaBuilder("outer")
        inner = b.create_sub_builder("square")
        p = inner.parameter(0, et.f32, [2])
        square = (p * p).build()

        x = b.parameter(0, et.f32, [2])
        comp = (b.call(square, [x]) + 1.0).build()
        (out,) = _run(client, comp, Literal.vec1([2.0, 3.0], et.f32))
        assert out.to_list() == [5.0, 10.0]


# =============================================================================
# 3. Errors
# =============================================================================


class TestErrors:
    """Bad arguments and uncompilable graphs."""

    def _neg(self, client):
        b = XlaBuilder("neg")
        return client.compile((-b.parameter(0, et.f32, [2])).build())

    def test_argument_count(self, client):
        exe = self._neg(client)
        with pytest.raises(ArgumentMismatchError, match="takes 1 arguments, got 0"):
            exe.execute([])

    def test_argument_shape(self, client):
        exe = self._neg(client)
        wrong = client.buffer_from_literal(Literal.vec1([1.0, 2.0, 3.0], et.f32))
        with pytest.raises(ArgumentMismatchError, match="shape"):
            exe.execute([wrong])
        assert client.live_buffers() == [wrong]

    def test_argument_type(self, client):
        exe = self._neg(client)
        with pytest.raises(ArgumentMismatchError):
            exe.execute([Literal.vec1([1.0, 2.0], et.f32)])

    def test_argument_on_other_device(self, client2):
        b = XlaBuilder("neg")
        exe = client2.compile((-b.parameter(0, et.f32, [2])).build(), CompileOptions(device_ordinal=0))
        arg = client2.buffer_from_literal(Literal.vec1([1.0, 2.0], et.f32), client2.devices()[1])
        with pytest.raises(ArgumentMismatchError, match="runs on"):
            exe.execute([arg])

    def test_dynamic_shape_does_not_compile(self, client):
        b = XlaBuilder("dyn")
        x = b.parameter(0, et.f32, [-1], name="x")
        with pytest.raises(CompilationError, match="dynamic shape"):
            client.compile((x + x).build())

    def test_compile_rejects_non_computation(self, client):
        with pytest.raises(CompilationError):
            client.compile(b"{}")

    def test_deleted_executable(self, client):
        exe = self._neg(client)
        arg = client.buffer_from_literal(Literal.vec1([1.0, 2.0], et.f32))
        exe.delete()
        assert exe.is_deleted()
        with pytest.raises(InvalidHandleError):
            exe.execute([arg])


# =============================================================================
# 4. Execution modes
# =============================================================================


class TestExecutionModes:
    """Async execution, literal arguments and repeated runs."""

    def test_execute_async(self, client):
        b = XlaBuilder("exp")
        exe = client.compile(b.parameter(0, et.f64, [3]).exp().build())
        arg = client.buffer_from_literal(Literal.vec1([0.0, 1.0, 2.0], et.f64))
        future = exe.execute_async([arg])
        (out,) = future.wait()
        assert future.is_ready()
        np.testing.assert_allclose(out.to_literal().to_numpy(), np.exp([0.0, 1.0, 2.0]))

    def test_execute_literals(self, client):
        b = XlaBuilder("sub")
        x = b.parameter(0, et.s64, [])
        y = b.parameter(1, et.s64, [])
        exe = client.compile((x - y).build())
        (out,) = exe.execute_literals([Literal.scalar(10, et.s64), Literal.scalar(4, et.s64)])
        assert out.to_literal().get_first_element() == 6
        assert len(client.live_buffers()) == 1

    def test_repeated_execution(self, client):
        b = XlaBuilder("scale")
        exe = client.compile((b.parameter(0, et.f32, [2]) * 3.0).build())
        for i in range(5):
            arg = client.buffer_from_literal(Literal.vec1([float(i), 1.0], et.f32))
            (out,) = exe.execute([arg])
            assert out.to_literal().to_list() == [3.0 * i, 3.0]

    def test_executable_metadata(self, client):
        b = XlaBuilder("meta")
        x = b.parameter(0, et.f32, [2, 2], name="m")
        exe = x.transpose([1, 0]).build().compile(client)
        assert exe.name == "meta"
        assert exe.device is client.devices()[0]
        assert exe.parameter_shapes == (Shape.array(et.f32, [2, 2]),)
        assert "transpose" in exe.as_hlo_text()
