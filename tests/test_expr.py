"""
Tests for expression trees and the interned node arena.
"""

import pytest

from horsecad.errors import ShapeBuildError
from horsecad.expr import (
    Context, Op, Tree, X, Y, Z,
    constant, maximum, minimum, sqrt, square, var,
)


class TestTree:
    """Test user-facing expression handles."""

    def test_operators_build_nodes(self):
        t = X * X + 1
        assert t.kind == 'add'
        assert t.args[0].kind == 'mul'
        assert t.args[1].kind == 'const'
        assert t.args[1].args == (1.0,)

    def test_reflected_operators(self):
        t = 2 - X
        assert t.kind == 'sub'
        assert t.args[0].args == (2.0,)
        assert t.args[1] is X

        t = 1 / Y
        assert t.kind == 'div'
        assert t.args[1] is Y

    def test_unary_operators(self):
        assert (-X).kind == 'neg'
        assert abs(X).kind == 'abs'
        assert (+X) is X

    def test_integer_powers(self):
        t = X ** 2
        assert t.kind == 'square'
        assert t.args[0] is X
        assert (X ** 1) is X
        assert (X ** 0).args == (1.0,)
        t = X ** 3
        assert t.kind == 'mul'
        assert t.args[0] is X
        assert t.args[1].kind == 'square'
        t = X ** -2
        assert t.kind == 'div'
        assert t.args[0].args == (1.0,)
        assert t.args[1].kind == 'square'

    def test_non_integer_powers_rejected(self):
        with pytest.raises(TypeError):
            X ** 0.5
        with pytest.raises(TypeError):
            X ** True
        with pytest.raises(TypeError):
            X ** Y

    def test_immutable(self):
        with pytest.raises(AttributeError):
            X.kind = 'y'

    def test_wrap_rejects_non_numbers(self):
        with pytest.raises(TypeError):
            Tree.wrap("one")
        with pytest.raises(TypeError):
            Tree.wrap(True)
        with pytest.raises(TypeError):
            X + [1, 2]

    def test_var_checks_axis(self):
        assert var('z').args == ('z',)
        with pytest.raises(ValueError):
            var('w')

    def test_constant(self):
        assert constant(3).args == (3.0,)
        assert constant(3).children == ()

    def test_remap_substitutes_axes(self):
        t = X + Y * Z
        r = t.remap(Z, X, Y)
        assert r.args[0] is Z
        assert r.args[1].args[0] is X
        assert r.args[1].args[1] is Y

    def test_remap_keeps_sharing(self):
        s = X * X
        t = s + s
        r = t.remap(Y, Y, Y)
        assert r.args[0] is r.args[1]

    def test_remap_accepts_numbers(self):
        r = (X + Y).remap(1.0, 2.0, 0.0)
        assert r.args[0].args == (1.0,)
        assert r.args[1].args == (2.0,)

    def test_deep_tree(self):
        """Long chains are handled without recursion."""
        t = X
        for _ in range(5000):
            t = t + 1
        ctx = Context()
        root = ctx.import_tree(t)
        assert ctx.op(root).kind == 'add'
        assert t.remap(Y, Y, Y).kind == 'add'


class TestContext:
    """Test node interning."""

    def test_structural_sharing(self):
        ctx = Context()
        a = ctx.import_tree(X * X + Y * Y)
        b = ctx.import_tree(X * X + Y * Y)
        assert a == b
        # x, x*x, y, y*y and the sum
        assert len(ctx) == 5

    def test_operands_precede_nodes(self):
        ctx = Context()
        ctx.import_tree(sqrt(square(X) + 1.0) - minimum(Y, maximum(Z, 2.0)))
        for n in range(len(ctx)):
            op = ctx.op(n)
            if op.kind in ('const', 'var'):
                continue
            assert op.a < n
            if op.b is not None:
                assert op.b < n

    def test_constants_keyed_by_bits(self):
        ctx = Context()
        assert ctx.constant(0.0) != ctx.constant(-0.0)
        assert ctx.constant(1.0) == ctx.constant(1)
        assert ctx.op(ctx.constant(0.1)).a == pytest.approx(0.1)

    def test_op_entries(self):
        ctx = Context()
        node = ctx.import_tree(X - 2.0)
        op = ctx.op(node)
        assert isinstance(op, Op)
        assert op.kind == 'sub'
        assert ctx.op(op.a) == Op('var', 'x')
        assert ctx.op(op.b) == Op('const', 2.0)

    def test_dangling_reference(self):
        ctx = Context()
        ctx.var('x')
        with pytest.raises(ShapeBuildError):
            ctx.op(3)
        with pytest.raises(ShapeBuildError):
            ctx.unary('neg', 7)

    def test_unknown_kinds(self):
        ctx = Context()
        a = ctx.var('x')
        with pytest.raises(ShapeBuildError):
            ctx.binary('pow', a, a)
        with pytest.raises(ShapeBuildError):
            ctx.unary('tan', a)
        with pytest.raises(ShapeBuildError):
            ctx.var('w')

    def test_malformed_tree(self):
        ctx = Context()
        with pytest.raises(ShapeBuildError):
            ctx.import_tree(Tree('pow', (X, Y)))
        with pytest.raises(ShapeBuildError):
            ctx.import_tree(Tree('add', (X,)))
