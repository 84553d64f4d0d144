"""
Tests for compiled shapes: point, interval and gradient evaluation.
"""

import math

import numpy as np
import pytest

from horsecad.errors import ShapeBuildError
from horsecad.expr import Context, Op, Tree, X, Y, Z, sin, sqrt, square
from horsecad.shape import Shape, is_inside
from horsecad.shapes import sphere
from horsecad.xform import Matrix, Rotation, Scale, Translation


def _shape(tree):
    ctx = Context()
    return Shape(ctx, ctx.import_tree(tree))


def _sample_boxes(seed=1, n=40):
    rng = np.random.default_rng(seed)
    lower = rng.uniform(-2.0, 1.0, (n, 3))
    upper = lower + rng.uniform(0.0, 1.0, (n, 3))
    return rng, lower, upper


def _check_contains(shape, seed=1):
    rng, lower, upper = _sample_boxes(seed)
    lo, hi = shape.eval_interval(lower, upper)
    for i in range(len(lower)):
        pts = rng.uniform(lower[i], upper[i], (25, 3))
        pts = np.vstack([pts, lower[i], upper[i]])
        v = shape.eval_array(pts).astype(np.float64)
        tol = 1e-5 * (1.0 + np.abs(v))
        assert np.all(v >= lo[i] - tol)
        assert np.all(v <= hi[i] + tol)
        if lo[i] > 0:
            assert np.all(v > 0)
        if hi[i] < 0:
            assert np.all(v < 0)


class TestEvaluation:
    """Test point evaluation."""

    def test_eval_point_sphere(self):
        s = _shape(sphere(1.0))
        assert s.eval_point(0, 0, 0) == pytest.approx(-1.0)
        assert s.eval_point(2, 0, 0) == pytest.approx(1.0)

    def test_eval_array_is_float32(self):
        s = _shape(sphere(1.0))
        v = s.eval_array([[0, 0, 0], [0, 3, 4]])
        assert v.dtype == np.float32
        assert v.tolist() == pytest.approx([-1.0, 4.0])

    def test_constant_shape(self):
        s = _shape(Tree.wrap(2.5))
        v = s.eval_array(np.zeros((3, 3)))
        assert v.tolist() == [2.5, 2.5, 2.5]

    def test_bad_points(self):
        s = _shape(X)
        with pytest.raises(ValueError):
            s.eval_array([[1, 2]])

    def test_nan_counts_as_outside(self):
        s = _shape(sqrt(X))
        v = s.eval_point(-1, 0, 0)
        assert math.isnan(v)
        assert not is_inside([v])[0]
        assert is_inside([-1e-30, 0.0, 1.0]).tolist() == [True, False, False]


class TestInterval:
    """Test conservative interval evaluation."""

    def test_contains_samples(self):
        tree = sin(X * 3) * Y - square(Z) + abs(X - Y) / (2 + square(Z))
        _check_contains(_shape(tree))

    def test_contains_samples_min_max(self):
        from horsecad.shapes import box, blend, gyroid
        tree = blend(box((-0.5, -0.5, -0.5), (0.5, 0.5, 0.5)), sphere(0.4, (0.5, 0, 0)), 0.2)
        _check_contains(_shape(tree), seed=2)
        _check_contains(_shape(gyroid(0.7, 0.1)), seed=3)

    def test_proves_sign(self):
        s = _shape(sphere(1.0))
        lo, hi = s.eval_interval([[2, 2, 2], [-0.1, -0.1, -0.1]],
                                 [[3, 3, 3], [0.1, 0.1, 0.1]])
        assert lo[0] > 0
        assert hi[1] < 0

    def test_nan_widens_to_everything(self):
        s = _shape(sqrt(X))
        lo, hi = s.eval_interval([[-2, 0, 0]], [[-1, 1, 1]])
        assert lo[0] == -np.inf
        assert hi[0] == np.inf

    def test_division_by_straddling_interval(self):
        s = _shape(1 / X)
        lo, hi = s.eval_interval([[-1, 0, 0]], [[1, 1, 1]])
        assert lo[0] == -np.inf
        assert hi[0] == np.inf


class TestTransform:
    """Test input transforms."""

    def test_apply_transform_composes(self):
        s = _shape(X)
        t = s.apply_transform(Translation([1, 0, 0]))
        assert t.eval_point(0, 0, 0) == pytest.approx(1.0)
        u = t.apply_transform(Scale(2))
        # f(T S p) = 2x + 1
        assert u.eval_point(1, 0, 0) == pytest.approx(3.0)
        assert s.eval_point(1, 0, 0) == pytest.approx(1.0)

    def test_tape_is_shared(self):
        s = _shape(sphere(0.5))
        t = s.apply_transform(Scale(2))
        assert len(t) == len(s)
        assert t._tape is s._tape

    def test_interval_under_rotation(self):
        s = _shape(sphere(0.5, (0.3, 0, 0))).apply_transform(Rotation([1, 1, 0], 30))
        _check_contains(s, seed=4)

    def test_non_affine_rejected(self):
        s = _shape(X)
        with pytest.raises(ValueError):
            s.apply_transform(Matrix([[1, 0, 0, 0], [0, 1, 0, 0],
                                      [0, 0, 1, 0], [0, 0, 1, 1]]))


class TestGradient:
    """Test forward-mode gradients."""

    def test_sphere_gradient_is_radial(self):
        s = _shape(sphere(1.0))
        v, g = s.eval_gradient([[0.3, 0.4, 0.0]])
        assert v[0] == pytest.approx(-0.5)
        assert g[0].tolist() == pytest.approx([0.6, 0.8, 0.0])
        assert g.dtype == np.float32

    def test_gradient_pulled_back(self):
        s = _shape(X * X + 2 * Y).apply_transform(Scale(2))
        # f(2x, 2y) = 4x^2 + 4y
        v, g = s.eval_gradient([[1.0, 1.0, 0.0]])
        assert v[0] == pytest.approx(8.0)
        assert g[0].tolist() == pytest.approx([8.0, 4.0, 0.0])

    def test_constant_gradient_is_zero(self):
        s = _shape(Tree.wrap(1.0))
        v, g = s.eval_gradient([[1, 2, 3], [4, 5, 6]])
        assert v.tolist() == [1.0, 1.0]
        assert np.all(g == 0)

    def test_min_selects_branch(self):
        from horsecad.expr import minimum
        s = _shape(minimum(X, 2 * Y))
        _, g = s.eval_gradient([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        assert g[0].tolist() == [0.0, 2.0, 0.0]
        assert g[1].tolist() == [1.0, 0.0, 0.0]


class TestLowering:
    """Test tape construction from an arena."""

    def test_dangling_root(self):
        with pytest.raises(ShapeBuildError):
            Shape(Context(), 0)

    def test_child_must_precede(self):
        ctx = Context()
        ctx._ops.append(Op('neg', 0))
        with pytest.raises(ShapeBuildError):
            Shape(ctx, 0)

    def test_unknown_operator(self):
        ctx = Context()
        ctx._ops.append(Op('var', 'x'))
        ctx._ops.append(Op('pow', 0, 0))
        with pytest.raises(ShapeBuildError):
            Shape(ctx, 1)

    def test_only_reachable_nodes(self):
        ctx = Context()
        a = ctx.import_tree(X)
        ctx.import_tree(Y * Y + Z)
        assert len(Shape(ctx, a)) == 1
