"""Compiled, repeatedly evaluable views of an expression graph.

A ``Shape`` lowers the sub-graph reachable from one root into a linear
tape (one instruction per node, operands first) and evaluates it with
numpy over whole batches at once:

- ``eval_array``: values at many points
- ``eval_interval``: conservative bounds over many axis-aligned boxes
- ``eval_gradient``: values and forward-mode gradients

Arithmetic runs in double precision and values and gradients are handed
back as float32.  Interval bounds stay in double precision and are widened
slightly, so a proven sign can never disagree with a point sample.

Every shape carries a 4x4 affine input transform ``M``; the shape's
function is ``g(p) = f(M p)``.  ``apply_transform`` composes matrices and
shares the tape, so transforming a shape never lowers the graph again.
"""

from __future__ import annotations

import math
from typing import List, Sequence, Tuple

import numpy as np

from .errors import ShapeBuildError
from .expr import AXES, BINARY_OPS, UNARY_OPS, Context, Node
from .xform import Matrix

Instruction = Tuple[str, object, object]

_TWO_PI = 2.0 * math.pi
_HALF_PI = 0.5 * math.pi
_SLOP = 1e-9


def _lower(ctx: Context, root: Node) -> Tuple[Instruction, ...]:
    """Lower the sub-graph under ``root`` to a tape.

    Raises ShapeBuildError for dangling references, operands that do not
    precede their node, and unsupported operators.
    """
    ctx.op(root)
    seen = set()
    stack = [root]
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        op = ctx.op(node)
        if op.kind in UNARY_OPS:
            operands = (op.a,)
        elif op.kind in BINARY_OPS:
            operands = (op.a, op.b)
        elif op.kind in ('const', 'var'):
            operands = ()
        else:
            raise ShapeBuildError(f"unsupported operator '{op.kind}'")
        for child in operands:
            if not isinstance(child, int) or child < 0 or child >= node:
                raise ShapeBuildError(
                    f"node {node} refers to {child!r}, which does not precede it")
            stack.append(child)

    order = sorted(seen)
    slots = {node: i for i, node in enumerate(order)}
    tape: List[Instruction] = []
    for node in order:
        op = ctx.op(node)
        if op.kind == 'const':
            tape.append(('const', float(op.a), None))
        elif op.kind == 'var':
            if op.a not in AXES:
                raise ShapeBuildError(f"unknown axis '{op.a}'")
            tape.append(('var', AXES.index(op.a), None))
        elif op.kind in UNARY_OPS:
            tape.append((op.kind, slots[op.a], None))
        else:
            tape.append((op.kind, slots[op.a], slots[op.b]))
    return tuple(tape)


# --- interval helpers ---------------------------------------------------
# intervals are (lo, hi) pairs of float64 arrays or scalars


def _imul(alo, ahi, blo, bhi):
    p = (alo * blo, alo * bhi, ahi * blo, ahi * bhi)
    lo = np.minimum(np.minimum(p[0], p[1]), np.minimum(p[2], p[3]))
    hi = np.maximum(np.maximum(p[0], p[1]), np.maximum(p[2], p[3]))
    return lo, hi


def _idiv(alo, ahi, blo, bhi):
    lo, hi = _imul(alo, ahi, 1.0 / bhi, 1.0 / blo)
    straddle = (blo <= 0.0) & (bhi >= 0.0)
    return np.where(straddle, -np.inf, lo), np.where(straddle, np.inf, hi)


def _isquare(alo, ahi):
    lo2 = alo * alo
    hi2 = ahi * ahi
    lo = np.where(alo >= 0.0, lo2, np.where(ahi <= 0.0, hi2, 0.0))
    return lo, np.maximum(lo2, hi2)


def _iabs(alo, ahi):
    lo = np.where(alo >= 0.0, alo, np.where(ahi <= 0.0, -ahi, 0.0))
    return lo, np.maximum(-alo, ahi)


def _isin(alo, ahi):
    lo = np.minimum(np.sin(alo), np.sin(ahi))
    hi = np.maximum(np.sin(alo), np.sin(ahi))
    # a peak at pi/2 + 2k pi or a trough at -pi/2 + 2k pi inside the range
    has_peak = np.ceil((alo - _HALF_PI) / _TWO_PI) <= np.floor((ahi - _HALF_PI) / _TWO_PI)
    has_trough = np.ceil((alo + _HALF_PI) / _TWO_PI) <= np.floor((ahi + _HALF_PI) / _TWO_PI)
    wide = ~((ahi - alo) < _TWO_PI)
    lo = np.where(has_trough | wide, -1.0, lo)
    hi = np.where(has_peak | wide, 1.0, hi)
    return lo, hi


def _interval_step(kind, a, b):
    alo, ahi = a
    if kind == 'add':
        return alo + b[0], ahi + b[1]
    if kind == 'sub':
        return alo - b[1], ahi - b[0]
    if kind == 'mul':
        return _imul(alo, ahi, b[0], b[1])
    if kind == 'div':
        return _idiv(alo, ahi, b[0], b[1])
    if kind == 'min':
        return np.minimum(alo, b[0]), np.minimum(ahi, b[1])
    if kind == 'max':
        return np.maximum(alo, b[0]), np.maximum(ahi, b[1])
    if kind == 'neg':
        return -ahi, -alo
    if kind == 'abs':
        return _iabs(alo, ahi)
    if kind == 'square':
        return _isquare(alo, ahi)
    if kind == 'sqrt':
        return np.sqrt(np.maximum(alo, 0.0)), np.where(ahi < 0.0, np.nan, np.sqrt(np.maximum(ahi, 0.0)))
    if kind == 'sin':
        return _isin(alo, ahi)
    if kind == 'cos':
        return _isin(alo + _HALF_PI, ahi + _HALF_PI)
    if kind == 'exp':
        return np.exp(alo), np.exp(ahi)
    raise ShapeBuildError(f"unsupported operator '{kind}'")


def _value_step(kind, a, b):
    if kind == 'add':
        return a + b
    if kind == 'sub':
        return a - b
    if kind == 'mul':
        return a * b
    if kind == 'div':
        return a / b
    if kind == 'min':
        return np.minimum(a, b)
    if kind == 'max':
        return np.maximum(a, b)
    if kind == 'neg':
        return -a
    if kind == 'abs':
        return np.abs(a)
    if kind == 'square':
        return a * a
    if kind == 'sqrt':
        return np.sqrt(a)
    if kind == 'sin':
        return np.sin(a)
    if kind == 'cos':
        return np.cos(a)
    if kind == 'exp':
        return np.exp(a)
    raise ShapeBuildError(f"unsupported operator '{kind}'")


# --- gradient helpers ---------------------------------------------------
# a gradient of None stands for zero (a constant sub-expression)


def _gsum(ga, gb):
    if ga is None:
        return gb
    if gb is None:
        return ga
    return ga + gb


def _gscale(g, s):
    if g is None:
        return None
    return g * np.asarray(s, dtype=np.float64)[..., None]


def _gselect(mask, ga, gb, n):
    if ga is None and gb is None:
        return None
    ga = np.zeros((n, 3)) if ga is None else ga
    gb = np.zeros((n, 3)) if gb is None else gb
    return np.where(np.asarray(mask)[..., None], ga, gb)


def _gradient_step(kind, a, b, n):
    va, ga = a
    vb, gb = b if b is not None else (None, None)
    v = _value_step(kind, va, vb)
    if kind == 'add':
        g = _gsum(ga, gb)
    elif kind == 'sub':
        g = _gsum(ga, _gscale(gb, -1.0))
    elif kind == 'mul':
        g = _gsum(_gscale(ga, vb), _gscale(gb, va))
    elif kind == 'div':
        g = _gsum(_gscale(ga, 1.0 / vb), _gscale(gb, -va / (vb * vb)))
    elif kind == 'min':
        g = _gselect(va <= vb, ga, gb, n)
    elif kind == 'max':
        g = _gselect(va >= vb, ga, gb, n)
    elif kind == 'neg':
        g = _gscale(ga, -1.0)
    elif kind == 'abs':
        g = _gscale(ga, np.sign(va))
    elif kind == 'square':
        g = _gscale(ga, 2.0 * va)
    elif kind == 'sqrt':
        g = _gscale(ga, 0.5 / v)
    elif kind == 'sin':
        g = _gscale(ga, np.cos(va))
    elif kind == 'cos':
        g = _gscale(ga, -np.sin(va))
    elif kind == 'exp':
        g = _gscale(ga, v)
    else:
        raise ShapeBuildError(f"unsupported operator '{kind}'")
    return v, g


def _as_points(points) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim == 1:
        pts = pts.reshape(1, -1)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"expected an (N, 3) array of points, got shape {pts.shape}")
    return pts


class Shape:
    """An immutable compiled implicit surface."""

    def __init__(self, ctx: Context, root: Node):
        self._tape = _lower(ctx, root)
        self._transform = Matrix()

    @classmethod
    def _from_tape(cls, tape, transform: Matrix) -> "Shape":
        shape = cls.__new__(cls)
        shape._tape = tape
        shape._transform = transform
        return shape

    def __len__(self) -> int:
        return len(self._tape)

    def __repr__(self) -> str:
        return f"Shape({len(self._tape)} instructions)"

    @property
    def transform(self) -> Matrix:
        """The input transform ``M`` in ``g(p) = f(M p)``."""
        return self._transform

    def apply_transform(self, matrix) -> "Shape":
        """Return a shape whose input coordinates are first mapped by ``matrix``.

        ``shape.apply_transform(T)(p) == shape(T p)``.
        """
        if not isinstance(matrix, Matrix):
            matrix = Matrix(matrix)
        if not matrix.is_affine():
            raise ValueError("only affine transforms are supported")
        return Shape._from_tape(self._tape, self._transform.mul(matrix))

    # --- evaluation ---

    def _model_points(self, pts: np.ndarray) -> np.ndarray:
        return self._transform.transform_points(pts)

    def _run(self, step, columns, constant):
        regs = []
        with np.errstate(all='ignore'):
            for kind, a, b in self._tape:
                if kind == 'const':
                    regs.append(constant(a))
                elif kind == 'var':
                    regs.append(columns[a])
                else:
                    regs.append(step(kind, regs[a], None if b is None else regs[b]))
        return regs[-1]

    def eval_array(self, points) -> np.ndarray:
        """Evaluate at each row of an (N, 3) array; returns float32 (N,)."""
        pts = _as_points(points)
        model = self._model_points(pts)
        columns = [model[:, 0], model[:, 1], model[:, 2]]
        result = self._run(_value_step, columns, lambda c: np.float64(c))
        return np.broadcast_to(result, (len(pts),)).astype(np.float32)

    def eval_point(self, x: float, y: float, z: float) -> float:
        return float(self.eval_array([[x, y, z]])[0])

    def eval_interval(self, lower, upper) -> Tuple[np.ndarray, np.ndarray]:
        """Conservative bounds of the function over each box ``[lower, upper]``.

        Returns ``(lo, hi)`` float64 arrays of length N.
        """
        lower = _as_points(lower)
        upper = _as_points(upper)
        model_lo, model_hi = self._transform.transform_boxes(lower, upper)
        columns = [(model_lo[:, i], model_hi[:, i]) for i in range(3)]

        def _step(kind, a, b):
            return _interval_step(kind, a, b if b is not None else (None, None))

        lo, hi = self._run(_step, columns, lambda c: (np.float64(c), np.float64(c)))
        n = len(lower)
        lo = np.array(np.broadcast_to(lo, (n,)), dtype=np.float64)
        hi = np.array(np.broadcast_to(hi, (n,)), dtype=np.float64)
        bad = np.isnan(lo) | np.isnan(hi)
        lo[bad] = -np.inf
        hi[bad] = np.inf
        finite = np.isfinite(lo)
        lo[finite] -= _SLOP * (1.0 + np.abs(lo[finite]))
        finite = np.isfinite(hi)
        hi[finite] += _SLOP * (1.0 + np.abs(hi[finite]))
        return lo, hi

    def eval_gradient(self, points) -> Tuple[np.ndarray, np.ndarray]:
        """Values and gradients at each row of an (N, 3) array.

        Returns float32 arrays of shape (N,) and (N, 3).  Gradients are with
        respect to the shape's own input coordinates.
        """
        pts = _as_points(points)
        n = len(pts)
        model = self._model_points(pts)
        eye = np.identity(3)
        columns = [(model[:, i], np.broadcast_to(eye[i], (n, 3))) for i in range(3)]

        def _step(kind, a, b):
            return _gradient_step(kind, a, b, n)

        v, g = self._run(_step, columns, lambda c: (np.float64(c), None))
        values = np.broadcast_to(v, (n,)).astype(np.float32)
        if g is None:
            return values, np.zeros((n, 3), dtype=np.float32)
        with np.errstate(all='ignore'):
            grads = np.broadcast_to(g, (n, 3)) @ self._transform.linear
        return values, grads.astype(np.float32)


def is_inside(values: Sequence[float]) -> np.ndarray:
    """Sign convention: strictly negative is inside; NaN counts as outside."""
    with np.errstate(invalid='ignore'):
        return np.asarray(values) < 0
