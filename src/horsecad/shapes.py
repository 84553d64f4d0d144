"""
Primitive, combinator and deform builders.

Every builder returns a ``Tree``; numbers are accepted anywhere a shape is
expected and become constants.  Primitives are signed distance functions
(or bounds of one) so that gradients give usable surface normals.
"""

from functools import reduce
from typing import Sequence, Tuple
import math
import numbers

from .expr import Tree, X, Y, Z, sqrt, square, sin, cos, minimum, maximum
from .xform import Matrix, Rotation, Scale

Vec3 = Tuple[float, float, float]


def _vec3(value, name: str = "vector") -> Vec3:
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        return float(value), float(value), float(value)
    try:
        items = [float(v) for v in value]
    except (TypeError, ValueError):
        raise TypeError(f"{name} must be a number or a sequence of three numbers")
    if len(items) != 3:
        raise ValueError(f"{name} must have three components, got {len(items)}")
    return items[0], items[1], items[2]


def _positive(value, name: str) -> float:
    value = float(value)
    if not value > 0 or not math.isfinite(value):
        raise ValueError(f"{name} must be a positive number, got {value}")
    return value


def _shifted(axis: Tree, offset: float) -> Tree:
    return axis if offset == 0 else axis - offset


def _balanced(op, shapes):
    """Fold ``shapes`` pairwise so the tree depth grows logarithmically."""
    items = [Tree.wrap(s) for s in shapes]
    if not items:
        raise ValueError("at least one shape is required")
    while len(items) > 1:
        paired = [op(items[i], items[i + 1]) for i in range(0, len(items) - 1, 2)]
        if len(items) % 2:
            paired.append(items[-1])
        items = paired
    return items[0]


# --- primitives ---

def sphere(radius: float = 1.0, center=(0.0, 0.0, 0.0)) -> Tree:
    radius = _positive(radius, "radius")
    cx, cy, cz = _vec3(center, "center")
    return sqrt(square(_shifted(X, cx)) + square(_shifted(Y, cy))
                + square(_shifted(Z, cz))) - radius


def box(lower=(-0.5, -0.5, -0.5), upper=(0.5, 0.5, 0.5)) -> Tree:
    """Axis-aligned box between two corners."""
    lo = _vec3(lower, "lower")
    hi = _vec3(upper, "upper")
    if any(h <= l for l, h in zip(lo, hi)):
        raise ValueError("box upper corner must exceed the lower corner on every axis")
    q = [abs(_shifted(axis, 0.5 * (l + h))) - 0.5 * (h - l)
         for axis, l, h in zip((X, Y, Z), lo, hi)]
    outside = sqrt(reduce(lambda a, b: a + b, (square(maximum(qi, 0.0)) for qi in q)))
    inside = minimum(maximum(maximum(q[0], q[1]), q[2]), 0.0)
    return outside + inside


def cylinder(radius: float = 0.5, height: float = 1.0, base=(0.0, 0.0, 0.0)) -> Tree:
    """Cylinder along +z, standing on ``base``."""
    radius = _positive(radius, "radius")
    height = _positive(height, "height")
    bx, by, bz = _vec3(base, "base")
    radial = sqrt(square(_shifted(X, bx)) + square(_shifted(Y, by))) - radius
    axial = maximum(bz - Z, Z - (bz + height))
    return maximum(radial, axial)


def torus(major: float = 0.5, minor: float = 0.2, center=(0.0, 0.0, 0.0)) -> Tree:
    """Torus around the z axis."""
    major = _positive(major, "major radius")
    minor = _positive(minor, "minor radius")
    cx, cy, cz = _vec3(center, "center")
    ring = sqrt(square(_shifted(X, cx)) + square(_shifted(Y, cy))) - major
    return sqrt(square(ring) + square(_shifted(Z, cz))) - minor


def half_space(normal=(0.0, 0.0, 1.0), offset: float = 0.0) -> Tree:
    """Everything below the plane ``normal . p = offset``."""
    nx, ny, nz = _vec3(normal, "normal")
    length = math.sqrt(nx * nx + ny * ny + nz * nz)
    if length == 0:
        raise ValueError("normal must be non-zero")
    nx, ny, nz = nx / length, ny / length, nz / length
    return _linear(((nx, ny, nz),), (-float(offset),))[0]


def gyroid(period: float = 0.5, thickness: float = 0.05) -> Tree:
    """Gyroid lattice with walls of the given thickness."""
    k = 2.0 * math.pi / _positive(period, "period")
    thickness = _positive(thickness, "thickness")
    sx, sy, sz = sin(X * k), sin(Y * k), sin(Z * k)
    cx, cy, cz = cos(X * k), cos(Y * k), cos(Z * k)
    return abs(sx * cy + sy * cz + sz * cx) - thickness


# --- combinators ---

def union(*shapes) -> Tree:
    return _balanced(minimum, shapes)


def intersection(*shapes) -> Tree:
    return _balanced(maximum, shapes)


def difference(shape, *cutters) -> Tree:
    if not cutters:
        return Tree.wrap(shape)
    return maximum(shape, -union(*cutters))


def inverse(shape) -> Tree:
    return -Tree.wrap(shape)


def blend(a, b, radius: float) -> Tree:
    """Union of two shapes with a fillet of the given radius."""
    radius = _positive(radius, "blend radius")
    a = Tree.wrap(a)
    b = Tree.wrap(b)
    h = maximum(radius - abs(a - b), 0.0) / radius
    return minimum(a, b) - square(h) * (radius * 0.25)


def shell(shape, thickness: float) -> Tree:
    """Hollow out a shape, leaving walls of ``thickness``."""
    thickness = _positive(thickness, "thickness")
    return abs(Tree.wrap(shape)) - thickness * 0.5


def offset(shape, distance: float) -> Tree:
    """Grow (positive) or shrink (negative) a shape."""
    return Tree.wrap(shape) - float(distance)


# --- deforms ---

def _linear(rows, offsets):
    terms = []
    for row, off in zip(rows, offsets):
        parts = [axis * c if c != 1.0 else axis
                 for axis, c in zip((X, Y, Z), row) if c != 0.0]
        expr = reduce(lambda a, b: a + b, parts) if parts else Tree.wrap(0.0)
        terms.append(expr + off if off != 0.0 else expr)
    return terms


def transform(shape, matrix: Matrix) -> Tree:
    """Move a shape by an affine ``matrix`` (output point = matrix * input)."""
    if not isinstance(matrix, Matrix):
        matrix = Matrix(matrix)
    inv = matrix.inverse()
    rows = inv.linear.tolist()
    return Tree.wrap(shape).remap(*_linear(rows, inv.offset.tolist()))


def move(shape, delta) -> Tree:
    dx, dy, dz = _vec3(delta, "offset")
    return Tree.wrap(shape).remap(_shifted(X, dx), _shifted(Y, dy), _shifted(Z, dz))


def scale(shape, factor) -> Tree:
    """Scale about the origin, uniformly or per axis."""
    sx, sy, sz = _vec3(factor, "scale")
    if 0.0 in (sx, sy, sz):
        raise ValueError("scale factors must be non-zero")
    return transform(shape, Scale(sx, sy, sz))


def rotate(shape, axis: Sequence[float], angle: float) -> Tree:
    """Rotate about an axis through the origin; ``angle`` in degrees."""
    return transform(shape, Rotation(_vec3(axis, "axis"), float(angle)))


def rotate_x(shape, angle: float) -> Tree:
    return rotate(shape, (1.0, 0.0, 0.0), angle)


def rotate_y(shape, angle: float) -> Tree:
    return rotate(shape, (0.0, 1.0, 0.0), angle)


def rotate_z(shape, angle: float) -> Tree:
    return rotate(shape, (0.0, 0.0, 1.0), angle)


def twist(shape, turns_per_unit: float) -> Tree:
    """Twist about the z axis by ``turns_per_unit`` full turns per unit of z."""
    rate = 2.0 * math.pi * float(turns_per_unit)
    if rate == 0:
        return Tree.wrap(shape)
    c, s = cos(Z * rate), sin(Z * rate)
    return Tree.wrap(shape).remap(X * c + Y * s, Y * c - X * s, Z)
