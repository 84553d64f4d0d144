## adaptive octrees and dual contouring for horsecad implicit shapes
## Copyright (c) 2020 Richard DeVaul

# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""adaptive octrees over implicit shapes, feature vertices, and dual contouring"""

import logging
import os
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .errors import MeshError
from .mesh import Mesh
from .shape import Shape, is_inside

logger = logging.getLogger(__name__)

MAX_DEPTH = 255
THREADS_ENV = 'HORSECAD_THREADS'

## octants and cell corners share one numbering: bit 0 is x, bit 1
## is y, bit 2 is z.  Corner c of a cell at lattice index (i,j,k) is
## the lattice point (i + c&1, j + c>>1&1, k + c>>2&1).

CORNERS = np.array([[c & 1, (c >> 1) & 1, (c >> 2) & 1] for c in range(8)],
                   dtype=np.int64)
CORNER_OFFSETS = [tuple(int(v) for v in row) for row in CORNERS]

## the twelve cell edges as (lower corner, upper corner, axis)
EDGES = tuple((c, c | (1 << axis), axis)
              for axis in range(3) for c in range(8) if not c & (1 << axis))
_EDGE_LO = np.array([e[0] for e in EDGES])
_EDGE_HI = np.array([e[1] for e in EDGES])

## (b, c) offsets of the four cells around an edge along axis a, with
## (a, b, c) cyclic; counter-clockwise seen from +a
_RING = ((-1, -1), (0, -1), (0, 0), (-1, 0))

OUTSIDE, INSIDE, AMBIGUOUS = 0, 1, 2

_FORK_DEPTH = 2
_REFINE_STEPS = 4
# eigenvalues of AtA below this fraction of the largest are dropped
_QEF_CUTOFF = 0.01


@dataclass(frozen=True)
class Settings:
    """Octree build settings.

    ``depth`` is the maximum subdivision depth (0-255).  ``threads`` is an
    executor for the parallel build, or None to build serially.
    """
    depth: int = 3
    threads: Optional[Executor] = None

    def __post_init__(self):
        if isinstance(self.depth, bool) or not isinstance(self.depth, (int, np.integer)):
            raise ValueError(f"depth must be an integer, got {self.depth!r}")
        if not 0 <= self.depth <= MAX_DEPTH:
            raise ValueError(f"depth must be between 0 and {MAX_DEPTH}, got {self.depth}")
        if self.threads is not None and not isinstance(self.threads, Executor):
            raise ValueError("threads must be a concurrent.futures.Executor or None")


_pool: Optional[ThreadPoolExecutor] = None
_pool_lock = threading.Lock()


def pool_size() -> int:
    """Worker count for the global pool: $HORSECAD_THREADS or the CPU count."""
    value = os.environ.get(THREADS_ENV)
    if value:
        try:
            n = int(value)
        except ValueError:
            n = 0
        if n >= 1:
            return n
        logger.warning("ignoring %s=%r; expected a positive integer", THREADS_ENV, value)
    return os.cpu_count() or 1


def global_pool() -> ThreadPoolExecutor:
    """The process-wide worker pool, created on first use."""
    global _pool
    with _pool_lock:
        if _pool is None:
            size = pool_size()
            logger.debug("starting octree pool with %d workers", size)
            _pool = ThreadPoolExecutor(max_workers=size,
                                       thread_name_prefix='horsecad-octree')
        return _pool


class Leaf:
    """A terminal octree cell.

    ``mask`` has bit c set when corner c is inside.  ``values`` holds the
    eight corner values for cells at the maximum depth whose sign was not
    proven by interval evaluation.  ``vertex`` and ``normal`` are set for
    cells the surface crosses.
    """

    __slots__ = ('depth', 'index', 'mask', 'values', 'vertex', 'normal')

    def __init__(self, depth, index, mask, values=None):
        self.depth = depth
        self.index = index
        self.mask = mask
        self.values = values
        self.vertex = None
        self.normal = None

    def __repr__(self):
        return 'Leaf(depth={}, index={}, mask={:#04x})'.format(
            self.depth, self.index, self.mask)

    @property
    def crossing(self):
        return 0 < self.mask < 0xFF

    def inside(self, corner):
        return bool((self.mask >> corner) & 1)


class Branch:
    """An interior octree cell with exactly eight children in octant order."""

    __slots__ = ('depth', 'index', 'children')

    def __init__(self, depth, index, children):
        self.depth = depth
        self.index = index
        self.children = children

    def __repr__(self):
        return 'Branch(depth={}, index={})'.format(self.depth, self.index)


def _uniform(depth, index, state):
    return Leaf(depth, index, 0xFF if state == INSIDE else 0)


def _corner_leaf(depth, index, values):
    values = np.asarray(values, dtype=np.float32)
    inside = is_inside(values)
    mask = sum(1 << c for c in range(8) if inside[c])
    return Leaf(depth, index, mask, values)


def iter_leaves(node) -> Iterator[Leaf]:
    """Depth-first leaves under ``node`` in octant order."""
    stack = [node]
    while stack:
        n = stack.pop()
        if isinstance(n, Branch):
            stack.extend(reversed(n.children))
        else:
            yield n


def _root_fraction(vin, vout):
    with np.errstate(all='ignore'):
        t = vin / (vin - vout)
    return np.where(np.isfinite(t), np.clip(t, 0.0, 1.0), 0.5)


def _solve_qef(owner, count, points, normals, lower, upper):
    """Feature vertex per cell from its edge crossings and normals.

    Minimizes sum((n . (x - p))^2) with a truncated pseudo-inverse about
    the mass point, then clamps the result into the cell.
    """
    ata = np.zeros((count, 3, 3))
    atb = np.zeros((count, 3))
    mass = np.zeros((count, 3))
    nsum = np.zeros((count, 3))
    np.add.at(ata, owner, normals[:, :, None] * normals[:, None, :])
    np.add.at(atb, owner, normals * np.einsum('ij,ij->i', normals, points)[:, None])
    np.add.at(mass, owner, points)
    np.add.at(nsum, owner, normals)
    mass /= np.bincount(owner, minlength=count)[:, None]

    w, v = np.linalg.eigh(ata)
    keep = (w > _QEF_CUTOFF * w.max(axis=1, keepdims=True)) & (w > 1e-12)
    inv = np.where(keep, 1.0 / np.where(keep, w, 1.0), 0.0)
    rhs = atb - np.einsum('nij,nj->ni', ata, mass)
    proj = np.einsum('nji,nj->ni', v, rhs) * inv
    vertex = np.clip(mass + np.einsum('nij,nj->ni', v, proj), lower, upper)

    length = np.linalg.norm(nsum, axis=1)
    ok = length > 1e-12
    nsum[ok] /= length[ok, None]
    nsum[~ok] = 0.0
    return vertex, nsum


def _root_bounds(shape: Shape) -> Tuple[np.ndarray, np.ndarray]:
    """Axis-aligned bound of the unit cube [-1,1]^3 pulled back through the shape transform."""
    try:
        inverse = shape.transform.inverse()
    except ValueError:
        raise MeshError("shape transform is singular") from None
    corners = inverse.transform_points(CORNERS * 2.0 - 1.0)
    lower = corners.min(axis=0)
    upper = corners.max(axis=0)
    if not (np.all(np.isfinite(lower)) and np.all(np.isfinite(upper))
            and np.all(upper > lower)):
        raise MeshError("meshing region is empty")
    return lower, upper


class _Builder:
    """Builds and solves an octree over one shape and region.

    The meshed function is ``max(g(p), box(p))`` where ``box`` is a
    distance to the region shrunk by half a finest cell, so every cell on
    the region boundary is outside and the surface is always closed.
    """

    def __init__(self, shape: Shape, lower, upper, depth: int):
        self.shape = shape
        self.depth = int(depth)
        self.lower = lower
        self.step = (upper - lower) / 2.0 ** depth
        self.center = 0.5 * (lower + upper)
        self.half = 0.5 * (upper - lower) - 0.5 * self.step
        self.norm = float(0.5 * np.max(upper - lower))

    ## lattice points are always computed from integer indices at the
    ## finest depth, so neighbouring cells see bit-identical corners

    def lattice(self, corners) -> np.ndarray:
        return self.lower + np.asarray(corners, dtype=np.float64).reshape(-1, 3) * self.step

    def bounds(self, depth, indices):
        span = 1 << (self.depth - depth)
        base = [(i * span, j * span, k * span) for i, j, k in indices]
        top = [(i + span, j + span, k + span) for i, j, k in base]
        return self.lattice(base), self.lattice(top)

    # --- the clipped function ---

    def values(self, points) -> np.ndarray:
        v = self.shape.eval_array(points).astype(np.float64)
        clip = np.max(np.abs(points - self.center) - self.half, axis=1) / self.norm
        return np.maximum(v, clip).astype(np.float32)

    def gradients(self, points) -> np.ndarray:
        v, g = self.shape.eval_gradient(points)
        d = points - self.center
        excess = np.abs(d) - self.half
        axis = np.argmax(excess, axis=1)
        rows = np.arange(len(points))
        clip = excess[rows, axis] / self.norm
        gclip = np.zeros((len(points), 3))
        gclip[rows, axis] = np.sign(d[rows, axis]) / self.norm
        return np.where((clip > v)[:, None], gclip, g.astype(np.float64))

    def intervals(self, lower, upper):
        flo, fhi = self.shape.eval_interval(lower, upper)
        dlo = lower - self.center
        dhi = upper - self.center
        alo = np.where(dlo >= 0.0, dlo, np.where(dhi <= 0.0, -dhi, 0.0))
        ahi = np.maximum(-dlo, dhi)
        clo = np.max(alo - self.half, axis=1) / self.norm
        chi = np.max(ahi - self.half, axis=1) / self.norm
        return np.maximum(flo, clo), np.maximum(fhi, chi)

    def classify(self, depth, indices) -> List[int]:
        lo, hi = self.intervals(*self.bounds(depth, indices))
        return np.where(lo > 0, OUTSIDE, np.where(hi < 0, INSIDE, AMBIGUOUS)).tolist()

    # --- construction ---

    def children(self, depth, index):
        i, j, k = index
        indices = [(2 * i + dx, 2 * j + dy, 2 * k + dz) for dx, dy, dz in CORNER_OFFSETS]
        return indices, self.classify(depth + 1, indices)

    def node(self, depth, index, state):
        if state != AMBIGUOUS:
            return _uniform(depth, index, state)
        if depth == self.depth:
            i, j, k = index
            corners = [(i + dx, j + dy, k + dz) for dx, dy, dz in CORNER_OFFSETS]
            return _corner_leaf(depth, index, self.values(self.lattice(corners)))
        return self.split(depth, index)

    def split(self, depth, index):
        indices, states = self.children(depth, index)
        d = depth + 1
        if d < self.depth:
            return Branch(depth, index,
                          [self.node(d, ci, st) for ci, st in zip(indices, states)])

        # children are at the finest depth: sample the parent's 3x3x3
        # lattice once and hand each ambiguous child its eight corners
        grid = None
        if AMBIGUOUS in states:
            i, j, k = (2 * v for v in index)
            points = self.lattice([(i + a, j + b, k + c)
                                   for a in range(3) for b in range(3) for c in range(3)])
            grid = self.values(points).reshape(3, 3, 3)
        children = []
        for (dx, dy, dz), ci, st in zip(CORNER_OFFSETS, indices, states):
            if st != AMBIGUOUS:
                children.append(_uniform(d, ci, st))
            else:
                corner_values = grid[dx + CORNERS[:, 0], dy + CORNERS[:, 1], dz + CORNERS[:, 2]]
                children.append(_corner_leaf(d, ci, corner_values))
        return Branch(depth, index, children)

    def subtree(self, depth, index):
        """Build and solve the ambiguous cell at (depth, index)."""
        node = self.node(depth, index, AMBIGUOUS)
        self.solve(list(iter_leaves(node)))
        return node

    def expand(self, depth, index, fork, pending):
        """Split serially down to ``fork``, recording the cells left there."""
        indices, states = self.children(depth, index)
        children = []
        for slot, (ci, st) in enumerate(zip(indices, states)):
            if st != AMBIGUOUS:
                children.append(_uniform(depth + 1, ci, st))
            elif depth + 1 == fork:
                children.append(None)
                pending.append((children, slot, depth + 1, ci))
            else:
                children.append(self.expand(depth + 1, ci, fork, pending))
        return Branch(depth, index, children)

    def build(self, pool: Optional[Executor] = None):
        root = (0, 0, 0)
        state = self.classify(0, [root])[0]
        if state != AMBIGUOUS:
            return _uniform(0, root, state)
        if pool is None or self.depth < 2:
            return self.subtree(0, root)

        fork = min(_FORK_DEPTH, self.depth - 1)
        pending = []
        tree = self.expand(0, root, fork, pending)
        logger.debug("building %d subtrees from depth %d in parallel", len(pending), fork)
        futures = [pool.submit(self.subtree, depth, index)
                   for _, _, depth, index in pending]
        try:
            # stitched by position, never by completion order
            for (children, slot, _, _), future in zip(pending, futures):
                children[slot] = future.result()
        except BaseException:
            for future in futures:
                future.cancel()
            raise
        return tree

    # --- feature vertices ---

    def refine(self, pin, vin, pout, vout):
        """Locate sign changes along edges by regula falsi."""
        for step in range(_REFINE_STEPS + 1):
            t = _root_fraction(vin, vout)
            p = pin + t[:, None] * (pout - pin)
            if step == _REFINE_STEPS:
                return p
            v = self.values(p).astype(np.float64)
            now_in = is_inside(v)
            pin = np.where(now_in[:, None], p, pin)
            vin = np.where(now_in, v, vin)
            pout = np.where(now_in[:, None], pout, p)
            vout = np.where(now_in, vout, v)
        return pin

    def normals(self, points, pin, pout):
        g = self.gradients(points)
        length = np.linalg.norm(g, axis=1)
        ok = np.isfinite(length) & (length > 1e-12)
        along = pout - pin
        fallback = along / np.linalg.norm(along, axis=1)[:, None]
        with np.errstate(all='ignore'):
            unit = g / np.where(ok, length, 1.0)[:, None]
        return np.where(ok[:, None], unit, fallback)

    def solve(self, leaves):
        """Set ``vertex`` and ``normal`` on every crossing leaf, in one batch."""
        leaves = [leaf for leaf in leaves if leaf.crossing and leaf.values is not None]
        if not leaves:
            return
        count = len(leaves)
        corners = self.lattice([(i + dx, j + dy, k + dz)
                                for i, j, k in (leaf.index for leaf in leaves)
                                for dx, dy, dz in CORNER_OFFSETS]).reshape(count, 8, 3)
        values = np.array([leaf.values for leaf in leaves], dtype=np.float64)
        inside = is_inside(values)

        owner, edge = np.nonzero(inside[:, _EDGE_LO] != inside[:, _EDGE_HI])
        a = _EDGE_LO[edge]
        b = _EDGE_HI[edge]
        a_in = inside[owner, a]
        pa, pb = corners[owner, a], corners[owner, b]
        va, vb = values[owner, a], values[owner, b]
        pin = np.where(a_in[:, None], pa, pb)
        pout = np.where(a_in[:, None], pb, pa)
        vin = np.where(a_in, va, vb)
        vout = np.where(a_in, vb, va)

        points = self.refine(pin, vin, pout, vout)
        normals = self.normals(points, pin, pout)
        vertex, normal = _solve_qef(owner, count, points, normals,
                                    corners[:, 0], corners[:, 7])
        for leaf, v, n in zip(leaves, vertex.tolist(), normal.tolist()):
            leaf.vertex = tuple(v)
            leaf.normal = tuple(n)


def _edge_cells(corner, axis):
    b = (axis + 1) % 3
    c = (axis + 2) % 3
    cells = []
    for ob, oc in _RING:
        cell = list(corner)
        cell[b] += ob
        cell[c] += oc
        cells.append(tuple(cell))
    return cells


def _dist2(p, q):
    return (p[0] - q[0]) ** 2 + (p[1] - q[1]) ** 2 + (p[2] - q[2]) ** 2


class Octree:
    """An adaptive octree over a shape's meshing region.

    Build with ``Octree.build(shape, settings)``; extract a mesh with
    ``walk_dual()``.
    """

    def __init__(self, root, lower, upper, depth):
        self.root = root
        self.lower = np.asarray(lower, dtype=np.float64)
        self.upper = np.asarray(upper, dtype=np.float64)
        self.depth = int(depth)
        self.step = (self.upper - self.lower) / 2.0 ** depth
        self._finest: Optional[Dict[tuple, Leaf]] = None

    def __repr__(self):
        return 'Octree(depth={}, lower={}, upper={})'.format(
            self.depth, self.lower.tolist(), self.upper.tolist())

    @classmethod
    def build(cls, shape: Shape, settings: Optional[Settings] = None) -> "Octree":
        """Build and solve an octree for ``shape``.

        The region is the bound of [-1,1]^3 under the inverse of the shape
        transform.  Raises MeshError if that region is empty or singular.
        """
        settings = settings or Settings()
        lower, upper = _root_bounds(shape)
        builder = _Builder(shape, lower, upper, settings.depth)
        root = builder.build(settings.threads)
        tree = cls(root, lower, upper, settings.depth)
        logger.debug("octree built: depth %d, %d leaves", settings.depth,
                     sum(1 for _ in tree.leaves()))
        return tree

    def leaves(self) -> Iterator[Leaf]:
        return iter_leaves(self.root)

    def crossing_leaves(self) -> Iterator[Leaf]:
        return (leaf for leaf in self.leaves() if leaf.crossing)

    def leaf_bounds(self, leaf) -> Tuple[np.ndarray, np.ndarray]:
        span = 1 << (self.depth - leaf.depth)
        base = np.asarray(leaf.index, dtype=np.float64) * span
        return self.lower + base * self.step, self.lower + (base + span) * self.step

    def leaf_center(self, leaf) -> Tuple[float, float, float]:
        lo, hi = self.leaf_bounds(leaf)
        return tuple((0.5 * (lo + hi)).tolist())

    def _table(self) -> Dict[tuple, Leaf]:
        if self._finest is None:
            self._finest = {leaf.index: leaf for leaf in self.leaves()
                            if leaf.depth == self.depth}
        return self._finest

    def find_leaf(self, cell) -> Optional[Leaf]:
        """The leaf containing finest-depth cell ``cell``, or None outside the region."""
        n = 1 << self.depth
        if not all(0 <= c < n for c in cell):
            return None
        leaf = self._table().get(tuple(cell))
        if leaf is not None:
            return leaf
        node = self.root
        while isinstance(node, Branch):
            shift = self.depth - node.depth - 1
            octant = (((cell[0] >> shift) & 1)
                      | (((cell[1] >> shift) & 1) << 1)
                      | (((cell[2] >> shift) & 1) << 2))
            node = node.children[octant]
        return node

    def walk_dual(self) -> Mesh:
        """Extract the dual contouring mesh.

        One quad per sign-changing lattice edge, joining the vertices of the
        four cells around it, split along its shorter diagonal and wound so
        normals point from inside to outside.
        """
        ids: Dict[int, int] = {}
        positions: List[tuple] = []
        normals: List[tuple] = []
        triangles: List[tuple] = []
        seen = set()

        def vertex_id(leaf):
            key = id(leaf)
            if key not in ids:
                ids[key] = len(positions)
                if leaf.vertex is not None:
                    positions.append(leaf.vertex)
                    normals.append(leaf.normal)
                else:
                    positions.append(self.leaf_center(leaf))
                    normals.append((0.0, 0.0, 0.0))
            return ids[key]

        for leaf in self.leaves():
            if not leaf.crossing:
                continue
            i, j, k = leaf.index
            for lo, hi, axis in EDGES:
                inside_lo = leaf.inside(lo)
                if inside_lo == leaf.inside(hi):
                    continue
                dx, dy, dz = CORNER_OFFSETS[lo]
                key = ((i + dx, j + dy, k + dz), axis)
                if key in seen:
                    continue
                seen.add(key)
                quad = [self.find_leaf(cell) for cell in _edge_cells(key[0], axis)]
                if any(q is None for q in quad):
                    continue
                if not inside_lo:
                    quad.reverse()
                v = [vertex_id(q) for q in quad]
                p = [positions[n] for n in v]
                if _dist2(p[0], p[2]) <= _dist2(p[1], p[3]):
                    tris = ((v[0], v[1], v[2]), (v[0], v[2], v[3]))
                else:
                    tris = ((v[0], v[1], v[3]), (v[1], v[2], v[3]))
                for t in tris:
                    if t[0] != t[1] and t[1] != t[2] and t[0] != t[2]:
                        triangles.append(t)

        return Mesh(np.array(positions, dtype=np.float32).reshape(-1, 3),
                    np.array(triangles, dtype=np.int64).reshape(-1, 3),
                    np.array(normals, dtype=np.float32).reshape(-1, 3))
