"""Triangle meshes produced by dual contouring."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple

import numpy as np

Vec3 = Tuple[float, float, float]
TriTuple = Tuple[Vec3, Vec3, Vec3, Vec3]


def _empty_vertices():
    return np.zeros((0, 3), dtype=np.float32)


def _empty_triangles():
    return np.zeros((0, 3), dtype=np.int64)


@dataclass
class Mesh:
    """Indexed triangle mesh.

    ``vertices`` is a float32 (V, 3) array, ``triangles`` an integer (T, 3)
    array of vertex indices wound counter-clockwise seen from outside.
    ``normals`` optionally holds one unit normal per vertex.
    """

    vertices: np.ndarray = field(default_factory=_empty_vertices)
    triangles: np.ndarray = field(default_factory=_empty_triangles)
    normals: Optional[np.ndarray] = None

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=np.float32).reshape(-1, 3)
        self.triangles = np.asarray(self.triangles, dtype=np.int64).reshape(-1, 3)
        if self.normals is not None:
            self.normals = np.asarray(self.normals, dtype=np.float32).reshape(-1, 3)
        if len(self.triangles) and (self.triangles.min() < 0
                                    or self.triangles.max() >= len(self.vertices)):
            raise ValueError("triangle refers to a missing vertex")

    def __len__(self) -> int:
        return len(self.triangles)

    @property
    def triangle_count(self) -> int:
        return len(self.triangles)

    def facets(self) -> np.ndarray:
        """Vertex positions of every triangle, shape (T, 3, 3)."""
        return self.vertices[self.triangles]

    def facet_normals(self) -> np.ndarray:
        """Unit normals from triangle winding; zero for degenerate triangles."""
        tris = self.facets().astype(np.float64)
        n = np.cross(tris[:, 1] - tris[:, 0], tris[:, 2] - tris[:, 0])
        length = np.linalg.norm(n, axis=1)
        ok = length > 1e-20
        n[ok] /= length[ok, None]
        n[~ok] = 0.0
        return n.astype(np.float32)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Axis-aligned ``(lower, upper)`` corners of the mesh."""
        if not len(self.vertices):
            zero = np.zeros(3, dtype=np.float32)
            return zero, zero
        return self.vertices.min(axis=0), self.vertices.max(axis=0)

    def volume(self) -> float:
        """Signed enclosed volume; positive when triangles face outward."""
        tris = self.facets().astype(np.float64)
        return float(np.einsum('ij,ij->i', tris[:, 0],
                               np.cross(tris[:, 1], tris[:, 2])).sum() / 6.0)

    def triangles_view(self) -> Iterator[TriTuple]:
        """Yield ``(normal, v0, v1, v2)`` tuples, one per triangle."""
        normals = self.facet_normals()
        for n, tri in zip(normals, self.facets()):
            yield (tuple(float(c) for c in n),
                   tuple(float(c) for c in tri[0]),
                   tuple(float(c) for c in tri[1]),
                   tuple(float(c) for c in tri[2]))


def edge_use(mesh: Mesh) -> Counter:
    """Count how many triangles use each undirected edge."""
    counts: Counter = Counter()
    for a, b, c in mesh.triangles.tolist():
        for u, v in ((a, b), (b, c), (c, a)):
            counts[(u, v) if u < v else (v, u)] += 1
    return counts


def is_watertight(mesh: Mesh) -> bool:
    """True when every edge is shared by exactly two consistently wound triangles."""
    directed: Counter = Counter()
    for a, b, c in mesh.triangles.tolist():
        directed.update(((a, b), (b, c), (c, a)))
    if any(n != 1 for n in directed.values()):
        return False
    return all(directed[(v, u)] == 1 for u, v in directed)
