"""
Tests for the Mesh container and dual contouring output.
"""

import math

import numpy as np
import pytest

from horsecad.expr import Context, Tree
from horsecad.mesh import Mesh, edge_use, is_watertight
from horsecad.octree import Octree, Settings
from horsecad.shape import Shape
from horsecad.shapes import box, difference, sphere, torus


def _shape(tree):
    ctx = Context()
    return Shape(ctx, ctx.import_tree(tree))


def _mesh(tree, depth):
    return Octree.build(_shape(tree), Settings(depth)).walk_dual()


@pytest.fixture
def tetra():
    """Unit right tetrahedron with outward winding."""
    vertices = [[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]]
    triangles = [[0, 2, 1], [0, 1, 3], [0, 3, 2], [1, 2, 3]]
    return Mesh(vertices, triangles)


class TestMesh:
    """Test the indexed mesh container."""

    def test_arrays(self, tetra):
        assert tetra.vertices.dtype == np.float32
        assert tetra.triangles.dtype == np.int64
        assert len(tetra) == 4
        assert tetra.triangle_count == 4
        assert tetra.facets().shape == (4, 3, 3)

    def test_empty(self):
        mesh = Mesh()
        assert len(mesh) == 0
        assert mesh.volume() == 0.0
        lower, upper = mesh.bounds()
        assert lower.tolist() == [0, 0, 0]
        assert is_watertight(mesh)

    def test_bad_index(self):
        with pytest.raises(ValueError):
            Mesh([[0, 0, 0], [1, 0, 0]], [[0, 1, 2]])

    def test_facet_normals(self, tetra):
        n = tetra.facet_normals()
        assert n[0].tolist() == [0, 0, -1]
        assert n[1].tolist() == [0, -1, 0]
        assert n[2].tolist() == [-1, 0, 0]
        s = 1 / math.sqrt(3)
        assert n[3].tolist() == pytest.approx([s, s, s])

    def test_degenerate_normal(self):
        mesh = Mesh([[0, 0, 0], [1, 0, 0], [2, 0, 0]], [[0, 1, 2]])
        assert mesh.facet_normals()[0].tolist() == [0, 0, 0]

    def test_volume_and_bounds(self, tetra):
        assert tetra.volume() == pytest.approx(1 / 6)
        lower, upper = tetra.bounds()
        assert lower.tolist() == [0, 0, 0]
        assert upper.tolist() == [1, 1, 1]

    def test_triangles_view(self, tetra):
        items = list(tetra.triangles_view())
        assert len(items) == 4
        normal, v0, v1, v2 = items[0]
        assert normal == (0.0, 0.0, -1.0)
        assert (v0, v1, v2) == ((0.0, 0.0, 0.0), (0.0, 1.0, 0.0), (1.0, 0.0, 0.0))

    def test_watertight(self, tetra):
        assert is_watertight(tetra)
        assert all(n == 2 for n in edge_use(tetra).values())

    def test_open_mesh(self, tetra):
        open_mesh = Mesh(tetra.vertices, tetra.triangles[:3])
        assert not is_watertight(open_mesh)

    def test_inconsistent_winding(self, tetra):
        flipped = tetra.triangles.copy()
        flipped[3] = flipped[3][::-1]
        assert not is_watertight(Mesh(tetra.vertices, flipped))


class TestDualContouring:
    """Test meshes extracted from octrees."""

    def test_depth_zero_is_empty(self):
        mesh = _mesh(sphere(0.5), 0)
        assert len(mesh) == 0
        assert mesh.vertices.shape == (0, 3)

    def test_empty_shape(self):
        assert len(_mesh(Tree.wrap(1.0), 4)) == 0

    def test_sphere_is_closed(self):
        mesh = _mesh(sphere(0.5), 5)
        assert len(mesh) > 0
        assert is_watertight(mesh)
        assert mesh.volume() == pytest.approx(4 / 3 * math.pi * 0.125, rel=0.03)

    def test_unit_sphere(self):
        mesh = _mesh(sphere(1.0), 6)
        assert is_watertight(mesh)
        radii = np.linalg.norm(mesh.vertices, axis=1)
        assert np.all(radii <= 1.02)
        lower, upper = mesh.bounds()
        assert np.all(upper <= 1.0)
        assert np.all(lower >= -1.0)

    def test_counts_grow_with_depth(self):
        counts = [len(_mesh(sphere(0.5), d)) for d in range(1, 6)]
        assert counts == sorted(counts)
        assert counts[0] > 0
        assert counts[-1] > counts[0]

    def test_region_closes_full_shape(self):
        mesh = _mesh(Tree.wrap(-1.0), 3)
        assert is_watertight(mesh)
        assert mesh.volume() == pytest.approx(1.75 ** 3, rel=1e-4)
        lower, upper = mesh.bounds()
        assert lower.tolist() == pytest.approx([-0.875] * 3, abs=1e-5)
        assert upper.tolist() == pytest.approx([0.875] * 3, abs=1e-5)

    def test_facets_face_outward(self):
        mesh = _mesh(sphere(0.5), 4)
        centroids = mesh.facets().mean(axis=1)
        dots = np.einsum('ij,ij->i', mesh.facet_normals(), centroids)
        assert np.mean(dots > 0) > 0.99
        assert mesh.volume() > 0

    def test_vertex_normals(self):
        mesh = _mesh(sphere(0.5), 4)
        assert mesh.normals.shape == mesh.vertices.shape
        assert np.allclose(np.linalg.norm(mesh.normals, axis=1), 1.0, atol=1e-5)

    def test_hollow_and_torus(self):
        cup = difference(box((-0.6, -0.6, -0.6), (0.6, 0.6, 0.6)), sphere(0.45))
        assert is_watertight(_mesh(cup, 4))
        mesh = _mesh(torus(0.5, 0.2), 5)
        assert len(mesh) > 0
        assert mesh.volume() == pytest.approx(2 * math.pi ** 2 * 0.5 * 0.04, rel=0.05)
