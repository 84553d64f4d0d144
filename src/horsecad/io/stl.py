"""STL import and export for horsecad meshes."""

from __future__ import annotations

import io
import logging
import re
import struct
from typing import Dict, List, Tuple

import numpy as np

from ..errors import ExportError
from ..mesh import Mesh

logger = logging.getLogger(__name__)

_HEADER_SIZE = 80
_STRUCT_COUNT = struct.Struct('<I')
_STRUCT_TRIANGLE = struct.Struct('<12fH')
_VERTEX_TOL = 1e-9  # Tolerance for vertex deduplication

DEFAULT_NAME = 'horsecad'


def _header(name: str) -> bytes:
    """80-byte binary header; never starts with ``solid`` so readers do not take it for ASCII."""
    header = name.encode('ascii', errors='replace')
    if header.lstrip().lower().startswith(b'solid'):
        header = b'binary ' + header
    return header[:_HEADER_SIZE].ljust(_HEADER_SIZE, b'\0')


def write_stl(mesh: Mesh, path_or_file, *, binary: bool = True,
              name: str = DEFAULT_NAME) -> None:
    """Write ``mesh`` to STL.

    ``path_or_file`` can be a filesystem path or an open binary/text stream.
    Raises ExportError if the data cannot be written.
    """
    try:
        if binary:
            _write_binary(mesh, path_or_file, name)
        else:
            _write_ascii(mesh, path_or_file, name)
    except (OSError, ValueError, TypeError, struct.error) as e:
        raise ExportError(f"could not write STL: {e}", len(mesh)) from e


def stl_bytes(mesh: Mesh, *, name: str = DEFAULT_NAME) -> bytes:
    """Binary STL encoding of ``mesh``."""
    buffer = io.BytesIO()
    write_stl(mesh, buffer, binary=True, name=name)
    return buffer.getvalue()


def _write_binary(mesh: Mesh, path_or_file, name: str) -> None:
    close_when_done = False
    if hasattr(path_or_file, 'write'):
        stream = path_or_file
    else:
        stream = open(path_or_file, 'wb')
        close_when_done = True

    try:
        stream.write(_header(name))
        stream.write(_STRUCT_COUNT.pack(len(mesh)))

        normals = mesh.facet_normals()
        facets = mesh.facets()
        for normal, tri in zip(normals.tolist(), facets.tolist()):
            stream.write(_STRUCT_TRIANGLE.pack(
                *normal,
                *tri[0],
                *tri[1],
                *tri[2],
                0,
            ))
    finally:
        if close_when_done:
            stream.close()


def _write_ascii(mesh: Mesh, path_or_file, name: str) -> None:
    close_when_done = False
    if hasattr(path_or_file, 'write'):
        stream = path_or_file
    else:
        stream = open(path_or_file, 'w', encoding='ascii')
        close_when_done = True

    try:
        print(f"solid {name}", file=stream)
        for n, v0, v1, v2 in mesh.triangles_view():
            print(f"  facet normal {n[0]:.6e} {n[1]:.6e} {n[2]:.6e}", file=stream)
            print("    outer loop", file=stream)
            print(f"      vertex {v0[0]:.6e} {v0[1]:.6e} {v0[2]:.6e}", file=stream)
            print(f"      vertex {v1[0]:.6e} {v1[1]:.6e} {v1[2]:.6e}", file=stream)
            print(f"      vertex {v2[0]:.6e} {v2[1]:.6e} {v2[2]:.6e}", file=stream)
            print("    endloop", file=stream)
            print("  endfacet", file=stream)
        print(f"endsolid {name}", file=stream)
    finally:
        if close_when_done:
            stream.close()


# ---------------------------------------------------------------------------
# STL Import
# ---------------------------------------------------------------------------

Facet = Tuple[Tuple[float, float, float], ...]


def _is_binary_stl(data: bytes) -> bool:
    """Determine if STL data is binary format.

    Binary STL has 80-byte header + 4-byte count, then 50 bytes per triangle.
    ASCII STL starts with 'solid' keyword.
    """
    if len(data) < 84:
        return False

    header = data[:80].decode('ascii', errors='ignore').strip().lower()
    if not header.startswith('solid'):
        return True
    # 'solid' may still open a binary header written by other tools
    tri_count = _STRUCT_COUNT.unpack(data[80:84])[0]
    if len(data) != 84 + tri_count * 50:
        return False
    rest = data[84:min(200, len(data))]
    return not (b'facet' in rest or b'vertex' in rest)


def _parse_binary_stl(data: bytes) -> List[Facet]:
    """Parse binary STL data into (normal, v0, v1, v2) facets."""
    tri_count = _STRUCT_COUNT.unpack(data[80:84])[0]
    if len(data) < 84 + tri_count * 50:
        raise ValueError(f"truncated binary STL: header promises {tri_count} triangles")

    facets = []
    for values in _STRUCT_TRIANGLE.iter_unpack(data[84:84 + tri_count * 50]):
        facets.append((values[0:3], values[3:6], values[6:9], values[9:12]))
    return facets


_FLOAT = r'([eE\d.+-]+)'
_FACET_PATTERN = re.compile(
    r'facet\s+normal\s+' + r'\s+'.join([_FLOAT] * 3) + r'\s+'
    r'outer\s+loop\s+'
    + r''.join(r'vertex\s+' + r'\s+'.join([_FLOAT] * 3) + r'\s+' for _ in range(3))
    + r'endloop\s+endfacet',
    re.IGNORECASE
)


def _parse_ascii_stl(text: str) -> List[Facet]:
    """Parse ASCII STL text into (normal, v0, v1, v2) facets."""
    facets = []
    for match in _FACET_PATTERN.finditer(text):
        values = [float(g) for g in match.groups()]
        facets.append((tuple(values[0:3]), tuple(values[3:6]),
                       tuple(values[6:9]), tuple(values[9:12])))
    return facets


def _vertex_key(v, tol: float = _VERTEX_TOL) -> Tuple[int, int, int]:
    """Create a hashable key for vertex deduplication."""
    scale = 1.0 / tol
    return (int(round(v[0] * scale)), int(round(v[1] * scale)), int(round(v[2] * scale)))


def _facets_to_mesh(facets: List[Facet], deduplicate: bool = True) -> Mesh:
    """Convert parsed facets to an indexed mesh.

    With ``deduplicate`` coincident vertices are merged and their facet
    normals averaged; otherwise every facet gets its own three vertices.
    """
    if not facets:
        return Mesh()

    vertices = []
    normals = []
    faces = []

    if deduplicate:
        vertex_map: Dict[Tuple[int, int, int], int] = {}
        normal_sums: List[np.ndarray] = []
        for normal, *corners in facets:
            face = []
            for v in corners:
                key = _vertex_key(v)
                if key not in vertex_map:
                    vertex_map[key] = len(vertices)
                    vertices.append(v)
                    normal_sums.append(np.zeros(3))
                normal_sums[vertex_map[key]] += normal
                face.append(vertex_map[key])
            faces.append(face)
        for total in normal_sums:
            length = np.linalg.norm(total)
            normals.append(total / length if length > 1e-10 else total)
    else:
        for i, (normal, *corners) in enumerate(facets):
            vertices.extend(corners)
            normals.extend([normal] * 3)
            faces.append([3 * i, 3 * i + 1, 3 * i + 2])

    return Mesh(np.array(vertices, dtype=np.float32),
                np.array(faces, dtype=np.int64),
                np.array(normals, dtype=np.float32))


def read_stl(path_or_file, *, deduplicate: bool = True) -> Mesh:
    """Read an STL file and return a Mesh.

    Parameters
    ----------
    path_or_file : str, path-like, bytes, or file-like
        Path to an STL file, raw STL bytes, or an open file object.
    deduplicate : bool, optional
        If True (default), merge coincident vertices to create a proper
        indexed mesh. If False, each triangle gets its own vertices.

    Examples
    --------
    >>> from horsecad.io.stl import read_stl, write_stl
    >>> mesh = read_stl('model.stl')
    >>> write_stl(mesh, 'copy.stl')
    """
    if isinstance(path_or_file, (bytes, bytearray)):
        data = bytes(path_or_file)
    elif hasattr(path_or_file, 'read'):
        data = path_or_file.read()
        if isinstance(data, str):
            data = data.encode('utf-8')
    else:
        with open(path_or_file, 'rb') as f:
            data = f.read()

    if _is_binary_stl(data):
        facets = _parse_binary_stl(data)
    else:
        facets = _parse_ascii_stl(data.decode('utf-8', errors='replace'))
    logger.debug("read %d facets", len(facets))
    return _facets_to_mesh(facets, deduplicate=deduplicate)


__all__ = ['write_stl', 'stl_bytes', 'read_stl']
