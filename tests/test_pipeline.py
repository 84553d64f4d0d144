"""
Tests for the script-to-STL pipeline.
"""

import logging
import struct
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from horsecad import compile_script, emit_log, LogEntry, MeshResult, pipeline
from horsecad.errors import ExportError
from horsecad.io.stl import read_stl
from horsecad.mesh import is_watertight
from horsecad.pipeline import display_transform
from horsecad.utils import prettify_byte_count

SPHERE = "draw(sphere(0.5))"


def _triangle_count(data):
    return struct.unpack('<I', data[80:84])[0]


class TestSuccess:
    """Test successful compiles."""

    def test_sphere(self):
        result = compile_script(SPHERE, 4, threads=False)
        assert result.success
        assert result.error is None
        assert result.triangle_count > 0
        assert len(result.stl_data) == 84 + 50 * result.triangle_count
        assert _triangle_count(result.stl_data) == result.triangle_count
        assert result.stl_data[0:8] == b'horsecad'

    def test_mesh_is_closed(self):
        result = compile_script(SPHERE, 5, threads=False)
        mesh = read_stl(result.stl_data)
        assert is_watertight(mesh)
        lower, upper = mesh.bounds()
        assert lower.tolist() == pytest.approx([-0.5] * 3, abs=0.03)
        assert upper.tolist() == pytest.approx([0.5] * 3, abs=0.03)

    def test_empty_shape(self):
        result = compile_script("draw(1.0)", 4, threads=False)
        assert result.success
        assert result.triangle_count == 0
        assert len(result.stl_data) == 84

    def test_depth_zero(self):
        result = compile_script(SPHERE, 0, threads=False)
        assert result.success
        assert result.triangle_count == 0

    def test_deterministic(self):
        a = compile_script(SPHERE, 4, threads=False)
        b = compile_script(SPHERE, 4, threads=False)
        assert a.stl_data == b.stl_data

    def test_threaded(self):
        serial = compile_script(SPHERE, 4, threads=False)
        with ThreadPoolExecutor(3) as pool:
            threaded = compile_script(SPHERE, 4, threads=pool)
        assert threaded.success
        assert threaded.triangle_count == serial.triangle_count
        assert compile_script(SPHERE, 3).success

    def test_to_dict(self):
        result = compile_script(SPHERE, 2, threads=False)
        d = result.to_dict()
        assert d['success'] is True
        assert d['error'] is None
        assert d['triangle_count'] == result.triangle_count
        assert d['stl_data'] == list(result.stl_data)
        assert MeshResult(False, error="boom").to_dict()['stl_data'] is None


class TestTransform:
    """Test display scale and center."""

    def test_scale_doubles_coordinates(self):
        one = compile_script(SPHERE, 4, scale=1.0, threads=False)
        two = compile_script(SPHERE, 4, scale=2.0, threads=False)
        assert one.triangle_count == two.triangle_count
        a = read_stl(one.stl_data, deduplicate=False)
        b = read_stl(two.stl_data, deduplicate=False)
        assert np.array_equal(b.vertices, 2 * a.vertices)
        assert np.array_equal(b.normals, a.normals)

    def test_script_scale_multiplies(self):
        from_script = compile_script("set_scale(2.0)\n" + SPHERE, 3, threads=False)
        from_request = compile_script(SPHERE, 3, scale=2.0, threads=False)
        assert from_script.stl_data == from_request.stl_data
        both = compile_script("set_scale(0.5)\n" + SPHERE, 3, scale=4.0, threads=False)
        assert both.stl_data == from_request.stl_data

    def test_center_moves_mesh(self):
        result = compile_script("draw(sphere(0.25))", 4, center=(0.25, 0, 0), threads=False)
        mesh = read_stl(result.stl_data)
        lower, upper = mesh.bounds()
        assert float(lower[0] + upper[0]) / 2 == pytest.approx(0.25, abs=0.02)
        assert float(lower[1] + upper[1]) / 2 == pytest.approx(0.0, abs=0.02)

    def test_display_transform(self):
        m = display_transform(2.0, (1.0, 0.0, 0.0))
        assert m.mul([2, 0, 0]) == [0, 0, 0, 1]


class TestFailures:
    """Test failure reporting."""

    def test_no_draw(self):
        result = compile_script("s = sphere(1)")
        assert not result.success
        assert result.stl_data is None
        assert result.triangle_count is None
        assert result.error == ("Script compilation failed: "
                                "script must include a draw(shape) call")

    def test_two_draws(self):
        result = compile_script("draw(x)\ndraw(y)")
        assert not result.success
        assert result.error.startswith("Script compilation failed:")
        assert "can only draw one shape" in result.error

    def test_script_error(self):
        result = compile_script("draw(sphere(")
        assert not result.success
        assert "syntax error" in result.error

    @pytest.mark.parametrize("kwargs", [
        {'depth': 256},
        {'depth': -1},
        {'depth': 2.5},
        {'scale': 0},
        {'scale': -1.0},
        {'scale': float('nan')},
        {'scale': 'big'},
        {'center': (1, 2)},
        {'center': (0, 0, float('inf'))},
        {'threads': 'yes'},
    ])
    def test_invalid_request(self, kwargs):
        result = compile_script(SPHERE, **kwargs)
        assert not result.success
        assert result.error.startswith("Invalid request:")

    @pytest.mark.parametrize("code", [None, 123, b"draw(x)"])
    def test_code_must_be_text(self, code):
        result = compile_script(code)
        assert not result.success
        assert result.error.startswith("Invalid request: code must be a string")

    def test_export_failure_keeps_triangle_count(self, monkeypatch):
        def broken(mesh):
            raise ExportError("disk full", len(mesh))

        monkeypatch.setattr(pipeline, 'stl_bytes', broken)
        entries = []
        result = compile_script(SPHERE, 3, observer=entries.append, threads=False)
        assert result.success is False
        assert result.stl_data is None
        assert result.triangle_count > 0
        assert result.error == "STL export failed: disk full"
        assert entries[-1].level == 'error'
        assert entries[-1].source == 'Export'

    def test_error_is_last_notice(self):
        entries = []
        result = compile_script("draw(x)\ndraw(y)", observer=entries.append)
        assert entries[-1].level == 'error'
        assert entries[-1].message == result.error
        assert entries[-1].source == 'Compiler'


class TestLogging:
    """Test progress notices."""

    def test_milestones(self):
        entries = []
        result = compile_script(SPHERE, 3, observer=entries.append, threads=False)
        messages = [e.message for e in entries]
        assert messages[:8] == [
            "Starting script compilation",
            "Script compiled successfully",
            "Shape created successfully",
            "Applying transformations (scale: 1.0, center: [0.0, 0.0, 0.0])",
            "Building octree at depth 3",
            "Octree construction complete",
            "Generating mesh triangles",
            f"Mesh generation complete ({result.triangle_count} triangles)",
        ]
        assert messages[8] == "Exporting STL data"
        assert messages[9].startswith("STL export complete (")
        assert messages[10] == "Mesh compilation completed successfully"
        assert len(messages) == 11
        assert all(e.level == 'info' for e in entries)
        assert [e.source for e in entries][:3] == ['Compiler'] * 3

    def test_stl_size_notice(self):
        entries = []
        result = compile_script(SPHERE, 3, observer=entries.append, threads=False)
        size = prettify_byte_count(len(result.stl_data))
        assert f"STL export complete ({size})" in [e.message for e in entries]

    def test_observer_errors_are_ignored(self, caplog):
        def observer(entry):
            raise RuntimeError("observer broke")

        with caplog.at_level(logging.ERROR, logger='horsecad.pipeline'):
            result = compile_script(SPHERE, 2, observer=observer, threads=False)
        assert result.success
        assert "log observer raised" in caplog.text

    def test_messages_reach_logging(self, caplog):
        with caplog.at_level(logging.INFO, logger='horsecad'):
            compile_script(SPHERE, 2, threads=False)
        names = {r.name for r in caplog.records}
        assert {'horsecad.compiler', 'horsecad.mesh', 'horsecad.export'} <= names

    def test_emit_log(self):
        seen = []
        entry = emit_log(seen.append, 'warn', "careful", 'System')
        assert isinstance(entry, LogEntry)
        assert seen == [entry]
        d = entry.to_dict()
        assert d['level'] == 'warn'
        assert d['message'] == "careful"
        assert d['source'] == 'System'
        assert 'T' in d['timestamp']
        assert emit_log(None, 'info', "quiet").source is None


class TestByteCount:
    """Test human readable sizes."""

    def test_units(self):
        assert prettify_byte_count(0) == "0.00 B"
        assert prettify_byte_count(1023) == "1023.00 B"
        assert prettify_byte_count(1024) == "1.00 KB"
        assert prettify_byte_count(1536) == "1.50 KB"
        assert prettify_byte_count(5 * 1024 ** 2) == "5.00 MB"
        assert prettify_byte_count(5 * 1024 ** 3) == "5.00 GB"
        assert prettify_byte_count(1024 ** 4) == "1024.00 GB"

    def test_negative(self):
        with pytest.raises(ValueError):
            prettify_byte_count(-1)
