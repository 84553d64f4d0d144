# -*- coding: utf-8 -*-
"""horsecad: scripted implicit surfaces meshed by dual contouring."""

from importlib.metadata import PackageNotFoundError, version

from .errors import (
    ExportError,
    HorseError,
    MeshError,
    MultipleOutputs,
    NoOutputProduced,
    ScriptError,
    ShapeBuildError,
)
from .expr import Context, Tree
from .mesh import Mesh
from .octree import Octree, Settings
from .pipeline import DEFAULT_DEPTH, LogEntry, MeshResult, compile_script, emit_log
from .shape import Shape

try:
    __version__ = version("horsecad")
except PackageNotFoundError:  # pragma: no cover - handled when package not installed
    __version__ = "unknown"

__all__ = [
    'Context', 'Tree', 'Shape', 'Mesh', 'Octree', 'Settings',
    'compile_script', 'emit_log', 'LogEntry', 'MeshResult', 'DEFAULT_DEPTH',
    'HorseError', 'ScriptError', 'MultipleOutputs', 'NoOutputProduced',
    'ShapeBuildError', 'MeshError', 'ExportError',
]
