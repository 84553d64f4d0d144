"""
Script-to-mesh pipeline.

``compile_script`` runs a script, compiles its shape, applies the display
transform, builds an octree, extracts a dual contouring mesh and encodes
it as binary STL.  Progress goes to the ``horsecad.<source>`` loggers and,
if given, to an observer callable that receives LogEntry records.
"""

from concurrent.futures import Executor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence, Union
import logging
import math
import numbers

from .errors import ExportError, MeshError, ScriptError, ShapeBuildError
from .io.stl import stl_bytes
from .octree import Octree, Settings, global_pool
from .script import compile_script_source
from .shape import Shape
from .utils import prettify_byte_count
from .xform import Scale, Translation, compose

logger = logging.getLogger(__name__)

DEFAULT_DEPTH = 6

_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


@dataclass
class LogEntry:
    """One progress notice."""
    timestamp: str
    level: str
    message: str
    source: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


Observer = Callable[[LogEntry], None]


def emit_log(observer: Optional[Observer], level: str, message: str,
             source: Optional[str] = None) -> LogEntry:
    """Log ``message`` and forward it to ``observer``.

    A failing observer is logged and otherwise ignored.
    """
    entry = LogEntry(datetime.now(timezone.utc).isoformat(), level, message, source)
    name = f"horsecad.{source.lower()}" if source else "horsecad"
    logging.getLogger(name).log(_LEVELS.get(level, logging.INFO), message)
    if observer is not None:
        try:
            observer(entry)
        except Exception:
            logger.exception("log observer raised; continuing")
    return entry


@dataclass
class MeshResult:
    """
    Outcome of one compile request.

    Attributes:
        success: True if an STL was produced
        stl_data: Binary STL bytes on success
        triangle_count: Triangles in the mesh, when meshing got that far
        error: Failure message, prefixed with the failing stage
    """
    success: bool
    stl_data: Optional[bytes] = None
    triangle_count: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'stl_data': None if self.stl_data is None else list(self.stl_data),
            'triangle_count': self.triangle_count,
            'error': self.error,
        }


def _positive_float(value, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValueError(f"{name} must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be a positive finite number, got {value}")
    return value


def _center(value: Optional[Sequence[float]]):
    if value is None:
        return (0.0, 0.0, 0.0)
    try:
        items = [float(v) for v in value]
    except (TypeError, ValueError):
        raise ValueError(f"center must be three numbers, got {value!r}") from None
    if len(items) != 3 or not all(math.isfinite(v) for v in items):
        raise ValueError(f"center must be three finite numbers, got {value!r}")
    return tuple(items)


def _executor(threads) -> Optional[Executor]:
    if threads is True:
        return global_pool()
    if threads is None or threads is False:
        return None
    if isinstance(threads, Executor):
        return threads
    raise ValueError("threads must be True, False, None or an Executor")


def display_transform(scale: float, center):
    """Input transform mapping display coordinates to model coordinates."""
    return compose(Translation(center, inverse=True), Scale(scale, inverse=True))


def compile_script(code: str, depth: int = DEFAULT_DEPTH,
                   scale: Optional[float] = None,
                   center: Optional[Sequence[float]] = None, *,
                   observer: Optional[Observer] = None,
                   threads: Union[bool, Executor, None] = True) -> MeshResult:
    """
    Compile a script to a binary STL mesh.

    Args:
        code: Script source; must call draw() exactly once
        depth: Maximum octree depth, 0-255
        scale: Display scale (default 1.0); multiplied by the script's set_scale()
        center: Display center offset (default origin)
        observer: Optional callable receiving every LogEntry
        threads: True for the global pool, False/None for a serial build,
                 or an Executor to use

    Returns:
        MeshResult; failures are reported in it, never raised
    """

    def log(level, message, source):
        emit_log(observer, level, message, source)

    def fail(message, source, triangle_count=None):
        log('error', message, source)
        return MeshResult(False, None, triangle_count, message)

    log('info', "Starting script compilation", 'Compiler')

    try:
        if not isinstance(code, str):
            raise ValueError(f"code must be a string, got {type(code).__name__}")
        request_scale = 1.0 if scale is None else _positive_float(scale, "scale")
        center = _center(center)
        settings = Settings(depth, _executor(threads))
    except ValueError as e:
        return fail(f"Invalid request: {e}", 'System')

    try:
        ctx, root, script_scale = compile_script_source(code)
    except ScriptError as e:
        return fail(f"Script compilation failed: {e}", 'Compiler')
    except ShapeBuildError as e:
        return fail(f"Shape creation failed: {e}", 'Compiler')
    log('info', "Script compiled successfully", 'Compiler')

    try:
        shape = Shape(ctx, root)
    except ShapeBuildError as e:
        return fail(f"Shape creation failed: {e}", 'Compiler')
    log('info', "Shape created successfully", 'Compiler')

    effective = request_scale * script_scale
    if not math.isfinite(effective) or effective <= 0:
        return fail(f"Invalid request: effective scale {effective} is not usable", 'Transform')
    log('info', f"Applying transformations (scale: {effective}, center: {list(center)})",
        'Transform')
    shape = shape.apply_transform(display_transform(effective, center))

    log('info', f"Building octree at depth {settings.depth}", 'Mesh')
    try:
        octree = Octree.build(shape, settings)
        log('info', "Octree construction complete", 'Mesh')
        log('info', "Generating mesh triangles", 'Mesh')
        mesh = octree.walk_dual()
    except MeshError as e:
        return fail(f"Mesh generation failed: {e}", 'Mesh', e.triangle_count)
    triangle_count = len(mesh)
    log('info', f"Mesh generation complete ({triangle_count} triangles)", 'Mesh')

    log('info', "Exporting STL data", 'Export')
    try:
        data = stl_bytes(mesh)
    except ExportError as e:
        return fail(f"STL export failed: {e}", 'Export', triangle_count)
    log('info', f"STL export complete ({prettify_byte_count(len(data))})", 'Export')

    log('info', "Mesh compilation completed successfully", 'System')
    return MeshResult(True, data, triangle_count, None)
