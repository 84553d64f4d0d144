"""
Exceptions raised by the script-to-mesh pipeline.

Each stage has its own category so the caller can tell where a compile
request stopped:

- ScriptError: the script failed to run or broke the single-output rule
- ShapeBuildError: the expression graph could not be lowered
- MeshError: the octree or dual contouring stage could not proceed
- ExportError: the mesh could not be serialized
"""

from typing import Optional


class HorseError(Exception):
    """Base exception for pipeline errors."""
    pass


class ScriptError(HorseError):
    """
    Error while executing a user script.

    ``line`` is the 1-based script line the error was traced to, if any,
    and ``source_line`` the text of that line.
    """

    def __init__(self, message: str, line: Optional[int] = None,
                 source_line: Optional[str] = None):
        self.message = message
        self.line = line
        self.source_line = source_line
        super().__init__(message)

    def format(self, show_source: bool = True) -> str:
        """Format the error for display."""
        if self.line is None:
            return self.message
        parts = [f"line {self.line}: {self.message}"]
        if show_source and self.source_line is not None:
            parts.append("  |")
            parts.append(f"{self.line:>3} | {self.source_line}")
        return "\n".join(parts)

    def __str__(self) -> str:
        return self.format(show_source=False)


class MultipleOutputs(ScriptError):
    """The script called draw() more than once."""

    def __init__(self, line: Optional[int] = None, source_line: Optional[str] = None):
        super().__init__("can only draw one shape", line, source_line)


class NoOutputProduced(ScriptError):
    """The script finished without calling draw()."""

    def __init__(self):
        super().__init__("script must include a draw(shape) call")


class ShapeBuildError(HorseError):
    """The expression graph is malformed and cannot be compiled."""
    pass


class _CountedError(HorseError):

    def __init__(self, message: str, triangle_count: Optional[int] = None):
        self.triangle_count = triangle_count
        super().__init__(message)


class MeshError(_CountedError):
    """Degenerate geometry encountered while meshing."""
    pass


class ExportError(_CountedError):
    """Serialization or I/O failure while writing a mesh."""
    pass
