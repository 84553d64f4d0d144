"""
Execution context for script runs.

Holds the single output slot a script fills with ``draw`` and the output
scale it may set with ``set_scale``.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import math
import numbers

from ..errors import MultipleOutputs, ScriptError
from ..expr import Tree


@dataclass
class ExecutionContext:
    """
    State owned by one script run.

    Tracks:
    - the drawn shape (at most one)
    - the output scale (default 1.0)
    - the script source, for error excerpts
    """
    tree: Optional[Tree] = None
    scale: float = 1.0
    source_lines: List[str] = field(default_factory=list)

    @property
    def has_output(self) -> bool:
        return self.tree is not None

    def draw(self, shape) -> None:
        """Record the script's output shape; only one call is allowed."""
        if self.tree is not None:
            raise MultipleOutputs()
        try:
            self.tree = Tree.wrap(shape)
        except TypeError:
            raise ScriptError(
                f"draw() expects a shape or a number, got {type(shape).__name__}")

    # scripts may say either
    finalize = draw

    def set_scale(self, value) -> None:
        """Set the output scale; must be a positive finite number."""
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ScriptError("scale must be a float")
        value = float(value)
        if not math.isfinite(value) or value <= 0:
            raise ScriptError(f"scale must be a positive finite number, got {value}")
        self.scale = value

    def source_line(self, line_num: Optional[int]) -> Optional[str]:
        """Get a source line for error messages."""
        if line_num is not None and 1 <= line_num <= len(self.source_lines):
            return self.source_lines[line_num - 1]
        return None


def create_context(source: str = "") -> ExecutionContext:
    """Create a fresh context for running ``source``."""
    return ExecutionContext(source_lines=source.split('\n') if source else [])
