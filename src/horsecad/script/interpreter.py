"""
Script interpreter.

Scripts are Python source executed in a namespace holding the capability
registry, the per-run output capabilities and a small set of safe builtins.
There is no ``import``, ``open`` or other I/O available to a script.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import builtins
import logging
import traceback

from ..errors import HorseError, NoOutputProduced, ScriptError
from ..expr import Context, Node, Tree
from .builtins import CapabilityRegistry, get_capability_registry
from .context import ExecutionContext, create_context

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = '<script>'

_SAFE_BUILTINS = (
    'abs', 'all', 'any', 'bool', 'dict', 'divmod', 'enumerate', 'float',
    'int', 'isinstance', 'len', 'list', 'map', 'pow', 'range', 'reversed',
    'round', 'sorted', 'str', 'sum', 'tuple', 'zip',
    'ArithmeticError', 'Exception', 'TypeError', 'ValueError',
    'ZeroDivisionError',
)


@dataclass
class ScriptResult:
    """
    Result of running a script.

    Attributes:
        tree: The drawn shape
        scale: Output scale requested by the script (1.0 unless set)
    """
    tree: Tree
    scale: float = 1.0


def _script_print(*args, sep=' ', end=''):
    logger.info(sep.join(str(a) for a in args) + end)


def _safe_builtins() -> Dict[str, object]:
    table = {name: getattr(builtins, name) for name in _SAFE_BUILTINS}
    table['print'] = _script_print
    return table


def _script_line(exc: BaseException) -> Optional[int]:
    """Innermost traceback line that belongs to the script."""
    line = None
    for frame in traceback.extract_tb(exc.__traceback__):
        if frame.filename == SCRIPT_FILENAME:
            line = frame.lineno
    return line


class Interpreter:
    """
    Runs one script against a capability registry.

    Usage:
        interp = Interpreter()
        result = interp.run("draw(sphere(0.5))")
    """

    def __init__(self, registry: Optional[CapabilityRegistry] = None):
        self.registry = registry or get_capability_registry()

    def _namespace(self, ctx: ExecutionContext) -> Dict[str, object]:
        namespace = self.registry.namespace()
        namespace['draw'] = ctx.draw
        namespace['finalize'] = ctx.finalize
        namespace['set_scale'] = ctx.set_scale
        namespace['__builtins__'] = _safe_builtins()
        namespace['__name__'] = '__script__'
        return namespace

    def run(self, source: str) -> ScriptResult:
        """Execute ``source`` and return its drawn shape and scale."""
        ctx = create_context(source)
        try:
            code = compile(source, SCRIPT_FILENAME, 'exec')
        except SyntaxError as e:
            raise ScriptError(f"syntax error: {e.msg}", e.lineno,
                              ctx.source_line(e.lineno)) from None

        try:
            exec(code, self._namespace(ctx))
        except ScriptError as e:
            if e.line is None:
                e.line = _script_line(e)
                e.source_line = ctx.source_line(e.line)
            raise
        except HorseError as e:
            line = _script_line(e)
            raise ScriptError(str(e), line, ctx.source_line(line)) from e
        except Exception as e:
            line = _script_line(e)
            raise ScriptError(f"{type(e).__name__}: {e}", line,
                              ctx.source_line(line)) from e

        if not ctx.has_output:
            raise NoOutputProduced()
        logger.debug("script drew a shape at scale %s", ctx.scale)
        return ScriptResult(ctx.tree, ctx.scale)


def run_script(source: str, registry: Optional[CapabilityRegistry] = None) -> ScriptResult:
    """
    Run a script and return its single drawn shape.

    Raises:
        ScriptError: syntax or runtime failure, with the script line if known
        MultipleOutputs: draw() called more than once
        NoOutputProduced: draw() never called
    """
    return Interpreter(registry).run(source)


def compile_script_source(source: str,
                          registry: Optional[CapabilityRegistry] = None
                          ) -> Tuple[Context, Node, float]:
    """Run a script and intern its output into a fresh arena.

    Returns ``(context, root, scale)``.
    """
    result = run_script(source, registry)
    ctx = Context()
    root = ctx.import_tree(result.tree)
    return ctx, root, result.scale
