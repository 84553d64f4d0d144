"""
Capability registry for the script runtime.

Maps script-visible names to the builders in ``horsecad.shapes`` and
``horsecad.expr``.  Output capabilities (``draw``, ``set_scale``) are bound
per run by the interpreter because they write to one ExecutionContext.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, Optional
import math

from .. import expr
from .. import shapes


@dataclass
class Capability:
    """
    A script-visible function or value with its implementation.
    """
    name: str
    implementation: object
    doc: str = ""


class CapabilityRegistry:
    """
    Registry of everything a script can see besides the safe builtins.

    Capabilities are registered by name; a later registration replaces an
    earlier one, so hosts can override builders.
    """

    def __init__(self):
        self._capabilities: Dict[str, Capability] = {}
        self._register_all()

    def __contains__(self, name: str) -> bool:
        return name in self._capabilities

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._capabilities.values())

    def get(self, name: str) -> Optional[Capability]:
        """Look up a capability by name."""
        return self._capabilities.get(name)

    def register(self, name: str, implementation: object, doc: str = "") -> None:
        """Register (or replace) a capability."""
        if not name.isidentifier():
            raise ValueError(f"capability name must be an identifier, got '{name}'")
        self._capabilities[name] = Capability(name, implementation, doc)

    def namespace(self) -> Dict[str, object]:
        """Fresh name -> implementation mapping for one script run."""
        return {c.name: c.implementation for c in self._capabilities.values()}

    def _register_all(self) -> None:
        """Register all built-in capabilities."""
        self._register_math()
        self._register_primitives()
        self._register_combinators()
        self._register_deforms()

    # --- Math and axes ---

    def _register_math(self) -> None:

        def _min(a, b, *more):
            return shapes.union(a, b, *more)

        def _max(a, b, *more):
            return shapes.intersection(a, b, *more)

        self.register("x", expr.X, "the x coordinate")
        self.register("y", expr.Y, "the y coordinate")
        self.register("z", expr.Z, "the z coordinate")
        self.register("pi", math.pi)
        self.register("constant", expr.constant, "constant(value) -> shape")
        self.register("sqrt", expr.sqrt)
        self.register("square", expr.square)
        self.register("sin", expr.sin)
        self.register("cos", expr.cos)
        self.register("exp", expr.exp)
        self.register("min", _min, "pointwise minimum of two or more shapes")
        self.register("max", _max, "pointwise maximum of two or more shapes")

    # --- Primitives ---

    def _register_primitives(self) -> None:
        self.register("sphere", shapes.sphere, "sphere(radius=1, center=(0,0,0))")
        self.register("box", shapes.box, "box(lower, upper)")
        self.register("cylinder", shapes.cylinder, "cylinder(radius, height, base): z-aligned")
        self.register("torus", shapes.torus, "torus(major, minor, center)")
        self.register("half_space", shapes.half_space, "half_space(normal, offset)")
        self.register("gyroid", shapes.gyroid, "gyroid(period, thickness)")

    # --- Combinators ---

    def _register_combinators(self) -> None:
        self.register("union", shapes.union)
        self.register("intersection", shapes.intersection)
        self.register("difference", shapes.difference, "difference(shape, *cutters)")
        self.register("inverse", shapes.inverse)
        self.register("blend", shapes.blend, "blend(a, b, radius): smooth union")
        self.register("shell", shapes.shell, "shell(shape, thickness)")
        self.register("offset", shapes.offset, "offset(shape, distance)")

    # --- Deforms ---

    def _register_deforms(self) -> None:
        self.register("move", shapes.move, "move(shape, (dx, dy, dz))")
        self.register("scale", shapes.scale, "scale(shape, factor or (sx, sy, sz))")
        self.register("rotate", shapes.rotate, "rotate(shape, axis, degrees)")
        self.register("rotate_x", shapes.rotate_x)
        self.register("rotate_y", shapes.rotate_y)
        self.register("rotate_z", shapes.rotate_z)
        self.register("twist", shapes.twist, "twist(shape, turns_per_unit) about z")


# Global default registry
_registry: Optional[CapabilityRegistry] = None


def get_capability_registry() -> CapabilityRegistry:
    """Get the shared default capability registry."""
    global _registry
    if _registry is None:
        _registry = CapabilityRegistry()
    return _registry
