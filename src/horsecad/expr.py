"""
Expression graphs for implicit surfaces.

Two representations are used:

- ``Tree``: an immutable expression handle built by scripts.  Python
  operators are overloaded so ``x*x + y*y + z*z - 1`` builds a sphere.
  Trees may share sub-trees freely; nothing is deduplicated at this level.
- ``Context``: an arena of interned nodes addressed by integer index.
  ``Context.import_tree`` lowers a Tree DAG into the arena, collapsing
  structurally identical sub-expressions so each is stored once.  A node's
  operands always have smaller indices than the node itself, which keeps
  the arena acyclic by construction.

A value below zero is inside the solid, a value above zero outside.
"""

from typing import Dict, List, NamedTuple, Tuple, Union
import numbers
import struct

from .errors import ShapeBuildError

AXES = ('x', 'y', 'z')
UNARY_OPS = ('neg', 'abs', 'sqrt', 'square', 'sin', 'cos', 'exp')
BINARY_OPS = ('add', 'sub', 'mul', 'div', 'min', 'max')

Node = int


class Tree:
    """Immutable expression handle.

    ``kind`` is ``'const'``, ``'var'``, a unary op name or a binary op name.
    ``args`` holds the float value, the axis name, or the operand Trees.
    """

    __slots__ = ('kind', 'args')

    def __init__(self, kind: str, args: tuple):
        object.__setattr__(self, 'kind', kind)
        object.__setattr__(self, 'args', args)

    def __setattr__(self, name, value):
        raise AttributeError("Tree is immutable")

    def __repr__(self) -> str:
        if self.kind == 'const':
            return f"Tree({self.args[0]!r})"
        if self.kind == 'var':
            return f"Tree({self.args[0]})"
        return f"Tree({self.kind}, {len(self.args)} args)"

    @property
    def children(self) -> Tuple["Tree", ...]:
        """Operand trees (empty for constants and variables)."""
        if self.kind in ('const', 'var'):
            return ()
        return self.args

    @staticmethod
    def wrap(value) -> "Tree":
        """Coerce a number or Tree into a Tree."""
        if isinstance(value, Tree):
            return value
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise TypeError(f"expected a number or shape, got {type(value).__name__}")
        return Tree('const', (float(value),))

    # arithmetic

    def __add__(self, other):
        return binary('add', self, other)

    def __radd__(self, other):
        return binary('add', other, self)

    def __sub__(self, other):
        return binary('sub', self, other)

    def __rsub__(self, other):
        return binary('sub', other, self)

    def __mul__(self, other):
        return binary('mul', self, other)

    def __rmul__(self, other):
        return binary('mul', other, self)

    def __truediv__(self, other):
        return binary('div', self, other)

    def __rtruediv__(self, other):
        return binary('div', other, self)

    def __pow__(self, n):
        # integer powers only, built from square and mul
        if isinstance(n, bool) or not isinstance(n, numbers.Integral):
            return NotImplemented
        n = int(n)
        if n < 0:
            return binary('div', 1.0, self ** -n)
        if n == 0:
            return Tree.wrap(1.0)
        result = None
        base = self
        while True:
            if n & 1:
                result = base if result is None else binary('mul', result, base)
            n >>= 1
            if not n:
                return result
            base = unary('square', base)

    def __neg__(self):
        return unary('neg', self)

    def __pos__(self):
        return self

    def __abs__(self):
        return unary('abs', self)

    def remap(self, x, y, z) -> "Tree":
        """Return a copy of this tree with the axis variables replaced.

        Sub-trees shared in the input stay shared in the output.
        """
        replacement = {'x': Tree.wrap(x), 'y': Tree.wrap(y), 'z': Tree.wrap(z)}
        memo: Dict[int, Tree] = {}
        stack = [(self, False)]
        while stack:
            tree, expanded = stack.pop()
            if id(tree) in memo:
                continue
            children = tree.children
            if children and not expanded:
                stack.append((tree, True))
                stack.extend((c, False) for c in children if id(c) not in memo)
                continue
            if tree.kind == 'var':
                memo[id(tree)] = replacement[tree.args[0]]
            elif tree.kind == 'const':
                memo[id(tree)] = tree
            else:
                memo[id(tree)] = Tree(tree.kind,
                                      tuple(memo[id(c)] for c in children))
        return memo[id(self)]


def constant(value: float) -> Tree:
    return Tree.wrap(float(value))


def var(axis: str) -> Tree:
    if axis not in AXES:
        raise ValueError(f"unknown axis '{axis}'")
    return Tree('var', (axis,))


X = var('x')
Y = var('y')
Z = var('z')


def unary(kind: str, a) -> Tree:
    if kind not in UNARY_OPS:
        raise ValueError(f"unknown unary op '{kind}'")
    return Tree(kind, (Tree.wrap(a),))


def binary(kind: str, a, b) -> Tree:
    if kind not in BINARY_OPS:
        raise ValueError(f"unknown binary op '{kind}'")
    return Tree(kind, (Tree.wrap(a), Tree.wrap(b)))


def sqrt(a) -> Tree:
    return unary('sqrt', a)


def square(a) -> Tree:
    return unary('square', a)


def sin(a) -> Tree:
    return unary('sin', a)


def cos(a) -> Tree:
    return unary('cos', a)


def exp(a) -> Tree:
    return unary('exp', a)


def minimum(a, b) -> Tree:
    return binary('min', a, b)


def maximum(a, b) -> Tree:
    return binary('max', a, b)


class Op(NamedTuple):
    """One arena entry.

    For ``const`` ``a`` is the value; for ``var`` it is the axis name; for
    operators ``a`` and ``b`` are operand node indices (``b`` is None for
    unary ops).
    """
    kind: str
    a: Union[float, str, int]
    b: Union[int, None] = None


def _const_key(value: float) -> tuple:
    # Key on the float32 bit pattern so -0.0 and 0.0 stay distinct.
    return ('const', struct.pack('<f', value))


class Context:
    """Arena of interned expression nodes."""

    def __init__(self):
        self._ops: List[Op] = []
        self._intern: Dict[tuple, Node] = {}

    def __len__(self) -> int:
        return len(self._ops)

    def op(self, node: Node) -> Op:
        """Return the arena entry for ``node``."""
        if not isinstance(node, int) or not 0 <= node < len(self._ops):
            raise ShapeBuildError(f"dangling node reference {node!r}")
        return self._ops[node]

    def _insert(self, key: tuple, op: Op) -> Node:
        node = self._intern.get(key)
        if node is None:
            node = len(self._ops)
            self._ops.append(op)
            self._intern[key] = node
        return node

    def constant(self, value: float) -> Node:
        value = struct.unpack('<f', struct.pack('<f', float(value)))[0]
        return self._insert(_const_key(value), Op('const', value))

    def var(self, axis: str) -> Node:
        if axis not in AXES:
            raise ShapeBuildError(f"unknown axis '{axis}'")
        return self._insert(('var', axis), Op('var', axis))

    def unary(self, kind: str, a: Node) -> Node:
        if kind not in UNARY_OPS:
            raise ShapeBuildError(f"unsupported unary op '{kind}'")
        self.op(a)
        return self._insert((kind, a), Op(kind, a))

    def binary(self, kind: str, a: Node, b: Node) -> Node:
        if kind not in BINARY_OPS:
            raise ShapeBuildError(f"unsupported binary op '{kind}'")
        self.op(a)
        self.op(b)
        return self._insert((kind, a, b), Op(kind, a, b))

    def import_tree(self, tree: Tree) -> Node:
        """Intern ``tree`` into this arena and return its root node."""
        memo: Dict[int, Node] = {}
        stack = [(tree, False)]
        while stack:
            t, expanded = stack.pop()
            if id(t) in memo:
                continue
            if not isinstance(t, Tree):
                raise ShapeBuildError(f"expected Tree, got {type(t).__name__}")
            children = t.children
            if children and not expanded:
                stack.append((t, True))
                stack.extend((c, False) for c in children if id(c) not in memo)
                continue
            memo[id(t)] = self._lower(t, memo)
        return memo[id(tree)]

    def _lower(self, t: Tree, memo: Dict[int, Node]) -> Node:
        if t.kind == 'const':
            if len(t.args) != 1 or not isinstance(t.args[0], numbers.Real):
                raise ShapeBuildError(f"bad constant {t.args!r}")
            return self.constant(t.args[0])
        if t.kind == 'var':
            if len(t.args) != 1:
                raise ShapeBuildError(f"bad variable {t.args!r}")
            return self.var(t.args[0])
        if t.kind in UNARY_OPS and len(t.args) == 1:
            return self.unary(t.kind, memo[id(t.args[0])])
        if t.kind in BINARY_OPS and len(t.args) == 2:
            return self.binary(t.kind, memo[id(t.args[0])], memo[id(t.args[1])])
        raise ShapeBuildError(f"malformed node '{t.kind}' with {len(t.args)} operands")
