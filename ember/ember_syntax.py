"""
AST nodes produced by the transformer and walked by the evaluator.

Operators do not get their own nodes: `a + b` becomes `Call('+', [a, b])`
and `x in y` becomes `Call('contains', [y, x])`, so every operator goes
through the function registry like any other call.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple


def _loc():
    return field(default=None, compare=False, repr=False)


@dataclass
class Node:
    pass


# --- Expressions ---

@dataclass
class Literal(Node):
    value: Any
    loc: Optional[dict] = _loc()


@dataclass
class Template(Node):
    """A backtick string rendered with mustache against the visible variables."""
    text: str
    loc: Optional[dict] = _loc()


@dataclass
class ArrayLit(Node):
    items: List[Node]
    loc: Optional[dict] = _loc()


@dataclass
class MapLit(Node):
    entries: List[Tuple[str, Node]]
    loc: Optional[dict] = _loc()


@dataclass
class Var(Node):
    name: str
    loc: Optional[dict] = _loc()


@dataclass
class Call(Node):
    name: str
    args: List[Node]
    loc: Optional[dict] = _loc()


@dataclass
class MethodCall(Node):
    """`target.name(args)`: a call with `target` as the receiver."""
    target: Node
    name: str
    args: List[Node]
    loc: Optional[dict] = _loc()


@dataclass
class CallValue(Node):
    """Calling the result of an expression, e.g. `make_adder(1)(2)`."""
    callee: Node
    args: List[Node]
    loc: Optional[dict] = _loc()


@dataclass
class Property(Node):
    target: Node
    name: str
    loc: Optional[dict] = _loc()


@dataclass
class Index(Node):
    target: Node
    index: Node
    loc: Optional[dict] = _loc()


@dataclass
class Logical(Node):
    op: str
    left: Node
    right: Node
    loc: Optional[dict] = _loc()


@dataclass
class RangeExpr(Node):
    start: Node
    end: Node
    inclusive: bool = False
    loc: Optional[dict] = _loc()


@dataclass
class Closure(Node):
    """
    `|params| body`. The body is lifted into a script function named
    `fn_name` whose parameters are `captures + params`.
    """
    fn_name: str
    captures: List[str]
    params: List[str]
    loc: Optional[dict] = _loc()


# --- Statements ---

@dataclass
class Block(Node):
    statements: List[Node]
    loc: Optional[dict] = _loc()


@dataclass
class Let(Node):
    name: str
    value: Optional[Node] = None
    loc: Optional[dict] = _loc()


@dataclass
class Assign(Node):
    target: Node
    value: Node
    op: Optional[str] = None
    loc: Optional[dict] = _loc()


@dataclass
class If(Node):
    cond: Node
    then: Block
    otherwise: Optional[Node] = None
    loc: Optional[dict] = _loc()


@dataclass
class While(Node):
    cond: Optional[Node]
    body: Block
    loc: Optional[dict] = _loc()


@dataclass
class For(Node):
    var: str
    iterable: Node
    body: Block
    loc: Optional[dict] = _loc()


@dataclass
class Return(Node):
    value: Optional[Node] = None
    loc: Optional[dict] = _loc()


@dataclass
class Throw(Node):
    value: Optional[Node] = None
    loc: Optional[dict] = _loc()


@dataclass
class TryCatch(Node):
    body: Block
    var: Optional[str]
    handler: Block
    loc: Optional[dict] = _loc()


@dataclass
class Break(Node):
    loc: Optional[dict] = _loc()


@dataclass
class Continue(Node):
    loc: Optional[dict] = _loc()


@dataclass
class FnDef(Node):
    """A script function definition. Also the registry target for script functions."""
    name: str
    params: List[str]
    body: Block
    loc: Optional[dict] = _loc()

    @property
    def arity(self) -> int:
        return len(self.params)


@dataclass
class Program(Node):
    """
    A compiled script: its statements plus every function it defines,
    including the lifted bodies of its closures.
    """
    statements: List[Node]
    functions: List[FnDef] = field(default_factory=list)
    source: Optional[str] = field(default=None, compare=False, repr=False)
