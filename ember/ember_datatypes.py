"""
Defines the core value types for the Ember runtime.

Ember values are plain Python objects. The closed set of built-in variants
maps onto Python types (None, bool, int, float, str, list, dict, range,
bytearray) plus the small wrapper classes defined here (Char, Timestamp,
InclusiveRange, FnPtr). Anything else is an opaque host value and must be
registered in a TypeRegistry, which enforces the value contract: the type
must be duplicable and carry a stable name.
"""

import copy
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from ember.ember_errors import ContractViolation, InvalidFunctionName, TypeMismatch


# =================================================================
# Built-in wrapper types
# =================================================================

class Char(str):
    """A single character. Distinct from a one-letter string for dispatch."""
    def __new__(cls, value: str):
        if len(value) != 1:
            raise ValueError(f"char must be exactly one character, got {value!r}")
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"Char({str(self)!r})"


class Timestamp:
    """A point in time taken from the monotonic clock."""
    __slots__ = ("instant",)

    def __init__(self, instant: Optional[float] = None):
        self.instant = time.monotonic() if instant is None else instant

    def elapsed(self) -> float:
        return time.monotonic() - self.instant

    def __eq__(self, other):
        return isinstance(other, Timestamp) and self.instant == other.instant

    def __hash__(self):
        return hash(self.instant)

    def __repr__(self) -> str:
        return f"<Timestamp {self.instant:.6f}>"


@dataclass(frozen=True)
class InclusiveRange:
    """An integer range including its upper bound (`a..=b`)."""
    start: int
    end: int

    def __contains__(self, value) -> bool:
        return isinstance(value, int) and not isinstance(value, bool) and self.start <= value <= self.end

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    def __len__(self) -> int:
        return max(0, self.end - self.start + 1)


class SharedCell:
    """
    An aliasing wrapper around one value.

    A variable captured by a closure is promoted into a SharedCell; the scope
    entry and every function pointer that captured it hold the same cell, so
    a write through any of them is seen by all.
    """
    __slots__ = ("value",)

    def __init__(self, value: Any = None):
        self.value = value

    def get(self) -> Any:
        return self.value

    def set(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"<SharedCell {self.value!r}>"


# =================================================================
# Function pointers
# =================================================================

RESERVED_WORDS = frozenset({
    'let', 'const', 'fn', 'if', 'else', 'while', 'loop', 'for', 'in', 'return',
    'throw', 'try', 'catch', 'break', 'continue', 'true', 'false', 'this',
    'import', 'export', 'private', 'global',
})
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")
# Closures compile to script functions named with this prefix.
ANON_PREFIX = "anon_fn_"
# Receiver slot of a pointer with nothing bound; unit `()` is a valid receiver.
_NO_RECEIVER = object()


def is_valid_function_name(name: Any) -> bool:
    """Operator names (e.g. `+`, `==`) are not identifiers and cannot be pointed at."""
    return isinstance(name, str) and _IDENTIFIER.match(name) is not None and name not in RESERVED_WORDS


class FnPtr:
    """
    A first-class reference to a function by name.

    Carries zero or more curried arguments and an optional bound receiver.
    Pointers are immutable: `curry` and `bind` return new pointers.
    """
    __slots__ = ("fn_name", "curry_args", "this")

    def __init__(self, fn_name: str, curry_args: Tuple[Any, ...] = (), this: Any = _NO_RECEIVER):
        if not is_valid_function_name(fn_name):
            raise InvalidFunctionName(fn_name)
        self.fn_name = fn_name
        self.curry_args = tuple(curry_args)
        self.this = this

    @property
    def is_anonymous(self) -> bool:
        return self.fn_name.startswith(ANON_PREFIX)

    @property
    def has_this(self) -> bool:
        return self.this is not _NO_RECEIVER

    def curry(self, *extra) -> 'FnPtr':
        return FnPtr(self.fn_name, self.curry_args + tuple(extra), self.this)

    def bind(self, this: Any) -> 'FnPtr':
        return FnPtr(self.fn_name, self.curry_args, this)

    def __eq__(self, other):
        if not isinstance(other, FnPtr):
            return NotImplemented
        return (
            self.fn_name == other.fn_name
            and self.this is other.this
            and len(self.curry_args) == len(other.curry_args)
            and all(a is b or a == b for a, b in zip(self.curry_args, other.curry_args))
        )

    def __hash__(self):
        return hash((self.fn_name, len(self.curry_args)))

    def __repr__(self) -> str:
        extra = f" curry={list(self.curry_args)!r}" if self.curry_args else ""
        return f"<FnPtr {self.fn_name}{extra}>"


# =================================================================
# Value contract
# =================================================================

@dataclass(frozen=True)
class TypeInfo:
    """A registered opaque host type: its script-visible name and duplicator."""
    py_type: type
    name: str
    duplicate: Callable[[Any], Any]


def qualified_name(py_type: type) -> str:
    module = getattr(py_type, "__module__", None)
    qual = getattr(py_type, "__qualname__", py_type.__name__)
    if module in (None, "builtins"):
        return qual
    return f"{module}.{qual}"


def _find_duplicator(py_type: type) -> Optional[Callable[[Any], Any]]:
    copier = getattr(py_type, "__copy__", None)
    if copier is not None:
        return copy.copy
    clone = getattr(py_type, "clone", None)
    if callable(clone):
        return lambda obj: obj.clone()
    return None


# Python types standing in for the built-in variants, in match order.
# bool precedes int and Char precedes str because of subclassing.
BUILTIN_TYPE_NAMES: Tuple[Tuple[type, str], ...] = (
    (type(None), '()'),
    (bool, 'bool'),
    (int, 'i64'),
    (float, 'f64'),
    (Char, 'char'),
    (str, 'string'),
    (list, 'array'),
    (dict, 'map'),
    (Timestamp, 'timestamp'),
    (FnPtr, 'Fn'),
    (range, 'range'),
    (InclusiveRange, 'range='),
    (bytearray, 'blob'),
)
BUILTIN_TAGS = frozenset(name for _, name in BUILTIN_TYPE_NAMES)


class TypeRegistry:
    """Maps host classes to their value-contract capabilities."""

    def __init__(self):
        self._by_type: Dict[type, TypeInfo] = {}
        self._by_name: Dict[str, TypeInfo] = {}

    def register(self, py_type: type, name: Optional[str] = None,
                 duplicate: Optional[Callable[[Any], Any]] = None) -> TypeInfo:
        """Registers a host type. Raises ContractViolation if it cannot be duplicated."""
        if not isinstance(py_type, type):
            raise TypeError(f"register_type expects a class, got {py_type!r}")
        tname = name or getattr(py_type, "__ember_type_name__", None) or qualified_name(py_type)
        for builtin, builtin_name in BUILTIN_TYPE_NAMES:
            if py_type is builtin:
                raise ContractViolation(qualified_name(py_type), f"it is a built-in type ('{builtin_name}')")
        if tname in BUILTIN_TAGS:
            raise ContractViolation(tname, "its name collides with a built-in type name")
        dup = duplicate or _find_duplicator(py_type)
        if dup is None:
            raise ContractViolation(
                tname,
                "duplication capability absent (define __copy__ or clone(), or pass duplicate=)",
            )
        info = TypeInfo(py_type, tname, dup)
        self._by_type[py_type] = info
        self._by_name[tname] = info
        return info

    def lookup(self, py_type: type) -> Optional[TypeInfo]:
        info = self._by_type.get(py_type)
        if info is not None:
            return info
        # Subclasses of a registered host type share its contract.
        for base in py_type.__mro__[1:]:
            info = self._by_type.get(base)
            if info is not None:
                return info
        return None

    def by_name(self, name: str) -> Optional[TypeInfo]:
        return self._by_name.get(name)

    def satisfies_contract(self, py_type: type) -> bool:
        if any(py_type is builtin for builtin, _ in BUILTIN_TYPE_NAMES):
            return True
        return self.lookup(py_type) is not None

    def __contains__(self, py_type) -> bool:
        return self.lookup(py_type) is not None

    def __len__(self) -> int:
        return len(self._by_type)


# =================================================================
# Value operations
# =================================================================

def flatten(value: Any) -> Any:
    """Returns the value a slot currently resolves to."""
    while isinstance(value, SharedCell):
        value = value.value
    return value


def is_shared(value: Any) -> bool:
    return isinstance(value, SharedCell)


def type_name(value: Any, types: Optional[TypeRegistry] = None) -> str:
    """The script-visible type name of a value (what `type_of` returns)."""
    value = flatten(value)
    for py_type, name in BUILTIN_TYPE_NAMES:
        if type(value) is py_type:
            return name
    for py_type, name in BUILTIN_TYPE_NAMES:
        if isinstance(value, py_type):
            return name
    if types is not None:
        info = types.lookup(type(value))
        if info is not None:
            return info.name
    return getattr(type(value), "__ember_type_name__", None) or qualified_name(type(value))


def duplicate(value: Any, types: Optional[TypeRegistry] = None) -> Any:
    """
    Copies a value so that the copy can be stored without aliasing the
    original. Shared cells are kept as-is: a duplicated container still
    aliases the captured variables it held.
    """
    match value:
        case SharedCell() | None | bool() | int() | float() | str():
            return value
        case FnPtr() | Timestamp() | range() | InclusiveRange():
            return value
        case list():
            return [duplicate(v, types) for v in value]
        case dict():
            return {k: duplicate(v, types) for k, v in value.items()}
        case bytearray():
            return bytearray(value)
    info = types.lookup(type(value)) if types is not None else None
    if info is not None:
        return info.duplicate(value)
    return copy.copy(value)


# =================================================================
# Checked conversions
# =================================================================

def into_string(value: Any) -> str:
    value = flatten(value)
    if isinstance(value, str):
        return str(value)
    raise TypeMismatch('string', type_name(value))


def into_int(value: Any) -> int:
    value = flatten(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise TypeMismatch('i64', type_name(value))


def into_float(value: Any) -> float:
    value = flatten(value)
    if isinstance(value, float):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    raise TypeMismatch('f64', type_name(value))


def into_bool(value: Any) -> bool:
    value = flatten(value)
    if isinstance(value, bool):
        return value
    raise TypeMismatch('bool', type_name(value))
