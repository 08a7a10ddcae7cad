"""
The function registry and its overload-resolution algorithm.

Functions are bucketed by (name, arity). Within a bucket every entry has a
tuple of parameter type tags; a tag is a type name (see `type_name`) or None
for "any". Resolution scores each entry against the runtime argument types
and picks the single best one.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ember.ember_datatypes import TypeRegistry, flatten, type_name
from ember.ember_errors import (
    AmbiguousMatch, AmbiguousOverload, FunctionNotFound, NoMatchingOverload,
)


EXACT = 2
COERCED = 1
WILDCARD = 0

# Parameter tag -> argument types it accepts after widening.
COERCIONS: Dict[str, Tuple[str, ...]] = {
    'f64': ('i64',),
}


def _widen(tag: str, value: Any) -> Any:
    if tag == 'f64':
        return float(value)
    return value


@dataclass(frozen=True)
class FnSignature:
    """Name plus parameter type tags; the arity is the number of tags."""
    name: str
    param_types: Tuple[Optional[str], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'param_types', tuple(self.param_types))

    @property
    def arity(self) -> int:
        return len(self.param_types)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.name, self.arity)

    def score(self, arg_types: Sequence[str]) -> Optional[int]:
        """Total match score, or None if any parameter rejects its argument."""
        if len(arg_types) != self.arity:
            return None
        total = 0
        for tag, actual in zip(self.param_types, arg_types):
            if tag is None:
                total += WILDCARD
            elif tag == actual:
                total += EXACT
            elif actual in COERCIONS.get(tag, ()):
                total += COERCED
            else:
                return None
        return total

    def coerce(self, args: Sequence[Any], arg_types: Sequence[str]) -> List[Any]:
        """Widens arguments that matched by coercion to the parameter's type."""
        out = list(args)
        for i, (tag, actual) in enumerate(zip(self.param_types, arg_types)):
            if tag is not None and tag != actual and actual in COERCIONS.get(tag, ()):
                out[i] = _widen(tag, flatten(out[i]))
        return out

    def __str__(self) -> str:
        return f"{self.name}({', '.join(t or '*' for t in self.param_types)})"


@dataclass
class FnEntry:
    signature: FnSignature
    target: Any
    namespace: str = 'native'
    accepts_ctx: bool = False
    raw_args: bool = False
    doc: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.signature.name

    @property
    def is_script(self) -> bool:
        return self.namespace == 'script'

    def __repr__(self) -> str:
        return f"<FnEntry {self.namespace} {self.signature}>"


class Registry:
    """
    A layer of function buckets.

    A child layer (`Registry(parent=...)`) sees every bucket of its parents.
    Entries in a nearer layer hide parent entries with an identical type
    tuple; otherwise the buckets are merged for resolution.
    """

    def __init__(self, parent: Optional['Registry'] = None, types: Optional[TypeRegistry] = None):
        self.parent = parent
        if types is None:
            types = parent.types if parent is not None else TypeRegistry()
        self.types = types
        self._buckets: Dict[Tuple[str, int], List[FnEntry]] = {}

    def child(self) -> 'Registry':
        return Registry(parent=self, types=self.types)

    # --- Registration ---

    def register(self, signature: FnSignature, target: Any, namespace: str = 'native',
                 accepts_ctx: bool = False, raw_args: bool = False,
                 doc: Optional[str] = None, replace: bool = False) -> FnEntry:
        """
        Adds an entry. An entry with an identical type tuple in this layer
        raises AmbiguousOverload, unless `replace` is set and both are script
        functions, in which case the new definition takes its place.
        """
        bucket = self._buckets.get(signature.key, [])
        entry = FnEntry(signature, target, namespace, accepts_ctx, raw_args, doc)
        for i, existing in enumerate(bucket):
            if existing.signature.param_types == signature.param_types:
                if replace and existing.is_script and entry.is_script:
                    bucket[i] = entry
                    return entry
                raise AmbiguousOverload(signature.name, signature.param_types)
        self._buckets.setdefault(signature.key, []).append(entry)
        return entry

    # --- Lookup ---

    def candidates(self, name: str, arity: int, namespace: Optional[str] = None) -> List[FnEntry]:
        """Every visible entry in the (name, arity) bucket, nearest layer first."""
        out: List[FnEntry] = []
        seen = set()
        layer: Optional[Registry] = self
        while layer is not None:
            for entry in layer._buckets.get((name, arity), ()):
                if namespace is not None and entry.namespace != namespace:
                    continue
                if entry.signature.param_types in seen:
                    continue
                seen.add(entry.signature.param_types)
                out.append(entry)
            layer = layer.parent
        return out

    def resolve(self, name: str, args: Sequence[Any], namespace: Optional[str] = None) -> FnEntry:
        """
        Picks the entry that best matches the runtime types of `args`.

        Raises FunctionNotFound when the bucket is empty, NoMatchingOverload
        when no entry accepts the arguments, and AmbiguousMatch when the best
        score is shared by more than one entry.
        """
        entry, _ = self.resolve_with_types(name, args, namespace)
        return entry

    def resolve_with_types(self, name: str, args: Sequence[Any],
                           namespace: Optional[str] = None) -> Tuple[FnEntry, List[str]]:
        arity = len(args)
        arg_types = [type_name(a, self.types) for a in args]
        bucket = self.candidates(name, arity, namespace)
        if not bucket:
            raise FunctionNotFound(name, arity, arg_types)

        scored = []
        for entry in bucket:
            s = entry.signature.score(arg_types)
            if s is not None:
                scored.append((s, entry))
        if not scored:
            raise NoMatchingOverload(name, arity, arg_types)

        best_score = max(s for s, _ in scored)
        best = [e for s, e in scored if s == best_score]
        if len(best) > 1:
            raise AmbiguousMatch(name, arity, arg_types, candidates=len(best))
        return best[0], arg_types

    def is_def_fn(self, name: str, arity: int) -> bool:
        return bool(self.candidates(name, arity))

    # --- Introspection ---

    def entries(self, name: Optional[str] = None) -> List[FnEntry]:
        out = []
        keys = set()
        layer: Optional[Registry] = self
        while layer is not None:
            keys.update(layer._buckets)
            layer = layer.parent
        for fn_name, arity in sorted(keys):
            if name is None or fn_name == name:
                out.extend(self.candidates(fn_name, arity))
        return out

    def local_entries(self) -> Iterator[FnEntry]:
        for bucket in self._buckets.values():
            yield from bucket

    def __contains__(self, name) -> bool:
        layer: Optional[Registry] = self
        while layer is not None:
            if any(n == name for n, _ in layer._buckets):
                return True
            layer = layer.parent
        return False

    def __len__(self) -> int:
        return sum(len(b) for b in self._buckets.values())
