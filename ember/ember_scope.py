"""
Variable scopes.

A Scope is an ordered list of (name, slot) entries. Declaring a name appends
an entry, so a later declaration shadows an earlier one; lookup scans from
the newest entry back. Blocks remember `len(scope)` when they start and
`rewind` to it when they end. A slot holds either a value or a SharedCell;
the latter outlives the rewind for as long as a closure still refers to it.
"""
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ember.ember_datatypes import SharedCell, flatten
from ember.ember_errors import VariableNotFound


class Scope:
    """Ordered name → slot bindings visible during one evaluation."""

    def __init__(self):
        self._names: List[str] = []
        self._slots: List[Any] = []

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> 'Scope':
        scope = cls()
        for name, value in values.items():
            scope.declare(name, value)
        return scope

    # --- Core operations ---

    def declare(self, name: str, value: Any = None) -> 'Scope':
        """Appends a new unique slot, shadowing any earlier entry with the same name."""
        if not isinstance(name, str):
            raise TypeError(f"Scope key must be a str, not {type(name)}")
        self._names.append(name)
        self._slots.append(value)
        return self

    def _index_of(self, name: str) -> Optional[int]:
        for i in range(len(self._names) - 1, -1, -1):
            if self._names[i] == name:
                return i
        return None

    def lookup(self, name: str) -> Optional[Any]:
        """Returns the raw slot (a value or a SharedCell), or None on a miss."""
        idx = self._index_of(name)
        if idx is None:
            return None
        return self._slots[idx]

    def is_def_var(self, name: str) -> bool:
        return isinstance(name, str) and self._index_of(name) is not None

    def capture_as_shared(self, name: str) -> SharedCell:
        """Promotes the named slot to a SharedCell in place and returns the cell."""
        idx = self._index_of(name)
        if idx is None:
            raise VariableNotFound(name)
        slot = self._slots[idx]
        if isinstance(slot, SharedCell):
            return slot
        cell = SharedCell(slot)
        self._slots[idx] = cell
        return cell

    # --- Value access ---

    def get_value(self, name: str) -> Any:
        idx = self._index_of(name)
        if idx is None:
            raise VariableNotFound(name)
        return flatten(self._slots[idx])

    def set_value(self, name: str, value: Any):
        """Assigns to the newest entry called `name`, writing through a SharedCell."""
        idx = self._index_of(name)
        if idx is None:
            raise VariableNotFound(name)
        slot = self._slots[idx]
        if isinstance(slot, SharedCell):
            slot.value = value
        else:
            self._slots[idx] = value

    def bind(self, name: str, slot: Any):
        """Declares `name` with a raw slot; a SharedCell passed here stays aliased."""
        self._names.append(name)
        self._slots.append(slot)

    def is_shared(self, name: str) -> bool:
        return isinstance(self.lookup(name), SharedCell)

    # --- Lifetime ---

    def __len__(self) -> int:
        return len(self._names)

    def rewind(self, length: int):
        """Drops every entry declared after the scope had `length` entries."""
        if length < len(self._names):
            del self._names[length:]
            del self._slots[length:]

    def clear(self):
        self.rewind(0)

    # --- Introspection ---

    def __contains__(self, name) -> bool:
        return self.is_def_var(name)

    def __getitem__(self, name: str) -> Any:
        idx = self._index_of(name)
        if idx is None:
            raise KeyError(f"'{name}'")
        return flatten(self._slots[idx])

    def __setitem__(self, name: str, value: Any):
        if self.is_def_var(name):
            self.set_value(name, value)
        else:
            self.declare(name, value)

    def get(self, name: str, default: Any = None) -> Any:
        idx = self._index_of(name)
        if idx is None:
            return default
        return flatten(self._slots[idx])

    def names(self) -> List[str]:
        """Visible names, newest binding of each, in declaration order."""
        seen = set()
        out = []
        for name in reversed(self._names):
            if name not in seen:
                seen.add(name)
                out.append(name)
        out.reverse()
        return out

    def items(self) -> Iterator[Tuple[str, Any]]:
        for name in self.names():
            yield name, self.get_value(name)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.items())

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __repr__(self) -> str:
        shown = ', '.join(
            f"{n}*" if isinstance(s, SharedCell) else n for n, s in zip(self._names, self._slots)
        )
        return f"<Scope [{shown}]>"
