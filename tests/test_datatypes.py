import pytest

from ember.ember_datatypes import (
    Char, FnPtr, InclusiveRange, SharedCell, Timestamp, TypeRegistry, duplicate,
    flatten, into_bool, into_float, into_int, into_string, is_shared,
    is_valid_function_name, type_name,
)
from ember.ember_errors import ContractViolation, InvalidFunctionName, TypeMismatch


class Vec:
    def __init__(self, x):
        self.x = x

    def clone(self):
        return Vec(self.x)


class Handle:
    pass


def test_type_names_of_builtin_values():
    assert type_name(None) == '()'
    assert type_name(True) == 'bool'
    assert type_name(1) == 'i64'
    assert type_name(1.5) == 'f64'
    assert type_name(Char('a')) == 'char'
    assert type_name("a") == 'string'
    assert type_name([1]) == 'array'
    assert type_name({'a': 1}) == 'map'
    assert type_name(range(1, 3)) == 'range'
    assert type_name(InclusiveRange(1, 3)) == 'range='
    assert type_name(bytearray()) == 'blob'
    assert type_name(FnPtr("f")) == 'Fn'
    assert type_name(Timestamp()) == 'timestamp'


def test_type_name_sees_through_shared_cells():
    assert type_name(SharedCell(3)) == 'i64'


def test_registered_host_type_reports_its_name():
    types = TypeRegistry()
    types.register(Vec, "Vec")
    assert type_name(Vec(1), types) == 'Vec'
    # Unregistered host objects fall back to the qualified class name.
    assert type_name(Handle()).endswith("Handle")


def test_duplicate_copies_containers_deeply():
    inner = [1, 2]
    outer = {'a': inner}
    copy = duplicate(outer)
    copy['a'].append(3)
    assert inner == [1, 2]


def test_duplicate_keeps_shared_cells_aliased():
    cell = SharedCell(1)
    copy = duplicate([cell])
    assert copy[0] is cell


def test_duplicate_uses_the_registered_capability():
    types = TypeRegistry()
    types.register(Vec, "Vec")
    v = Vec(5)
    copy = duplicate(v, types)
    assert copy is not v and copy.x == 5


def test_register_type_rejects_types_without_duplication():
    types = TypeRegistry()
    with pytest.raises(ContractViolation):
        types.register(Handle)
    assert Handle not in types


def test_register_type_accepts_an_explicit_duplicator():
    types = TypeRegistry()
    info = types.register(Handle, "Handle", duplicate=lambda h: h)
    assert info.name == "Handle"
    assert types.satisfies_contract(Handle)


def test_register_type_rejects_builtin_names():
    types = TypeRegistry()
    with pytest.raises(ContractViolation):
        types.register(Vec, "i64")


def test_flatten_and_is_shared():
    cell = SharedCell(SharedCell(7))
    assert flatten(cell) == 7
    assert is_shared(cell)
    assert not is_shared(7)


def test_char_must_be_a_single_character():
    assert Char('x') == 'x'
    with pytest.raises(ValueError):
        Char('xy')


def test_function_names_must_be_identifiers():
    assert is_valid_function_name("foo_1")
    assert not is_valid_function_name("1foo")
    assert not is_valid_function_name("+")
    assert not is_valid_function_name("let")
    assert not is_valid_function_name("")
    with pytest.raises(InvalidFunctionName):
        FnPtr("while")


def test_fn_ptr_curry_returns_a_new_pointer():
    base = FnPtr("add")
    curried = base.curry(1).curry(2)
    assert base.curry_args == ()
    assert curried.curry_args == (1, 2)
    assert curried.fn_name == "add"


def test_fn_ptr_curry_preserves_the_receiver():
    receiver = [1]
    ptr = FnPtr("f").bind(receiver).curry(3)
    assert ptr.this is receiver
    assert ptr.has_this


def test_fn_ptr_equality():
    assert FnPtr("f", (1,)) == FnPtr("f", (1,))
    assert FnPtr("f") != FnPtr("g")


def test_inclusive_range_contains_its_end():
    r = InclusiveRange(1, 3)
    assert 3 in r
    assert 4 not in r
    assert list(r) == [1, 2, 3]
    assert len(r) == 3


def test_checked_conversions():
    assert into_string("a") == "a"
    assert into_int(SharedCell(4)) == 4
    assert into_float(2) == 2.0
    assert into_bool(True) is True
    with pytest.raises(TypeMismatch) as exc:
        into_int("4")
    assert exc.value.actual == 'string'
    with pytest.raises(TypeMismatch):
        into_int(True)
