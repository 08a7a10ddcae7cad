import pytest

from ember.ember_config import EngineConfig
from ember.ember_datatypes import FnPtr
from ember.ember_errors import (
    FunctionNotFound, InvalidFunctionName, NativeError, NoMatchingOverload, TypeMismatch,
    VariableNotFound,
)
from ember.ember_runtime import Engine


@pytest.fixture
def engine():
    return Engine()


ADD = "fn add(a, b) { a + b }\n"


def test_fn_makes_a_pointer(engine):
    ptr = engine.eval('Fn("add")')
    assert isinstance(ptr, FnPtr)
    assert ptr.fn_name == "add"
    assert ptr.curry_args == ()


@pytest.mark.parametrize("name", ["1abc", "+", "let", "", "a b"])
def test_fn_rejects_invalid_names(engine, name):
    with pytest.raises(InvalidFunctionName):
        engine.eval(f'Fn("{name}")')


def test_fn_does_not_check_registration(engine):
    ptr = engine.eval('Fn("not_defined_anywhere")')
    assert ptr.fn_name == "not_defined_anywhere"
    with pytest.raises(FunctionNotFound):
        engine.eval('call(Fn("not_defined_anywhere"))')


def test_call_through_pointer(engine):
    assert engine.eval(ADD + 'call(Fn("add"), 1, 2)') == 3
    assert engine.eval(ADD + 'Fn("add").call(1, 2)') == 3


def test_pointer_held_in_a_variable_is_callable_by_name(engine):
    assert engine.eval(ADD + 'let f = Fn("add"); f(20, 22)') == 42


def test_call_reaches_native_functions(engine):
    assert engine.eval('call(Fn("len"), "abcd")') == 4


def test_curry_then_call_equals_direct_call(engine):
    src = ADD + """
    let p = Fn("add").curry(1);
    [call(p, 2), p.call(2), add(1, 2), curry(Fn("add"), 1, 2).call()]
    """
    assert engine.eval(src) == [3, 3, 3, 3]


def test_curry_does_not_modify_the_original(engine):
    src = ADD + """
    let p = Fn("add");
    let q = p.curry(5);
    [p.call(1, 1), q.call(1)]
    """
    assert engine.eval(src) == [2, 6]


def test_call_dispatch_errors_carry_name_and_arity(engine):
    with pytest.raises(FunctionNotFound) as exc:
        engine.eval(ADD + 'call(Fn("add"), 1)')
    assert exc.value.fn_name == "add"
    assert exc.value.arity == 1
    with pytest.raises(NoMatchingOverload):
        engine.eval('call(Fn("len"), 5)')


def test_call_requires_a_pointer(engine):
    with pytest.raises(TypeMismatch):
        engine.eval("call(1, 2)")


def test_method_call_binds_this_for_script_functions(engine):
    src = """
    fn grow(n) { this += n; this }
    let x = 10;
    let r = x.grow(5);
    [r, x]
    """
    assert engine.eval(src) == [15, 15]


def test_call_with_explicit_receiver(engine):
    src = """
    fn grow(n) { this + n }
    call(10, Fn("grow"), 5)
    """
    assert engine.eval(src) == 15


def test_receiver_is_prepended_for_native_functions(engine):
    assert engine.eval('call("abc", Fn("len"))') == 3
    assert engine.eval('"abc".len()') == 3


def test_this_is_undefined_without_a_receiver(engine):
    src = """
    fn who() { this }
    who()
    """
    with pytest.raises(VariableNotFound):
        engine.eval(src)


def test_pointer_bound_receiver_from_the_host(engine):
    ptr = FnPtr("len").bind("hello")
    assert engine.call_fn("call", ptr) == 5


def test_variadic_call_is_bounded_by_config():
    engine = Engine(EngineConfig(max_variadic_args=2))
    src = "fn three(a, b, c) { a + b + c }\n"
    assert engine.eval(src + 'call(Fn("three").curry(1), 2, 3)') == 6
    with pytest.raises(FunctionNotFound):
        engine.eval(src + 'call(Fn("three"), 1, 2, 3)')


def test_host_can_call_script_functions_through_an_ast(engine):
    ast = engine.compile("fn triple(x) { x * 3 }")
    assert engine.call_fn("triple", 4, ast=ast) == 12
    assert engine.call_fn("+", 1, 2) == 3


def test_method_call_reaches_a_native_shadowed_by_a_script_function(engine):
    src = 'fn to_string(x) { "script" }\n[to_string(5), 5.to_string()]'
    assert engine.eval(src) == ["script", "5"]


def test_unit_is_a_valid_bound_receiver(engine):
    engine.register_fn("is_unit", lambda x: x is None, params=[None])
    ptr = FnPtr("is_unit").bind(None)
    assert ptr.has_this
    assert not FnPtr("is_unit").has_this
    assert engine.call_fn("call", ptr) is True


def test_failed_host_calls_do_not_accumulate_frames(engine):
    ast = engine.compile("fn boom(x) { x / 0 }")
    for _ in range(3):
        with pytest.raises(NativeError):
            engine.call_fn("boom", 1, ast=ast)
    assert [frame['name'] for frame in engine.evaluator.call_stack] == ["boom"]
