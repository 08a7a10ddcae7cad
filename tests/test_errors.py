import pytest

from ember.ember_config import EngineConfig
from ember.ember_errors import (
    AmbiguousOverload, DispatchError, EmberError, FunctionNotFound, NativeError,
    ParseError, RecursionLimit, ScriptThrow,
)
from ember.ember_runtime import Engine


@pytest.fixture
def engine():
    return Engine()


def test_throw_and_catch_a_value(engine):
    assert engine.eval('try { throw "boom"; } catch (e) { e }') == "boom"
    assert engine.eval("try { throw #{code: 7}; } catch (e) { e.code }") == 7


def test_catch_without_a_variable(engine):
    assert engine.eval("try { throw 1; } catch { 2 }") == 2


def test_try_without_error_returns_its_value(engine):
    assert engine.eval("try { 5 } catch { 6 }") == 5


def test_dispatch_errors_become_maps(engine):
    src = """
    try {
        nope(1, 2)
    } catch (e) {
        [e.kind, e.fn_name, e.arity]
    }
    """
    assert engine.eval(src) == ["FunctionNotFound", "nope", 2]


def test_native_errors_are_catchable(engine):
    src = """
    try { 1 / 0 } catch (e) { e.kind }
    """
    assert engine.eval(src) == "NativeError"


def test_errors_unwind_through_script_functions(engine):
    src = """
    fn inner() { throw "deep"; }
    fn outer() { inner(); 1 }
    try { outer() } catch (e) { e }
    """
    assert engine.eval(src) == "deep"


def test_uncaught_throw_reaches_the_host(engine):
    with pytest.raises(ScriptThrow) as exc:
        engine.eval('throw "oops"')
    assert exc.value.value == "oops"
    assert exc.value.loc["line"] == 1


def test_recursion_limit_is_enforced_and_not_catchable():
    engine = Engine(EngineConfig(max_call_levels=10))
    with pytest.raises(RecursionLimit) as exc:
        engine.eval("fn down(n) { down(n + 1) }\ndown(0)")
    assert exc.value.limit == 10

    with pytest.raises(RecursionLimit):
        engine.eval("fn down(n) { down(n + 1) }\ntry { down(0) } catch { 0 }")


def test_recursion_just_below_the_limit_succeeds():
    engine = Engine(EngineConfig(max_call_levels=10))
    src = """
    fn depth(n) { if n == 0 { 0 } else { depth(n - 1) + 1 } }
    depth(9)
    """
    assert engine.eval(src) == 9


def test_duplicate_script_functions_in_one_program(engine):
    with pytest.raises(AmbiguousOverload):
        engine.eval("fn a(x) { 1 }\nfn a(y) { 2 }")


def test_break_outside_a_loop(engine):
    with pytest.raises(EmberError):
        engine.eval("break;")
    with pytest.raises(EmberError):
        engine.eval("fn f() { break; }\nf()")


def test_parse_errors_carry_a_location(engine):
    with pytest.raises(ParseError) as exc:
        engine.compile("let x = ;")
    assert exc.value.loc["line"] == 1
    assert isinstance(exc.value, SyntaxError)


def test_duplicate_parameters_are_rejected(engine):
    with pytest.raises(ParseError):
        engine.compile("fn f(a, a) { a }")


def test_dispatch_errors_are_type_errors(engine):
    with pytest.raises(TypeError) as exc:
        engine.eval("nope()")
    assert isinstance(exc.value, FunctionNotFound)
    assert isinstance(exc.value, DispatchError)
    assert exc.value.signature() == "nope/0"


def test_host_exceptions_are_wrapped(engine):
    def explode(x):
        raise ValueError("bad input")

    engine.register_fn("explode", explode)
    with pytest.raises(NativeError) as exc:
        engine.eval("explode(1)")
    assert exc.value.fn_name == "explode"
    assert isinstance(exc.value.error, ValueError)
    assert "bad input" in str(exc.value)


def test_error_location_points_at_the_failing_call(engine):
    with pytest.raises(FunctionNotFound) as exc:
        engine.eval("let a = 1;\nlet b = missing(a);")
    assert exc.value.loc["line"] == 2
