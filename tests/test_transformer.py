import pytest

from ember.ember_errors import ParseError
from ember.ember_runtime import Engine
from ember.ember_syntax import (
    Assign, Block, Call, Closure, Index, Let, Literal, Logical, MethodCall, Property,
    RangeExpr, Var,
)


@pytest.fixture(scope="module")
def engine():
    return Engine()


def first(engine, src):
    return engine.compile(src).statements[0]


def test_operators_become_calls(engine):
    assert first(engine, "1 + 2") == Call('+', [Literal(1), Literal(2)])
    assert first(engine, "1 + 2 * 3") == Call('+', [Literal(1), Call('*', [Literal(2), Literal(3)])])
    assert first(engine, "!a") == Call('!', [Var('a')])
    assert first(engine, "x in xs") == Call('contains', [Var('xs'), Var('x')])


def test_logical_and_range_nodes(engine):
    assert first(engine, "a && b") == Logical('&&', Var('a'), Var('b'))
    assert first(engine, "1..=3") == RangeExpr(Literal(1), Literal(3), inclusive=True)


def test_negative_literals_are_folded(engine):
    assert first(engine, "-5") == Literal(-5)
    assert first(engine, "-x") == Call('-', [Var('x')])


def test_postfix_chains(engine):
    assert first(engine, "f(1)") == Call('f', [Literal(1)])
    assert first(engine, "xs[0]") == Index(Var('xs'), Literal(0))
    assert first(engine, "v.len()") == MethodCall(Var('v'), 'len', [])
    assert first(engine, "m.key") == Property(Var('m'), 'key')


def test_let_and_compound_assignment(engine):
    program = engine.compile("let x = 1; x += 2;")
    assert program.statements == [
        Let('x', Literal(1)),
        Assign(Var('x'), Literal(2), '+'),
    ]
    assert first(engine, "x = 3") == Assign(Var('x'), Literal(3), None)


def test_function_definitions_are_lifted(engine):
    program = engine.compile("fn add(a, b) { a + b }\nadd(1, 2)")
    assert program.statements == [Call('add', [Literal(1), Literal(2)])]
    assert [(f.name, f.params) for f in program.functions] == [("add", ["a", "b"])]
    assert program.functions[0].body == Block([Call('+', [Var('a'), Var('b')])])


def test_closures_record_captures(engine):
    program = engine.compile("let n = 1; let f = |x| x + n;")
    closure = program.statements[1].value
    assert isinstance(closure, Closure)
    assert closure.captures == ["n"]
    assert closure.params == ["x"]
    lifted = program.functions[-1]
    assert lifted.name == closure.fn_name
    assert lifted.params == ["n", "x"]


def test_locations_are_attached(engine):
    program = engine.compile("let a = 1;\nlet b = a + 1;")
    assert program.statements[1].loc["line"] == 2


def test_parse_errors(engine):
    with pytest.raises(ParseError):
        engine.compile("f() = 1")
    with pytest.raises(ParseError):
        engine.compile("fn f(a, a) { a }")
    with pytest.raises(ParseError) as exc:
        engine.compile("let x = ;")
    assert exc.value.loc["line"] == 1
