"""
The Ember engine: host registration, the standard library and the script runner.
"""
import inspect
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Union

from koine import Parser

from ember.ember_config import EngineConfig
from ember.ember_datatypes import (
    BUILTIN_TAGS, Char, FnPtr, InclusiveRange, Timestamp, TypeRegistry, is_shared,
    qualified_name, type_name,
)
from ember.ember_errors import (
    ContractViolation, DispatchError, EmberError, InvalidFunctionName, ParseError,
    RegistrationError, TypeMismatch, unwrap_nested,
)
from ember.ember_interpreter import CallContext, Evaluator
from ember.ember_printer import Printer
from ember.ember_registry import FnEntry, FnSignature, Registry
from ember.ember_scope import Scope
from ember.ember_syntax import Program
from ember.ember_transformer import EmberTransformer

I64_MIN = -(2 ** 63)
I64_MAX = 2 ** 63 - 1

# Python annotation -> parameter type tag.
_ANNOTATION_TAGS: Dict[Any, str] = {
    bool: 'bool',
    int: 'i64',
    float: 'f64',
    Char: 'char',
    str: 'string',
    list: 'array',
    dict: 'map',
    range: 'range',
    InclusiveRange: 'range=',
    bytearray: 'blob',
    FnPtr: 'Fn',
    Timestamp: 'timestamp',
}
_ANNOTATION_NAMES = {t.__name__: tag for t, tag in _ANNOTATION_TAGS.items()}
_PARSE_LOC = re.compile(r"L(\d+):C(\d+)")


# ===================================================================
# Host binding
# ===================================================================

def ember_fn(name: Union[str, Callable, None] = None, params: Optional[Sequence[Any]] = None):
    """
    Marks a host method for `Engine.register_host`. Usable bare (`@ember_fn`)
    or with a script name and explicit parameter tags.
    """
    if callable(name):
        name._ember_fn = {'name': None, 'params': None}
        return name

    def decorator(func):
        func._ember_fn = {'name': name, 'params': params}
        return func
    return decorator


def native(name: str, *params: Optional[str], raw_args: bool = False):
    """Marks a StdLib method as the implementation of `name(params...)`. Stackable."""
    def decorator(func):
        overloads = list(getattr(func, '_ember_natives', []))
        overloads.append((name, tuple(params), raw_args))
        func._ember_natives = overloads
        return func
    return decorator


def _checked(value: int) -> int:
    if not I64_MIN <= value <= I64_MAX:
        raise ArithmeticError("Arithmetic overflow")
    return value


def _values_equal(a: Any, b: Any) -> bool:
    """Equality that never treats values of different Ember types as equal, except i64/f64."""
    numeric = ('i64', 'f64')
    ta, tb = type_name(a), type_name(b)
    if ta != tb and not (ta in numeric and tb in numeric):
        return False
    if isinstance(a, list):
        return len(a) == len(b) and all(_values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(_values_equal(a[k], b[k]) for k in a)
    return a == b


# ===================================================================
# The Standard Library
# ===================================================================

class StdLib:
    """Python implementations of the Ember built-in functions."""

    def __init__(self, engine: 'Engine'):
        self.engine = engine

    def install(self, registry: Registry):
        """Registers every `@native` method, plus the variadic `call`/`curry` families."""
        for _, member in inspect.getmembers(self):
            for name, params, raw_args in getattr(member, '_ember_natives', ()):
                registry.register(
                    FnSignature(name, params), member,
                    accepts_ctx=_accepts_ctx(member), raw_args=raw_args, doc=inspect.getdoc(member),
                )
        for extra in range(self.engine.config.max_variadic_args + 1):
            registry.register(FnSignature('call', (None,) * (extra + 1)), self._call, accepts_ctx=True)
            registry.register(FnSignature('curry', ('Fn',) + (None,) * extra), self._curry)

    # --- Arithmetic ---
    @native('+', 'i64', 'i64')
    def _add_int(self, a, b): return _checked(a + b)

    @native('-', 'i64', 'i64')
    def _sub_int(self, a, b): return _checked(a - b)

    @native('*', 'i64', 'i64')
    def _mul_int(self, a, b): return _checked(a * b)

    @native('/', 'i64', 'i64')
    def _div_int(self, a, b):
        if b == 0:
            raise ZeroDivisionError("Division by zero")
        q = abs(a) // abs(b)
        return _checked(q if (a < 0) == (b < 0) else -q)

    @native('%', 'i64', 'i64')
    def _mod_int(self, a, b):
        if b == 0:
            raise ZeroDivisionError("Division by zero")
        # Remainder takes the sign of the dividend.
        return a - b * self._div_int(a, b)

    @native('+', 'f64', 'f64')
    def _add_float(self, a, b): return a + b

    @native('-', 'f64', 'f64')
    def _sub_float(self, a, b): return a - b

    @native('*', 'f64', 'f64')
    def _mul_float(self, a, b): return a * b

    @native('/', 'f64', 'f64')
    def _div_float(self, a, b):
        if b == 0.0:
            if a == 0.0 or a != a:
                return math.nan
            return math.copysign(math.inf, a) * math.copysign(1.0, b)
        return a / b

    @native('%', 'f64', 'f64')
    def _mod_float(self, a, b):
        return math.fmod(a, b) if b != 0.0 else math.nan

    @native('-', 'i64')
    def _neg_int(self, a): return _checked(-a)

    @native('-', 'f64')
    def _neg_float(self, a): return -a

    @native('!', 'bool')
    def _not(self, a): return not a

    # --- Concatenation ---
    @native('+', 'string', 'string')
    @native('+', 'string', 'char')
    @native('+', 'char', 'string')
    def _concat_str(self, a, b): return str(a) + str(b)

    @native('+', 'string', None)
    def _concat_str_any(self, a, b): return a + self.engine.printer.to_string(b)

    @native('+', None, 'string')
    def _concat_any_str(self, a, b): return self.engine.printer.to_string(a) + b

    @native('+', 'array', 'array')
    def _concat_array(self, a, b): return list(a) + list(b)

    @native('+', 'map', 'map')
    def _merge_map(self, a, b): return {**a, **b}

    @native('+', 'blob', 'blob')
    def _concat_blob(self, a, b): return bytearray(a) + bytearray(b)

    # --- Comparison ---
    @native('==', None, None)
    def _eq(self, a, b): return _values_equal(a, b)

    @native('!=', None, None)
    def _neq(self, a, b): return not _values_equal(a, b)

    @native('<', 'i64', 'i64')
    @native('<', 'f64', 'f64')
    @native('<', 'string', 'string')
    @native('<', 'char', 'char')
    def _lt(self, a, b): return a < b

    @native('<=', 'i64', 'i64')
    @native('<=', 'f64', 'f64')
    @native('<=', 'string', 'string')
    @native('<=', 'char', 'char')
    def _lte(self, a, b): return a <= b

    @native('>', 'i64', 'i64')
    @native('>', 'f64', 'f64')
    @native('>', 'string', 'string')
    @native('>', 'char', 'char')
    def _gt(self, a, b): return a > b

    @native('>=', 'i64', 'i64')
    @native('>=', 'f64', 'f64')
    @native('>=', 'string', 'string')
    @native('>=', 'char', 'char')
    def _gte(self, a, b): return a >= b

    # --- Reflection and function pointers ---
    @native('type_of', None)
    def _type_of(self, value): return type_name(value, self.engine.types)

    @native('Fn', 'string')
    def _fn(self, name): return FnPtr(name)

    def _call(self, *args, ctx: CallContext):
        """`call(ptr, args...)` or `call(receiver, ptr, args...)`."""
        if isinstance(args[0], FnPtr):
            return ctx.call_ptr(args[0], *args[1:])
        if len(args) > 1 and isinstance(args[1], FnPtr):
            return ctx.call_ptr(args[1], *args[2:], this=args[0])
        raise TypeMismatch('Fn', type_name(args[0], self.engine.types),
                           f"call expects a function pointer, got {type_name(args[0], self.engine.types)}")

    def _curry(self, ptr, *extra): return ptr.curry(*extra)

    @native('is_def_fn', 'string', 'i64')
    def _is_def_fn(self, name, arity, *, ctx: CallContext):
        return ctx.functions.is_def_fn(name, arity)

    @native('is_def_var', 'string')
    def _is_def_var(self, name, *, ctx: CallContext):
        return ctx.scope.is_def_var(name)

    @native('is_shared', None, raw_args=True)
    def _is_shared(self, value): return is_shared(value)

    @native('eval', 'string')
    def _eval(self, text, *, ctx: CallContext):
        return ctx.eval(text)

    # --- contains / `in` ---
    @native('contains', 'string', 'string')
    @native('contains', 'string', 'char')
    @native('contains', 'range', 'i64')
    @native('contains', 'range=', 'i64')
    @native('contains', 'map', 'string')
    def _contains(self, container, item): return item in container

    @native('contains', 'blob', 'i64')
    def _contains_byte(self, blob, byte): return 0 <= byte <= 255 and byte in blob

    @native('contains', 'array', None)
    def _contains_item(self, array, item, *, ctx: CallContext):
        return any(ctx.call_fn('==', x, item) is True for x in array)

    # --- Output ---
    @native('print', None)
    def _print(self, value):
        self.engine.on_print(self.engine.printer.to_string(value))

    @native('debug', None)
    def _debug(self, value):
        self.engine.on_debug(self.engine.printer.to_debug(value))

    @native('to_string', None)
    def _to_string(self, value): return self.engine.printer.to_string(value)

    @native('to_debug', None)
    def _to_debug(self, value): return self.engine.printer.to_debug(value)

    # --- Conversion ---
    @native('to_float', 'i64')
    def _to_float(self, value): return float(value)

    @native('to_int', 'f64')
    def _to_int(self, value): return _checked(int(value))

    # --- Time ---
    @native('timestamp')
    def _timestamp(self): return Timestamp()

    @native('elapsed', 'timestamp')
    def _elapsed(self, ts): return ts.elapsed()

    # --- Collections ---
    @native('blob')
    def _blob(self): return bytearray()

    @native('blob', 'i64')
    @native('blob', 'i64', 'i64')
    def _blob_sized(self, size, fill=0):
        return bytearray([fill & 0xFF]) * max(size, 0)

    @native('len', 'string')
    @native('len', 'array')
    @native('len', 'map')
    @native('len', 'blob')
    @native('len', 'range')
    @native('len', 'range=')
    def _len(self, value): return len(value)

    @native('push', 'array', None)
    def _push(self, array, item):
        array.append(item)

    @native('push', 'blob', 'i64')
    def _push_byte(self, blob, byte):
        blob.append(byte & 0xFF)

    @native('keys', 'map')
    def _keys(self, mapping): return list(mapping.keys())

    @native('values', 'map')
    def _values(self, mapping): return list(mapping.values())


def _accepts_ctx(func: Callable) -> bool:
    try:
        param = inspect.signature(func).parameters.get('ctx')
    except (TypeError, ValueError):
        return False
    return param is not None and param.kind == inspect.Parameter.KEYWORD_ONLY


# ===================================================================
# The Engine
# ===================================================================

class Engine:
    """
    Owns the function registry, the registered host types and the evaluator.

    Every `eval` runs against a fresh child layer of the registry, so the
    functions a script defines never leak into the next evaluation.
    """

    _parser: Optional[Parser] = None
    _transformer: Optional[EmberTransformer] = None

    def __init__(self, config: Optional[EngineConfig] = None, load_stdlib: bool = True):
        self.config = config if config is not None else EngineConfig().with_env()
        self.types = TypeRegistry()
        self.registry = Registry(types=self.types)
        self.printer = Printer(self.types)
        self.side_effects: List[Dict] = []
        self.on_print: Callable[[str], None] = self._default_print
        self.on_debug: Callable[[str], None] = self._default_debug
        self.debug = bool(os.environ.get("EMBER_DEBUG"))

        if Engine._parser is None:
            grammar_path = Path(__file__).parent / "grammar" / "ember_grammar.yaml"
            Engine._parser = Parser.from_file(str(grammar_path))
        if Engine._transformer is None:
            Engine._transformer = EmberTransformer()
        self.parser = Engine._parser
        self.transformer = Engine._transformer

        self.evaluator = Evaluator(self)
        if load_stdlib:
            StdLib(self).install(self.registry)

    def _default_print(self, text: str):
        self.side_effects.append({'topics': ['stdout'], 'message': text})

    def _default_debug(self, text: str):
        self.side_effects.append({'topics': ['debug'], 'message': text})

    # --- Registration ---

    def register_type(self, py_type: type, name: Optional[str] = None,
                      duplicate: Optional[Callable[[Any], Any]] = None):
        return self.types.register(py_type, name, duplicate)

    def _tag_for(self, annotation: Any) -> Optional[str]:
        if annotation is inspect.Parameter.empty or annotation is Any or annotation is None:
            return None
        if isinstance(annotation, str):
            if annotation in BUILTIN_TAGS or self.types.by_name(annotation) is not None:
                return annotation
            if annotation in _ANNOTATION_NAMES:
                return _ANNOTATION_NAMES[annotation]
            if annotation == 'Any':
                return None
            raise ContractViolation(annotation, "parameter type is not a built-in or registered type")
        if annotation in _ANNOTATION_TAGS:
            return _ANNOTATION_TAGS[annotation]
        if isinstance(annotation, type):
            info = self.types.lookup(annotation)
            if info is None:
                raise ContractViolation(qualified_name(annotation), "not registered with register_type")
            return info.name
        raise RegistrationError(f"Unsupported parameter annotation: {annotation!r}")

    def register_fn(self, name: str, func: Optional[Callable] = None,
                    params: Optional[Sequence[Any]] = None, *, doc: Optional[str] = None):
        """
        Registers a host function under `name`.

        Parameter tags come from `params` when given (tag strings, Python
        types, or None for any), otherwise from the annotations of the
        positional parameters. A keyword-only `ctx` parameter receives a
        CallContext. Without `func`, returns a decorator.
        """
        if func is None:
            def decorator(f):
                self.register_fn(name, f, params, doc=doc)
                return f
            return decorator

        if not isinstance(name, str) or not name:
            raise InvalidFunctionName(name)
        if not callable(func):
            raise RegistrationError(f"Cannot register non-callable {func!r} as '{name}'")

        sig = inspect.signature(func)
        accepts_ctx = False
        positional = []
        for p in sig.parameters.values():
            if p.name == 'ctx' and p.kind == inspect.Parameter.KEYWORD_ONLY:
                accepts_ctx = True
            elif p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
                positional.append(p)
            elif p.kind == inspect.Parameter.VAR_POSITIONAL and params is None:
                raise RegistrationError(f"Function '{name}' takes *args; pass params= to fix its arity")

        if params is not None:
            tags = tuple(self._tag_for(p) for p in params)
        else:
            tags = tuple(self._tag_for(p.annotation) for p in positional)

        return self.registry.register(
            FnSignature(name, tags), func, accepts_ctx=accepts_ctx,
            doc=doc or inspect.getdoc(func),
        )

    def register_host(self, host: Any) -> List[FnEntry]:
        """Registers every `@ember_fn` method of `host`."""
        entries = []
        for attr, member in inspect.getmembers(host):
            if not callable(member):
                continue
            meta = getattr(member, '_ember_fn', None)
            if meta is None:
                meta = getattr(getattr(member, '__func__', None), '_ember_fn', None)
            if meta is None:
                continue
            entries.append(self.register_fn(meta['name'] or attr, member, meta['params']))
        return entries

    # --- Compilation ---

    def compile(self, text: str) -> Program:
        """Parses `text` into a Program. Raises ParseError."""
        if not text.strip():
            return Program([], [], text)
        result = self.parser.parse(text)
        if result.get('status') != 'success':
            message = result.get('message') or "parse failed"
            m = _PARSE_LOC.search(message)
            line, col = (int(m.group(1)), int(m.group(2))) if m else (None, None)
            raise ParseError(message, line=line, col=col)
        return self.transformer.to_program(result.get('ast'), text)

    # --- Execution ---

    def eval_ast(self, program: Program, scope: Optional[Scope] = None,
                 functions: Optional[Registry] = None) -> Any:
        scope = scope if scope is not None else Scope()
        layer = functions if functions is not None else self.registry.child()
        if self.evaluator.depth == 0:
            self.evaluator.call_stack.clear()
        return self.evaluator.run_program(program, scope, layer)

    def run_ast(self, program: Program, scope: Optional[Scope] = None,
                functions: Optional[Registry] = None):
        self.eval_ast(program, scope, functions)

    def eval(self, text: str, scope: Optional[Scope] = None) -> Any:
        return self.eval_ast(self.compile(text), scope)

    def eval_with_scope(self, scope: Scope, text: str) -> Any:
        return self.eval_ast(self.compile(text), scope)

    def run(self, text: str, scope: Optional[Scope] = None):
        self.eval(text, scope)

    def run_with_scope(self, scope: Scope, text: str):
        self.eval_ast(self.compile(text), scope)

    def eval_file(self, path: Union[str, Path], scope: Optional[Scope] = None) -> Any:
        return self.eval(Path(path).read_text(encoding='utf-8'), scope)

    def eval_file_with_scope(self, scope: Scope, path: Union[str, Path]) -> Any:
        return self.eval_file(path, scope)

    def run_file(self, path: Union[str, Path], scope: Optional[Scope] = None):
        self.eval_file(path, scope)

    def run_file_with_scope(self, scope: Scope, path: Union[str, Path]):
        self.eval_file(path, scope)

    def call_fn(self, name: str, *args, scope: Optional[Scope] = None, ast: Optional[Program] = None) -> Any:
        """
        Calls a function from the host. With `ast`, the functions that
        program defines are visible to the call.
        """
        layer = self.registry.child()
        if ast is not None:
            self.evaluator.define_functions(ast, layer)
        if self.evaluator.depth == 0:
            self.evaluator.call_stack.clear()
        saved = self.evaluator.fns
        self.evaluator.fns = layer
        try:
            return self.evaluator.call_fn(name, list(args), scope)
        finally:
            self.evaluator.fns = saved


# ===================================================================
# The Script Runner
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)
    error: Optional[BaseException] = None

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """
    Runs Ember source text, turning every outcome into an ExecutionResult.

    The root scope and the script-function layer persist across calls, so
    a REPL session keeps its variables and functions.
    """

    def __init__(self, host_object: Any = None, engine: Optional[Engine] = None,
                 config: Optional[EngineConfig] = None):
        self.engine = engine if engine is not None else Engine(config)
        self.evaluator = self.engine.evaluator
        self.host_object = host_object
        if host_object is not None:
            self.engine.register_host(host_object)
        self.root_scope = Scope()
        self.functions = self.engine.registry.child()

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
            if i == line and col is not None:
                out.append(f"  {' ' * width} | {' ' * max(col - 1, 0)}^")
        return "\n".join(out)

    def _format_stacktrace(self) -> str:
        stack = self.evaluator.call_stack
        if not stack:
            return ""
        pf = self.engine.printer.pformat
        frames = []
        for frame in stack:
            args = " ".join(pf(a) for a in frame.get('args') or [])
            frames.append(f"({frame['name']}{' ' + args if args else ''})")
        return "Ember stacktrace: " + " ".join(frames)

    def _format_error(self, e: BaseException, source: str) -> tuple:
        err = unwrap_nested(e)
        kind = getattr(err, 'kind', type(err).__name__)
        msg = f"{kind}: {getattr(err, 'message', str(err))}"
        if isinstance(err, DispatchError) and err.arg_types:
            msg = f"{msg}\nCall: {err.signature()}"

        # The outermost location is the one in the text that was run.
        loc = getattr(e, 'loc', None) or getattr(err, 'loc', None)
        if loc is None and not isinstance(e, EmberError):
            loc = getattr(self.evaluator.current_node, 'loc', None)
        token = None
        if isinstance(loc, dict) and loc.get('line') is not None:
            line, col = loc.get('line'), loc.get('col')
            token = {'line': line, 'col': col, 'tag': loc.get('tag'), 'text': loc.get('text')}
            context = self._source_context(source, line, col)
            msg = f"{msg}\n(line {line}, col {col})" + (f"\n{context}" if context else "")

        trace = self._format_stacktrace()
        if trace:
            msg += "\n" + trace
        return msg, token

    def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        engine = self.engine
        engine.side_effects.clear()
        try:
            program = engine.compile(source_code)
            value = engine.eval_ast(program, self.root_scope, self.functions)
            return ExecutionResult(status='success', value=value, side_effects=engine.side_effects)
        except (EmberError, RecursionError) as e:
            error = e
            err_msg, err_token = self._format_error(e, source_code)
        except Exception as e:
            error = e
            err_msg, err_token = self._format_error(e, source_code)
            err_msg = f"InternalError: {err_msg}"
        engine.side_effects.append({'topics': ['stderr'], 'message': err_msg})
        return ExecutionResult(
            status='error',
            error_message=err_msg,
            error_token=err_token,
            side_effects=engine.side_effects,
            error=unwrap_nested(error),
        )
