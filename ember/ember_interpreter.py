"""
The Ember tree-walking evaluator and call dispatcher.
"""
import os
import sys
from typing import Any, List, Optional

import pystache

from ember.ember_datatypes import (
    ANON_PREFIX, Char, FnPtr, InclusiveRange, SharedCell, duplicate, flatten,
    into_bool, into_int, into_string, type_name,
)
from ember.ember_errors import (
    DispatchError, EmberError, IndexOutOfBounds, NativeError, NestedEvalError,
    RecursionLimit, RegistrationError, ScriptThrow, TypeMismatch, VariableNotFound,
    AmbiguousOverload, unwrap_nested,
)
from ember.ember_registry import FnEntry, FnSignature, Registry
from ember.ember_scope import Scope
from ember.ember_syntax import (
    ArrayLit, Assign, Block, Break, Call, CallValue, Closure, Continue, For, If, Index,
    Let, Literal, Logical, MapLit, MethodCall, Program, Property, RangeExpr, Return,
    Template, Throw, TryCatch, Var, While,
)


# --- Control-flow signals (never visible to scripts) ---

class _Signal(Exception):
    pass


class _Return(_Signal):
    def __init__(self, value):
        super().__init__()
        self.value = value


class _Break(_Signal):
    pass


class _Continue(_Signal):
    pass


class _Marker:
    def __init__(self, name):
        self.name = name

    def __repr__(self):
        return self.name


# No receiver was supplied for a call.
NO_THIS = _Marker("NO_THIS")
# A closure capture whose variable did not exist when the closure was made.
UNBOUND = _Marker("UNBOUND")


class CallContext:
    """
    Handed to native functions that declare a keyword-only `ctx` parameter.
    Gives them the calling scope and re-entrant access to the dispatcher.
    """
    def __init__(self, evaluator: 'Evaluator', scope: Scope, fn_name: str, call_site=None):
        self.evaluator = evaluator
        self.engine = evaluator.engine
        self.scope = scope
        self.fn_name = fn_name
        self.call_site = call_site

    @property
    def functions(self) -> Registry:
        return self.evaluator.fns

    def call_fn(self, name: str, *args) -> Any:
        return self.evaluator.call_fn(name, list(args), self.scope)

    def call_ptr(self, ptr: FnPtr, *args, this: Any = NO_THIS) -> Any:
        return self.evaluator.call_ptr(ptr, list(args), self.scope, this=this, call_site=self.call_site)

    def eval(self, text: str) -> Any:
        return self.evaluator.eval_nested(text, self.scope)


class Evaluator:
    """The Ember execution engine."""

    def __init__(self, engine):
        self.engine = engine
        self.fns: Registry = engine.registry
        self.depth = 0
        self.call_stack: List[dict] = []
        self.current_node = None
        self._renderer = pystache.Renderer(escape=lambda u: u)

    def _dbg(self, *parts):
        if os.environ.get("EMBER_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def _push_frame(self, name, args, call_site):
        self.call_stack.append({
            'name': name,
            'args': [flatten(a) for a in args if a is not UNBOUND],
            'call_site': getattr(call_site, 'loc', None),
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    @property
    def types(self):
        return self.engine.types

    # =================================================================
    # Programs
    # =================================================================

    def define_functions(self, program: Program, fns: Registry):
        """Registers every function a program defines. Redefinitions replace earlier ones."""
        seen = set()
        for fn in program.functions:
            key = (fn.name, fn.arity)
            if key in seen:
                raise AmbiguousOverload(fn.name, (None,) * fn.arity)
            seen.add(key)
        for fn in program.functions:
            fns.register(FnSignature(fn.name, (None,) * fn.arity), fn, namespace='script', replace=True)

    def run_program(self, program: Program, scope: Scope, fns: Registry) -> Any:
        saved = self.fns
        self.fns = fns
        try:
            self.define_functions(program, fns)
            return self._exec_statements(program.statements, scope)
        except _Return as r:
            return r.value
        except (_Break, _Continue):
            raise EmberError("'break' or 'continue' used outside of a loop")
        except RecursionError as e:
            if isinstance(e, EmberError):
                raise
            raise RecursionLimit(self.engine.config.max_call_levels) from e
        finally:
            self.fns = saved

    def eval_nested(self, text: str, scope: Scope) -> Any:
        """
        Runs `text` against the live `scope`. Assignments to existing
        variables stick; variables it declares are dropped on return.
        """
        limit = self.engine.config.max_call_levels
        if self.depth >= limit:
            raise RecursionLimit(limit)
        saved = self.fns
        child = saved.child()
        mark = len(scope)
        self.depth += 1
        try:
            program = self.engine.compile(text)
            self.fns = child
            self.define_functions(program, child)
            try:
                return self._exec_statements(program.statements, scope)
            except _Return as r:
                return r.value
            except (_Break, _Continue):
                raise EmberError("'break' or 'continue' used outside of a loop")
        except EmberError as e:
            raise NestedEvalError(e) from e
        finally:
            self.depth -= 1
            self.fns = saved
            scope.rewind(mark)
            # Closures created by the nested text may outlive it.
            for entry in child.local_entries():
                if entry.name.startswith(ANON_PREFIX):
                    saved.register(entry.signature, entry.target, namespace='script', replace=True)

    # =================================================================
    # Dispatch
    # =================================================================

    def call_fn(self, name: str, args: List[Any], scope: Optional[Scope] = None) -> Any:
        value, _ = self._dispatch(name, list(args), scope if scope is not None else Scope())
        return value

    def call_ptr(self, ptr: Any, args: List[Any], scope: Optional[Scope] = None,
                 this: Any = NO_THIS, call_site=None) -> Any:
        """Calls through a function pointer: curried arguments first, then `args`."""
        ptr = flatten(ptr)
        if not isinstance(ptr, FnPtr):
            raise TypeMismatch('Fn', type_name(ptr, self.types))
        if this is NO_THIS and ptr.has_this:
            this = ptr.this
        full = list(ptr.curry_args) + list(args)
        value, _ = self._dispatch(
            ptr.fn_name, full, scope if scope is not None else Scope(),
            curried=len(ptr.curry_args), this=this, call_site=call_site,
        )
        return value

    def _dispatch(self, name: str, args: List[Any], scope: Scope, *, curried: int = 0,
                  this: Any = NO_THIS, call_site=None):
        """
        Resolves and invokes `name`. Returns (result, receiver after the call).

        Script functions take precedence over native ones. With a receiver,
        a script function is matched on the given arguments and sees the
        receiver as `this`; a native function gets the receiver prepended
        as its first argument.
        """
        fns = self.fns
        if self.engine.debug:
            self._dbg("DISPATCH", name, [type_name(a, self.types) for a in args if a is not UNBOUND],
                      "this" if this is not NO_THIS else "")

        if fns.candidates(name, len(args), 'script'):
            entry = fns.resolve(name, args, 'script')
            return self._invoke_script(entry, args, scope, curried, this, call_site)

        if this is not NO_THIS:
            full = [this] + list(args)
            entry, arg_types = fns.resolve_with_types(name, full, 'native')
            return self._invoke_native(entry, full, arg_types, scope, call_site), this

        entry, arg_types = fns.resolve_with_types(name, args)
        if entry.is_script:
            return self._invoke_script(entry, args, scope, curried, this, call_site)
        return self._invoke_native(entry, args, arg_types, scope, call_site), this

    def _invoke_native(self, entry: FnEntry, args: List[Any], arg_types: List[str], scope: Scope, call_site):
        values = list(args) if entry.raw_args else [flatten(a) for a in args]
        values = entry.signature.coerce(values, arg_types)
        kwargs = {}
        if entry.accepts_ctx:
            kwargs['ctx'] = CallContext(self, scope, entry.name, call_site)
        try:
            return entry.target(*values, **kwargs)
        except (EmberError, _Signal, RecursionError):
            raise
        except Exception as e:
            raise NativeError(entry.name, e) from e

    def _invoke_script(self, entry: FnEntry, args: List[Any], scope: Scope, curried: int, this: Any, call_site):
        fn = entry.target
        limit = self.engine.config.max_call_levels
        if self.depth >= limit:
            raise RecursionLimit(limit)

        # Script functions see only their parameters. Curried shared cells
        # stay shared so that closures alias the variables they captured.
        local = Scope()
        for i, (param, arg) in enumerate(zip(fn.params, args)):
            if arg is UNBOUND:
                continue
            if i < curried and isinstance(arg, SharedCell):
                local.bind(param, arg)
            else:
                local.declare(param, duplicate(flatten(arg), self.types))
        has_this = this is not NO_THIS
        if has_this:
            local.declare('this', this)

        self._push_frame(fn.name, args, call_site)
        self.depth += 1
        try:
            result = self._exec_statements(fn.body.statements, local)
        except _Return as r:
            result = r.value
        except (_Break, _Continue):
            raise EmberError(f"'break' or 'continue' used outside of a loop in function '{fn.name}'")
        finally:
            self.depth -= 1
        self._pop_frame()
        return result, (local.get_value('this') if has_this else NO_THIS)

    # =================================================================
    # Evaluation
    # =================================================================

    def eval(self, node: Any, scope: Scope) -> Any:
        """Public entry point for evaluating a single node."""
        return flatten(self._eval(node, scope))

    def _exec_statements(self, statements, scope: Scope) -> Any:
        result = None
        for stmt in statements:
            result = self._eval(stmt, scope)
        return result

    def _missing_var(self, name: str):
        if self.engine.config.strict_variables:
            raise VariableNotFound(name)
        return None

    def _eval_arg(self, node: Any, scope: Scope) -> Any:
        """Arguments that are plain variables are passed as their raw slot, shared cell included."""
        if isinstance(node, Var):
            slot = scope.lookup(node.name)
            if slot is None and not scope.is_def_var(node.name):
                return self._missing_var(node.name)
            return slot
        return self._eval(node, scope)

    def _eval(self, node: Any, scope: Scope) -> Any:
        self.current_node = node
        try:
            match node:
                case Literal(value=value):
                    return value
                case Var(name=name):
                    slot = scope.lookup(name)
                    if slot is None and not scope.is_def_var(name):
                        return self._missing_var(name)
                    return flatten(slot)
                case Call(name=name, args=arg_nodes):
                    args = [self._eval_arg(a, scope) for a in arg_nodes]
                    if not self.fns.is_def_fn(name, len(args)):
                        ptr = flatten(scope.lookup(name))
                        if isinstance(ptr, FnPtr):
                            return self.call_ptr(ptr, args, scope, call_site=node)
                    value, _ = self._dispatch(name, args, scope, call_site=node)
                    return value
                case MethodCall(target=target, name=name, args=arg_nodes):
                    receiver = flatten(self._eval_arg(target, scope))
                    args = [self._eval_arg(a, scope) for a in arg_nodes]
                    value, after = self._dispatch(name, args, scope, this=receiver, call_site=node)
                    if after is not NO_THIS and after is not receiver and isinstance(target, Var):
                        scope.set_value(target.name, after)
                    return value
                case CallValue(callee=callee, args=arg_nodes):
                    ptr = flatten(self._eval(callee, scope))
                    args = [self._eval_arg(a, scope) for a in arg_nodes]
                    return self.call_ptr(ptr, args, scope, call_site=node)
                case Closure(fn_name=fn_name, captures=captures):
                    curry = [
                        scope.capture_as_shared(name) if scope.is_def_var(name) else UNBOUND
                        for name in captures
                    ]
                    return FnPtr(fn_name, curry)
                case Logical(op=op, left=left, right=right):
                    lhs = into_bool(self._eval(left, scope))
                    if op == '&&' and not lhs:
                        return False
                    if op == '||' and lhs:
                        return True
                    return into_bool(self._eval(right, scope))
                case RangeExpr(start=start, end=end, inclusive=inclusive):
                    lo = into_int(self._eval(start, scope))
                    hi = into_int(self._eval(end, scope))
                    return InclusiveRange(lo, hi) if inclusive else range(lo, hi)
                case ArrayLit(items=items):
                    return [duplicate(flatten(self._eval(i, scope)), self.types) for i in items]
                case MapLit(entries=entries):
                    return {k: duplicate(flatten(self._eval(v, scope)), self.types) for k, v in entries}
                case Template(text=text):
                    return self._render_template(text, scope)
                case Index(target=target, index=index):
                    container = flatten(self._eval(target, scope))
                    key = flatten(self._eval(index, scope))
                    return self._index_get(container, key)
                case Property(target=target, name=name):
                    container = flatten(self._eval(target, scope))
                    if not isinstance(container, dict):
                        raise TypeMismatch('map', type_name(container, self.types),
                                           f"Property '{name}' needs a map, got {type_name(container, self.types)}")
                    return container.get(name)

                # --- Statements ---
                case Let(name=name, value=value_node):
                    value = None if value_node is None else duplicate(flatten(self._eval(value_node, scope)), self.types)
                    scope.declare(name, value)
                    return None
                case Assign():
                    self._assign(node, scope)
                    return None
                case Block(statements=statements):
                    mark = len(scope)
                    try:
                        return self._exec_statements(statements, scope)
                    finally:
                        scope.rewind(mark)
                case If(cond=cond, then=then, otherwise=otherwise):
                    if into_bool(self._eval(cond, scope)):
                        return self._eval(then, scope)
                    if otherwise is not None:
                        return self._eval(otherwise, scope)
                    return None
                case While(cond=cond, body=body):
                    while cond is None or into_bool(self._eval(cond, scope)):
                        try:
                            self._eval(body, scope)
                        except _Break:
                            break
                        except _Continue:
                            continue
                    return None
                case For(var=var, iterable=iterable, body=body):
                    for item in self._iterate(flatten(self._eval(iterable, scope))):
                        mark = len(scope)
                        scope.declare(var, item)
                        try:
                            self._eval(body, scope)
                        except _Break:
                            break
                        except _Continue:
                            continue
                        finally:
                            scope.rewind(mark)
                    return None
                case Return(value=value_node):
                    raise _Return(None if value_node is None else flatten(self._eval(value_node, scope)))
                case Throw(value=value_node):
                    raise ScriptThrow(None if value_node is None else flatten(self._eval(value_node, scope)))
                case Break():
                    raise _Break()
                case Continue():
                    raise _Continue()
                case TryCatch():
                    return self._try_catch(node, scope)
                case _:
                    raise EmberError(f"Cannot evaluate {type(node).__name__}")
        except EmberError as e:
            if e.loc is None:
                e.loc = getattr(node, 'loc', None)
            raise

    # --- Helpers ---

    def _try_catch(self, node: TryCatch, scope: Scope) -> Any:
        frames = len(self.call_stack)
        try:
            return self._eval(node.body, scope)
        except EmberError as e:
            err = unwrap_nested(e)
            if isinstance(err, (RegistrationError, RecursionLimit)):
                raise
            del self.call_stack[frames:]
            self._dbg("CATCH", err.kind, err.message)
            mark = len(scope)
            if node.var:
                scope.declare(node.var, self.error_value(err))
            try:
                return self._eval(node.handler, scope)
            finally:
                scope.rewind(mark)

    def error_value(self, err: BaseException) -> Any:
        """The value a `catch (e)` block sees for an error."""
        if isinstance(err, ScriptThrow):
            return err.value
        value = {
            'kind': getattr(err, 'kind', type(err).__name__),
            'message': getattr(err, 'message', str(err)),
        }
        if isinstance(err, DispatchError):
            value['fn_name'] = err.fn_name
            value['arity'] = err.arity
        return value

    def _assign(self, node: Assign, scope: Scope):
        target = node.target
        value = flatten(self._eval(node.value, scope))
        if node.op is not None:
            current = flatten(self._eval(target, scope))
            value, _ = self._dispatch(node.op, [current, value], scope, call_site=node)
        value = duplicate(value, self.types)

        match target:
            case Var(name=name):
                if not scope.is_def_var(name):
                    raise VariableNotFound(name)
                scope.set_value(name, value)
            case Index(target=inner, index=index):
                container = flatten(self._eval(inner, scope))
                key = flatten(self._eval(index, scope))
                if isinstance(container, str) and isinstance(inner, Var):
                    pos = self._position(key, len(container))
                    ch = into_string(value)
                    scope.set_value(inner.name, container[:pos] + ch + container[pos + 1:])
                else:
                    self._index_set(container, key, value)
            case Property(target=inner, name=name):
                container = flatten(self._eval(inner, scope))
                if not isinstance(container, dict):
                    raise TypeMismatch('map', type_name(container, self.types))
                container[name] = value

    def _position(self, key: Any, length: int) -> int:
        pos = into_int(key)
        if pos < 0:
            pos += length
        if not 0 <= pos < length:
            raise IndexOutOfBounds(into_int(key), length)
        return pos

    def _index_get(self, container: Any, key: Any) -> Any:
        match container:
            case list() | bytearray():
                return container[self._position(key, len(container))]
            case str():
                return Char(container[self._position(key, len(container))])
            case dict():
                return container.get(into_string(key))
        raise TypeMismatch('array', type_name(container, self.types),
                           f"Cannot index into {type_name(container, self.types)}")

    def _index_set(self, container: Any, key: Any, value: Any):
        match container:
            case list():
                container[self._position(key, len(container))] = value
            case bytearray():
                container[self._position(key, len(container))] = into_int(value) & 0xFF
            case dict():
                container[into_string(key)] = value
            case _:
                raise TypeMismatch('array', type_name(container, self.types),
                                   f"Cannot assign into {type_name(container, self.types)}")

    def _iterate(self, value: Any):
        match value:
            case list():
                return list(value)
            case range() | InclusiveRange():
                return iter(value)
            case str():
                return [Char(c) for c in value]
            case bytearray():
                return list(value)
        raise TypeMismatch('array', type_name(value, self.types),
                           f"Cannot iterate over {type_name(value, self.types)}")

    def _template_value(self, value: Any) -> Any:
        value = flatten(value)
        if isinstance(value, list):
            return [self._template_value(v) for v in value]
        if isinstance(value, dict):
            return {k: self._template_value(v) for k, v in value.items()}
        return self.engine.printer.to_string(value)

    def _render_template(self, text: str, scope: Scope) -> str:
        context = {name: self._template_value(value) for name, value in scope.items()}
        return self._renderer.render(text, context)
