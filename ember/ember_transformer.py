"""
Transforms the raw koine AST into ember_syntax nodes.
"""
import itertools
import re
from dataclasses import fields
from typing import Any, List, Optional

from ember.ember_datatypes import ANON_PREFIX, Char, is_valid_function_name
from ember.ember_errors import ParseError
from ember.ember_syntax import (
    ArrayLit, Assign, Block, Break, Call, CallValue, Closure, Continue, FnDef, For,
    If, Index, Let, Literal, Logical, MapLit, MethodCall, Node, Program, Property,
    RangeExpr, Return, Template, Throw, TryCatch, Var, While,
)

# Closure names are unique per process so that nested evaluations never collide.
_anon_ids = itertools.count(1)

_ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', '0': '\0', '\\': '\\', '"': '"', "'": "'", '`': '`'}
_MUSTACHE_NAME = re.compile(r"\{\{[{&#^/]?\s*([A-Za-z_][A-Za-z0-9_]*)")


def unescape(body: str) -> str:
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != '\\' or i + 1 >= len(body):
            out.append(ch)
            i += 1
            continue
        nxt = body[i + 1]
        if nxt == 'u' and body[i + 2:i + 3] == '{':
            end = body.index('}', i + 3)
            out.append(chr(int(body[i + 3:end], 16)))
            i = end + 1
        elif nxt == 'x':
            out.append(chr(int(body[i + 2:i + 4], 16)))
            i += 4
        else:
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
    return ''.join(out)


def free_names(node: Any, bound: set, out: List[str]):
    """
    Collects, in first-use order, the names `node` reads that are not bound
    inside it. Called names are included: a variable holding a function
    pointer can be called by name.
    """
    def note(name):
        if name not in bound and name not in out and name != 'this' and is_valid_function_name(name):
            out.append(name)

    match node:
        case None:
            return
        case list():
            for item in node:
                free_names(item, bound, out)
        case Var(name=name):
            note(name)
        case Call(name=name, args=args):
            note(name)
            free_names(args, bound, out)
        case Let(name=name, value=value):
            free_names(value, bound, out)
            bound.add(name)
        case Block(statements=statements):
            free_names(statements, set(bound), out)
        case For(var=var, iterable=iterable, body=body):
            free_names(iterable, bound, out)
            free_names(body, bound | {var}, out)
        case TryCatch(body=body, var=var, handler=handler):
            free_names(body, bound, out)
            free_names(handler, bound | ({var} if var else set()), out)
        case Closure(captures=captures):
            for name in captures:
                note(name)
        case Template(text=text):
            for name in _MUSTACHE_NAME.findall(text):
                note(name)
        case FnDef():
            return
        case MapLit(entries=entries):
            for _, value in entries:
                free_names(value, bound, out)
        case Node():
            for f in fields(node):
                value = getattr(node, f.name)
                if isinstance(value, (Node, list)):
                    free_names(value, bound, out)


class EmberTransformer:
    def __init__(self):
        self._functions: List[FnDef] = []

    def _attach_loc(self, obj, node):
        line = node.get('line'); col = node.get('col')
        if line is not None and col is not None and hasattr(obj, 'loc'):
            obj.loc = {'line': line, 'col': col, 'tag': node.get('tag'), 'text': node.get('text')}
        return obj

    def _error(self, message: str, node: dict):
        return ParseError(message, line=node.get('line'), col=node.get('col'))

    def to_program(self, ast: dict, source: Optional[str] = None) -> Program:
        """Transforms a parsed `program` node, lifting function definitions out of the body."""
        self._functions = []
        statements = self._statements(ast.get('children', []) if isinstance(ast, dict) else ast)
        return Program(statements, self._functions, source)

    def _statements(self, children) -> List[Node]:
        out = []
        for child in children:
            if isinstance(child, dict) and child.get('tag') in ('literal', 'regex'):
                continue
            stmt = self.transform(child)
            if stmt is not None:
                out.append(stmt)
        return out

    def _block(self, node) -> Block:
        if isinstance(node, dict) and node.get('tag') == 'block':
            return self.transform(node)
        # A single expression used as a body.
        body = self.transform(node)
        return Block([body] if body is not None else [], loc=getattr(body, 'loc', None))

    def _names(self, node) -> List[str]:
        return [c['text'] for c in node.get('children', []) if isinstance(c, dict) and c.get('tag') == 'identifier']

    def transform(self, node: Any) -> Any:
        if isinstance(node, list):
            return [self.transform(n) for n in node]
        if not isinstance(node, dict):
            return node

        tag = node.get('tag')
        children = node.get('children', [])
        if isinstance(children, dict):
            children = list(children.values())

        match tag:
            # Statements
            case 'program':
                return Program(self._statements(children))
            case 'block':
                return self._attach_loc(Block(self._statements(children)), node)
            case 'let_stmt':
                value = self.transform(children[1]) if len(children) > 1 else None
                return self._attach_loc(Let(children[0]['text'], value), node)
            case 'fn_def':
                name = children[0]['text']
                params = self._names(children[1])
                if len(set(params)) != len(params):
                    raise self._error(f"Duplicate parameter name in function '{name}'", node)
                fn = self._attach_loc(FnDef(name, params, self.transform(children[2])), node)
                self._functions.append(fn)
                return None
            case 'if_stmt':
                cond = self.transform(children[0])
                then = self.transform(children[1])
                otherwise = self.transform(children[2]) if len(children) > 2 else None
                return self._attach_loc(If(cond, then, otherwise), node)
            case 'while_stmt':
                return self._attach_loc(While(self.transform(children[0]), self.transform(children[1])), node)
            case 'loop_stmt':
                return self._attach_loc(While(None, self.transform(children[0])), node)
            case 'for_stmt':
                var = children[0]['text']
                return self._attach_loc(For(var, self.transform(children[1]), self.transform(children[2])), node)
            case 'return_stmt':
                return self._attach_loc(Return(self.transform(children[0]) if children else None), node)
            case 'throw_stmt':
                return self._attach_loc(Throw(self.transform(children[0]) if children else None), node)
            case 'try_stmt':
                if len(children) == 3:
                    var = self._names(children[1])[0]
                    handler = children[2]
                else:
                    var, handler = None, children[1]
                return self._attach_loc(TryCatch(self.transform(children[0]), var, self.transform(handler)), node)
            case 'break_stmt':
                return self._attach_loc(Break(), node)
            case 'continue_stmt':
                return self._attach_loc(Continue(), node)
            case 'assign_stmt':
                target = self.transform(children[0])
                if not isinstance(target, (Var, Index, Property)):
                    raise self._error("Invalid assignment target", node)
                op = children[1]['text'][:-1] or None
                return self._attach_loc(Assign(target, self.transform(children[2]), op), node)

            # Operators
            case 'binary_op':
                return self._binary(node)
            case 'prefix_expr':
                op = children[0]['text']
                operand = self.transform(children[1])
                if op == '-' and isinstance(operand, Literal) and type(operand.value) in (int, float):
                    return self._attach_loc(Literal(-operand.value), node)
                return self._attach_loc(Call(op, [operand]), node)
            case 'postfix':
                return self._postfix(children)
            case 'paren':
                return self.transform(children[0])

            # Literals
            case 'int_lit':
                text = node['text'].replace('_', '')
                value = int(text, 16) if text.startswith('0x') else int(text)
                return self._attach_loc(Literal(value), node)
            case 'float_lit':
                return self._attach_loc(Literal(float(node['text'].replace('_', ''))), node)
            case 'string_lit':
                return self._attach_loc(Literal(unescape(node['text'][1:-1])), node)
            case 'char_lit':
                return self._attach_loc(Literal(Char(unescape(node['text'][1:-1]))), node)
            case 'template_lit':
                return self._attach_loc(Template(node['text'][1:-1]), node)
            case 'bool_lit':
                return self._attach_loc(Literal(node['text'] == 'true'), node)
            case 'unit_lit':
                return self._attach_loc(Literal(None), node)
            case 'array_lit':
                return self._attach_loc(ArrayLit(self.transform(children)), node)
            case 'map_lit':
                entries = []
                for entry in children:
                    key_node, value_node = entry['children']
                    key = key_node['text']
                    if key_node.get('tag') == 'string_lit':
                        key = unescape(key[1:-1])
                    entries.append((key, self.transform(value_node)))
                return self._attach_loc(MapLit(entries), node)
            case 'closure':
                return self._closure(node, children)
            case 'identifier':
                return self._attach_loc(Var(node['text']), node)

            case _:
                raise self._error(f"Unexpected syntax node '{tag}'", node)

    def _binary(self, node: dict) -> Node:
        op = node['op']['text']
        left = self.transform(node['left'])
        right = self.transform(node['right'])
        match op:
            case '&&' | '||':
                out = Logical(op, left, right)
            case 'in':
                out = Call('contains', [right, left])
            case '..' | '..=':
                out = RangeExpr(left, right, inclusive=(op == '..='))
            case _:
                out = Call(op, [left, right])
        return self._attach_loc(out, node)

    def _postfix(self, children: list) -> Node:
        current = self.transform(children[0])
        for op in children[1:]:
            match op.get('tag'):
                case 'call_args':
                    args = self.transform(op.get('children', []))
                    if isinstance(current, Var):
                        current = Call(current.name, args, loc=current.loc)
                    else:
                        current = CallValue(current, args)
                case 'index_access':
                    current = Index(current, self.transform(op['children'][0]))
                case 'dot_access':
                    parts = op['children']
                    name = parts[0]['text']
                    if len(parts) > 1:
                        current = MethodCall(current, name, self.transform(parts[1].get('children', [])))
                    else:
                        current = Property(current, name)
            if current.loc is None:
                self._attach_loc(current, op)
        return current

    def _closure(self, node: dict, children: list) -> Closure:
        params = self._names(children[0])
        body = self._block(children[1])
        captures: List[str] = []
        free_names(body, set(params), captures)
        fn_name = f"{ANON_PREFIX}{next(_anon_ids)}"
        self._functions.append(self._attach_loc(FnDef(fn_name, captures + params, body), node))
        return self._attach_loc(Closure(fn_name, captures, params), node)
