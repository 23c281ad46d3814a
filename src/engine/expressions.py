"""Expression language for stack attributes.

Attribute values in a stack are plain YAML data. Any string may embed
``${ expr }`` segments; a string consisting of exactly one segment yields
the raw value of the expression, otherwise segments are stringified and
concatenated.

Values are compiled once at load time into an immutable expression tree.
References (``var.x``, ``kind.name.attr``, ``module.m.output``) stay as
unbound ``Ref`` nodes until the graph builder replaces them with
``BoundRef`` nodes that point at a concrete node address. Evaluation
never looks at raw text.

Two sentinels flow through evaluation:
- ABSENT: the referenced node's count resolved to 0. Attributes, list
  items and map entries that evaluate to ABSENT are dropped.
- UNKNOWN: the value is only known after apply. Any operation on it
  yields UNKNOWN.
"""

import datetime
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Union

from engine.errors import ValidationError


class _Sentinel:
    """Singleton marker value that survives copy and deepcopy."""

    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __copy__(self) -> '_Sentinel':
        return self

    def __deepcopy__(self, memo: dict) -> '_Sentinel':
        return self

    def __reduce__(self) -> str:
        return self._name


ABSENT = _Sentinel('ABSENT')
UNKNOWN = _Sentinel('UNKNOWN')


# -----------------------------------------------------------------------------
# Expression tree
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Template:
    """Mixed text and expression parts of an interpolated string."""
    parts: tuple


@dataclass(frozen=True)
class ListExpr:
    items: tuple


@dataclass(frozen=True)
class MapExpr:
    """Map constructor; items are (key_expr, value_expr) pairs."""
    items: tuple


@dataclass(frozen=True)
class Ref:
    """Unbound dotted reference such as ``var.name`` or ``kind.name.id``."""
    parts: tuple
    text: str


@dataclass(frozen=True)
class BoundRef:
    """Reference resolved against the graph.

    Attributes:
        scope: 'variable' for root variables, 'node' for graph nodes
        target: Variable name or node address
        path: Attribute path below the target
        text: Source text, for error messages
    """
    scope: str
    target: str
    path: tuple
    text: str


@dataclass(frozen=True)
class GetAttr:
    obj: Any
    name: str


@dataclass(frozen=True)
class Index:
    obj: Any
    key: Any


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Conditional:
    cond: Any
    then: Any
    otherwise: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple


Expr = Union[Literal, Template, ListExpr, MapExpr, Ref, BoundRef, GetAttr,
             Index, Unary, Binary, Conditional, Call]


# -----------------------------------------------------------------------------
# Tokenizer and parser
# -----------------------------------------------------------------------------

_TOKEN_RE = re.compile(r'''
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|<=|>=|&&|\|\||[-+*/<>!?:.,()\[\]{}=])
''', re.VERBOSE)

_ESCAPES = {'n': '\n', 't': '\t', '"': '"', '\\': '\\'}


@dataclass(frozen=True)
class _Token:
    kind: str
    value: Any
    pos: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ValidationError(f"Unexpected character {text[pos]!r} at {pos} in '{text}'")
        kind = m.lastgroup
        raw = m.group()
        if kind == 'number':
            tokens.append(_Token('number', float(raw) if '.' in raw else int(raw), pos))
        elif kind == 'string':
            value = re.sub(r'\\(.)', lambda e: _ESCAPES.get(e.group(1), e.group(1)), raw[1:-1])
            tokens.append(_Token('string', value, pos))
        elif kind == 'ident':
            tokens.append(_Token('ident', raw, pos))
        elif kind == 'op':
            tokens.append(_Token('op', raw, pos))
        pos = m.end()
    tokens.append(_Token('eof', None, len(text)))
    return tokens


class _Parser:
    """Recursive-descent parser for the body of a ``${...}`` segment."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    @property
    def tok(self) -> _Token:
        return self.tokens[self.i]

    def _error(self, msg: str) -> ValidationError:
        return ValidationError(f"{msg} at position {self.tok.pos} in '{self.text}'")

    def _accept(self, value: str) -> bool:
        if self.tok.kind == 'op' and self.tok.value == value:
            self.i += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            raise self._error(f"Expected '{value}'")

    def parse(self) -> Expr:
        expr = self._ternary()
        if self.tok.kind != 'eof':
            raise self._error(f"Unexpected token {self.tok.value!r}")
        return expr

    def _ternary(self) -> Expr:
        cond = self._or()
        if self._accept('?'):
            then = self._ternary()
            self._expect(':')
            otherwise = self._ternary()
            return Conditional(cond, then, otherwise)
        return cond

    def _binary_level(self, ops: tuple, operand: Callable[[], Expr]) -> Expr:
        left = operand()
        while self.tok.kind == 'op' and self.tok.value in ops:
            op = self.tok.value
            self.i += 1
            left = Binary(op, left, operand())
        return left

    def _or(self) -> Expr:
        return self._binary_level(('||',), self._and)

    def _and(self) -> Expr:
        return self._binary_level(('&&',), self._equality)

    def _equality(self) -> Expr:
        return self._binary_level(('==', '!='), self._comparison)

    def _comparison(self) -> Expr:
        return self._binary_level(('<', '<=', '>', '>='), self._additive)

    def _additive(self) -> Expr:
        return self._binary_level(('+', '-'), self._multiplicative)

    def _multiplicative(self) -> Expr:
        return self._binary_level(('*', '/'), self._unary)

    def _unary(self) -> Expr:
        if self._accept('!'):
            return Unary('!', self._unary())
        if self._accept('-'):
            return Unary('-', self._unary())
        return self._postfix()

    def _postfix(self) -> Expr:
        expr = self._primary()
        while True:
            if self._accept('.'):
                if self.tok.kind != 'ident':
                    raise self._error("Expected attribute name after '.'")
                name = self.tok.value
                self.i += 1
                if isinstance(expr, Ref):
                    expr = Ref(expr.parts + (name,), f"{expr.text}.{name}")
                else:
                    expr = GetAttr(expr, name)
            elif self._accept('['):
                key = self._ternary()
                self._expect(']')
                expr = Index(expr, key)
            else:
                return expr

    def _primary(self) -> Expr:
        tok = self.tok
        if tok.kind in ('number', 'string'):
            self.i += 1
            return Literal(tok.value)
        if tok.kind == 'ident':
            self.i += 1
            if tok.value in ('true', 'false'):
                return Literal(tok.value == 'true')
            if tok.value == 'null':
                return Literal(None)
            if self._accept('('):
                if tok.value not in FUNCTIONS:
                    raise ValidationError(f"Unknown function '{tok.value}' in '{self.text}'")
                args = self._sequence(')')
                _check_arity(tok.value, len(args), self.text)
                return Call(tok.value, tuple(args))
            return Ref((tok.value,), tok.value)
        if self._accept('('):
            expr = self._ternary()
            self._expect(')')
            return expr
        if self._accept('['):
            return ListExpr(tuple(self._sequence(']')))
        if self._accept('{'):
            return self._map()
        raise self._error("Unexpected token" if tok.kind != 'eof' else "Unexpected end of expression")

    def _sequence(self, closer: str) -> list[Expr]:
        items: list[Expr] = []
        if self._accept(closer):
            return items
        while True:
            items.append(self._ternary())
            if self._accept(closer):
                return items
            self._expect(',')
            if self._accept(closer):
                return items

    def _map(self) -> MapExpr:
        items = []
        while not self._accept('}'):
            if self.tok.kind in ('ident', 'string'):
                key: Expr = Literal(self.tok.value)
                self.i += 1
            elif self._accept('('):
                key = self._ternary()
                self._expect(')')
            else:
                raise self._error("Expected map key")
            if not (self._accept('=') or self._accept(':')):
                raise self._error("Expected '=' or ':' after map key")
            items.append((key, self._ternary()))
            if not self._accept(','):
                self._expect('}')
                break
        return MapExpr(tuple(items))


def parse_expression(text: str) -> Expr:
    """Parse the body of a single ``${...}`` segment."""
    return _Parser(text).parse()


def _split_template(text: str) -> list[Union[str, Expr]]:
    """Split a string into literal text and parsed ``${...}`` segments."""
    parts: list[Union[str, Expr]] = []
    buf: list[str] = []
    i = 0
    while i < len(text):
        if text.startswith('$${', i):
            buf.append('${')
            i += 3
            continue
        if text.startswith('${', i):
            end = _segment_end(text, i + 2)
            if buf:
                parts.append(''.join(buf))
                buf = []
            parts.append(parse_expression(text[i + 2:end]))
            i = end + 1
            continue
        buf.append(text[i])
        i += 1
    if buf:
        parts.append(''.join(buf))
    return parts


def _segment_end(text: str, start: int) -> int:
    """Index of the '}' closing a segment that starts at ``start``."""
    depth = 0
    i = start
    while i < len(text):
        ch = text[i]
        if ch == '"':
            i += 1
            while i < len(text) and text[i] != '"':
                i += 2 if text[i] == '\\' else 1
        elif ch == '{':
            depth += 1
        elif ch == '}':
            if depth == 0:
                return i
            depth -= 1
        i += 1
    raise ValidationError(f"Unterminated '${{' in '{text}'")


def json_value(raw: Any, where: str = 'value') -> Any:
    """Normalize a YAML value to JSON types.

    YAML timestamps become ISO 8601 strings; other non-JSON types
    (binary, sets) are rejected.
    """
    if isinstance(raw, dict):
        return {str(k): json_value(v, where) for k, v in raw.items()}
    if isinstance(raw, (list, tuple)):
        return [json_value(v, where) for v in raw]
    if isinstance(raw, datetime.date):
        return raw.isoformat()
    if raw is None or isinstance(raw, (str, int, float, bool)):
        return raw
    raise ValidationError(f"{where}: unsupported value {raw!r} of type {type(raw).__name__}")


def compile_value(raw: Any) -> Expr:
    """Compile a YAML value (possibly nested) into an expression tree."""
    if isinstance(raw, dict):
        return MapExpr(tuple((Literal(str(k)), compile_value(v)) for k, v in raw.items()))
    if isinstance(raw, (list, tuple)):
        return ListExpr(tuple(compile_value(v) for v in raw))
    if isinstance(raw, str) and '${' in raw:
        parts = _split_template(raw)
        if len(parts) == 1 and not isinstance(parts[0], str):
            return parts[0]
        return Template(tuple(parts))
    return Literal(json_value(raw))


# -----------------------------------------------------------------------------
# Tree walking
# -----------------------------------------------------------------------------

def _children(expr: Expr) -> Iterator[Expr]:
    if isinstance(expr, Template):
        yield from (p for p in expr.parts if not isinstance(p, str))
    elif isinstance(expr, ListExpr):
        yield from expr.items
    elif isinstance(expr, MapExpr):
        for key, value in expr.items:
            yield key
            yield value
    elif isinstance(expr, (GetAttr,)):
        yield expr.obj
    elif isinstance(expr, Index):
        yield expr.obj
        yield expr.key
    elif isinstance(expr, Unary):
        yield expr.operand
    elif isinstance(expr, Binary):
        yield expr.left
        yield expr.right
    elif isinstance(expr, Conditional):
        yield expr.cond
        yield expr.then
        yield expr.otherwise
    elif isinstance(expr, Call):
        yield from expr.args


def references(expr: Expr) -> Iterator[Union[Ref, BoundRef]]:
    """Yield every reference in an expression tree."""
    if isinstance(expr, (Ref, BoundRef)):
        yield expr
        return
    for child in _children(expr):
        yield from references(child)


def bind(expr: Expr, binder: Callable[[Ref], BoundRef]) -> Expr:
    """Return a copy of ``expr`` with every Ref replaced by ``binder(ref)``."""
    if isinstance(expr, Ref):
        return binder(expr)
    if isinstance(expr, Template):
        return Template(tuple(p if isinstance(p, str) else bind(p, binder) for p in expr.parts))
    if isinstance(expr, ListExpr):
        return ListExpr(tuple(bind(i, binder) for i in expr.items))
    if isinstance(expr, MapExpr):
        return MapExpr(tuple((bind(k, binder), bind(v, binder)) for k, v in expr.items))
    if isinstance(expr, GetAttr):
        return GetAttr(bind(expr.obj, binder), expr.name)
    if isinstance(expr, Index):
        return Index(bind(expr.obj, binder), bind(expr.key, binder))
    if isinstance(expr, Unary):
        return Unary(expr.op, bind(expr.operand, binder))
    if isinstance(expr, Binary):
        return Binary(expr.op, bind(expr.left, binder), bind(expr.right, binder))
    if isinstance(expr, Conditional):
        return Conditional(bind(expr.cond, binder), bind(expr.then, binder), bind(expr.otherwise, binder))
    if isinstance(expr, Call):
        return Call(expr.name, tuple(bind(a, binder) for a in expr.args))
    return expr


def contains_unknown(value: Any) -> bool:
    """True if UNKNOWN appears anywhere inside ``value``."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


# -----------------------------------------------------------------------------
# Evaluation
# -----------------------------------------------------------------------------

def traverse(value: Any, path: tuple, text: str = '') -> Any:
    """Walk an attribute path, propagating sentinels."""
    for step in path:
        if value is ABSENT or value is UNKNOWN:
            return value
        if isinstance(value, dict):
            if step not in value:
                raise ValidationError(f"'{text}': no attribute '{step}'")
            value = value[step]
        elif isinstance(value, list) and isinstance(step, int) and not isinstance(step, bool):
            if not -len(value) <= step < len(value):
                raise ValidationError(f"'{text}': index {step} out of range")
            value = value[step]
        else:
            raise ValidationError(f"'{text}': cannot index {type(value).__name__} with {step!r}")
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        raise ValidationError(f"Cannot interpolate {type(value).__name__} into a string")
    return str(value)


def _truthy(value: Any, op: str) -> bool:
    if value is ABSENT or value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"Operator '{op}' requires a bool, got {value!r}")
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _arith(op: str, left: Any, right: Any) -> Any:
    if op == '+' and isinstance(left, str) and isinstance(right, str):
        return left + right
    if not (_is_number(left) and _is_number(right)):
        raise ValidationError(f"Operator '{op}' requires numbers, got {left!r} and {right!r}")
    if op == '+':
        return left + right
    if op == '-':
        return left - right
    if op == '*':
        return left * right
    if right == 0:
        raise ValidationError("Division by zero")
    result = left / right
    return int(result) if isinstance(left, int) and isinstance(right, int) and result.is_integer() else result


def _compare(op: str, left: Any, right: Any) -> bool:
    comparable = (_is_number(left) and _is_number(right)) or (isinstance(left, str) and isinstance(right, str))
    if not comparable:
        raise ValidationError(f"Cannot compare {left!r} {op} {right!r}")
    if op == '<':
        return left < right
    if op == '<=':
        return left <= right
    if op == '>':
        return left > right
    return left >= right


def evaluate(expr: Expr, lookup: Callable[[BoundRef], Any]) -> Any:
    """Evaluate an expression tree.

    Args:
        expr: Compiled and bound expression
        lookup: Returns the value for a BoundRef (path already applied)

    Raises:
        ValidationError: On type errors or unbound references
    """
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, BoundRef):
        return lookup(expr)
    if isinstance(expr, Ref):
        raise ValidationError(f"Unbound reference '{expr.text}'")
    if isinstance(expr, Template):
        pieces = [p if isinstance(p, str) else evaluate(p, lookup) for p in expr.parts]
        if any(p is ABSENT for p in pieces):
            return ABSENT
        if any(p is UNKNOWN for p in pieces):
            return UNKNOWN
        return ''.join(p if isinstance(p, str) else _stringify(p) for p in pieces)
    if isinstance(expr, ListExpr):
        return [v for v in (evaluate(i, lookup) for i in expr.items) if v is not ABSENT]
    if isinstance(expr, MapExpr):
        result: dict = {}
        for key_expr, value_expr in expr.items:
            key = evaluate(key_expr, lookup)
            if key is ABSENT:
                continue
            if key is UNKNOWN:
                return UNKNOWN
            value = evaluate(value_expr, lookup)
            if value is not ABSENT:
                result[_stringify(key)] = value
        return result
    if isinstance(expr, GetAttr):
        return traverse(evaluate(expr.obj, lookup), (expr.name,))
    if isinstance(expr, Index):
        key = evaluate(expr.key, lookup)
        if key is UNKNOWN or key is ABSENT:
            return key
        return traverse(evaluate(expr.obj, lookup), (key,))
    if isinstance(expr, Unary):
        value = evaluate(expr.operand, lookup)
        if value is UNKNOWN:
            return UNKNOWN
        if expr.op == '!':
            return not _truthy(value, '!')
        if value is ABSENT:
            return ABSENT
        if not _is_number(value):
            raise ValidationError(f"Cannot negate {value!r}")
        return -value
    if isinstance(expr, Binary):
        return _evaluate_binary(expr, lookup)
    if isinstance(expr, Conditional):
        cond = evaluate(expr.cond, lookup)
        if cond is UNKNOWN:
            return UNKNOWN
        return evaluate(expr.then if _truthy(cond, '?') else expr.otherwise, lookup)
    if isinstance(expr, Call):
        args = [evaluate(a, lookup) for a in expr.args]
        try:
            return FUNCTIONS[expr.name](*args)
        except (TypeError, AttributeError) as e:
            raise ValidationError(f"{expr.name}(): {e}") from e
    raise ValidationError(f"Cannot evaluate {expr!r}")


def _evaluate_binary(expr: Binary, lookup: Callable[[BoundRef], Any]) -> Any:
    op = expr.op
    left = evaluate(expr.left, lookup)
    if op in ('&&', '||'):
        if left is UNKNOWN:
            return UNKNOWN
        lv = _truthy(left, op)
        if (op == '&&' and not lv) or (op == '||' and lv):
            return lv
        right = evaluate(expr.right, lookup)
        return UNKNOWN if right is UNKNOWN else _truthy(right, op)
    right = evaluate(expr.right, lookup)
    if left is UNKNOWN or right is UNKNOWN:
        return UNKNOWN
    if op in ('==', '!='):
        lv = None if left is ABSENT else left
        rv = None if right is ABSENT else right
        return (lv == rv) if op == '==' else (lv != rv)
    if left is ABSENT or right is ABSENT:
        return ABSENT
    if op in ('<', '<=', '>', '>='):
        return _compare(op, left, right)
    return _arith(op, left, right)


# -----------------------------------------------------------------------------
# Functions
# -----------------------------------------------------------------------------

def _propagating(fn: Callable) -> Callable:
    """Wrap a function so sentinel arguments short-circuit to the sentinel."""
    def wrapper(*args: Any) -> Any:
        if any(a is UNKNOWN for a in args):
            return UNKNOWN
        if any(a is ABSENT for a in args):
            return ABSENT
        return fn(*args)
    wrapper.__name__ = fn.__name__
    return wrapper


def _merge(*maps: Any) -> Any:
    if any(m is UNKNOWN for m in maps):
        return UNKNOWN
    result: dict = {}
    for m in maps:
        if m is ABSENT or m is None:
            continue
        if not isinstance(m, dict):
            raise ValidationError(f"merge() expects maps, got {m!r}")
        result.update(m)
    return result


def _concat(*lists: Any) -> Any:
    if any(v is UNKNOWN for v in lists):
        return UNKNOWN
    result: list = []
    for v in lists:
        if v is ABSENT or v is None:
            continue
        if not isinstance(v, list):
            raise ValidationError(f"concat() expects lists, got {v!r}")
        result.extend(v)
    return result


def _coalesce(*args: Any) -> Any:
    for arg in args:
        if arg is UNKNOWN:
            return UNKNOWN
        if arg is ABSENT or arg is None or arg == '':
            continue
        return arg
    return None


def _lookup(mapping: Any, key: Any, default: Any = None) -> Any:
    if mapping is UNKNOWN or key is UNKNOWN:
        return UNKNOWN
    if mapping is ABSENT or mapping is None:
        return default
    if not isinstance(mapping, dict):
        raise ValidationError(f"lookup() expects a map, got {mapping!r}")
    return mapping.get(key, default)


def _length(value: Any) -> int:
    if not isinstance(value, (str, list, dict)):
        raise ValidationError(f"length() expects a string, list or map, got {value!r}")
    return len(value)


def _join(sep: str, items: list) -> str:
    if not isinstance(sep, str):
        raise ValidationError(f"join() expects a string separator, got {sep!r}")
    if not isinstance(items, list):
        raise ValidationError(f"join() expects a list, got {items!r}")
    return sep.join(_stringify(i) for i in items)


def _contains(items: Any, value: Any) -> bool:
    if not isinstance(items, (list, dict)):
        raise ValidationError(f"contains() expects a list or map, got {items!r}")
    return value in items


FUNCTIONS: dict[str, Callable] = {
    'merge': _merge,
    'concat': _concat,
    'coalesce': _coalesce,
    'lookup': _lookup,
    'length': _propagating(_length),
    'lower': _propagating(lambda s: _stringify(s).lower()),
    'upper': _propagating(lambda s: _stringify(s).upper()),
    'join': _propagating(_join),
    'contains': _propagating(_contains),
    'tostring': _propagating(_stringify),
}

# name -> (min args, max args); None means variadic
ARITY: dict[str, tuple[int, Optional[int]]] = {
    'merge': (1, None),
    'concat': (1, None),
    'coalesce': (1, None),
    'lookup': (2, 3),
    'length': (1, 1),
    'lower': (1, 1),
    'upper': (1, 1),
    'join': (2, 2),
    'contains': (2, 2),
    'tostring': (1, 1),
}


def _check_arity(name: str, count: int, text: str) -> None:
    low, high = ARITY[name]
    if count < low or (high is not None and count > high):
        if high is None:
            expected = f"at least {low}"
        elif low == high:
            expected = str(low)
        else:
            expected = f"{low} to {high}"
        raise ValidationError(f"{name}() takes {expected} argument(s), got {count} in '{text}'")


def compile_optional(raw: Any) -> Optional[Expr]:
    """compile_value() that maps None to None (field not set)."""
    return None if raw is None else compile_value(raw)
