"""Condition and output expressions.

A small typed evaluator: source text is tokenized, parsed into an AST by a
recursive-descent parser, and evaluated against an explicit
:class:`ExpressionContext`. Nothing outside the enumerated context roots is
reachable, so evaluation is side-effect free. :func:`interpolate` substitutes
``${{ expr }}`` segments of plain text (concurrency group keys) through the
same evaluator.

Grammar (lowest to highest precedence)::

    or      := and ( "||" and )*
    and     := cmp ( "&&" cmp )*
    cmp     := unary ( ("==" | "!=" | "<" | "<=" | ">" | ">=") unary )?
    unary   := "!" unary | postfix
    postfix := primary ( "." IDENT | "[" or "]" )*
    primary := literal | IDENT "(" args ")" | ROOT | "(" or ")"

Roots: ``needs``, ``matrix``, ``env``, ``inputs``, ``steps``, ``job``,
``run``, ``event``. Functions: ``success()``, ``failure()``, ``always()``,
``cancelled()``, ``contains``, ``startsWith``, ``endsWith``, ``format``,
``join``, ``toJSON``.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from conduit.errors import ExpressionError

ROOTS = frozenset({"needs", "matrix", "env", "inputs", "steps", "job", "run", "event"})
STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})
_FUNCTION_ARITY = {
    "success": (0, 0),
    "failure": (0, 0),
    "always": (0, 0),
    "cancelled": (0, 0),
    "contains": (2, 2),
    "startsWith": (2, 2),
    "endsWith": (2, 2),
    "format": (1, 32),
    "join": (1, 2),
    "toJSON": (1, 1),
}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,\[\]])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


# ── Evaluation Context ───────────────────────────────────────────────────────


@dataclass
class ExpressionContext:
    """Everything an expression may read.

    ``status`` is the aggregate outcome of whatever precedes the thing being
    evaluated: the job's dependencies for a job condition, the earlier steps
    for a step condition. One of ``success``, ``failure`` or ``skipped``.
    """

    status: str = "success"
    cancelled: bool = False
    needs: dict[str, Any] = field(default_factory=dict)
    matrix: dict[str, Any] = field(default_factory=dict)
    env: dict[str, Any] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    steps: dict[str, Any] = field(default_factory=dict)
    job: dict[str, Any] = field(default_factory=dict)
    run: dict[str, Any] = field(default_factory=dict)
    event: dict[str, Any] = field(default_factory=dict)

    def root(self, name: str) -> Any:
        return getattr(self, name)


# ── AST ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Literal:
    value: Any


@dataclass(frozen=True)
class _Root:
    name: str


@dataclass(frozen=True)
class _Access:
    base: Any
    key: Any  # AST node producing the key


@dataclass(frozen=True)
class _Not:
    operand: Any


@dataclass(frozen=True)
class _Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class _Call:
    name: str
    args: tuple


# ── Tokenizer & Parser ───────────────────────────────────────────────────────


def _tokenize(source: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            msg = f"Unexpected character {source[pos]!r} at position {pos} in {source!r}"
            raise ExpressionError(msg)
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append((kind, match.group()))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, source: str):
        self._source = source
        self._tokens = _tokenize(source)
        self._pos = 0

    def parse(self) -> Any:
        if not self._tokens:
            msg = "Empty expression"
            raise ExpressionError(msg)
        node = self._or()
        if self._pos != len(self._tokens):
            msg = f"Unexpected token {self._tokens[self._pos][1]!r} in {self._source!r}"
            raise ExpressionError(msg)
        return node

    def _peek(self) -> tuple[str, str] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] == text:
            self._pos += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            msg = f"Expected {text!r} in {self._source!r}"
            raise ExpressionError(msg)

    def _or(self) -> Any:
        node = self._and()
        while self._accept("||"):
            node = _Binary("||", node, self._and())
        return node

    def _and(self) -> Any:
        node = self._cmp()
        while self._accept("&&"):
            node = _Binary("&&", node, self._cmp())
        return node

    def _cmp(self) -> Any:
        node = self._unary()
        for op in ("==", "!=", "<=", ">=", "<", ">"):
            if self._accept(op):
                return _Binary(op, node, self._unary())
        return node

    def _unary(self) -> Any:
        if self._accept("!"):
            return _Not(self._unary())
        return self._postfix()

    def _postfix(self) -> Any:
        node = self._primary()
        while True:
            if self._accept("."):
                tok = self._peek()
                if not tok or tok[0] != "ident":
                    msg = f"Expected property name after '.' in {self._source!r}"
                    raise ExpressionError(msg)
                self._pos += 1
                node = _Access(node, _Literal(tok[1]))
            elif self._accept("["):
                key = self._or()
                self._expect("]")
                node = _Access(node, key)
            else:
                return node

    def _primary(self) -> Any:
        tok = self._peek()
        if tok is None:
            msg = f"Unexpected end of expression {self._source!r}"
            raise ExpressionError(msg)
        kind, text = tok
        self._pos += 1

        if kind == "number":
            return _Literal(float(text) if "." in text else int(text))
        if kind == "string":
            return _Literal(text[1:-1].replace("''", "'"))
        if kind == "op" and text == "(":
            node = self._or()
            self._expect(")")
            return node
        if kind == "ident":
            if text in ("true", "false"):
                return _Literal(text == "true")
            if text == "null":
                return _Literal(None)
            if self._accept("("):
                return self._call(text)
            if text not in ROOTS:
                msg = f"Unknown context '{text}' in {self._source!r} (allowed: {sorted(ROOTS)})"
                raise ExpressionError(msg)
            return _Root(text)

        msg = f"Unexpected token {text!r} in {self._source!r}"
        raise ExpressionError(msg)

    def _call(self, name: str) -> _Call:
        if name not in _FUNCTION_ARITY:
            msg = f"Unknown function '{name}()' in {self._source!r}"
            raise ExpressionError(msg)
        args: list[Any] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        low, high = _FUNCTION_ARITY[name]
        if not low <= len(args) <= high:
            msg = f"Function '{name}()' takes {low}..{high} arguments, got {len(args)}"
            raise ExpressionError(msg)
        return _Call(name, tuple(args))


# ── Compiled Expression ──────────────────────────────────────────────────────


class Expression:
    """A parsed expression, reusable across evaluations."""

    def __init__(self, source: str):
        self.source = source
        self._ast = _Parser(_strip_wrapper(source)).parse()
        self.uses_status_function = _contains_status_call(self._ast)

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    def evaluate(self, ctx: ExpressionContext) -> Any:
        """Evaluate to a raw value (str, number, bool, None, dict or list)."""
        return _eval(self._ast, ctx)

    def evaluate_condition(self, ctx: ExpressionContext) -> bool:
        """Evaluate as an ``if`` condition.

        Without a status function the condition is implicitly
        ``success() && (<condition>)``.
        """
        if not self.uses_status_function and not _status_success(ctx):
            return False
        return truthy(self.evaluate(ctx))


@lru_cache(maxsize=512)
def compile_expression(source: str) -> Expression:
    """Parse an expression, caching the result. Raises ExpressionError."""
    return Expression(source)


def evaluate_condition(source: str | None, ctx: ExpressionContext) -> bool:
    """Evaluate an optional condition; ``None`` means ``success()``."""
    return compile_expression(source or "success()").evaluate_condition(ctx)


def uses_status_function(source: str | None) -> bool:
    """True when a condition opts in to running after an upstream failure."""
    if not source:
        return False
    return compile_expression(source).uses_status_function


_INTERPOLATION_RE = re.compile(r"\$\{\{(.*?)\}\}")


def interpolate(text: str, ctx: ExpressionContext) -> str:
    """Replace every ``${{ expr }}`` in ``text`` with its evaluated string form."""
    return _INTERPOLATION_RE.sub(
        lambda m: to_output_string(compile_expression(m.group(1)).evaluate(ctx)), text
    )


def interpolations(text: str) -> list[str]:
    """The expression sources embedded in ``text``."""
    return [m.group(1) for m in _INTERPOLATION_RE.finditer(text)]


def to_output_string(value: Any) -> str:
    """Render an evaluated value the way outputs are stored."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


# ── Evaluation ───────────────────────────────────────────────────────────────


def _strip_wrapper(source: str) -> str:
    text = source.strip()
    if text.startswith("${{") and text.endswith("}}"):
        return text[3:-2].strip()
    return text


def _contains_status_call(node: Any) -> bool:
    if isinstance(node, _Call):
        if node.name in STATUS_FUNCTIONS:
            return True
        return any(_contains_status_call(a) for a in node.args)
    if isinstance(node, _Binary):
        return _contains_status_call(node.left) or _contains_status_call(node.right)
    if isinstance(node, _Not):
        return _contains_status_call(node.operand)
    if isinstance(node, _Access):
        return _contains_status_call(node.base) or _contains_status_call(node.key)
    return False


def _status_success(ctx: ExpressionContext) -> bool:
    return not ctx.cancelled and ctx.status == "success"


def _eval(node: Any, ctx: ExpressionContext) -> Any:
    if isinstance(node, _Literal):
        return node.value
    if isinstance(node, _Root):
        return ctx.root(node.name)
    if isinstance(node, _Access):
        return _lookup(_eval(node.base, ctx), _eval(node.key, ctx))
    if isinstance(node, _Not):
        return not truthy(_eval(node.operand, ctx))
    if isinstance(node, _Binary):
        if node.op == "&&":
            left = _eval(node.left, ctx)
            return _eval(node.right, ctx) if truthy(left) else left
        if node.op == "||":
            left = _eval(node.left, ctx)
            return left if truthy(left) else _eval(node.right, ctx)
        return _compare(node.op, _eval(node.left, ctx), _eval(node.right, ctx))
    if isinstance(node, _Call):
        return _call(node, ctx)
    msg = f"Cannot evaluate node {node!r}"
    raise ExpressionError(msg)


def _lookup(base: Any, key: Any) -> Any:
    if isinstance(base, dict):
        if key in base:
            return base[key]
        if isinstance(key, str):
            lowered = key.lower()
            for k, v in base.items():
                if isinstance(k, str) and k.lower() == lowered:
                    return v
        return None
    if isinstance(base, list) and isinstance(key, (int, float)) and not isinstance(key, bool):
        idx = int(key)
        return base[idx] if 0 <= idx < len(base) else None
    return None


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value.strip() == "":
            return 0.0
        try:
            return float(value)
        except ValueError:
            return math.nan
    return math.nan


def _same_kind(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return True
    return type(a) is type(b)


def _equals(a: Any, b: Any) -> bool:
    if _same_kind(a, b):
        if isinstance(a, str):
            return a.casefold() == b.casefold()
        return a == b
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return False
    x, y = _to_number(a), _to_number(b)
    return not (math.isnan(x) or math.isnan(y)) and x == y


def _compare(op: str, a: Any, b: Any) -> bool:
    if op == "==":
        return _equals(a, b)
    if op == "!=":
        return not _equals(a, b)
    if isinstance(a, str) and isinstance(b, str):
        x: Any = a.casefold()
        y: Any = b.casefold()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def _call(node: _Call, ctx: ExpressionContext) -> Any:
    name = node.name
    if name == "always":
        return True
    if name == "success":
        return _status_success(ctx)
    if name == "failure":
        return not ctx.cancelled and ctx.status == "failure"
    if name == "cancelled":
        return ctx.cancelled

    args = [_eval(a, ctx) for a in node.args]
    if name == "contains":
        haystack, needle = args
        if isinstance(haystack, list):
            return any(_equals(item, needle) for item in haystack)
        return to_output_string(needle).casefold() in to_output_string(haystack).casefold()
    if name == "startsWith":
        return to_output_string(args[0]).casefold().startswith(to_output_string(args[1]).casefold())
    if name == "endsWith":
        return to_output_string(args[0]).casefold().endswith(to_output_string(args[1]).casefold())
    if name == "format":
        template = to_output_string(args[0])
        values = [to_output_string(v) for v in args[1:]]
        return re.sub(
            r"\{(\d+)\}",
            lambda m: values[int(m.group(1))] if int(m.group(1)) < len(values) else m.group(0),
            template,
        )
    if name == "join":
        items = args[0] if isinstance(args[0], list) else [args[0]]
        sep = to_output_string(args[1]) if len(args) > 1 else ","
        return sep.join(to_output_string(i) for i in items)
    if name == "toJSON":
        return json.dumps(args[0], sort_keys=True, default=str)

    msg = f"Unknown function '{name}()'"
    raise ExpressionError(msg)
