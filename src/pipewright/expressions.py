# expressions.py
"""
Tiny expression language shared by run conditions, gates and `${{ }}` templates.

Grammar (lowest precedence first):

    or      := and ('||' and)*
    and     := not ('&&' not)*
    not     := '!' not | compare
    compare := primary (('==' | '!=') primary)?
    primary := literal | call | reference | '(' or ')'

References are dotted paths into the context namespaces, e.g.
`needs.build.result`, `matrix.target`, `env.RUST_BACKTRACE`.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .errors import ConditionError

STATUS_FUNCTIONS = ("always", "success", "failure", "cancelled")

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|&&|\|\||!|\(|\)|,|\.)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

Token = Tuple[str, Any]


class StatusView:
    """Answers the status functions for whoever is evaluating a condition."""

    def success(self) -> bool:
        raise NotImplementedError

    def failure(self) -> bool:
        raise NotImplementedError

    def cancelled(self) -> bool:
        raise NotImplementedError


@dataclass
class ExpressionContext:
    namespaces: Dict[str, Any] = field(default_factory=dict)
    status: Optional[StatusView] = None
    hash_files: Optional[Callable[[List[str]], str]] = None

    def child(self, **namespaces: Any) -> "ExpressionContext":
        merged = dict(self.namespaces)
        merged.update(namespaces)
        return ExpressionContext(merged, status=self.status, hash_files=self.hash_files)


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def _tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise ConditionError(f"Unexpected character {text[pos]!r} at {pos} in {text!r}")
        pos = m.end()
        kind = m.lastgroup
        value = m.group(kind)
        if kind == "ws":
            continue
        if kind == "string":
            tokens.append(("lit", value[1:-1].replace("''", "'")))
        elif kind == "number":
            tokens.append(("lit", float(value) if "." in value else int(value)))
        elif kind == "ident" and value in ("true", "false"):
            tokens.append(("lit", value == "true"))
        elif kind == "ident" and value == "null":
            tokens.append(("lit", None))
        else:
            tokens.append((kind, value))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, kind: str | None = None, value: Any = None) -> Token:
        tok = self._peek()
        if tok is None:
            raise ConditionError(f"Unexpected end of expression: {self.text!r}")
        if (kind and tok[0] != kind) or (value is not None and tok[1] != value):
            raise ConditionError(f"Unexpected token {tok[1]!r} in {self.text!r}")
        self.pos += 1
        return tok

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def parse(self) -> tuple:
        if not self.tokens:
            raise ConditionError("Empty expression")
        node = self._or()
        if self._peek() is not None:
            raise ConditionError(f"Trailing input {self._peek()[1]!r} in {self.text!r}")
        return node

    def _or(self) -> tuple:
        node = self._and()
        while self._accept("||"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._not()
        while self._accept("&&"):
            node = ("and", node, self._not())
        return node

    def _not(self) -> tuple:
        if self._accept("!"):
            return ("not", self._not())
        return self._compare()

    def _compare(self) -> tuple:
        left = self._primary()
        if self._accept("=="):
            return ("eq", left, self._primary())
        if self._accept("!="):
            return ("ne", left, self._primary())
        return left

    def _primary(self) -> tuple:
        tok = self._take()
        kind, value = tok
        if kind == "lit":
            return ("lit", value)
        if kind == "op" and value == "(":
            node = self._or()
            self._take("op", ")")
            return node
        if kind != "ident":
            raise ConditionError(f"Unexpected token {value!r} in {self.text!r}")
        if self._accept("("):
            args: List[tuple] = []
            if not self._accept(")"):
                args.append(self._or())
                while self._accept(","):
                    args.append(self._or())
                self._take("op", ")")
            return ("call", value, tuple(args))
        parts = [value]
        while self._accept("."):
            parts.append(self._take("ident")[1])
        return ("ref", tuple(parts))


class Expression:
    """A parsed expression; parse once, evaluate many times."""

    def __init__(self, text: str):
        self.text = text.strip()
        self.tree = _Parser(self.text).parse()

    def __repr__(self) -> str:
        return f"Expression({self.text!r})"

    def _walk(self, node: tuple | None = None):
        node = self.tree if node is None else node
        yield node
        kind = node[0]
        if kind == "call":
            for arg in node[2]:
                yield from self._walk(arg)
        elif kind == "not":
            yield from self._walk(node[1])
        elif kind in ("and", "or", "eq", "ne"):
            yield from self._walk(node[1])
            yield from self._walk(node[2])

    def references(self, namespace: str) -> Set[str]:
        """Names referenced directly under `namespace` (e.g. needs.<name>)."""
        out: Set[str] = set()
        for node in self._walk():
            if node[0] == "ref" and len(node[1]) >= 2 and node[1][0] == namespace:
                out.add(node[1][1])
        return out

    def uses_status(self) -> bool:
        return any(node[0] == "call" and node[1] in STATUS_FUNCTIONS for node in self._walk())

    def evaluate(self, ctx: ExpressionContext) -> Any:
        return _eval(self.tree, ctx)

    def is_true(self, ctx: ExpressionContext) -> bool:
        return truthy(self.evaluate(ctx))


@lru_cache(maxsize=512)
def parse(text: str) -> Expression:
    return Expression(text)


def strip_template(text: str) -> str:
    """`${{ always() }}` and `always()` mean the same thing in a condition."""
    text = text.strip()
    m = _TEMPLATE_RE.fullmatch(text)
    return m.group(1).strip() if m else text


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _coerce_pair(a: Any, b: Any) -> tuple[Any, Any]:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold(), b.casefold()
    if isinstance(a, bool) or isinstance(b, bool):
        return to_str(a).casefold(), to_str(b).casefold()
    if isinstance(a, (int, float)) and isinstance(b, str):
        try:
            return a, float(b)
        except ValueError:
            return a, b
    if isinstance(b, (int, float)) and isinstance(a, str):
        try:
            return float(a), b
        except ValueError:
            return a, b
    return a, b


def _lookup(parts: tuple, ctx: ExpressionContext) -> Any:
    value: Any = ctx.namespaces
    for part in parts:
        if isinstance(value, dict):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
        if value is None:
            return None
    return value


def _status(name: str, ctx: ExpressionContext) -> bool:
    if name == "always":
        return True
    if ctx.status is None:
        raise ConditionError(f"{name}() is only valid in a run condition")
    return bool(getattr(ctx.status, name)())


def _call(name: str, args: List[Any], ctx: ExpressionContext) -> Any:
    if name in STATUS_FUNCTIONS:
        return _status(name, ctx)
    if name == "hashFiles":
        if ctx.hash_files is None:
            raise ConditionError("hashFiles() is not available here")
        return ctx.hash_files([to_str(a) for a in args])
    if name in ("contains", "startsWith", "endsWith") and len(args) != 2:
        raise ConditionError(f"{name}() takes exactly 2 arguments, got {len(args)}")
    if name == "contains":
        haystack, needle = args
        if isinstance(haystack, (list, tuple)):
            return any(a == b for a, b in (_coerce_pair(x, needle) for x in haystack))
        return to_str(needle).casefold() in to_str(haystack).casefold()
    if name == "startsWith":
        return to_str(args[0]).casefold().startswith(to_str(args[1]).casefold())
    if name == "endsWith":
        return to_str(args[0]).casefold().endswith(to_str(args[1]).casefold())
    if name == "format":
        out = to_str(args[0])
        for i, arg in enumerate(args[1:]):
            out = out.replace("{%d}" % i, to_str(arg))
        return out
    raise ConditionError(f"Unknown function {name}()")


def _eval(node: tuple, ctx: ExpressionContext) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "ref":
        return _lookup(node[1], ctx)
    if kind == "call":
        return _call(node[1], [_eval(a, ctx) for a in node[2]], ctx)
    if kind == "not":
        return not truthy(_eval(node[1], ctx))
    if kind == "and":
        return truthy(_eval(node[1], ctx)) and truthy(_eval(node[2], ctx))
    if kind == "or":
        return truthy(_eval(node[1], ctx)) or truthy(_eval(node[2], ctx))
    if kind in ("eq", "ne"):
        a, b = _coerce_pair(_eval(node[1], ctx), _eval(node[2], ctx))
        return (a == b) if kind == "eq" else (a != b)
    raise ConditionError(f"Bad expression node {kind!r}")


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------

def to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    return str(value)


def render(text: str, ctx: ExpressionContext) -> str:
    """Substitute every `${{ expr }}` in text."""
    if "${{" not in text:
        return text
    return _TEMPLATE_RE.sub(lambda m: to_str(parse(m.group(1).strip()).evaluate(ctx)), text)


def template_expressions(text: str) -> List[Expression]:
    return [parse(m.group(1).strip()) for m in _TEMPLATE_RE.finditer(text)]
