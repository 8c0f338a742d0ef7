"""
expressions.py - Small expression language for mapped columns and filters.

Supported syntax:
- column references (exact name first, then case-insensitive)
- string literals in single or double quotes, numbers, true/false/null
- function calls: upper, lower, trim, length, concat, coalesce,
  substring (1-based start), replace, left, right
- pipes: ``Name |> trim() |> upper()`` passes the left value as the
  first argument of the call on the right
- comparisons (= != <> < <= > >=) combined with and / or / not,
  used by row filters and query subscriptions
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Mapping

from tablesync.errors import ValidationError

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<pipe>\|>)
      | (?P<op><>|!=|<=|>=|=|<|>)
      | (?P<punct>[(),])
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "true", "false", "null"}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str


def _tokenize(source: str) -> list[_Token]:
    tokens = []
    pos = 0
    source = source.rstrip()
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None or match.end() == pos:
            raise ValidationError(
                f"Unexpected character at position {pos} in expression",
                field="expression",
                value=source,
            )
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "name" and text.lower() in _KEYWORDS:
            kind = "keyword"
            text = text.lower()
        tokens.append(_Token(kind, text))
        pos = match.end()
    return tokens


# Parsed nodes are plain tuples: ("lit", v), ("col", name), ("call", fn, args),
# ("cmp", op, left, right), ("and", l, r), ("or", l, r), ("not", x)


class _Parser:
    def __init__(self, source: str) -> None:
        self._source = source
        self._tokens = _tokenize(source)
        self._pos = 0

    def parse(self) -> tuple:
        node = self._or()
        if self._pos != len(self._tokens):
            self._fail(f"unexpected '{self._tokens[self._pos].text}'")
        return node

    def _fail(self, reason: str) -> None:
        raise ValidationError(f"Invalid expression: {reason}", field="expression", value=self._source)

    def _peek(self) -> _Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept(self, kind: str, text: str | None = None) -> _Token | None:
        token = self._peek()
        if token is not None and token.kind == kind and (text is None or token.text == text):
            self._pos += 1
            return token
        return None

    def _expect(self, kind: str, text: str | None = None) -> _Token:
        token = self._accept(kind, text)
        if token is None:
            self._fail(f"expected {text or kind}")
        return token

    def _or(self) -> tuple:
        node = self._and()
        while self._accept("keyword", "or"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._not()
        while self._accept("keyword", "and"):
            node = ("and", node, self._not())
        return node

    def _not(self) -> tuple:
        if self._accept("keyword", "not"):
            return ("not", self._not())
        return self._comparison()

    def _comparison(self) -> tuple:
        node = self._pipe()
        op = self._accept("op")
        if op is not None:
            node = ("cmp", op.text, node, self._pipe())
        return node

    def _pipe(self) -> tuple:
        node = self._primary()
        while self._accept("pipe"):
            name = self._expect("name").text
            args = self._arguments()
            node = ("call", name.lower(), (node,) + args)
        return node

    def _arguments(self) -> tuple:
        self._expect("punct", "(")
        args: list[tuple] = []
        if not self._accept("punct", ")"):
            args.append(self._or())
            while self._accept("punct", ","):
                args.append(self._or())
            self._expect("punct", ")")
        return tuple(args)

    def _primary(self) -> tuple:
        token = self._peek()
        if token is None:
            self._fail("unexpected end")
        self._pos += 1
        if token.kind == "number":
            return ("lit", float(token.text) if "." in token.text else int(token.text))
        if token.kind == "string":
            body = token.text[1:-1]
            return ("lit", re.sub(r"\\(.)", r"\1", body))
        if token.kind == "keyword" and token.text in ("true", "false", "null"):
            return ("lit", {"true": True, "false": False, "null": None}[token.text])
        if token.kind == "name":
            if self._peek() is not None and self._peek().text == "(":
                return ("call", token.text.lower(), self._arguments())
            return ("col", token.text)
        if token.kind == "punct" and token.text == "(":
            node = self._or()
            self._expect("punct", ")")
            return node
        self._fail(f"unexpected '{token.text}'")


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _int_arg(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} expects an integer argument", field="expression", value=value) from None


def _substring(value: Any, start: Any, length: Any = None) -> str | None:
    text = _text(value)
    if text is None:
        return None
    begin = max(_int_arg(start, "substring") - 1, 0)
    if length is None:
        return text[begin:]
    return text[begin:begin + _int_arg(length, "substring")]


def _right(value: Any, length: Any) -> str | None:
    text = _text(value)
    if text is None:
        return None
    count = _int_arg(length, "right")
    return text[-count:] if count > 0 else ""


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "upper": lambda v: None if v is None else _text(v).upper(),
    "lower": lambda v: None if v is None else _text(v).lower(),
    "trim": lambda v: None if v is None else _text(v).strip(),
    "length": lambda v: None if v is None else len(_text(v)),
    "concat": lambda *vs: "".join(_text(v) for v in vs if v is not None),
    "coalesce": lambda *vs: next((v for v in vs if v is not None and v != ""), None),
    "substring": _substring,
    "replace": lambda v, old, new: None if v is None else _text(v).replace(_text(old) or "", _text(new) or ""),
    "left": lambda v, n: None if v is None else _text(v)[:max(_int_arg(n, "left"), 0)],
    "right": _right,
}


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in ("=", "!=", "<>"):
        if isinstance(left, (int, float)) and isinstance(right, (int, float)):
            equal = left == right
        else:
            equal = left == right or (
                left is not None and right is not None and _text(left) == _text(right)
            )
        return equal if op == "=" else not equal
    if left is None or right is None:
        return False
    if not (isinstance(left, (int, float)) and isinstance(right, (int, float))):
        left, right = _text(left), _text(right)
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _lookup(row: Mapping[str, Any], name: str) -> Any:
    if name in row:
        return row[name]
    lowered = name.lower()
    for key, value in row.items():
        if key.lower() == lowered:
            return value
    return None


def _evaluate(node: tuple, row: Mapping[str, Any]) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "col":
        return _lookup(row, node[1])
    if kind == "call":
        function = FUNCTIONS.get(node[1])
        if function is None:
            raise ValidationError(f"Unknown function '{node[1]}'", field="expression", value=node[1])
        args = [_evaluate(arg, row) for arg in node[2]]
        try:
            return function(*args)
        except TypeError as e:
            raise ValidationError(f"Bad arguments to {node[1]}: {e}", field="expression") from e
    if kind == "cmp":
        return _compare(node[1], _evaluate(node[2], row), _evaluate(node[3], row))
    if kind == "and":
        return is_truthy(_evaluate(node[1], row)) and is_truthy(_evaluate(node[2], row))
    if kind == "or":
        return is_truthy(_evaluate(node[1], row)) or is_truthy(_evaluate(node[2], row))
    return not is_truthy(_evaluate(node[1], row))


@lru_cache(maxsize=256)
def compile_expression(source: str) -> tuple:
    """Parse an expression once; raises ValidationError on bad syntax."""
    if not source or not source.strip():
        raise ValidationError("Expression is empty", field="expression")
    return _Parser(source).parse()


def evaluate(source: str, row: Mapping[str, Any]) -> Any:
    """Evaluate an expression against a row of column values."""
    return _evaluate(compile_expression(source), row)


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false")
    return bool(value)


def matches_filter(source: str | None, row: Mapping[str, Any]) -> bool:
    """True when there is no filter or the filter holds for row."""
    if not source:
        return True
    return is_truthy(evaluate(source, row))
