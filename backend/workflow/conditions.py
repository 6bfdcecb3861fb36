"""Condition Evaluator: restricted boolean expression language.

Branching conditions are parsed by a small recursive-descent parser into a
tagged AST and evaluated by a tree-walking interpreter. Nothing is ever
handed to ``eval``/``exec``: the grammar has no names, calls, attribute
access or statements, so an expression can only read bindings.

Grammar::

    expr       := or_expr
    or_expr    := and_expr (("||" | "or") and_expr)*
    and_expr   := not_expr (("&&" | "and") not_expr)*
    not_expr   := ("!" | "not") not_expr | comparison
    comparison := additive (CMP additive)?
    additive   := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "%") unary)*
    unary      := "-" unary | primary
    primary    := NUMBER | STRING | "true" | "false" | "null"
                | "${" path "}" | "(" expr ")"

``${name.key.0}`` walks into dicts and lists. Equality is strict: no
coercion between strings, numbers and booleans, so ``==`` and ``===`` mean
the same thing.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from core.exceptions import ConditionError

MAX_EXPRESSION_LENGTH = 2000
MAX_NESTING_DEPTH = 50

_REF_PATH = r"[A-Za-z0-9_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_][A-Za-z0-9_\-]*)*"
_REFERENCE_RE = re.compile(r"\$\{\s*(" + _REF_PATH + r")\s*\}")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?")
_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

_OPERATORS = (
    "===", "!==", "==", "!=", "<=", ">=", "&&", "||",
    "<", ">", "!", "+", "-", "*", "/", "%", "(", ")",
)
_KEYWORDS = {"true", "false", "null", "and", "or", "not"}
_COMPARISONS = {"==", "===", "!=", "!==", "<", "<=", ">", ">="}
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", "'": "'", '"': '"'}


# ─── AST ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    path: Tuple[str, ...]


@dataclass(frozen=True)
class Unary:
    op: str  # "!" or "-"
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str  # + - * / %
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Comparison:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Logical:
    op: str  # "and" or "or"
    left: "Node"
    right: "Node"


Node = Union[Literal, Reference, Unary, Binary, Comparison, Logical]


# ─── Tokenizer ────────────────────────────────────────────────

@dataclass(frozen=True)
class _Token:
    kind: str  # number, string, ref, keyword, op, end
    value: Any
    pos: int


def _read_string(text: str, start: int) -> Tuple[str, int]:
    quote = text[start]
    chars: List[str] = []
    i = start + 1
    while i < len(text):
        c = text[i]
        if c == "\\":
            if i + 1 >= len(text):
                break
            chars.append(_ESCAPES.get(text[i + 1], text[i + 1]))
            i += 2
            continue
        if c == quote:
            return "".join(chars), i + 1
        chars.append(c)
        i += 1
    raise ConditionError(f"Unterminated string starting at position {start}")


def tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    i = 0
    while i < len(text):
        c = text[i]
        if c.isspace():
            i += 1
            continue
        if c in "'\"":
            value, i_next = _read_string(text, i)
            tokens.append(_Token("string", value, i))
            i = i_next
            continue
        if text.startswith("${", i):
            match = _REFERENCE_RE.match(text, i)
            if not match:
                raise ConditionError(f"Invalid reference at position {i}")
            tokens.append(_Token("ref", tuple(match.group(1).split(".")), i))
            i = match.end()
            continue
        match = _NUMBER_RE.match(text, i)
        if match:
            raw = match.group()
            value: Any = float(raw) if any(ch in raw for ch in ".eE") else int(raw)
            tokens.append(_Token("number", value, i))
            i = match.end()
            continue
        match = _WORD_RE.match(text, i)
        if match:
            word = match.group()
            if word not in _KEYWORDS:
                raise ConditionError(
                    f"Bare identifier '{word}' is not allowed; reference bindings as ${{{word}}}"
                )
            tokens.append(_Token("keyword", word, i))
            i = match.end()
            continue
        for op in _OPERATORS:
            if text.startswith(op, i):
                tokens.append(_Token("op", op, i))
                i += len(op)
                break
        else:
            raise ConditionError(f"Unexpected character {c!r} at position {i}")
    tokens.append(_Token("end", None, len(text)))
    return tokens


# ─── Parser ───────────────────────────────────────────────────

class _Parser:
    def __init__(self, tokens: List[_Token]):
        self._tokens = tokens
        self._pos = 0
        self._depth = 0

    @property
    def _current(self) -> _Token:
        return self._tokens[self._pos]

    def _advance(self) -> _Token:
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def _match(self, *values: str) -> Optional[str]:
        token = self._current
        if token.kind in ("op", "keyword") and token.value in values:
            self._advance()
            return token.value
        return None

    def parse(self) -> Node:
        if self._current.kind == "end":
            raise ConditionError("Empty condition expression")
        node = self._or()
        if self._current.kind != "end":
            raise ConditionError(
                f"Unexpected token {self._current.value!r} at position {self._current.pos}"
            )
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._match("||", "or"):
            node = Logical("or", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._not()
        while self._match("&&", "and"):
            node = Logical("and", node, self._not())
        return node

    def _not(self) -> Node:
        if self._match("!", "not"):
            return Unary("!", self._nested(self._not))
        return self._comparison()

    def _comparison(self) -> Node:
        node = self._additive()
        token = self._current
        if token.kind == "op" and token.value in _COMPARISONS:
            self._advance()
            node = Comparison(token.value, node, self._additive())
            nxt = self._current
            if nxt.kind == "op" and nxt.value in _COMPARISONS:
                raise ConditionError(f"Chained comparison at position {nxt.pos}")
        return node

    def _additive(self) -> Node:
        node = self._term()
        while True:
            op = self._match("+", "-")
            if not op:
                return node
            node = Binary(op, node, self._term())

    def _term(self) -> Node:
        node = self._unary()
        while True:
            op = self._match("*", "/", "%")
            if not op:
                return node
            node = Binary(op, node, self._unary())

    def _unary(self) -> Node:
        if self._match("-"):
            return Unary("-", self._nested(self._unary))
        return self._primary()

    def _primary(self) -> Node:
        token = self._advance()
        if token.kind in ("number", "string"):
            return Literal(token.value)
        if token.kind == "ref":
            return Reference(token.value)
        if token.kind == "keyword" and token.value in ("true", "false", "null"):
            return Literal({"true": True, "false": False, "null": None}[token.value])
        if token.kind == "op" and token.value == "(":
            node = self._nested(self._or)
            if not self._match(")"):
                raise ConditionError(f"Expected ')' at position {self._current.pos}")
            return node
        if token.kind == "end":
            raise ConditionError("Unexpected end of expression")
        raise ConditionError(f"Unexpected token {token.value!r} at position {token.pos}")

    def _nested(self, rule) -> Node:
        self._depth += 1
        if self._depth > MAX_NESTING_DEPTH:
            raise ConditionError("Expression nested too deeply")
        try:
            return rule()
        finally:
            self._depth -= 1


def parse_expression(expression: str) -> Node:
    """Parse an expression into its AST. Raises ConditionError."""
    if not isinstance(expression, str):
        raise ConditionError(f"Condition must be a string, not {type(expression).__name__}")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ConditionError("Condition expression too long")
    return _parse_cached(expression)


@lru_cache(maxsize=512)
def _parse_cached(expression: str) -> Node:
    return _Parser(tokenize(expression)).parse()


# ─── Interpreter ──────────────────────────────────────────────

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def resolve_path(path: Tuple[str, ...], bindings: Mapping[str, Any]) -> Any:
    """Walk a reference path through the bindings. Raises ConditionError."""
    name = path[0]
    if name not in bindings:
        raise ConditionError(f"Unknown binding '{name}'")
    current = bindings[name]
    for part in path[1:]:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise ConditionError(f"Cannot resolve '{part}' in '{'.'.join(path)}'")
    return current


def _evaluate(node: Node, bindings: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Reference):
        return resolve_path(node.path, bindings)

    if isinstance(node, Unary):
        operand = _evaluate(node.operand, bindings)
        if node.op == "!":
            if not isinstance(operand, bool):
                raise ConditionError("Operand of '!' must be a boolean")
            return not operand
        if not _is_number(operand):
            raise ConditionError("Operand of unary '-' must be a number")
        return -operand

    if isinstance(node, Logical):
        left = _evaluate(node.left, bindings)
        if not isinstance(left, bool):
            raise ConditionError(f"Operands of '{node.op}' must be booleans")
        if node.op == "and" and not left:
            return False
        if node.op == "or" and left:
            return True
        right = _evaluate(node.right, bindings)
        if not isinstance(right, bool):
            raise ConditionError(f"Operands of '{node.op}' must be booleans")
        return right

    left = _evaluate(node.left, bindings)
    right = _evaluate(node.right, bindings)

    if isinstance(node, Comparison):
        if node.op in ("==", "==="):
            return _strict_equal(left, right)
        if node.op in ("!=", "!=="):
            return not _strict_equal(left, right)
        comparable = (_is_number(left) and _is_number(right)) or (
            isinstance(left, str) and isinstance(right, str)
        )
        if not comparable:
            raise ConditionError(
                f"Cannot compare {type(left).__name__} and {type(right).__name__} with '{node.op}'"
            )
        if node.op == "<":
            return left < right
        if node.op == "<=":
            return left <= right
        if node.op == ">":
            return left > right
        return left >= right

    # Binary arithmetic
    if node.op == "+" and isinstance(left, str) and isinstance(right, str):
        return left + right
    if not (_is_number(left) and _is_number(right)):
        raise ConditionError(
            f"Unsupported operands for '{node.op}': {type(left).__name__} and {type(right).__name__}"
        )
    if node.op == "+":
        return left + right
    if node.op == "-":
        return left - right
    if node.op == "*":
        return left * right
    if right == 0:
        raise ConditionError("Division by zero")
    if node.op == "/":
        return left / right
    return left % right


class ConditionEvaluator:
    """Evaluates condition strings against a binding context.

    Pure and stateless; parsed expressions are cached.
    """

    def evaluate(self, expression: str, bindings: Mapping[str, Any]) -> bool:
        """Evaluate to a boolean or raise ConditionError."""
        node = parse_expression(expression)
        try:
            value = _evaluate(node, bindings)
        except RecursionError:
            raise ConditionError("Expression nested too deeply") from None
        if not isinstance(value, bool):
            raise ConditionError(
                f"Condition {expression!r} evaluated to {type(value).__name__}, not a boolean"
            )
        return value

    @staticmethod
    def validate(expression: str) -> None:
        """Check that an expression parses, without evaluating it."""
        parse_expression(expression)


# ─── Template interpolation ───────────────────────────────────

def interpolate(value: Any, bindings: Mapping[str, Any]) -> Any:
    """Resolve ``${name}`` references inside action parameters.

    A string consisting of exactly one reference yields the bound value
    itself; references embedded in text are substituted as strings.
    Unknown references are left untouched.
    """
    if isinstance(value, dict):
        return {k: interpolate(v, bindings) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate(v, bindings) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = _REFERENCE_RE.fullmatch(value.strip())
    if whole:
        try:
            return resolve_path(tuple(whole.group(1).split(".")), bindings)
        except ConditionError:
            return value

    def _substitute(match: "re.Match[str]") -> str:
        try:
            resolved = resolve_path(tuple(match.group(1).split(".")), bindings)
        except ConditionError:
            return match.group(0)
        return "" if resolved is None else str(resolved)

    return _REFERENCE_RE.sub(_substitute, value)


def build_bindings(variables: Dict[str, Any], results: Dict[str, Any]) -> Dict[str, Any]:
    """Merge variables and results; results take precedence on collision."""
    return {**variables, **results}
