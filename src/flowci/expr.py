# expr.py
"""
Condition expressions.

A tiny, typed expression language used by `if:` fields and `${{ ... }}`
templates:

    matrix.target == 'x86_64-unknown-linux-musl' && needs.check.result == 'success'
    !(github.event_name == 'pull_request')

Grammar (lowest precedence first):

    or      := and ('||' and)*
    and     := not ('&&' not)*
    not     := '!' not | compare
    compare := primary (('==' | '!=' | '<' | '<=' | '>' | '>=') primary)?
    primary := STRING | NUMBER | true | false | null | REF | '(' or ')'

References are dotted paths looked up in a fixed `Scope`. A path that does
not resolve evaluates to UNKNOWN (never raises). UNKNOWN propagates through
comparisons and follows three-valued logic through `&&`/`||`/`!`; at the top
level of a condition it counts as false.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class _Unknown:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()

Value = Union[str, int, float, bool, None, _Unknown]


class ExpressionSyntaxError(ValueError):
    def __init__(self, text: str, message: str):
        super().__init__(f"{message} in expression {text!r}")
        self.text = text


# ---------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    path: Tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Literal, Ref, Not, And, Or, Compare]


def refs(node: Node) -> List[Ref]:
    """All references used by an expression, in source order."""
    if isinstance(node, Ref):
        return [node]
    if isinstance(node, Not):
        return refs(node.operand)
    if isinstance(node, (And, Or, Compare)):
        return refs(node.left) + refs(node.right)
    return []


def bind(node: Node, values: Dict[str, Any], context: str = "matrix") -> Node:
    """
    Replace references into `context` (and bare names matching a key of
    `values`) with literals. References that do not resolve are kept.
    """
    if isinstance(node, Ref):
        path = node.path
        if len(path) == 2 and path[0] == context and path[1] in values:
            return Literal(values[path[1]])
        if len(path) == 1 and path[0] in values:
            return Literal(values[path[0]])
        return node
    if isinstance(node, Not):
        return Not(bind(node.operand, values, context))
    if isinstance(node, And):
        return And(bind(node.left, values, context), bind(node.right, values, context))
    if isinstance(node, Or):
        return Or(bind(node.left, values, context), bind(node.right, values, context))
    if isinstance(node, Compare):
        return Compare(node.op, bind(node.left, values, context), bind(node.right, values, context))
    return node


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<num>-?\d+(?:\.\d+)?)
      | (?P<str>'(?:[^']|'')*'|"(?:[^"])*")
      | (?P<op>==|!=|<=|>=|&&|\|\||<|>|!|\(|\))
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}
_COMPARE_OPS = ("==", "!=", "<", "<=", ">", ">=")


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ExpressionSyntaxError(text, f"unexpected character {text[pos:].lstrip()[:1]!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ExpressionSyntaxError(self.text, "unexpected end")
        self.pos += 1
        return tok

    def at_op(self, *ops: str) -> bool:
        tok = self.peek()
        return tok is not None and tok[0] == "op" and tok[1] in ops

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionSyntaxError(self.text, "empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise ExpressionSyntaxError(self.text, f"unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.at_op("||"):
            self.take()
            node = Or(node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self.at_op("&&"):
            self.take()
            node = And(node, self.parse_not())
        return node

    def parse_not(self) -> Node:
        if self.at_op("!"):
            self.take()
            return Not(self.parse_not())
        return self.parse_compare()

    def parse_compare(self) -> Node:
        left = self.parse_primary()
        if self.at_op(*_COMPARE_OPS):
            op = self.take()[1]
            return Compare(op, left, self.parse_primary())
        return left

    def parse_primary(self) -> Node:
        kind, text = self.take()
        if kind == "num":
            return Literal(float(text) if "." in text else int(text))
        if kind == "str":
            if text[0] == "'":
                return Literal(text[1:-1].replace("''", "'"))
            return Literal(text[1:-1])
        if kind == "ident":
            if text in _KEYWORDS:
                return Literal(_KEYWORDS[text])
            return Ref(tuple(text.split(".")))
        if text == "(":
            node = self.parse_or()
            if not self.at_op(")"):
                raise ExpressionSyntaxError(self.text, "missing ')'")
            self.take()
            return node
        raise ExpressionSyntaxError(self.text, f"unexpected token {text!r}")


_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


def parse_expression(text: str) -> Node:
    """Parse an expression; a surrounding `${{ }}` is accepted and stripped."""
    m = _WRAPPED_RE.match(text)
    if m:
        text = m.group(1)
    return _Parser(text).parse()


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

@dataclass
class Scope:
    """
    The fixed set of values an expression may look at.

    Contexts: matrix, needs, steps, env, github. A bare single name is looked
    up as a matrix axis.
    """
    contexts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    unknown: List[str] = field(default_factory=list)

    def lookup(self, path: Tuple[str, ...]) -> Value:
        if len(path) == 1:
            path = ("matrix",) + path
        current: Any = self.contexts
        for part in path:
            if not isinstance(current, dict) or part not in current:
                self.unknown.append(".".join(path))
                return UNKNOWN
            current = current[part]
        return current


def truthy(value: Value) -> bool:
    if value is UNKNOWN or value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return value != ""


def _tri(value: Value) -> Union[bool, _Unknown]:
    return UNKNOWN if value is UNKNOWN else truthy(value)


def _same_kind(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return True
    return type(a) is type(b)


def _compare(op: str, a: Value, b: Value) -> Value:
    if a is UNKNOWN or b is UNKNOWN:
        return UNKNOWN
    if op == "==":
        return _same_kind(a, b) and a == b
    if op == "!=":
        return not (_same_kind(a, b) and a == b)
    # ordering only between two numbers or two strings
    numeric = all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (a, b))
    if not (numeric or (isinstance(a, str) and isinstance(b, str))):
        return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def evaluate(node: Node, scope: Scope) -> Value:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Ref):
        return scope.lookup(node.path)
    if isinstance(node, Not):
        v = _tri(evaluate(node.operand, scope))
        return UNKNOWN if v is UNKNOWN else not v
    if isinstance(node, And):
        left = _tri(evaluate(node.left, scope))
        right = _tri(evaluate(node.right, scope))
        if left is False or right is False:
            return False
        if left is UNKNOWN or right is UNKNOWN:
            return UNKNOWN
        return True
    if isinstance(node, Or):
        left = _tri(evaluate(node.left, scope))
        right = _tri(evaluate(node.right, scope))
        if left is True or right is True:
            return True
        if left is UNKNOWN or right is UNKNOWN:
            return UNKNOWN
        return False
    if isinstance(node, Compare):
        return _compare(node.op, evaluate(node.left, scope), evaluate(node.right, scope))
    raise TypeError(f"not an expression node: {node!r}")


@dataclass(frozen=True)
class Condition:
    """A parsed `if:` expression together with its source text."""
    source: str
    tree: Node

    @classmethod
    def parse(cls, source: str) -> "Condition":
        return cls(source=source, tree=parse_expression(source))

    def bind_matrix(self, values: Dict[str, Any]) -> "Condition":
        return Condition(source=self.source, tree=bind(self.tree, values))

    def evaluate(self, scope: Scope, *, where: str = "") -> bool:
        """
        Evaluate to a plain bool. Unknown identifiers fail closed and are
        logged as warnings (they never abort the run).
        """
        before = len(scope.unknown)
        result = evaluate(self.tree, scope)
        for name in scope.unknown[before:]:
            logger.warning(f"{where or 'condition'}: unknown identifier '{name}' in {self.source!r} (treated as false)")
        return truthy(result)
