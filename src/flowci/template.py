# template.py
"""`${{ ... }}` substitution in strings (env values, commands, action inputs)."""
from __future__ import annotations

import re
from typing import Any, Dict, Mapping

from .errors import TemplateError
from .expr import UNKNOWN, ExpressionSyntaxError, Scope, bind, evaluate, parse_expression, refs

TEMPLATE_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}", re.DOTALL)


def has_template(text: str) -> bool:
    return bool(TEMPLATE_RE.search(text))


def to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def substitute_matrix(text: str, matrix: Mapping[str, Any]) -> str:
    """
    Resolve references that only use matrix values; anything else is left
    verbatim for `render` to deal with at run time.
    """
    if not has_template(text):
        return text

    def repl(m: re.Match) -> str:
        try:
            tree = bind(parse_expression(m.group(1)), dict(matrix))
        except ExpressionSyntaxError:
            return m.group(0)
        if refs(tree):
            return m.group(0)
        return to_text(evaluate(tree, Scope()))

    return TEMPLATE_RE.sub(repl, text)


def render(text: str, scope: Scope) -> str:
    """Resolve every reference or raise TemplateError."""
    if not has_template(text):
        return text

    def repl(m: re.Match) -> str:
        source = m.group(1)
        try:
            tree = parse_expression(source)
        except ExpressionSyntaxError as e:
            raise TemplateError(source, str(e)) from e
        value = evaluate(tree, scope)
        if value is UNKNOWN:
            raise TemplateError(source)
        return to_text(value)

    return TEMPLATE_RE.sub(repl, text)


def render_mapping(values: Mapping[str, str], scope: Scope) -> Dict[str, str]:
    return {k: render(v, scope) for k, v in values.items()}
