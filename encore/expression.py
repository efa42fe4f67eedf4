"""
Method key expressions.

An expression picks a sub-value out of a call's arguments:

    #order.customer.id      argument named ``order``, then attributes
    $1.items[0]             first positional argument, then attribute/index
    #headers['x-tenant']    mapping key

Evaluated keys are strings; a non-string value is rendered as JSON.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

import pydantic_core
import structlog

from encore.errors import ExpressionError

logger = structlog.get_logger(__name__)

_HEAD = re.compile(r"^(?:#(?P<name>[A-Za-z_]\w*)|\$(?P<index>\d+))")
_SEGMENT = re.compile(
    r"\.(?P<attr>[A-Za-z_]\w*)"
    r"|\[(?P<item>-?\d+)\]"
    r"|\[(?P<quote>['\"])(?P<key>.*?)(?P=quote)\]"
)


def evaluate(expression: str, names: Sequence[str], args: Sequence[Any]) -> Any:
    """
    Evaluate ``expression`` against positional ``args`` named ``names``.

    Raises:
        ExpressionError: Malformed expression or missing path element
    """
    expression = expression.strip()
    head = _HEAD.match(expression)
    if head is None:
        raise ExpressionError(expression, "must start with #name or $N")

    if head.group("name") is not None:
        name = head.group("name")
        if name not in names:
            raise ExpressionError(expression, f"no argument named {name!r}")
        position = list(names).index(name)
    else:
        position = int(head.group("index")) - 1

    if not 0 <= position < len(args):
        raise ExpressionError(expression, f"argument {position + 1} out of range")
    value = args[position]

    pos = head.end()
    while pos < len(expression):
        segment = _SEGMENT.match(expression, pos)
        if segment is None:
            raise ExpressionError(expression, f"unexpected input at {pos}")
        value = _step(expression, value, segment)
        pos = segment.end()

    return value


def _step(expression: str, value: Any, segment: re.Match[str]) -> Any:
    if value is None:
        return None
    try:
        if segment.group("attr") is not None:
            attr = segment.group("attr")
            if isinstance(value, Mapping):
                return value[attr]
            return getattr(value, attr)
        if segment.group("item") is not None:
            return value[int(segment.group("item"))]
        return value[segment.group("key")]
    except (AttributeError, LookupError, TypeError) as exc:
        raise ExpressionError(expression, repr(exc)) from exc


def generate_key(expression: str | None, names: Sequence[str], args: Sequence[Any]) -> str | None:
    """Render the key an expression selects; None when absent or not evaluable."""
    if not expression or not args:
        return None

    try:
        value = evaluate(expression, names, args)
    except ExpressionError as exc:
        logger.warning("expression.evaluate", expression=expression, error=str(exc))
        return None

    if value is None:
        return None
    if isinstance(value, str):
        return value
    return pydantic_core.to_json(value, fallback=str).decode()
