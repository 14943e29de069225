"""
Restricted evaluation of {{expression}} placeholders.

Model attributes may embed expressions over the model's variables, e.g.
"tcp:{{port}}" or "{{replicas * 2}}". Expressions are parsed with the
ast module and evaluated by walking a whitelist of node types:
literals, variable names, arithmetic, comparisons, boolean operators and
conditional expressions. Attribute access, calls, subscripts and every
other construct are rejected with ExpressionError. Results are bounded:
exponents by MAX_EXPONENT, integers by MAX_INT_BITS and strings by
MAX_STRING_LENGTH.

A placeholder that references a name absent from the variables is left
untouched so that a later resolution step (with more variables bound)
can still evaluate it.

Usage:
    render("tcp:{{port + 1}}", {"port": 8080})  # "tcp:8081"
    render("{{missing}}", {})                   # "{{missing}}"
"""

from __future__ import annotations

import ast
import operator
import re
from typing import Any

from ..errors import ExpressionError

PLACEHOLDER_RE = re.compile(r"\{\{(.*?)\}\}")

MAX_EXPONENT = 64
MAX_INT_BITS = 256
MAX_STRING_LENGTH = 4096


def _check_int(value: Any) -> Any:
    if isinstance(value, int) and value.bit_length() > MAX_INT_BITS:
        raise ExpressionError(f"Integer result exceeds {MAX_INT_BITS} bits")
    return value


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, str) and isinstance(right, str):
        if len(left) + len(right) > MAX_STRING_LENGTH:
            raise ExpressionError(f"String result exceeds {MAX_STRING_LENGTH} characters")
    return _check_int(operator.add(left, right))


def _mul(left: Any, right: Any) -> Any:
    # str * int repeats the string
    if isinstance(left, str) or isinstance(right, str):
        text, times = (left, right) if isinstance(left, str) else (right, left)
        if isinstance(times, int) and len(text) * max(times, 0) > MAX_STRING_LENGTH:
            raise ExpressionError(f"String result exceeds {MAX_STRING_LENGTH} characters")
        return operator.mul(left, right)
    if isinstance(left, int) and isinstance(right, int):
        if left.bit_length() + right.bit_length() > MAX_INT_BITS + 1:
            raise ExpressionError(f"Integer result exceeds {MAX_INT_BITS} bits")
    return _check_int(operator.mul(left, right))


def _pow(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, (int, float)) and abs(exponent) > MAX_EXPONENT:
        raise ExpressionError(f"Exponent {exponent} exceeds {MAX_EXPONENT}")
    if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
        if (base.bit_length() - 1) * exponent > MAX_INT_BITS:
            raise ExpressionError(f"Integer result exceeds {MAX_INT_BITS} bits")
    return _check_int(operator.pow(base, exponent))


_BIN_OPS = {
    ast.Add: _add,
    ast.Sub: operator.sub,
    ast.Mult: _mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _pow,
}

_UNARY_OPS = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


def has_placeholder(text: str) -> bool:
    return bool(PLACEHOLDER_RE.search(text))


def evaluate(expression: str, variables: dict[str, Any]) -> Any:
    """
    Evaluate a single expression against variables.

    Raises:
        ExpressionError: on syntax errors, unsupported constructs,
            unknown names or runtime failures (e.g. division by zero).
    """
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except (SyntaxError, ValueError) as e:
        raise ExpressionError(f"Invalid expression {expression!r}: {e}") from e

    try:
        return _eval_node(tree.body, variables)
    except ExpressionError:
        raise
    except (ArithmeticError, TypeError, ValueError) as e:
        raise ExpressionError(f"Failed to evaluate {expression!r}: {e}") from e


def render(text: str, variables: dict[str, Any]) -> str:
    """Replace every resolvable {{expression}} in text with its value."""

    def _replace(match: re.Match) -> str:
        expression = match.group(1).strip()
        if not expression:
            raise ExpressionError("Empty expression in placeholder")
        try:
            tree = ast.parse(expression, mode="eval")
        except (SyntaxError, ValueError) as e:
            raise ExpressionError(f"Invalid expression {expression!r}: {e}") from e

        names = {node.id for node in ast.walk(tree) if isinstance(node, ast.Name)}
        if not names.issubset(variables):
            return match.group(0)

        return format_value(evaluate(expression, variables))

    return PLACEHOLDER_RE.sub(_replace, text)


def format_value(value: Any) -> str:
    """Render a scalar the way placeholders and variables are stringified."""
    if isinstance(value, bool):
        return "true" if value else "false"
    try:
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    except (ValueError, OverflowError) as e:
        raise ExpressionError(f"Cannot format value: {e}") from e


def _eval_node(node: ast.AST, variables: dict[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, (int, float, str, bool)) or node.value is None:
            return _check_int(node.value)
        raise ExpressionError(f"Unsupported constant: {node.value!r}")

    if isinstance(node, ast.Name):
        if node.id not in variables:
            raise ExpressionError(f"Unknown variable: {node.id}")
        return variables[node.id]

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(_eval_node(node.left, variables), _eval_node(node.right, variables))

    if isinstance(node, ast.UnaryOp):
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(_eval_node(node.operand, variables))

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _eval_node(value, variables)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _eval_node(value, variables)
            if result:
                return result
        return result

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, variables)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = _eval_node(comparator, variables)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, variables):
            return _eval_node(node.body, variables)
        return _eval_node(node.orelse, variables)

    raise ExpressionError(f"Unsupported expression: {type(node).__name__}")
