"""Step conditions and ``{{var}}`` parameter substitution.

A condition is a small boolean expression over run variables::

    ${LEVEL} === 0
    ${TEAM_SIZE} > 5 && {{SECURITY}} === 'high'
    !${DEBUG_MODE}

References are bound to the variable's value (not pasted in as text), the
JS-style operators are mapped onto Python ones, and the result is evaluated by
walking a whitelisted subset of the ``ast``. Nothing is ever passed to ``eval``.

``===`` and ``!==`` also compare types (``false === 0`` is false, ``1 === 1.0``
is true); ``==`` and ``!=`` compare values only.
"""

from __future__ import annotations

import ast
import operator
import re
from collections.abc import Mapping
from typing import Any

from storyflow.core.errors import ValidationError

_REFERENCE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\{\{([A-Za-z_][A-Za-z0-9_]*)\}\}")

_TOKEN_RE = re.compile(
    r"""
    (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||!|<|>|-|\(|\))
    | (?P<number>\d+(?:\.\d+)?)
    | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<space>\s+)
    """,
    re.VERBOSE,
)

_OPERATORS = {
    "===": " is ",
    "!==": " is not ",
    "&&": " and ",
    "||": " or ",
    "!": " not ",
}

_LITERALS = {
    "true": "True",
    "false": "False",
    "null": "None",
    "undefined": "None",
}

def _strict_equal(left: Any, right: Any) -> bool:
    """``===``: equal values of the same type; ints and floats are both numbers."""

    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def _strict_not_equal(left: Any, right: Any) -> bool:
    return not _strict_equal(left, right)


# `===` and `!==` are translated to `is` / `is not` so they stay distinct from
# the loose `==` / `!=`; neither is ever evaluated as identity.
_COMPARE = {
    ast.Is: _strict_equal,
    ast.IsNot: _strict_not_equal,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_BINDING_PREFIX = "_ref"


class ConditionEvaluationError(ValidationError):
    def __init__(self, message: str, condition: str) -> None:
        super().__init__(f"{message} (condition: {condition!r})")
        self.condition = condition


def _bind_references(
    condition: str, variables: Mapping[str, Any], *, strict: bool
) -> tuple[str, dict[str, Any]]:
    bindings: dict[str, Any] = {}

    def replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        if name not in variables and strict:
            raise ConditionEvaluationError(f"Variable not found: {name}", condition)
        slot = f"{_BINDING_PREFIX}{len(bindings)}"
        bindings[slot] = variables.get(name)
        return slot

    return _REFERENCE_RE.sub(replace, condition), bindings


def _translate(expression: str, condition: str) -> str:
    out: list[str] = []
    position = 0
    while position < len(expression):
        match = _TOKEN_RE.match(expression, position)
        if match is None:
            raise ConditionEvaluationError(
                f"Unexpected character {expression[position]!r}", condition
            )
        position = match.end()
        kind = match.lastgroup
        token = match.group()
        if kind == "op":
            out.append(_OPERATORS.get(token, token))
        elif kind == "name":
            out.append(_LITERALS.get(token, token))
        else:
            out.append(token)
    return "".join(out)


class _Evaluator:
    def __init__(self, bindings: Mapping[str, Any], condition: str) -> None:
        self.bindings = bindings
        self.condition = condition

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id not in self.bindings:
                raise ConditionEvaluationError(f"Unknown name: {node.id}", self.condition)
            return self.bindings[node.id]
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._truthy(v) for v in node.values)
            return any(self._truthy(v) for v in node.values)
        if isinstance(node, ast.UnaryOp):
            if isinstance(node.op, ast.Not):
                return not self.visit(node.operand)
            if isinstance(node.op, ast.USub):
                return -self.visit(node.operand)
        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op, comparator in zip(node.ops, node.comparators, strict=True):
                fn = _COMPARE.get(type(op))
                if fn is None:
                    break
                right = self.visit(comparator)
                if not fn(left, right):
                    return False
                left = right
            else:
                return True
        raise ConditionEvaluationError(
            f"Unsupported expression: {type(node).__name__}", self.condition
        )

    def _truthy(self, node: ast.AST) -> bool:
        return bool(self.visit(node))


def evaluate_condition(
    condition: str,
    variables: Mapping[str, Any],
    *,
    strict: bool = True,
) -> bool:
    """Evaluate ``condition`` against ``variables``.

    Args:
        condition: Expression such as ``"${LEVEL} === 0"``.
        variables: Current run variables.
        strict: When True an unknown variable is an error; otherwise it is
            treated as ``undefined``.

    Returns:
        The boolean result.

    Raises:
        ConditionEvaluationError: If the condition is empty, malformed, refers to
            an unknown variable in strict mode, or does not produce a boolean.
    """

    if not condition or not condition.strip():
        raise ConditionEvaluationError("Condition cannot be empty", condition)

    bound, bindings = _bind_references(condition.strip(), variables, strict=strict)
    expression = _translate(bound, condition).strip()

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ConditionEvaluationError(f"Invalid expression: {e.msg}", condition) from None

    try:
        result = _Evaluator(bindings, condition).visit(tree)
    except TypeError as e:
        raise ConditionEvaluationError(f"Failed to evaluate: {e}", condition) from None

    if not isinstance(result, bool):
        raise ConditionEvaluationError(
            f"Condition must evaluate to a boolean, got {type(result).__name__}", condition
        )
    return result


def substitute_variables(text: str, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` and ``{name}`` with variable values.

    Unknown references are left untouched.
    """

    result = text
    for key, value in variables.items():
        result = result.replace("{{" + key + "}}", str(value))
        result = result.replace("{" + key + "}", str(value))
    return result


def resolve_variables(value: Any, variables: Mapping[str, Any]) -> Any:
    """Apply :func:`substitute_variables` to every string inside ``value``."""

    if isinstance(value, str):
        return substitute_variables(value, variables)
    if isinstance(value, Mapping):
        return {k: resolve_variables(v, variables) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [resolve_variables(v, variables) for v in value]
    return value
