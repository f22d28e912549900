"""Restricted expression language for conditional feature rules.

Conditions are written in Python expression syntax and evaluated against a
read-only JSON view of the session, never with eval(). Only a whitelist of
node types is accepted:

- boolean operators (and, or, not) and unary minus
- comparisons, including chained comparisons, in / not in, is / is not
- literals: strings, numbers, True, False, None, lists and tuples
- names bound in the evaluation context
- attribute access and constant-key subscripts on mappings and lists
- calls to len()

Examples:
    "analysis" in session.completed_steps
    features["cv-analysis"].enabled and session.progress_percentage >= 30
    len(session.form_data.selected_features) > 2
"""

import ast
import operator
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any

from cvsession.core.errors import ExpressionError

_COMPARATORS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.Call,
    *_COMPARATORS,
)

_ALLOWED_FUNCTIONS: dict[str, Callable[[Any], Any]] = {"len": len}

# Sentinel for a missing key or attribute. Missing lookups evaluate to None so
# rules can reference optional state without guarding every access.
_MISSING = None


def _check_node(node: ast.AST, expression: str) -> None:
    if not isinstance(node, _ALLOWED_NODES):
        raise ExpressionError(expression, f"{type(node).__name__} is not allowed")
    if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
        raise ExpressionError(expression, f"access to '{node.attr}' is not allowed")
    if isinstance(node, ast.Subscript) and not isinstance(node.slice, ast.Constant):
        raise ExpressionError(expression, "subscripts must be constant keys")
    if isinstance(node, ast.Call):
        if not (
            isinstance(node.func, ast.Name) and node.func.id in _ALLOWED_FUNCTIONS
        ):
            raise ExpressionError(expression, "only len() may be called")
        if node.keywords or len(node.args) != 1:
            raise ExpressionError(expression, "len() takes exactly one argument")


@lru_cache(maxsize=512)
def compile_condition(expression: str) -> ast.Expression:
    """Parse and validate a condition.

    Args:
        expression: Condition source.

    Returns:
        The validated expression tree.

    Raises:
        ExpressionError: If the condition is empty, malformed, or uses a
            construct outside the whitelist.
    """
    if not expression or not expression.strip():
        raise ExpressionError(expression, "condition is empty")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(expression, f"syntax error: {e.msg}") from e
    for node in ast.walk(tree):
        _check_node(node, expression)
    return tree


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return container.get(key, _MISSING)
    if isinstance(container, (list, tuple)) and isinstance(key, int):
        return container[key] if -len(container) <= key < len(container) else _MISSING
    return _MISSING


class _Evaluator:
    def __init__(self, expression: str, context: Mapping[str, Any]) -> None:
        self._expression = expression
        self._context = context

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id not in self._context:
                raise ExpressionError(self._expression, f"unknown name '{node.id}'")
            return self._context[node.id]
        if isinstance(node, ast.Attribute):
            return _lookup(self.visit(node.value), node.attr)
        if isinstance(node, ast.Subscript):
            return _lookup(self.visit(node.value), self.visit(node.slice))
        if isinstance(node, ast.BoolOp):
            return self._bool_op(node)
        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            return -operand
        if isinstance(node, ast.Compare):
            return self._compare(node)
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.visit(element) for element in node.elts]
        if isinstance(node, ast.Call):
            func = _ALLOWED_FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
            return func(self.visit(node.args[0]))
        raise ExpressionError(self._expression, f"{type(node).__name__} is not allowed")

    def _bool_op(self, node: ast.BoolOp) -> Any:
        result: Any = None
        for value in node.values:
            result = self.visit(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def _compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            if not _COMPARATORS[type(op)](left, right):
                return False
            left = right
        return True


def evaluate_condition(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate a condition against a read-only context.

    Args:
        expression: Condition source.
        context: Names available to the condition (e.g. session, features,
            steps) mapped to JSON-like values.

    Returns:
        Truthiness of the condition.

    Raises:
        ExpressionError: If the condition is invalid or fails to evaluate
            (unknown name, type mismatch in a comparison, len() of a scalar).
    """
    tree = compile_condition(expression)
    try:
        return bool(_Evaluator(expression, context).visit(tree))
    except ExpressionError:
        raise
    except (TypeError, ValueError) as e:
        raise ExpressionError(expression, str(e)) from e
