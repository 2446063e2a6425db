"""Restricted evaluator for condition-step expressions.

Expressions are parsed with :mod:`ast` and walked node by node; only
literals, names from the supplied variable map, boolean logic, comparisons
and basic arithmetic are accepted. Nothing is ever handed to ``eval``.
"""

import ast
import operator
import re
from typing import Any, Callable, Dict, Mapping

from .exceptions import ConditionError

_BINARY_OPERATORS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_COMPARE_OPERATORS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}

_CONSTANT_NAMES = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": None,
}

# JS-style operators that templates authored for the web builder use.
_TOKEN_REWRITES = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]

_MAX_EXPRESSION_LENGTH = 1000
_MAX_NODES = 200
_MAX_DEPTH = 50
_MAX_SEQUENCE_LENGTH = 10000


def normalize_expression(expression: str) -> str:
    """Rewrite JS-flavoured operators into their Python spelling."""
    parts = re.split(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""", expression)
    for index in range(0, len(parts), 2):
        for pattern, replacement in _TOKEN_REWRITES:
            parts[index] = pattern.sub(replacement, parts[index])
    return "".join(parts).strip()


def _repeat(left: Any, right: Any) -> Any:
    """Multiplication that refuses to build oversized strings or lists."""
    for sequence, count in ((left, right), (right, left)):
        if isinstance(sequence, (str, list)) and isinstance(count, int) and not isinstance(count, bool):
            if len(sequence) * max(count, 0) > _MAX_SEQUENCE_LENGTH:
                raise ConditionError("Condition builds a value that is too large")
    return operator.mul(left, right)


_BINARY_OPERATORS[ast.Mult] = _repeat


class _Evaluator:
    def __init__(self, variables: Mapping[str, Any]):
        self.variables = variables
        self.depth = 0

    def visit(self, node: ast.AST) -> Any:
        self.depth += 1
        if self.depth > _MAX_DEPTH:
            raise ConditionError("Condition expression is nested too deeply")
        try:
            return self._visit(node)
        finally:
            self.depth -= 1

    def _visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in self.variables:
                return self.variables[node.id]
            if node.id in _CONSTANT_NAMES:
                return _CONSTANT_NAMES[node.id]
            raise ConditionError(f"Unknown variable '{node.id}'")
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self.visit(value)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self.visit(value)
                if result:
                    return result
            return result
        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
            return _BINARY_OPERATORS[type(node.op)](self.visit(node.left), self.visit(node.right))
        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                if type(op) not in _COMPARE_OPERATORS:
                    break
                right = self.visit(comparator)
                if not _COMPARE_OPERATORS[type(op)](left, right):
                    return False
                left = right
            else:
                return True
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.visit(element) for element in node.elts]
        raise ConditionError(f"Unsupported expression element: {type(node).__name__}")


def evaluate_condition(expression: str, variables: Mapping[str, Any]) -> bool:
    """
    Evaluate a boolean expression over known variables.

    Raises:
        ConditionError: If the expression cannot be parsed, uses an
            unsupported construct, or fails while evaluating.
    """
    if expression is None or not str(expression).strip():
        raise ConditionError("Condition expression is empty", expression=expression)
    if len(expression) > _MAX_EXPRESSION_LENGTH:
        raise ConditionError("Condition expression is too long", expression=expression[:50])

    source = normalize_expression(str(expression))
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"Invalid condition syntax: {e.msg}", expression=expression)
    except (ValueError, RecursionError, MemoryError) as e:
        # NUL bytes and pathological nesting fail inside the parser itself
        raise ConditionError(f"Invalid condition: {e}", expression=expression)

    if sum(1 for _ in ast.walk(tree)) > _MAX_NODES:
        raise ConditionError("Condition expression is too complex", expression=expression[:50])

    try:
        return bool(_Evaluator(variables).visit(tree))
    except ConditionError:
        raise
    except (TypeError, ValueError, ArithmeticError, RecursionError, MemoryError) as e:
        raise ConditionError(f"Condition evaluation failed: {e}", expression=expression)
