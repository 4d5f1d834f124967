# /flowbot/workflows/expressions.py

"""
Safe evaluation of condition expressions.

Expressions are parsed with ``ast`` and walked by a small interpreter that
only understands a whitelist of node types: literals, variable references
(dotted names such as ``user.balance``), comparisons, boolean logic,
arithmetic and a handful of helper functions. Nothing is ever passed to
``eval``. JavaScript spellings used by older flows (``&&``, ``||``, ``!``,
``===``, ``true``/``false``/``null``) are normalised before parsing.
"""

import ast
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional


class ExpressionError(ValueError):
    """Raised for expressions that are malformed or use disallowed syntax."""


_STRING_LITERAL = re.compile(r"('(?:\\.|[^'\\])*'|\"(?:\\.|[^\"\\])*\")")

_JS_REWRITES = [
    (re.compile(r"===?"), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
]


def _normalize(expression: str) -> str:
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        chunk = parts[i].replace("!==", "!=")
        for pattern, replacement in _JS_REWRITES:
            chunk = pattern.sub(replacement, chunk)
        parts[i] = chunk
    return "".join(parts).strip()


_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict, tuple)) and len(value) == 0)


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "int": int,
    "float": float,
    "str": str,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "lower": lambda v: str(v).lower(),
    "upper": lambda v: str(v).upper(),
    "is_empty": _is_empty,
    "not_empty": lambda v: not _is_empty(v),
}

_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.BinOp, ast.Compare,
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn, ast.Is, ast.IsNot,
    ast.Constant, ast.Name, ast.Load, ast.Attribute, ast.Subscript, ast.List, ast.Tuple,
    ast.Call, ast.IfExp,
) + tuple(_BINARY_OPS) + tuple(_UNARY_OPS)


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """Parses and whitelists an expression. Raises ExpressionError on anything unsafe."""
    source = _normalize(expression)
    if not source:
        raise ExpressionError("Expression is empty")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"{e.msg} in {expression!r}") from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(f"Disallowed syntax {type(node).__name__} in {expression!r}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS or node.keywords:
                raise ExpressionError(f"Only helper functions {sorted(_FUNCTIONS)} may be called")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError("Private attributes are not accessible")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ExpressionError("Dunder names are not accessible")
    return tree


def _dotted_path(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _dotted_path(node.value)
        return f"{base}.{node.attr}" if base else None
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def compare(op: str, left: Any, right: Any) -> bool:
    """
    Loose comparison used by both expressions and simple conditions.
    Numeric strings compare as numbers against numbers; ordering between
    incomparable values (e.g. a missing variable and a number) is False.
    """
    if not isinstance(left, str) or not isinstance(right, str):
        left_num, right_num = _as_number(left), _as_number(right)
        if left_num is not None and right_num is not None:
            left, right = left_num, right_num

    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    try:
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left >= right
        if op == "<=":
            return left <= right
    except TypeError:
        return False
    raise ExpressionError(f"Unknown comparison operator {op!r}")


_COMPARE_SYMBOLS = {ast.Eq: "==", ast.NotEq: "!=", ast.Gt: ">", ast.Lt: "<", ast.GtE: ">=", ast.LtE: "<="}


class _Evaluator:
    def __init__(self, lookup: Callable[[str], Any]):
        self.lookup = lookup

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, (ast.Name, ast.Attribute)):
            return self._reference(node)
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
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
            return _UNARY_OPS[type(node.op)](self.visit(node.operand))
        if isinstance(node, ast.BinOp):
            left, right = self.visit(node.left), self.visit(node.right)
            if not (isinstance(left, str) and isinstance(right, str)):
                left_num, right_num = _as_number(left), _as_number(right)
                if left_num is not None and right_num is not None:
                    left, right = left_num, right_num
            return _BINARY_OPS[type(node.op)](left, right)
        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.visit(comparator)
                if isinstance(op, ast.In):
                    ok = right is not None and left in right
                elif isinstance(op, ast.NotIn):
                    ok = right is None or left not in right
                elif isinstance(op, ast.Is):
                    ok = left is right
                elif isinstance(op, ast.IsNot):
                    ok = left is not right
                else:
                    ok = compare(_COMPARE_SYMBOLS[type(op)], left, right)
                if not ok:
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.visit(item) for item in node.elts]
        if isinstance(node, ast.Subscript):
            container = self.visit(node.value)
            key = self.visit(node.slice)
            try:
                return container[key]
            except (KeyError, IndexError, TypeError):
                return None
        if isinstance(node, ast.Call):
            return _FUNCTIONS[node.func.id](*[self.visit(arg) for arg in node.args])
        raise ExpressionError(f"Unsupported syntax {type(node).__name__}")

    def _reference(self, node: ast.AST) -> Any:
        path = _dotted_path(node)
        if path is not None:
            value = self.lookup(path)
            if value is not None or isinstance(node, ast.Name):
                return value
        # Attribute on a computed value, e.g. (a or b).phone
        base = self.visit(node.value)
        if isinstance(base, Mapping):
            return base.get(node.attr)
        return None


def evaluate_expression(expression: str, lookup: Callable[[str], Any]) -> Any:
    """
    Evaluates an expression against variables resolved through ``lookup``
    (a callable taking a dotted path and returning the value or None).
    Raises ExpressionError for disallowed syntax or runtime faults.
    """
    tree = compile_expression(expression)
    try:
        return _Evaluator(lookup).visit(tree)
    except ExpressionError:
        raise
    except (ArithmeticError, TypeError, ValueError) as e:
        raise ExpressionError(f"Could not evaluate {expression!r}: {e}") from e


def evaluate_simple(actual: Any, op: str, expected: Any, case_sensitive: bool = False) -> bool:
    """Evaluates the variable/operator/value form of a condition."""
    if op in ("is_empty", "is_not_empty"):
        empty = _is_empty(actual)
        return empty if op == "is_empty" else not empty

    if not case_sensitive and isinstance(actual, str) and isinstance(expected, str):
        actual, expected = actual.lower(), expected.lower()

    if op in ("contains", "not_contains"):
        if actual is None:
            found = False
        elif isinstance(actual, (list, tuple, dict)):
            found = expected in actual
        else:
            found = str(expected) in str(actual)
        return found if op == "contains" else not found

    symbol = {
        "equals": "==", "not_equals": "!=", "===": "==", "!==": "!=",
        "greater": ">", "less": "<", "greater_equal": ">=", "less_equal": "<=",
    }.get(op, op)
    return compare(symbol, actual, expected)
