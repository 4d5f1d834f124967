# /flowbot/workflows/handlers/conditions.py

from typing import Any, Mapping

from flowbot.models.nodes import DEFAULT_HANDLE, FALSE_HANDLE, TRUE_HANDLE, ConditionNode, SwitchNode
from flowbot.workflows import templates
from flowbot.workflows.exceptions import ExpressionFailure, MissingEdge
from flowbot.workflows.expressions import ExpressionError, compare, evaluate_expression, evaluate_simple
from flowbot.workflows.handlers.base import ConditionHandler


class ConditionNodeHandler(ConditionHandler):
    node_types = ("flow.condition",)

    def evaluate(self, node: ConditionNode, variables: Mapping[str, Any]) -> str:
        config = node.config
        try:
            if config.expression is not None:
                result = evaluate_expression(config.expression, lambda path: templates.lookup(variables, path))
            else:
                actual = templates.lookup(variables, config.variable)
                expected = templates.resolve(config.value, variables)
                result = evaluate_simple(actual, config.operator, expected, config.case_sensitive)
        except ExpressionError as e:
            raise ExpressionFailure(str(e), node_id=node.id) from e
        return TRUE_HANDLE if result else FALSE_HANDLE


class SwitchHandler(ConditionHandler):
    node_types = ("flow.switch",)

    def evaluate(self, node: SwitchNode, variables: Mapping[str, Any]) -> str:
        config = node.config
        actual = templates.lookup(variables, config.variable)
        for case in config.cases:
            expected = case.value
            left, right = actual, expected
            if not config.case_sensitive and isinstance(left, str) and isinstance(right, str):
                left, right = left.lower(), right.lower()
            if compare("==", left, right):
                return case.handle
        if config.has_default:
            return DEFAULT_HANDLE
        raise MissingEdge(node.id, DEFAULT_HANDLE, detail=f"no case matching {actual!r} and no default")
