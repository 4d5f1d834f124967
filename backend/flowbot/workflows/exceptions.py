# /flowbot/workflows/exceptions.py

"""
Error categories raised by the workflow runtime.

``WorkflowError`` subclasses are *domain* failures: the interpreter records
them as a failed step and marks the execution failed (or routes to an
``error`` edge when the node declares one). Anything else (storage driver
errors, lock timeouts) is infrastructure and propagates unchanged, leaving
the execution in its last persisted state.
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base class for every runtime failure that belongs in a step log."""

    code = "workflow_error"

    def __init__(self, message: str, *, node_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id


class AuthoringError(WorkflowError):
    """A flow failed validation and cannot be published."""

    code = "authoring_error"

    def __init__(self, message: str, problems: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.problems = problems or []


class UnknownNodeType(WorkflowError):
    code = "unknown_node_type"

    def __init__(self, node_type: str, *, node_id: Optional[str] = None):
        super().__init__(f"No handler registered for node type '{node_type}'", node_id=node_id)
        self.node_type = node_type


class MissingEdge(WorkflowError):
    """No (or more than one) outgoing connection matches the handle a node emitted."""

    code = "missing_edge"

    def __init__(self, node_id: str, handle: Optional[str], detail: str = "no outgoing connection"):
        label = handle or "default"
        super().__init__(f"Node '{node_id}' has {detail} for handle '{label}'", node_id=node_id)
        self.handle = handle


class StepLimitExceeded(WorkflowError):
    code = "step_limit_exceeded"


class ActionFailure(WorkflowError):
    """An action's external call failed. Recoverable when the node has an error edge."""

    code = "action_failure"

    def __init__(self, message: str, *, node_id: Optional[str] = None, query: Optional[str] = None):
        super().__init__(message, node_id=node_id)
        self.query = query


class WaitTimedOut(WorkflowError):
    code = "wait_timed_out"


class ExpressionFailure(WorkflowError):
    code = "expression_failure"


# ========== Lookup / lifecycle errors (surfaced to API callers) ==========

class FlowNotFound(WorkflowError):
    code = "flow_not_found"


class VersionNotFound(WorkflowError):
    code = "version_not_found"


class ExecutionNotFound(WorkflowError):
    code = "execution_not_found"


class InvalidRestart(WorkflowError):
    code = "invalid_restart"


# ========== Query executor errors ==========

class QueryError(WorkflowError):
    code = "query_error"


class QueryNotFound(QueryError):
    code = "query_not_found"


class QueryParameterError(QueryError):
    code = "query_parameter_error"


class UserNotFound(QueryError):
    code = "user_not_found"


class InsufficientBalance(QueryError):
    code = "insufficient_balance"

    def __init__(self, requested: float, available: float):
        super().__init__(f"Insufficient balance: requested {requested:g}, available {available:g}")
        self.requested = requested
        self.available = available


class MessageDeliveryError(QueryError):
    code = "message_delivery_failed"


class WebhookError(WorkflowError):
    """An outbound webhook could not be delivered or answered with a non-2xx status."""

    code = "webhook_failed"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
