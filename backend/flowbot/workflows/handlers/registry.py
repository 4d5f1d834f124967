# /flowbot/workflows/handlers/registry.py

from typing import Dict, Iterable, List

from flowbot.models.nodes import NODE_TYPES, canonical_type
from flowbot.workflows.exceptions import UnknownNodeType
from flowbot.workflows.handlers import actions, conditions, flow_control, triggers
from flowbot.workflows.handlers.base import NodeHandler


class HandlerRegistry:
    """Maps every node type string to exactly one handler."""

    def __init__(self, handlers: Iterable[NodeHandler]):
        self._handlers: Dict[str, NodeHandler] = {}
        for handler in handlers:
            for node_type in handler.node_types:
                if node_type in self._handlers:
                    raise ValueError(f"Node type '{node_type}' registered twice")
                self._handlers[node_type] = handler

    def get(self, node_type: str) -> NodeHandler:
        handler = self._handlers.get(canonical_type(node_type))
        if handler is None:
            raise UnknownNodeType(node_type)
        return handler

    def __contains__(self, node_type: str) -> bool:
        return canonical_type(node_type) in self._handlers

    def missing(self, node_types: Iterable[str]) -> List[str]:
        return [t for t in node_types if t not in self]

    @property
    def node_types(self) -> List[str]:
        return list(self._handlers)


BUILTIN_HANDLERS = (
    triggers.CommandTriggerHandler(),
    triggers.MessageTriggerHandler(),
    triggers.KeywordTriggerHandler(),
    triggers.CallbackTriggerHandler(),
    triggers.ContactTriggerHandler(),
    triggers.EntryTriggerHandler(),
    conditions.ConditionNodeHandler(),
    conditions.SwitchHandler(),
    actions.MessageActionHandler(),
    actions.ReplyKeyboardHandler(),
    actions.WebhookHandler(),
    actions.DatabaseQueryHandler(),
    actions.SetVariableHandler(),
    actions.GetVariableHandler(),
    actions.GetUserBalanceHandler(),
    actions.RequestContactHandler(),
    flow_control.WaitContactHandler(),
    flow_control.WaitInputHandler(),
    flow_control.WaitCallbackHandler(),
    flow_control.DelayHandler(),
    flow_control.JumpHandler(),
    flow_control.SubWorkflowHandler(),
    flow_control.EndHandler(),
    flow_control.LoopHandler(),
)


def build_default_registry() -> HandlerRegistry:
    """The built-in handler set. Fails fast if a schema node type has no handler."""
    registry = HandlerRegistry(BUILTIN_HANDLERS)
    missing = registry.missing(NODE_TYPES)
    if missing:
        raise RuntimeError(f"Node types without a handler: {', '.join(missing)}")
    return registry
