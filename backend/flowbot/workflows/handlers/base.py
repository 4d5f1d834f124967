# /flowbot/workflows/handlers/base.py

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, ClassVar, Mapping, Optional, Tuple

from flowbot.models.execution import EventKind, InboundEvent, WaitType
from flowbot.models.nodes import ERROR_HANDLE, FALLBACK_HANDLE, TIMEOUT_HANDLE, BaseNode, Capability
from flowbot.workflows.context import ExecutionContext
from flowbot.workflows.exceptions import ActionFailure, WaitTimedOut
from flowbot.workflows.results import Advance, Failed, StepResult, Suspend


class NodeHandler(ABC):
    """Executes one family of node types. Stateless; one instance serves every execution."""

    node_types: ClassVar[Tuple[str, ...]]
    capability: ClassVar[Capability]


class TriggerHandler(NodeHandler):
    capability = Capability.TRIGGER

    @abstractmethod
    def matches(self, node: BaseNode, event: InboundEvent) -> bool:
        """Whether ``event`` should start a new execution at ``node``."""

    async def execute(self, node: BaseNode, context: ExecutionContext) -> StepResult:
        # Reached only by an explicit restart or jump: pass straight through
        return Advance()


class ConditionHandler(NodeHandler):
    capability = Capability.CONDITION

    @abstractmethod
    def evaluate(self, node: BaseNode, variables: Mapping[str, Any]) -> str:
        """Returns the outcome label to follow. Pure: no I/O."""


class ExecutingHandler(NodeHandler):
    """Actions and flow control: nodes that do something when reached."""

    @abstractmethod
    async def execute(self, node: BaseNode, context: ExecutionContext) -> StepResult: ...

    async def run(self, node: BaseNode, context: ExecutionContext) -> StepResult:
        """
        Executes the node. An ActionFailure becomes an advance along the
        node's ``error`` connection when one exists, otherwise the step fails.
        """
        try:
            return await self.execute(node, context)
        except ActionFailure as e:
            if context.graph.has_handle(node.id, ERROR_HANDLE):
                context.set_local("error.message", e.message)
                context.set_local("error.node", node.id)
                context.log.warning("action_failed_recovered", node_id=node.id, error=e.message)
                return Advance(handle=ERROR_HANDLE, error=e.message)
            return Failed(e)


class ActionHandler(ExecutingHandler):
    capability = Capability.ACTION


class FlowControlHandler(ExecutingHandler):
    capability = Capability.FLOW_CONTROL


class WaitingMixin:
    """
    Behaviour shared by every node that suspends for user input: prompting,
    matching the resuming event, storing what arrived and timing out.
    """

    wait_type: ClassVar[WaitType]
    accepted_kinds: ClassVar[Tuple[EventKind, ...]]

    async def suspend(self, node: BaseNode, context: ExecutionContext, prompt: Optional[str] = None,
                      buttons: Optional[list] = None) -> Suspend:
        if prompt:
            await context.send_message(await context.render(prompt), buttons, node_id=node.id)
        config = node.config
        deadline = None
        if getattr(config, "timeout_seconds", None):
            deadline = context.now() + timedelta(seconds=config.timeout_seconds)
        payload = {"node_id": node.id}
        if getattr(config, "variable", None):
            payload["variable"] = config.variable
        return Suspend(wait_type=self.wait_type, payload=payload, deadline=deadline)

    def accepts(self, node: BaseNode, event: InboundEvent) -> bool:
        return event.kind in self.accepted_kinds

    def mismatch_reply(self, node: BaseNode) -> Optional[str]:
        return getattr(node.config, "reprompt", None)

    def falls_back_on_mismatch(self, node: BaseNode) -> bool:
        return bool(getattr(node.config, "fallback_on_mismatch", False))

    def fallback(self) -> Advance:
        return Advance(handle=FALLBACK_HANDLE)

    @abstractmethod
    def store_input(self, node: BaseNode, context: ExecutionContext, event: InboundEvent) -> Any:
        """Writes the received input into local variables and returns the primary value."""

    async def resume(self, node: BaseNode, context: ExecutionContext, event: InboundEvent) -> StepResult:
        value = self.store_input(node, context, event)
        variable = getattr(node.config, "variable", None)
        if variable:
            context.set_local(variable, value)
        return Advance(data={"received": value})

    async def on_timeout(self, node: BaseNode, context: ExecutionContext) -> StepResult:
        if context.graph.has_handle(node.id, TIMEOUT_HANDLE):
            return Advance(handle=TIMEOUT_HANDLE)
        return Failed(WaitTimedOut(f"Timed out waiting for {self.wait_type.value}", node_id=node.id))
