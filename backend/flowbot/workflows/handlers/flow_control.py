# /flowbot/workflows/handlers/flow_control.py

from datetime import timedelta
from typing import Any

from flowbot.models.execution import EventKind, InboundEvent, WaitType
from flowbot.models.nodes import (
    DONE_HANDLE,
    LOOP_HANDLE,
    DelayNode,
    EndNode,
    JumpNode,
    LoopNode,
    SubWorkflowNode,
    WaitCallbackNode,
    WaitContactNode,
    WaitInputNode,
)
from flowbot.workflows import templates
from flowbot.workflows.context import ExecutionContext
from flowbot.workflows.exceptions import ActionFailure
from flowbot.workflows.expressions import ExpressionError, evaluate_expression
from flowbot.workflows.handlers.actions import store_contact
from flowbot.workflows.handlers.base import FlowControlHandler, WaitingMixin
from flowbot.workflows.results import Advance, StepResult, Suspend, Terminate


class WaitContactHandler(WaitingMixin, FlowControlHandler):
    node_types = ("flow.wait_contact",)
    wait_type = WaitType.CONTACT
    accepted_kinds = (EventKind.CONTACT,)

    async def execute(self, node: WaitContactNode, context: ExecutionContext) -> StepResult:
        return await self.suspend(node, context, prompt=node.config.prompt)

    def store_input(self, node, context: ExecutionContext, event: InboundEvent) -> Any:
        return store_contact(context, event)


class WaitInputHandler(WaitingMixin, FlowControlHandler):
    node_types = ("flow.wait_input",)
    wait_type = WaitType.TEXT
    accepted_kinds = (EventKind.TEXT,)

    async def execute(self, node: WaitInputNode, context: ExecutionContext) -> StepResult:
        return await self.suspend(node, context, prompt=node.config.prompt)

    def store_input(self, node, context: ExecutionContext, event: InboundEvent) -> Any:
        context.set_local("input.text", event.text)
        return event.text


class WaitCallbackHandler(WaitingMixin, FlowControlHandler):
    node_types = ("flow.wait_callback",)
    wait_type = WaitType.CALLBACK
    accepted_kinds = (EventKind.CALLBACK,)

    async def execute(self, node: WaitCallbackNode, context: ExecutionContext) -> StepResult:
        return await self.suspend(node, context, prompt=node.config.prompt)

    def accepts(self, node: WaitCallbackNode, event: InboundEvent) -> bool:
        if event.kind != EventKind.CALLBACK:
            return False
        return not node.config.allowed or event.callback_data in node.config.allowed

    def store_input(self, node, context: ExecutionContext, event: InboundEvent) -> Any:
        context.set_local("callback.data", event.callback_data)
        return event.callback_data


class DelayHandler(WaitingMixin, FlowControlHandler):
    """Parks the execution until the timeout sweep wakes it up."""
    node_types = ("flow.delay",)
    wait_type = WaitType.DELAY
    accepted_kinds = ()

    async def _seconds(self, node: DelayNode, context: ExecutionContext) -> int:
        if node.config.variable_delay:
            raw = templates.lookup(await context.scope(), node.config.variable_delay)
            try:
                return max(int(float(raw)), 0)
            except (TypeError, ValueError):
                raise ActionFailure(f"Delay variable '{node.config.variable_delay}' is not a number: {raw!r}",
                                    node_id=node.id)
        return node.config.seconds

    async def execute(self, node: DelayNode, context: ExecutionContext) -> StepResult:
        seconds = await self._seconds(node, context)
        if seconds == 0:
            return Advance(data={"delay_seconds": 0})
        return Suspend(
            wait_type=self.wait_type,
            payload={"node_id": node.id, "delay_seconds": seconds},
            deadline=context.now() + timedelta(seconds=seconds),
        )

    def store_input(self, node, context: ExecutionContext, event: InboundEvent) -> Any:
        return None

    async def on_timeout(self, node: DelayNode, context: ExecutionContext) -> StepResult:
        return Advance(data={"delayed": True})


class JumpHandler(FlowControlHandler):
    node_types = ("flow.jump",)

    async def execute(self, node: JumpNode, context: ExecutionContext) -> StepResult:
        return Advance(target=node.config.target_node_id)


class SubWorkflowHandler(FlowControlHandler):
    """Placeholder: nested flows are not executed yet, the node passes through."""
    node_types = ("flow.sub_workflow",)

    async def execute(self, node: SubWorkflowNode, context: ExecutionContext) -> StepResult:
        context.log.warning("sub_workflow_skipped", node_id=node.id, workflow_id=node.config.workflow_id)
        return Advance(data={"skipped_workflow": node.config.workflow_id})


class LoopHandler(FlowControlHandler):
    """
    Re-entered once per iteration: ``loop`` leads into the body, which routes
    back here, and ``done`` is followed when the iterations run out. Progress
    lives in a local variable, so a body may wait for input between rounds.
    """
    node_types = ("flow.loop",)

    @staticmethod
    def state_key(node: LoopNode) -> str:
        return f"loop.{node.id}"

    async def _items(self, node: LoopNode, context: ExecutionContext) -> list:
        config = node.config
        path = config.array.strip()
        if path.startswith("{") and path.endswith("}"):
            path = path[1:-1].strip()
        items = templates.lookup(await context.scope(), path)
        if not isinstance(items, (list, tuple)):
            raise ActionFailure(f"Loop variable '{path}' is not a list: {type(items).__name__}", node_id=node.id)
        if len(items) > config.max_iterations:
            raise ActionFailure(f"Loop variable '{path}' has {len(items)} items, more than {config.max_iterations}",
                                node_id=node.id)
        return list(items)

    async def _condition(self, node: LoopNode, context: ExecutionContext) -> bool:
        scope = await context.scope()
        try:
            return bool(evaluate_expression(node.config.condition, lambda path: templates.lookup(scope, path)))
        except ExpressionError as e:
            context.clear_local(self.state_key(node))
            raise ActionFailure(f"Loop condition failed: {e}", node_id=node.id) from e

    async def execute(self, node: LoopNode, context: ExecutionContext) -> StepResult:
        config = node.config
        key = self.state_key(node)
        state = context.local.get(key)
        if not isinstance(state, dict):
            state = {"index": -1}
            if config.mode == "foreach":
                state["items"] = await self._items(node, context)
        index = state["index"] + 1

        if config.mode == "count":
            more = index < config.count
        elif config.mode == "foreach":
            more = index < len(state["items"])
        else:
            more = await self._condition(node, context)
            if more and index >= config.max_iterations:
                context.clear_local(key)
                raise ActionFailure(f"Loop '{node.id}' exceeded {config.max_iterations} iterations", node_id=node.id)

        if not more:
            context.clear_local(key)
            return Advance(handle=DONE_HANDLE, data={"iterations": index})

        state["index"] = index
        context.set_local(key, state)
        context.set_local(config.index_variable, index)
        if config.mode == "foreach":
            context.set_local(config.item_variable, state["items"][index])
        return Advance(handle=LOOP_HANDLE, data={"iteration": index})


class EndHandler(FlowControlHandler):
    node_types = ("flow.end",)

    async def execute(self, node: EndNode, context: ExecutionContext) -> StepResult:
        if node.config.message:
            await context.send_message(await context.render(node.config.message), node_id=node.id)
        return Terminate(success=node.config.success, message=node.config.message)
