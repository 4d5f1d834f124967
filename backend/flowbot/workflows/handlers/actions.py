# /flowbot/workflows/handlers/actions.py

from typing import Any, Dict, List

from flowbot.models.execution import EventKind, InboundEvent, WaitType
from flowbot.models.nodes import (
    DatabaseQueryNode,
    GetUserBalanceNode,
    GetVariableNode,
    MessageNode,
    ReplyKeyboardNode,
    RequestContactNode,
    SetVariableNode,
    WebhookNode,
)
from flowbot.workflows import templates
from flowbot.workflows.context import ExecutionContext
from flowbot.workflows.exceptions import ActionFailure, QueryNotFound, WebhookError
from flowbot.workflows.handlers.base import ActionHandler, WaitingMixin
from flowbot.workflows.results import Advance, StepResult

# Queries that identify the chat user; a successful result links the execution to that user
USER_LOOKUP_QUERIES = {"check_user_by_channel", "create_user"}


class MessageActionHandler(ActionHandler):
    """Plain messages and inline keyboards: callback and URL buttons attached to the text."""
    node_types = ("message", "message.keyboard.inline")

    def button_rows(self, node: MessageNode) -> List[List[dict]]:
        return [[button.model_dump(exclude_none=True) for button in row] for row in node.config.buttons]

    async def execute(self, node: MessageNode, context: ExecutionContext) -> StepResult:
        text = await context.render(node.config.text)
        buttons = None
        rows = self.button_rows(node)
        if rows:
            buttons = await context.resolve(rows)
        message_id = await context.send_message(text, buttons, node_id=node.id)
        return Advance(data={"message_id": message_id, "text": text})


class ReplyKeyboardHandler(MessageActionHandler):
    """
    Reply keyboards: a pressed button comes back as an ordinary text message,
    so the buttons carry no callback data.
    """
    node_types = ("message.keyboard.reply",)

    def button_rows(self, node: ReplyKeyboardNode) -> List[List[dict]]:
        rows = []
        for row in node.config.buttons:
            rows.append([
                {"text": b.text, "request_contact": True} if b.request_contact else {"text": b.text} for b in row
            ])
        return rows


class WebhookHandler(ActionHandler):
    node_types = ("integration.webhook",)

    async def execute(self, node: WebhookNode, context: ExecutionContext) -> StepResult:
        config = node.config
        if context.webhooks is None:
            raise ActionFailure("Webhooks are not available in this runtime", node_id=node.id)
        url = (await context.render(config.url)).strip()
        if not url.startswith(("http://", "https://")):
            raise ActionFailure(f"Webhook URL must be absolute http(s), got {url!r}", node_id=node.id)
        headers = await context.resolve(dict(config.headers))
        body = await context.resolve(config.body)

        context.log.info("webhook_call", node_id=node.id, method=config.method, url=url, retries=config.retries)
        try:
            result = await context.webhooks.call(config.method, url, headers=headers, body=body,
                                                 timeout=config.timeout_seconds, retries=config.retries)
        except WebhookError as e:
            raise ActionFailure(e.message, node_id=node.id) from e
        if config.assign_to:
            context.set_local(config.assign_to, result)
        return Advance(data={"method": config.method, "url": url})


class DatabaseQueryHandler(ActionHandler):
    node_types = ("action.database_query",)

    async def _parameters(self, node: DatabaseQueryNode, context: ExecutionContext) -> Dict[str, Any]:
        params = await context.resolve(dict(node.config.parameters))
        try:
            spec = context.queries.spec(node.config.query)
        except QueryNotFound:
            return params
        accepted = set(spec.required) | set(spec.optional)
        # Session-derived defaults; explicit parameters always win
        defaults = {
            "project_id": context.project_id,
            "channel_id": context.chat_id,
            "chat_id": context.chat_id,
            "user_id": context.execution.user_id,
        }
        for key, value in defaults.items():
            if key in accepted and params.get(key) in (None, "") and value is not None:
                params[key] = value
        return params

    async def execute(self, node: DatabaseQueryNode, context: ExecutionContext) -> StepResult:
        config = node.config
        params = await self._parameters(node, context)
        result = await context.run_query(config.query, params, node_id=node.id)

        if config.query in USER_LOOKUP_QUERIES and isinstance(result, dict) and result.get("user_id"):
            context.execution.user_id = result["user_id"]
        if config.assign_to:
            context.set_local(config.assign_to, result)
        for variable, path in config.result_mapping.items():
            context.set_local(variable, templates.lookup(result, path) if isinstance(result, dict) else None)
        return Advance(data={"query": config.query})


class SetVariableHandler(ActionHandler):
    node_types = ("action.set_variable",)

    async def execute(self, node: SetVariableNode, context: ExecutionContext) -> StepResult:
        value = await context.resolve(node.config.value)
        context.set_local(node.config.name, value)
        return Advance(data={"name": node.config.name})


class GetVariableHandler(ActionHandler):
    node_types = ("action.get_variable",)

    async def execute(self, node: GetVariableNode, context: ExecutionContext) -> StepResult:
        value = templates.lookup(await context.scope(), node.config.name, node.config.default)
        context.set_local(node.config.assign_to, value)
        return Advance(data={"name": node.config.name})


class GetUserBalanceHandler(ActionHandler):
    node_types = ("action.get_user_balance",)

    async def execute(self, node: GetUserBalanceNode, context: ExecutionContext) -> StepResult:
        user_id = await context.user_variables.resolve_user_id(context.project_id, context.chat_id, context.execution.user_id)
        if not user_id:
            raise ActionFailure("No registered user for this chat", node_id=node.id, query="get_user_balance")
        context.execution.user_id = user_id
        result = await context.run_query("get_user_balance", {"user_id": user_id}, node_id=node.id)
        context.set_local(node.config.assign_to, result["balance"])
        return Advance(data={"balance": result["balance"]})


class RequestContactHandler(WaitingMixin, ActionHandler):
    """Sends a share-contact button and waits for the contact card."""
    node_types = ("action.request_contact",)
    wait_type = WaitType.CONTACT
    accepted_kinds = (EventKind.CONTACT,)

    async def execute(self, node: RequestContactNode, context: ExecutionContext) -> StepResult:
        button = [[{"text": "Share contact", "request_contact": True}]]
        return await self.suspend(node, context, prompt=node.config.text, buttons=button)

    def store_input(self, node, context: ExecutionContext, event: InboundEvent) -> Any:
        return store_contact(context, event)


def store_contact(context: ExecutionContext, event: InboundEvent) -> str:
    contact = event.contact
    context.set_local("contact.phone", contact.phone_number)
    context.set_local("contact.first_name", contact.first_name or "")
    context.set_local("contact.last_name", contact.last_name or "")
    return contact.phone_number
