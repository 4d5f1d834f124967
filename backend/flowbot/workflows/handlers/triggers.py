# /flowbot/workflows/handlers/triggers.py

import re

from flowbot.models.execution import EventKind, InboundEvent
from flowbot.models.nodes import (
    CallbackTriggerNode,
    CommandTriggerNode,
    ContactTriggerNode,
    EntryTriggerNode,
    KeywordTriggerNode,
    MessageTriggerNode,
)
from flowbot.workflows.handlers.base import TriggerHandler

USER_EVENT_KINDS = (EventKind.COMMAND, EventKind.TEXT, EventKind.CALLBACK, EventKind.CONTACT)


class CommandTriggerHandler(TriggerHandler):
    node_types = ("trigger.command",)

    def matches(self, node: CommandTriggerNode, event: InboundEvent) -> bool:
        return event.kind == EventKind.COMMAND and (event.command or "").lower() == node.config.command.lower()


class MessageTriggerHandler(TriggerHandler):
    node_types = ("trigger.message",)

    def matches(self, node: MessageTriggerNode, event: InboundEvent) -> bool:
        if event.kind != EventKind.TEXT or not event.text:
            return False
        if not node.config.pattern:
            return True
        flags = 0 if node.config.case_sensitive else re.IGNORECASE
        return re.search(node.config.pattern, event.text, flags) is not None


class KeywordTriggerHandler(TriggerHandler):
    node_types = ("trigger.keyword",)

    def matches(self, node: KeywordTriggerNode, event: InboundEvent) -> bool:
        if event.kind != EventKind.TEXT or not event.text:
            return False
        text = event.text.strip()
        keywords = node.config.keywords
        if not node.config.case_sensitive:
            text = text.lower()
            keywords = [k.lower() for k in keywords]
        if node.config.match == "exact":
            return text in keywords
        return any(keyword in text for keyword in keywords)


class CallbackTriggerHandler(TriggerHandler):
    node_types = ("trigger.callback",)

    def matches(self, node: CallbackTriggerNode, event: InboundEvent) -> bool:
        if event.kind != EventKind.CALLBACK or event.callback_data is None:
            return False
        if node.config.prefix:
            return event.callback_data.startswith(node.config.callback_data)
        return event.callback_data == node.config.callback_data


class ContactTriggerHandler(TriggerHandler):
    node_types = ("trigger.contact",)

    def matches(self, node: ContactTriggerNode, event: InboundEvent) -> bool:
        return event.kind == EventKind.CONTACT


class EntryTriggerHandler(TriggerHandler):
    """Catch-all: starts the flow on any user event no more specific trigger claimed."""
    node_types = ("trigger.entry",)

    def matches(self, node: EntryTriggerNode, event: InboundEvent) -> bool:
        return event.kind in USER_EVENT_KINDS
