# /flowbot/models/nodes.py

"""
Typed node schema for bot flows.

Every node is decoded into exactly one variant, discriminated by its dotted
``type`` string. Both the flat shape (``{"id", "type", "label", "config"}``)
and the editor shape (``{"id", "type", "data": {"label", "config": {<type>: {...}}}}``)
are accepted. Node types that are not part of the built-in catalogue decode
into ``UnsupportedNode`` so the validator can report them and the interpreter
can fail with ``UnknownNodeType`` instead of guessing.
"""

import re
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator, model_validator
from pydantic.alias_generators import to_camel

from flowbot.workflows.expressions import ExpressionError, compile_expression


class Capability(str, Enum):
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    FLOW_CONTROL = "flow_control"


# Outgoing handle labels with engine-level meaning
TRUE_HANDLE = "true"
FALSE_HANDLE = "false"
ERROR_HANDLE = "error"
TIMEOUT_HANDLE = "timeout"
FALLBACK_HANDLE = "fallback"
DEFAULT_HANDLE = "default"
LOOP_HANDLE = "loop"
DONE_HANDLE = "done"


class NodeConfig(BaseModel):
    """Base for per-type configs. Accepts camelCase keys written by the flow editor."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)


# ========== Trigger configs ==========

class CommandTriggerConfig(NodeConfig):
    command: str

    @field_validator("command")
    @classmethod
    def command_must_start_with_slash(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith("/"):
            raise ValueError('Command must start with "/"')
        return v


class MessageTriggerConfig(NodeConfig):
    pattern: Optional[str] = None
    case_sensitive: bool = False

    @field_validator("pattern")
    @classmethod
    def pattern_must_compile(cls, v: Optional[str]) -> Optional[str]:
        if v:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid pattern: {e}")
        return v or None


class KeywordTriggerConfig(NodeConfig):
    keywords: List[str] = Field(min_length=1)
    match: Literal["exact", "contains"] = "contains"
    case_sensitive: bool = False


class CallbackTriggerConfig(NodeConfig):
    callback_data: str
    prefix: bool = False


class EmptyConfig(NodeConfig):
    pass


# ========== Condition configs ==========

SIMPLE_OPERATORS = {
    "equals", "not_equals", "contains", "not_contains", "greater", "less",
    "greater_equal", "less_equal", "is_empty", "is_not_empty",
    "==", "!=", "===", "!==", ">", "<", ">=", "<=",
}


class ConditionConfig(NodeConfig):
    expression: Optional[str] = None
    variable: Optional[str] = None
    operator: Optional[str] = None
    value: Any = None
    case_sensitive: bool = False

    @model_validator(mode="after")
    def check_form(self):
        if self.expression is not None:
            if not self.expression.strip():
                raise ValueError("Expression cannot be empty")
            try:
                compile_expression(self.expression)
            except ExpressionError as e:
                raise ValueError(f"Invalid expression syntax: {e}")
            return self
        if not self.variable:
            raise ValueError("Either expression or variable/operator is required")
        if self.operator not in SIMPLE_OPERATORS:
            raise ValueError(f"Operator must be one of: {', '.join(sorted(SIMPLE_OPERATORS))}")
        if self.operator not in ("is_empty", "is_not_empty") and self.value is None:
            raise ValueError("Value is required for this operator")
        return self


class SwitchCase(NodeConfig):
    value: Any
    label: Optional[str] = None

    @property
    def handle(self) -> str:
        return self.label or str(self.value)


class SwitchConfig(NodeConfig):
    variable: str
    cases: List[SwitchCase] = Field(min_length=1)
    has_default: bool = True
    case_sensitive: bool = False


# ========== Action configs ==========

class Button(NodeConfig):
    text: str
    callback_data: Optional[str] = None
    url: Optional[str] = None
    request_contact: bool = False


class MessageConfig(NodeConfig):
    text: str
    buttons: List[List[Button]] = Field(default_factory=list)
    parse_mode: Optional[str] = None


class InlineKeyboardConfig(MessageConfig):
    buttons: List[List[Button]] = Field(min_length=1)

    @model_validator(mode="after")
    def buttons_must_do_something(self):
        for row in self.buttons:
            for button in row:
                if not (button.callback_data or button.url):
                    raise ValueError(f"Inline button '{button.text}' needs callback_data or url")
        return self


class ReplyButton(NodeConfig):
    text: str
    request_contact: bool = False


class ReplyKeyboardConfig(NodeConfig):
    text: str
    buttons: List[List[ReplyButton]] = Field(min_length=1, validation_alias=AliasChoices("buttons", "keyboard"))
    one_time_keyboard: bool = False
    resize_keyboard: bool = True
    input_field_placeholder: Optional[str] = None

    @field_validator("buttons", mode="before")
    @classmethod
    def plain_labels_are_buttons(cls, v):
        if not isinstance(v, list):
            return v
        return [
            [{"text": b} if isinstance(b, str) else b for b in row] if isinstance(row, list) else row
            for row in v
        ]


class WebhookConfig(NodeConfig):
    url: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    timeout_seconds: float = Field(default=15.0, gt=0, le=60)
    retries: int = Field(default=0, ge=0, le=5)
    assign_to: Optional[str] = None

    @field_validator("url")
    @classmethod
    def url_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Webhook URL is required")
        return v

    @field_validator("method", mode="before")
    @classmethod
    def method_upper(cls, v):
        return v.upper() if isinstance(v, str) else v


class DatabaseQueryConfig(NodeConfig):
    query: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    assign_to: Optional[str] = None
    result_mapping: Dict[str, str] = Field(default_factory=dict)


# The editor writes variableName/variableValue, hand-written flows use name/value
class SetVariableConfig(NodeConfig):
    name: str = Field(validation_alias=AliasChoices("name", "variableName"))
    value: Any = Field(default=None, validation_alias=AliasChoices("value", "variableValue"))


class GetVariableConfig(NodeConfig):
    name: str = Field(validation_alias=AliasChoices("name", "variableName"))
    assign_to: str = Field(validation_alias=AliasChoices("assign_to", "assignTo"))
    default: Any = Field(default=None, validation_alias=AliasChoices("default", "defaultValue"))


class BalanceConfig(NodeConfig):
    assign_to: str = "balance"


# ========== Flow control configs ==========

class WaitConfig(NodeConfig):
    prompt: Optional[str] = None
    reprompt: Optional[str] = None
    variable: Optional[str] = None
    timeout_seconds: Optional[int] = Field(default=None, gt=0)
    fallback_on_mismatch: bool = False


class WaitCallbackConfig(WaitConfig):
    allowed: List[str] = Field(default_factory=list)


class RequestContactConfig(WaitConfig):
    text: str = "Please share your phone number"


class DelayConfig(NodeConfig):
    seconds: Optional[int] = Field(default=None, ge=0)
    variable_delay: Optional[str] = None

    @model_validator(mode="after")
    def one_source(self):
        if self.seconds is None and not self.variable_delay:
            raise ValueError("Either seconds or variable_delay must be specified")
        return self


class JumpConfig(NodeConfig):
    target_node_id: str


class SubWorkflowConfig(NodeConfig):
    workflow_id: str
    input_mapping: Dict[str, str] = Field(default_factory=dict)


class EndConfig(NodeConfig):
    success: bool = True
    message: Optional[str] = None


class LoopConfig(NodeConfig):
    mode: Literal["count", "foreach", "while"] = Field(default="count", validation_alias=AliasChoices("mode", "type"))
    count: Optional[int] = Field(default=None, ge=0)
    array: Optional[str] = None
    condition: Optional[str] = None
    item_variable: str = "loop_item"
    index_variable: str = "loop_index"
    max_iterations: int = Field(default=100, gt=0)

    @model_validator(mode="after")
    def check_mode(self):
        if self.mode == "count":
            if self.count is None:
                raise ValueError("count is required for a count loop")
            if self.count > self.max_iterations:
                raise ValueError(f"count cannot exceed max_iterations ({self.max_iterations})")
        elif self.mode == "foreach":
            if not self.array or not self.array.strip():
                raise ValueError("array is required for a foreach loop")
        else:
            if not self.condition or not self.condition.strip():
                raise ValueError("condition is required for a while loop")
            try:
                compile_expression(self.condition)
            except ExpressionError as e:
                raise ValueError(f"Invalid loop condition: {e}")
        return self


# ========== Node variants ==========

class BaseNode(BaseModel):
    id: str
    label: str = ""
    description: Optional[str] = None
    position: Optional[Dict[str, float]] = None

    model_config = ConfigDict(extra="ignore", frozen=True)

    capability: ClassVar[Capability]

    @model_validator(mode="before")
    @classmethod
    def unwrap_editor_shape(cls, raw):
        if not isinstance(raw, dict) or "data" not in raw:
            return raw
        data = raw.get("data") or {}
        flat = {k: v for k, v in raw.items() if k != "data"}
        flat.setdefault("label", data.get("label", ""))
        if data.get("description"):
            flat.setdefault("description", data["description"])
        configs = data.get("config") or {}
        node_type = flat.get("type")
        if "config" not in flat and isinstance(node_type, str):
            flat["config"] = configs.get(node_type) or configs.get(canonical_type(node_type)) or {}
        return flat

    def required_handles(self) -> List[str]:
        """Outgoing handle labels that must each have a connection."""
        return []

    def allowed_handles(self) -> Optional[FrozenSet[str]]:
        """Labelled handles this node may emit; None means any label is tolerated."""
        return frozenset()

    @property
    def display_name(self) -> str:
        return self.label or self.id


class CommandTriggerNode(BaseNode):
    type: Literal["trigger.command"]
    config: CommandTriggerConfig
    capability: ClassVar[Capability] = Capability.TRIGGER


class MessageTriggerNode(BaseNode):
    type: Literal["trigger.message"]
    config: MessageTriggerConfig = Field(default_factory=MessageTriggerConfig)
    capability: ClassVar[Capability] = Capability.TRIGGER


class KeywordTriggerNode(BaseNode):
    type: Literal["trigger.keyword"]
    config: KeywordTriggerConfig
    capability: ClassVar[Capability] = Capability.TRIGGER


class CallbackTriggerNode(BaseNode):
    type: Literal["trigger.callback"]
    config: CallbackTriggerConfig
    capability: ClassVar[Capability] = Capability.TRIGGER


class ContactTriggerNode(BaseNode):
    type: Literal["trigger.contact"]
    config: EmptyConfig = Field(default_factory=EmptyConfig)
    capability: ClassVar[Capability] = Capability.TRIGGER


class EntryTriggerNode(BaseNode):
    type: Literal["trigger.entry"]
    config: EmptyConfig = Field(default_factory=EmptyConfig)
    capability: ClassVar[Capability] = Capability.TRIGGER


class ConditionNode(BaseNode):
    type: Literal["flow.condition", "condition"]
    config: ConditionConfig
    capability: ClassVar[Capability] = Capability.CONDITION

    def required_handles(self) -> List[str]:
        return [TRUE_HANDLE, FALSE_HANDLE]

    def allowed_handles(self) -> Optional[FrozenSet[str]]:
        return frozenset({TRUE_HANDLE, FALSE_HANDLE})


class SwitchNode(BaseNode):
    type: Literal["flow.switch"]
    config: SwitchConfig
    capability: ClassVar[Capability] = Capability.CONDITION

    def required_handles(self) -> List[str]:
        return [case.handle for case in self.config.cases]

    def allowed_handles(self) -> Optional[FrozenSet[str]]:
        handles = {case.handle for case in self.config.cases}
        if self.config.has_default:
            handles.add(DEFAULT_HANDLE)
        return frozenset(handles)


class ActionNode(BaseNode):
    capability: ClassVar[Capability] = Capability.ACTION

    def allowed_handles(self) -> Optional[FrozenSet[str]]:
        return frozenset({ERROR_HANDLE})


class MessageNode(ActionNode):
    type: Literal["message"]
    config: MessageConfig


class InlineKeyboardNode(ActionNode):
    type: Literal["message.keyboard.inline"]
    config: InlineKeyboardConfig


class ReplyKeyboardNode(ActionNode):
    type: Literal["message.keyboard.reply"]
    config: ReplyKeyboardConfig


class WebhookNode(ActionNode):
    type: Literal["integration.webhook"]
    config: WebhookConfig


class DatabaseQueryNode(ActionNode):
    type: Literal["action.database_query"]
    config: DatabaseQueryConfig


class SetVariableNode(ActionNode):
    type: Literal["action.set_variable"]
    config: SetVariableConfig


class GetVariableNode(ActionNode):
    type: Literal["action.get_variable"]
    config: GetVariableConfig


class GetUserBalanceNode(ActionNode):
    type: Literal["action.get_user_balance"]
    config: BalanceConfig = Field(default_factory=BalanceConfig)


class WaitingNode(BaseNode):
    """Nodes that suspend the execution until a matching inbound event arrives."""

    def required_handles(self) -> List[str]:
        handles = []
        if self.config.timeout_seconds:
            handles.append(TIMEOUT_HANDLE)
        if self.config.fallback_on_mismatch:
            handles.append(FALLBACK_HANDLE)
        return handles

    def allowed_handles(self) -> Optional[FrozenSet[str]]:
        return frozenset({TIMEOUT_HANDLE, FALLBACK_HANDLE, ERROR_HANDLE})


class RequestContactNode(WaitingNode):
    type: Literal["action.request_contact"]
    config: RequestContactConfig = Field(default_factory=RequestContactConfig)
    capability: ClassVar[Capability] = Capability.ACTION


class WaitContactNode(WaitingNode):
    type: Literal["flow.wait_contact"]
    config: WaitConfig = Field(default_factory=WaitConfig)
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL


class WaitInputNode(WaitingNode):
    type: Literal["flow.wait_input"]
    config: WaitConfig = Field(default_factory=WaitConfig)
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL


class WaitCallbackNode(WaitingNode):
    type: Literal["flow.wait_callback"]
    config: WaitCallbackConfig = Field(default_factory=WaitCallbackConfig)
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL


class DelayNode(BaseNode):
    type: Literal["flow.delay"]
    config: DelayConfig
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL


class JumpNode(BaseNode):
    type: Literal["flow.jump"]
    config: JumpConfig
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL


class SubWorkflowNode(BaseNode):
    type: Literal["flow.sub_workflow"]
    config: SubWorkflowConfig
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL


class EndNode(BaseNode):
    type: Literal["flow.end"]
    config: EndConfig = Field(default_factory=EndConfig)
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL


class LoopNode(BaseNode):
    """Followed once per iteration along ``loop``; the body routes back here until ``done``."""
    type: Literal["flow.loop"]
    config: LoopConfig
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL

    def required_handles(self) -> List[str]:
        return [LOOP_HANDLE, DONE_HANDLE]

    def allowed_handles(self) -> Optional[FrozenSet[str]]:
        return frozenset({LOOP_HANDLE, DONE_HANDLE, ERROR_HANDLE})


class UnsupportedNode(BaseNode):
    """A node whose type is not in the built-in catalogue (e.g. removed since publish)."""
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    capability: ClassVar[Capability] = Capability.FLOW_CONTROL

    def allowed_handles(self) -> Optional[FrozenSet[str]]:
        return None


NODE_CLASSES = (
    CommandTriggerNode, MessageTriggerNode, KeywordTriggerNode, CallbackTriggerNode,
    ContactTriggerNode, EntryTriggerNode,
    ConditionNode, SwitchNode,
    MessageNode, InlineKeyboardNode, ReplyKeyboardNode, WebhookNode,
    DatabaseQueryNode, SetVariableNode, GetVariableNode,
    GetUserBalanceNode, RequestContactNode,
    WaitContactNode, WaitInputNode, WaitCallbackNode, DelayNode, JumpNode,
    SubWorkflowNode, EndNode, LoopNode,
)

# Canonical tag per class; "condition" is the legacy spelling of "flow.condition"
NODE_TYPES: Dict[str, type] = {
    cls.model_fields["type"].annotation.__args__[0]: cls for cls in NODE_CLASSES
}
_TYPE_ALIASES = {"condition": "flow.condition"}
UNSUPPORTED_TAG = "unsupported"


def _node_tag(raw: Any) -> str:
    node_type = raw.get("type") if isinstance(raw, dict) else getattr(raw, "type", None)
    if not isinstance(node_type, str):
        return UNSUPPORTED_TAG
    node_type = _TYPE_ALIASES.get(node_type, node_type)
    return node_type if node_type in NODE_TYPES else UNSUPPORTED_TAG


Node = Annotated[
    Union[
        Annotated[CommandTriggerNode, Tag("trigger.command")],
        Annotated[MessageTriggerNode, Tag("trigger.message")],
        Annotated[KeywordTriggerNode, Tag("trigger.keyword")],
        Annotated[CallbackTriggerNode, Tag("trigger.callback")],
        Annotated[ContactTriggerNode, Tag("trigger.contact")],
        Annotated[EntryTriggerNode, Tag("trigger.entry")],
        Annotated[ConditionNode, Tag("flow.condition")],
        Annotated[SwitchNode, Tag("flow.switch")],
        Annotated[MessageNode, Tag("message")],
        Annotated[InlineKeyboardNode, Tag("message.keyboard.inline")],
        Annotated[ReplyKeyboardNode, Tag("message.keyboard.reply")],
        Annotated[WebhookNode, Tag("integration.webhook")],
        Annotated[DatabaseQueryNode, Tag("action.database_query")],
        Annotated[SetVariableNode, Tag("action.set_variable")],
        Annotated[GetVariableNode, Tag("action.get_variable")],
        Annotated[GetUserBalanceNode, Tag("action.get_user_balance")],
        Annotated[RequestContactNode, Tag("action.request_contact")],
        Annotated[WaitContactNode, Tag("flow.wait_contact")],
        Annotated[WaitInputNode, Tag("flow.wait_input")],
        Annotated[WaitCallbackNode, Tag("flow.wait_callback")],
        Annotated[DelayNode, Tag("flow.delay")],
        Annotated[JumpNode, Tag("flow.jump")],
        Annotated[SubWorkflowNode, Tag("flow.sub_workflow")],
        Annotated[EndNode, Tag("flow.end")],
        Annotated[LoopNode, Tag("flow.loop")],
        Annotated[UnsupportedNode, Tag(UNSUPPORTED_TAG)],
    ],
    Discriminator(_node_tag),
]


def canonical_type(node_type: str) -> str:
    return _TYPE_ALIASES.get(node_type, node_type)
