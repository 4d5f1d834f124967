# /flowbot/models/execution.py

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator

from flowbot.models.flow import new_id
from flowbot.utils.clock import utcnow


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({ExecutionStatus.RUNNING, ExecutionStatus.WAITING})


class WaitType(str, Enum):
    CONTACT = "contact"
    TEXT = "text"
    CALLBACK = "callback"
    DELAY = "delay"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


class EventKind(str, Enum):
    COMMAND = "command"
    TEXT = "text"
    CALLBACK = "callback"
    CONTACT = "contact"
    # Raised by the runtime itself, never by a chat platform
    TIMEOUT = "timeout"
    RESTART = "restart"


class Contact(BaseModel):
    phone_number: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_id: Optional[str] = None


class InboundEvent(BaseModel):
    """One normalized message, button press or contact card from a chat platform."""
    kind: EventKind
    text: Optional[str] = Field(default=None, description="Raw message text (commands included)")
    command: Optional[str] = Field(default=None, description="Bot command such as /start, without arguments")
    command_args: Optional[str] = None
    callback_data: Optional[str] = None
    contact: Optional[Contact] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def split_command(self):
        if self.kind == EventKind.COMMAND and not self.command and self.text:
            head, _, rest = self.text.strip().partition(" ")
            self.command = head
            self.command_args = rest.strip() or None
        if self.command:
            # /start@my_bot addresses a specific bot in group chats
            self.command = self.command.split("@", 1)[0]
        if self.kind == EventKind.COMMAND and not self.command:
            raise ValueError("Command events need a command or text")
        if self.kind == EventKind.CALLBACK and self.callback_data is None:
            raise ValueError("Callback events need callback_data")
        if self.kind == EventKind.CONTACT and self.contact is None:
            raise ValueError("Contact events need a contact")
        return self

    @classmethod
    def command_event(cls, command: str, **kwargs) -> "InboundEvent":
        return cls(kind=EventKind.COMMAND, text=command, **kwargs)

    @classmethod
    def text_event(cls, text: str, **kwargs) -> "InboundEvent":
        return cls(kind=EventKind.TEXT, text=text, **kwargs)

    @classmethod
    def callback_event(cls, data: str, **kwargs) -> "InboundEvent":
        return cls(kind=EventKind.CALLBACK, callback_data=data, **kwargs)

    @classmethod
    def contact_event(cls, phone_number: str, **kwargs) -> "InboundEvent":
        contact = Contact(phone_number=phone_number, first_name=kwargs.get("first_name"), last_name=kwargs.get("last_name"))
        return cls(kind=EventKind.CONTACT, contact=contact, **kwargs)


class Execution(BaseModel):
    """
    The live state of one chat session running one flow version.

    ``current_node_id`` is the last node whose step was logged (or the
    matching trigger before the first step). ``next_node_id`` is only set
    while ``running`` and names the node the interpreter will execute next.
    """
    id: str = Field(default_factory=new_id)
    project_id: str
    chat_id: str
    flow_id: str
    version_id: str
    version: int
    user_id: Optional[str] = Field(default=None, description="Linked loyalty user, once known")
    status: ExecutionStatus = ExecutionStatus.RUNNING
    trigger_node_id: Optional[str] = None
    current_node_id: Optional[str] = None
    next_node_id: Optional[str] = None
    wait_type: Optional[WaitType] = None
    wait_payload: Dict[str, Any] = Field(default_factory=dict)
    wait_deadline: Optional[datetime] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_count: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def clear_wait(self) -> None:
        self.wait_type = None
        self.wait_payload = {}
        self.wait_deadline = None


class StepLog(BaseModel):
    """Append-only record of one interpreter step."""
    id: str = Field(default_factory=new_id)
    execution_id: str
    step: int = Field(ge=1, description="1-based, strictly increasing within an execution")
    node_id: str
    node_type: str
    node_label: Optional[str] = None
    status: StepStatus
    outcome: str = Field(description="advance, suspend, terminate or error")
    handle: Optional[str] = Field(default=None, description="Outgoing handle that was followed")
    message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)


class ExecutionFilters(BaseModel):
    status: Optional[ExecutionStatus] = None
    user_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = Field(default=None, description="Substring of the execution id, chat id or user id")
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1)

    @field_validator("limit")
    @classmethod
    def cap_limit(cls, v: int) -> int:
        return min(v, 100)


class ExecutionPage(BaseModel):
    items: List[Execution]
    total: int
    page: int
    limit: int
    total_pages: int


class ExecutionDetail(BaseModel):
    execution: Execution
    steps: List[StepLog]


class RestartOptions(BaseModel):
    from_node_id: Optional[str] = Field(default=None, description="Node to run first; defaults to the entry trigger")
    reset_variables: bool = False
    skip_completed: bool = Field(default=False, description="Continue from the node where the execution stopped instead of the entry")
