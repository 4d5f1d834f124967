# /flowbot/workflows/results.py

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union

from flowbot.models.execution import WaitType
from flowbot.workflows.exceptions import WorkflowError

# What a handler tells the interpreter to do after one node.


@dataclass(frozen=True)
class Advance:
    """Follow the outgoing connection labelled ``handle`` (None = default edge)."""
    handle: Optional[str] = None
    target: Optional[str] = None  # explicit node id, used by jumps
    error: Optional[str] = None  # set when recovering through an error edge
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Suspend:
    wait_type: WaitType
    payload: Dict[str, Any] = field(default_factory=dict)
    deadline: Optional[datetime] = None


@dataclass(frozen=True)
class Terminate:
    success: bool = True
    message: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    error: WorkflowError


StepResult = Union[Advance, Suspend, Terminate, Failed]
