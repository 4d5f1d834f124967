# /flowbot/models/api.py

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from flowbot.models.execution import InboundEvent
from flowbot.utils.clock import utcnow

# Request/response envelopes of the HTTP surface.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
    version: str


class EventRequest(InboundEvent):
    """An inbound event addressed to one chat session of one project."""
    project_id: str = Field(min_length=1)
    chat_id: str = Field(min_length=1)

    def to_event(self) -> InboundEvent:
        return InboundEvent.model_validate(self.model_dump(exclude={"project_id", "chat_id"}))
