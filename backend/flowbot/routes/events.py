# /flowbot/routes/events.py
from fastapi import APIRouter, Depends, HTTPException
import structlog

from flowbot.config.settings import settings
from flowbot.models.api import APIResponse, EventRequest
from flowbot.models.execution import EventKind
from flowbot.runtime import Runtime
from flowbot.utils.dependencies import get_runtime, verify_api_key
from flowbot.workflows.sessions import SessionBusy

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/events",
    tags=["Events"],
    dependencies=[Depends(verify_api_key)]
)


@router.post("", response_model=APIResponse)
async def receive_event(body: EventRequest, runtime: Runtime = Depends(get_runtime)):
    """Delivers one inbound chat event to the interpreter."""
    if body.kind in (EventKind.TIMEOUT, EventKind.RESTART):
        raise HTTPException(status_code=422, detail=f"'{body.kind.value}' events cannot be delivered")
    try:
        result = await runtime.engine.handle_event(body.project_id, body.chat_id, body.to_event())
    except SessionBusy:
        log.warning("session_busy", project_id=body.project_id, chat_id=body.chat_id)
        raise HTTPException(status_code=503, detail="Chat session is busy, retry shortly")
    return APIResponse(
        success=True,
        message="Event handled" if result["handled"] else "Event ignored",
        data=dict(result),
        version=settings.api_version
    )
