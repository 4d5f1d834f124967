# /flowbot/utils/dependencies.py

import secrets
import structlog
from fastapi import HTTPException, Request

from flowbot.config.settings import settings
from flowbot.runtime import Runtime

log = structlog.get_logger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def verify_api_key(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            log.warning("api_key_rejected", path=request.url.path)
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
