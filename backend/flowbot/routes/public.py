# /flowbot/routes/public.py

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from flowbot.config.settings import settings
from flowbot.runtime import Runtime
from flowbot.utils.clock import utcnow
from flowbot.utils.dependencies import get_runtime, verify_api_key

# Health checks and the Prometheus endpoint. /metrics is protected by the
# API key when one is configured.

router = APIRouter()


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": utcnow(), "environment": settings.environment}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check(runtime: Runtime = Depends(get_runtime)):
    """Checks the storage and lock backends the runtime was built with."""
    if runtime.database is not None and not await runtime.database.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unavailable")
    if runtime.redis is not None:
        try:
            await runtime.redis.ping()
        except Exception as e:
            raise HTTPException(status_code=503, detail=f"Service not ready: {e}")
    return {"status": "ready", "storage": settings.storage_backend, "locks": settings.lock_backend}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(_: None = Depends(verify_api_key)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
