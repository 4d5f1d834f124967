# /flowbot/main.py

import os
import time
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from flowbot.config.settings import settings
from flowbot.routes import events, executions, flows, public
from flowbot.utils.lifecycle import lifespan
from flowbot.utils.metrics import response_time_histogram
from flowbot.workflows.exceptions import (
    AuthoringError,
    ExecutionNotFound,
    FlowNotFound,
    InvalidRestart,
    VersionNotFound,
    WorkflowError,
)

app = FastAPI(
    title="Flowbot Workflow Runtime",
    version="1.0.0",
    description="Executes published chat bot flows, one step per inbound event",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=None,
)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response


# --- Domain errors ---
_ERROR_STATUS = {
    FlowNotFound: 404,
    VersionNotFound: 404,
    ExecutionNotFound: 404,
    InvalidRestart: 409,
    AuthoringError: 422,
}


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    status_code = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    body = {"detail": exc.message, "error_type": exc.code}
    if isinstance(exc, AuthoringError):
        body["problems"] = exc.problems
    return JSONResponse(body, status_code=status_code)


# --- API Routers ---
app.include_router(public.router)
app.include_router(events.router, prefix=f"/api/{settings.api_version}")
app.include_router(flows.router, prefix=f"/api/{settings.api_version}")
app.include_router(executions.router, prefix=f"/api/{settings.api_version}")

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "flowbot.main:app",
        host=host,
        port=port,
        reload=settings.environment == "development",
    )
