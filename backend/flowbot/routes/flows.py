# /flowbot/routes/flows.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from flowbot.config.settings import settings
from flowbot.models.api import APIResponse
from flowbot.models.execution import ExecutionFilters, ExecutionStatus
from flowbot.runtime import Runtime
from flowbot.utils.dependencies import get_runtime, verify_api_key
from flowbot.workflows.validator import has_errors

router = APIRouter(
    prefix="/flows",
    tags=["Flows"],
    dependencies=[Depends(verify_api_key)]
)


@router.post("/{flow_id}/validate", response_model=APIResponse)
async def validate_flow(flow_id: str, runtime: Runtime = Depends(get_runtime)):
    problems = await runtime.publisher.validate(flow_id)
    return APIResponse(
        success=not has_errors(problems),
        message=f"{len(problems)} problem(s) found",
        data={"problems": problems},
        version=settings.api_version
    )


@router.post("/{flow_id}/publish", response_model=APIResponse)
async def publish_flow(flow_id: str, runtime: Runtime = Depends(get_runtime)):
    version = await runtime.publisher.publish(flow_id)
    return APIResponse(
        success=True,
        message=f"Published version {version.version}",
        data={"version_id": version.id, "version": version.version, "flow_id": version.flow_id},
        version=settings.api_version
    )


@router.get("/{flow_id}/executions", response_model=APIResponse)
async def list_executions(
    flow_id: str,
    status: Optional[ExecutionStatus] = None,
    user_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    runtime: Runtime = Depends(get_runtime),
):
    filters = ExecutionFilters(
        status=status, user_id=user_id, date_from=date_from, date_to=date_to,
        search=search, page=page, limit=limit,
    )
    result = await runtime.monitor.list_executions(flow_id, filters)
    return APIResponse(
        success=True,
        message="Executions retrieved",
        data=result.model_dump(mode="json"),
        version=settings.api_version
    )
