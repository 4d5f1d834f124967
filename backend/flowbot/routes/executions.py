# /flowbot/routes/executions.py
from typing import Optional

from fastapi import APIRouter, Depends

from flowbot.config.settings import settings
from flowbot.models.api import APIResponse
from flowbot.models.execution import RestartOptions
from flowbot.runtime import Runtime
from flowbot.utils.dependencies import get_runtime, verify_api_key

router = APIRouter(
    prefix="/executions",
    tags=["Executions"],
    dependencies=[Depends(verify_api_key)]
)


@router.get("/{execution_id}", response_model=APIResponse)
async def get_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)):
    detail = await runtime.monitor.get_execution(execution_id)
    return APIResponse(
        success=True,
        message="Execution retrieved",
        data=detail.model_dump(mode="json"),
        version=settings.api_version
    )


@router.post("/{execution_id}/restart", response_model=APIResponse)
async def restart_execution(execution_id: str, options: Optional[RestartOptions] = None,
                            runtime: Runtime = Depends(get_runtime)):
    result = await runtime.monitor.restart_execution(execution_id, options or RestartOptions())
    return APIResponse(
        success=True,
        message=f"Execution restarted ({result['status']})",
        data=dict(result),
        version=settings.api_version
    )


@router.post("/{execution_id}/cancel", response_model=APIResponse)
async def cancel_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)):
    execution = await runtime.monitor.cancel_execution(execution_id)
    return APIResponse(
        success=True,
        message=f"Execution is {execution.status.value}",
        data={"execution_id": execution.id, "status": execution.status.value},
        version=settings.api_version
    )
