# /flowbot/services/monitoring.py

"""
Operational view over executions: listing and detail for the dashboard,
operator restarts/cancels, and the two background sweeps (retention and
wait timeouts) driven by the scheduler.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable

from flowbot.models.execution import (
    Execution,
    ExecutionDetail,
    ExecutionFilters,
    ExecutionPage,
    RestartOptions,
)
from flowbot.services.repositories import ExecutionRepository
from flowbot.utils.clock import utcnow
from flowbot.workflows.engine import EngineResult, WorkflowEngine
from flowbot.workflows.exceptions import ExecutionNotFound, WorkflowError

logger = logging.getLogger(__name__)


class ExecutionMonitor:
    def __init__(self, executions: ExecutionRepository, engine: WorkflowEngine,
                 clock: Callable[[], datetime] = utcnow):
        self.executions = executions
        self.engine = engine
        self.clock = clock

    async def list_executions(self, flow_id: str, filters: ExecutionFilters) -> ExecutionPage:
        items, total = await self.executions.list_for_flow(flow_id, filters)
        return ExecutionPage(
            items=items,
            total=total,
            page=filters.page,
            limit=filters.limit,
            total_pages=math.ceil(total / filters.limit) if total else 0,
        )

    async def get_execution(self, execution_id: str) -> ExecutionDetail:
        execution = await self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution '{execution_id}' not found")
        steps = await self.executions.list_steps(execution_id)
        return ExecutionDetail(execution=execution, steps=sorted(steps, key=lambda s: s.step))

    async def restart_execution(self, execution_id: str, options: RestartOptions) -> EngineResult:
        logger.info(f"Operator restart of execution {execution_id} ({options.model_dump(exclude_defaults=True)})")
        return await self.engine.restart(execution_id, options)

    async def cancel_execution(self, execution_id: str) -> Execution:
        logger.info(f"Operator cancel of execution {execution_id}")
        return await self.engine.cancel(execution_id)

    async def sweep_expired(self, retention_days: int) -> int:
        """Deletes executions (with their step logs) started more than ``retention_days`` ago."""
        cutoff = self.clock() - timedelta(days=retention_days)
        deleted = await self.executions.delete_started_before(cutoff)
        logger.info(f"Retention sweep removed {deleted} execution(s) started before {cutoff.isoformat()}")
        return deleted

    async def sweep_wait_timeouts(self, batch_size: int = 100) -> int:
        """Wakes every waiting execution whose deadline has passed. Returns how many were handled."""
        due = await self.executions.find_due_waits(self.clock(), limit=batch_size)
        handled = 0
        for execution in due:
            try:
                result = await self.engine.handle_timeout(execution.id)
            except WorkflowError as e:
                logger.error(f"Timeout handling failed for execution {execution.id}: {e.message}")
                continue
            except Exception:
                logger.error(f"Unexpected error while handling timeout of execution {execution.id}", exc_info=True)
                continue
            if result["handled"]:
                handled += 1
        if due:
            logger.info(f"Wait timeout sweep: {handled}/{len(due)} execution(s) resumed")
        return handled
