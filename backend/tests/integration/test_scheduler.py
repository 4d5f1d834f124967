# backend/tests/integration/test_scheduler.py
import pytest
from unittest.mock import AsyncMock

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from flowbot.scheduler import build_scheduler


def test_scheduler_registers_both_sweeps(runtime):
    scheduler = build_scheduler(runtime)
    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {"wait_timeout_sweep_job", "execution_retention_job"}
    timeout_job = jobs["wait_timeout_sweep_job"]
    assert isinstance(timeout_job.trigger, IntervalTrigger)
    assert timeout_job.trigger.interval.total_seconds() == runtime.settings.wait_timeout_sweep_seconds
    retention_job = jobs["execution_retention_job"]
    assert isinstance(retention_job.trigger, CronTrigger)
    assert retention_job.args == (runtime.settings.execution_retention_days,)


@pytest.mark.asyncio
async def test_timeout_sweep_skips_executions_that_fail_to_resume(runtime, mocker):
    """A domain failure on one due execution does not stop the sweep."""
    from flowbot.models.execution import Execution
    from flowbot.workflows.exceptions import VersionNotFound

    due = [
        Execution(project_id="p1", chat_id=f"chat-{i}", flow_id="f", version_id="v", version=1)
        for i in range(2)
    ]
    mocker.patch.object(runtime.executions, "find_due_waits", AsyncMock(return_value=due))
    handle_timeout = mocker.patch.object(
        runtime.engine,
        "handle_timeout",
        AsyncMock(side_effect=[VersionNotFound("gone"), {"handled": True}]),
    )

    assert await runtime.monitor.sweep_wait_timeouts(batch_size=10) == 1
    assert handle_timeout.await_count == 2
    runtime.executions.find_due_waits.assert_awaited_once_with(runtime.monitor.clock(), limit=10)


@pytest.mark.asyncio
async def test_timeout_sweep_survives_unexpected_errors(runtime, mocker):
    from flowbot.models.execution import Execution

    due = [
        Execution(project_id="p1", chat_id=f"chat-{i}", flow_id="f", version_id="v", version=1)
        for i in range(3)
    ]
    mocker.patch.object(runtime.executions, "find_due_waits", AsyncMock(return_value=due))
    mocker.patch.object(
        runtime.engine,
        "handle_timeout",
        AsyncMock(side_effect=[{"handled": True}, RuntimeError("driver hiccup"), {"handled": True}]),
    )

    assert await runtime.monitor.sweep_wait_timeouts(batch_size=10) == 2
    assert runtime.engine.handle_timeout.await_count == 3
