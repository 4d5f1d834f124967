
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv

# Load test environment variables FIRST, before any flowbot imports read settings.
load_dotenv(dotenv_path="backend/.env.test")

from flowbot.config.settings import Settings  # noqa: E402
from flowbot.models.flow import Flow  # noqa: E402
from flowbot.runtime import build_runtime  # noqa: E402
from flowbot.services.messenger import LogMessenger  # noqa: E402

PROJECT_ID = "proj-1"
CHAT_ID = "chat-42"


class FakeClock:
    """A settable UTC clock shared by the engine, the monitor and the query executor."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def _make_flow(nodes, connections, project_id=PROJECT_ID, entry_node_id=None, **extra) -> Flow:
    """Builds a Flow from plain dicts, the way the editor would send it."""
    if entry_node_id is None:
        triggers = [n["id"] for n in nodes if n["type"].startswith("trigger.")]
        entry_node_id = triggers[0] if triggers else None
    return Flow.model_validate({
        "project_id": project_id,
        "name": extra.pop("name", "Test flow"),
        "entry_node_id": entry_node_id,
        "nodes": nodes,
        "connections": connections,
        **extra,
    })


def _edge(source, target, handle=None):
    connection = {"source": source, "target": target}
    if handle:
        connection["sourceHandle"] = handle
    return connection


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        environment="test",
        storage_backend="memory",
        lock_backend="local",
        max_steps_per_event=50,
        max_node_visits_per_event=10,
        run_scheduler_in_process=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def messenger():
    return LogMessenger()


@pytest.fixture
def runtime(test_settings, messenger, clock):
    """An in-memory runtime with a recording messenger and a controllable clock."""
    rt = build_runtime(test_settings, messenger=messenger)
    rt.engine.clock = clock
    rt.monitor.clock = clock
    rt.queries.clock = clock
    return rt


@pytest.fixture
def publish(runtime):
    """Saves and publishes a flow, returning the active version."""
    async def _publish(flow: Flow):
        await runtime.flows.save_flow(flow)
        return await runtime.publisher.publish(flow.id)
    return _publish


@pytest.fixture(scope="function")
def test_client(mocker, runtime):
    """
    Provides a TestClient for API integration tests, wired to the in-memory
    runtime fixture instead of the one the lifespan would build.
    """
    from flowbot.config.settings import settings
    from flowbot.main import app

    mocker.patch("flowbot.utils.lifecycle.build_runtime", return_value=runtime)
    mocker.patch.object(settings, "run_scheduler_in_process", False)
    mocker.patch.object(settings, "api_key", None)

    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_flow():
    return _make_flow


@pytest.fixture
def edge():
    return _edge
