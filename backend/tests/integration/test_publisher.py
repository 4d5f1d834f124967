# backend/tests/integration/test_publisher.py
import pytest

from flowbot.workflows.exceptions import AuthoringError, FlowNotFound

PROJECT_ID = "proj-1"


def greeting_flow(make_flow, edge, text="Hello", **extra):
    return make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hello", "type": "message", "config": {"text": text}},
        ],
        [edge("start", "hello")],
        **extra,
    )


@pytest.mark.asyncio
async def test_invalid_flow_is_not_published(runtime, make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hello", "type": "message", "config": {"text": "Hi"}},
        ],
        [edge("start", "hello"), edge("hello", "ghost")],
    )
    await runtime.flows.save_flow(flow)

    with pytest.raises(AuthoringError) as exc_info:
        await runtime.publisher.publish(flow.id)

    assert [p["code"] for p in exc_info.value.problems] == ["DANGLING_CONNECTION"]
    assert await runtime.flows.list_versions(flow.id) == []
    assert await runtime.flows.get_active_version(PROJECT_ID) is None


@pytest.mark.asyncio
async def test_unknown_flow_raises(runtime):
    with pytest.raises(FlowNotFound):
        await runtime.publisher.validate("missing")
    with pytest.raises(FlowNotFound):
        await runtime.publisher.publish("missing")


@pytest.mark.asyncio
async def test_warnings_do_not_block_publishing(runtime, publish, make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hello", "type": "message", "config": {"text": "Hi"}},
            {"id": "orphan", "type": "message", "config": {"text": "Unused"}},
        ],
        [edge("start", "hello")],
    )
    await runtime.flows.save_flow(flow)

    problems = await runtime.publisher.validate(flow.id)
    version = await runtime.publisher.publish(flow.id)

    assert [p["severity"] for p in problems] == ["warning"]
    assert version.is_active is True


@pytest.mark.asyncio
async def test_versions_increment_and_stay_immutable(runtime, publish, make_flow, edge):
    flow = greeting_flow(make_flow, edge)
    first = await publish(flow)

    flow.name = "Renamed"
    flow.nodes["hello"] = flow.nodes["hello"].model_copy(
        update={"config": flow.nodes["hello"].config.model_copy(update={"text": "Hello again"})}
    )
    second = await publish(flow)

    versions = await runtime.flows.list_versions(flow.id)
    assert [(v.version, v.is_active) for v in versions] == [(1, False), (2, True)]
    assert versions[0].nodes["hello"].config.text == "Hello"
    assert second.nodes["hello"].config.text == "Hello again"
    assert first.id != second.id


@pytest.mark.asyncio
async def test_only_one_active_version_per_project(runtime, publish, make_flow, edge):
    first_flow = greeting_flow(make_flow, edge, name="First")
    second_flow = greeting_flow(make_flow, edge, name="Second")
    other_project = greeting_flow(make_flow, edge, project_id="proj-2")

    await publish(first_flow)
    await publish(other_project)
    latest = await publish(second_flow)

    active = await runtime.flows.get_active_version(PROJECT_ID)
    assert active.id == latest.id
    assert active.flow_id == second_flow.id
    assert (await runtime.flows.get_flow(first_flow.id)).is_active is False
    assert (await runtime.flows.get_active_version("proj-2")).flow_id == other_project.id


@pytest.mark.asyncio
async def test_publishing_invalidates_the_cached_graph(runtime, publish, make_flow, edge):
    flow = greeting_flow(make_flow, edge)
    assert await runtime.engine.active_graph(PROJECT_ID) is None

    version = await publish(flow)
    graph = await runtime.engine.active_graph(PROJECT_ID)

    assert graph is not None
    assert graph.model.id == version.id
