# backend/tests/unit/test_validator.py
import pytest

from flowbot.workflows.validator import has_errors, validate_flow


def codes(problems, severity=None):
    return {p["code"] for p in problems if severity is None or p["severity"] == severity}


def test_valid_linear_flow_has_no_problems(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hello", "type": "message", "config": {"text": "Hi!"}},
            {"id": "end", "type": "flow.end"},
        ],
        [edge("start", "hello"), edge("hello", "end")],
    )
    assert validate_flow(flow) == []


def test_empty_flow_is_an_error(make_flow):
    problems = validate_flow(make_flow([], []))
    assert codes(problems) == {"EMPTY_FLOW"}
    assert has_errors(problems)


def test_flow_without_trigger_or_entry(make_flow):
    flow = make_flow([{"id": "hello", "type": "message", "config": {"text": "Hi"}}], [])
    assert {"NO_TRIGGER", "NO_ENTRY_NODE"} <= codes(validate_flow(flow), "error")


def test_entry_must_be_an_existing_trigger(make_flow, edge):
    nodes = [
        {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
        {"id": "hello", "type": "message", "config": {"text": "Hi"}},
    ]
    not_trigger = make_flow(nodes, [edge("start", "hello")], entry_node_id="hello")
    missing = make_flow(nodes, [edge("start", "hello")], entry_node_id="ghost")

    assert "ENTRY_NOT_TRIGGER" in codes(validate_flow(not_trigger), "error")
    assert "ENTRY_NODE_NOT_FOUND" in codes(validate_flow(missing), "error")


def test_dangling_connection_is_an_error(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hello", "type": "message", "config": {"text": "Hi"}},
        ],
        [edge("start", "hello"), edge("hello", "nowhere")],
    )
    problems = validate_flow(flow)
    dangling = [p for p in problems if p["code"] == "DANGLING_CONNECTION"]
    assert len(dangling) == 1
    assert dangling[0]["connection_id"] == "hello->nowhere:default"
    assert has_errors(problems)


def test_condition_missing_false_handle(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "check", "type": "flow.condition", "config": {"expression": "amount > 100"}},
            {"id": "big", "type": "message", "config": {"text": "Big"}},
        ],
        [edge("start", "check"), edge("check", "big", "true")],
    )
    problems = validate_flow(flow)
    missing = [p for p in problems if p["code"] == "MISSING_HANDLE"]
    assert [p["node_id"] for p in missing] == ["check"]
    assert "'false'" in missing[0]["message"]


def test_two_connections_for_one_outcome_are_ambiguous(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "a", "type": "message", "config": {"text": "A"}},
            {"id": "b", "type": "message", "config": {"text": "B"}},
        ],
        [edge("start", "a"), edge("start", "b")],
    )
    assert "AMBIGUOUS_HANDLE" in codes(validate_flow(flow), "error")


def test_wait_with_timeout_needs_timeout_edge(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "wait", "type": "flow.wait_input", "config": {"timeoutSeconds": 60}},
            {"id": "done", "type": "flow.end"},
        ],
        [edge("start", "wait"), edge("wait", "done")],
    )
    assert "MISSING_HANDLE" in codes(validate_flow(flow), "error")


def test_unknown_node_type_is_reported(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hook", "type": "action.webhook", "config": {"url": "https://example.com"}},
        ],
        [edge("start", "hook")],
    )
    problems = validate_flow(flow)
    assert [p["node_id"] for p in problems if p["code"] == "UNKNOWN_NODE_TYPE"] == ["hook"]


def test_unreachable_node_is_a_warning(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hello", "type": "message", "config": {"text": "Hi"}},
            {"id": "orphan", "type": "message", "config": {"text": "Nobody gets here"}},
        ],
        [edge("start", "hello")],
    )
    problems = validate_flow(flow)
    assert codes(problems) == {"UNREACHABLE_NODE"}
    assert not has_errors(problems)


def test_jump_target_counts_for_reachability_and_must_exist(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "jump", "type": "flow.jump", "config": {"targetNodeId": "later"}},
            {"id": "later", "type": "message", "config": {"text": "Jumped"}},
            {"id": "broken", "type": "flow.jump", "config": {"targetNodeId": "ghost"}},
        ],
        [edge("start", "jump")],
    )
    problems = validate_flow(flow)
    assert "later" not in {p["node_id"] for p in problems if p["code"] == "UNREACHABLE_NODE"}
    assert [p["node_id"] for p in problems if p["code"] == "JUMP_TARGET_NOT_FOUND"] == ["broken"]


def test_busy_cycle_warns_and_waiting_cycle_does_not(make_flow, edge):
    busy = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "a", "type": "action.set_variable", "config": {"name": "x", "value": 1}},
            {"id": "b", "type": "message", "config": {"text": "again"}},
        ],
        [edge("start", "a"), edge("a", "b"), edge("b", "a")],
    )
    waiting = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "ask", "type": "flow.wait_input", "config": {"prompt": "Say something"}},
            {"id": "echo", "type": "message", "config": {"text": "You said {input.text}"}},
        ],
        [edge("start", "ask"), edge("ask", "echo"), edge("echo", "ask")],
    )
    assert codes(validate_flow(busy)) == {"BUSY_CYCLE"}
    assert validate_flow(waiting) == []


def test_cycle_through_trigger_is_an_error(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hello", "type": "message", "config": {"text": "Hi"}},
        ],
        [edge("start", "hello"), edge("hello", "start")],
    )
    assert "TRIGGER_CYCLE" in codes(validate_flow(flow), "error")


@pytest.mark.parametrize("handle", ["timeout", "whatever"])
def test_labels_a_node_never_produces_are_warnings(make_flow, edge, handle):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "hello", "type": "message", "config": {"text": "Hi"}},
            {"id": "other", "type": "message", "config": {"text": "Other"}},
        ],
        [edge("start", "hello"), edge("hello", "other", handle)],
    )
    problems = validate_flow(flow)
    assert "UNUSED_HANDLE" in codes(problems, "warning")
    assert not has_errors(problems)


def test_long_chains_validate_without_recursion(make_flow, edge):
    count = 3000
    nodes = [{"id": "start", "type": "trigger.command", "config": {"command": "/start"}}]
    nodes += [{"id": f"m{i}", "type": "message", "config": {"text": f"Step {i}"}} for i in range(count)]
    connections = [edge("start", "m0")] + [edge(f"m{i}", f"m{i + 1}") for i in range(count - 1)]
    connections.append(edge(f"m{count - 1}", "m0"))

    problems = validate_flow(make_flow(nodes, connections))

    busy = [p for p in problems if p["code"] == "BUSY_CYCLE"]
    assert len(busy) == 1
    assert busy[0]["node_id"] == "m0"
    assert not has_errors(problems)


def test_loop_body_cycle_is_not_busy(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "loop", "type": "flow.loop", "config": {"type": "count", "count": 3}},
            {"id": "tick", "type": "message", "config": {"text": "Round {loop_index}"}},
            {"id": "end", "type": "flow.end"},
        ],
        [edge("start", "loop"), edge("loop", "tick", "loop"), edge("tick", "loop"), edge("loop", "end", "done")],
    )
    assert validate_flow(flow) == []


def test_loop_needs_loop_and_done_connections(make_flow, edge):
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "loop", "type": "flow.loop", "config": {"type": "count", "count": 3}},
            {"id": "tick", "type": "message", "config": {"text": "Round"}},
        ],
        [edge("start", "loop"), edge("loop", "tick", "loop"), edge("tick", "loop")],
    )
    problems = validate_flow(flow)
    missing = [p for p in problems if p["code"] == "MISSING_HANDLE"]
    assert [p["node_id"] for p in missing] == ["loop"]
    assert "done" in missing[0]["message"]
