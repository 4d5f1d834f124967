# /flowbot/workflows/validator.py

"""
Pure structural validation for flow graphs.

Each check returns a list of problems; ``validate_flow`` concatenates them.
Errors block publishing, warnings are reported but do not.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No logging
"""

from collections import Counter
from typing import Dict, List, Optional, Set, TypedDict

from flowbot.models.flow import FlowGraphModel
from flowbot.models.nodes import Capability, JumpNode, LoopNode, UnsupportedNode, DelayNode, WaitingNode
from flowbot.workflows.graph import FlowGraph

ERROR = "error"
WARNING = "warning"


class ValidationProblem(TypedDict):
    """One finding about a flow graph."""
    severity: str
    code: str
    message: str
    node_id: Optional[str]
    connection_id: Optional[str]


def _problem(severity: str, code: str, message: str, node_id: Optional[str] = None,
             connection_id: Optional[str] = None) -> ValidationProblem:
    return {
        "severity": severity,
        "code": code,
        "message": message,
        "node_id": node_id,
        "connection_id": connection_id,
    }


def has_errors(problems: List[ValidationProblem]) -> bool:
    return any(p["severity"] == ERROR for p in problems)


def check_entry(graph: FlowGraph) -> List[ValidationProblem]:
    """
    The flow needs at least one trigger and exactly one designated entry
    node, which must itself be a trigger.
    """
    if not graph.nodes:
        return [_problem(ERROR, "EMPTY_FLOW", "Flow has no nodes")]

    problems = []
    if not any(True for _ in graph.triggers()):
        problems.append(_problem(ERROR, "NO_TRIGGER", "Flow must contain at least one trigger node"))

    entry_id = graph.entry_node_id
    if not entry_id:
        problems.append(_problem(ERROR, "NO_ENTRY_NODE", "Flow has no entry node"))
    elif entry_id not in graph.nodes:
        problems.append(_problem(ERROR, "ENTRY_NODE_NOT_FOUND", f"Entry node '{entry_id}' does not exist", entry_id))
    elif graph.nodes[entry_id].capability != Capability.TRIGGER:
        problems.append(_problem(ERROR, "ENTRY_NOT_TRIGGER", f"Entry node '{entry_id}' must be a trigger", entry_id))
    return problems


def check_node_types(graph: FlowGraph) -> List[ValidationProblem]:
    return [
        _problem(ERROR, "UNKNOWN_NODE_TYPE", f"Node type '{node.type}' is not supported", node.id)
        for node in graph.nodes.values()
        if isinstance(node, UnsupportedNode)
    ]


def check_connections(graph: FlowGraph) -> List[ValidationProblem]:
    """Every connection endpoint must name an existing node."""
    problems = []
    for connection in graph.model.connections:
        for end, node_id in (("source", connection.source), ("target", connection.target)):
            if node_id not in graph.nodes:
                problems.append(_problem(
                    ERROR, "DANGLING_CONNECTION",
                    f"Connection {end} '{node_id}' does not exist",
                    connection_id=connection.id,
                ))
    for node in graph.nodes.values():
        if isinstance(node, JumpNode) and node.config.target_node_id not in graph.nodes:
            problems.append(_problem(
                ERROR, "JUMP_TARGET_NOT_FOUND",
                f"Jump target '{node.config.target_node_id}' does not exist", node.id,
            ))
    return problems


def check_handles(graph: FlowGraph) -> List[ValidationProblem]:
    """
    Branching nodes need a connection for each required outcome label, and
    no node may have two connections for the same label.
    """
    problems = []
    for node in graph.nodes.values():
        outgoing = graph.outgoing(node.id)
        labels = Counter(c.handle for c in outgoing)

        for handle in node.required_handles():
            if labels[handle] == 0:
                problems.append(_problem(
                    ERROR, "MISSING_HANDLE",
                    f"Node '{node.display_name}' has no connection for outcome '{handle}'", node.id,
                ))

        for handle, count in labels.items():
            if count > 1:
                problems.append(_problem(
                    ERROR, "AMBIGUOUS_HANDLE",
                    f"Node '{node.display_name}' has {count} connections for outcome '{handle or 'default'}'",
                    node.id,
                ))

        allowed = node.allowed_handles()
        if allowed is None:
            continue
        for connection in outgoing:
            if connection.handle is not None and connection.handle not in allowed:
                problems.append(_problem(
                    WARNING, "UNUSED_HANDLE",
                    f"Outcome '{connection.handle}' is never produced by node '{node.display_name}'",
                    node.id, connection.id,
                ))
    return problems


def _reachable_from(graph: FlowGraph, roots: List[str]) -> Set[str]:
    seen: Set[str] = set()
    stack = list(roots)
    while stack:
        node_id = stack.pop()
        if node_id in seen or node_id not in graph.nodes:
            continue
        seen.add(node_id)
        stack.extend(graph.successors(node_id))
    return seen


def check_reachability(graph: FlowGraph) -> List[ValidationProblem]:
    """Nodes that no trigger can reach are reported as warnings."""
    roots = [node.id for node in graph.triggers()]
    if graph.entry_node_id:
        roots.append(graph.entry_node_id)
    reachable = _reachable_from(graph, roots)
    return [
        _problem(WARNING, "UNREACHABLE_NODE", f"Node '{node.display_name}' is not reachable from any trigger", node.id)
        for node in graph.nodes.values()
        if node.id not in reachable
    ]


def _find_cycles(graph: FlowGraph) -> List[List[str]]:
    """Returns one representative path per back edge found by DFS."""
    cycles: List[List[str]] = []
    state: Dict[str, int] = {}  # 1 = on stack, 2 = done
    path: List[str] = []
    position: Dict[str, int] = {}

    for root in graph.nodes:
        if root in state:
            continue
        state[root] = 1
        position[root] = len(path)
        path.append(root)
        stack = [iter(graph.successors(root))]
        while stack:
            target = next(stack[-1], None)
            if target is None:
                stack.pop()
                done = path.pop()
                del position[done]
                state[done] = 2
                continue
            if target not in graph.nodes:
                continue
            if state.get(target) == 1:
                cycles.append(path[position[target]:])
            elif target not in state:
                state[target] = 1
                position[target] = len(path)
                path.append(target)
                stack.append(iter(graph.successors(target)))
    return cycles


def check_cycles(graph: FlowGraph) -> List[ValidationProblem]:
    """
    A cycle through a trigger is an error. A cycle with no waiting node
    and no loop node would spin until the step ceiling, so it is reported
    as a warning.
    """
    problems = []
    for cycle in _find_cycles(graph):
        nodes = [graph.nodes[node_id] for node_id in cycle]
        route = " -> ".join(cycle + [cycle[0]])
        if any(node.capability == Capability.TRIGGER for node in nodes):
            problems.append(_problem(ERROR, "TRIGGER_CYCLE", f"Cycle passes through a trigger: {route}", cycle[0]))
        elif not any(isinstance(node, (WaitingNode, DelayNode, LoopNode)) for node in nodes):
            problems.append(_problem(WARNING, "BUSY_CYCLE", f"Cycle never waits for input: {route}", cycle[0]))
    return problems


def validate_flow(flow: FlowGraphModel) -> List[ValidationProblem]:
    """
    Runs every structural check against a flow or version.

    Returns:
        All problems found, errors and warnings, in check order.
    """
    graph = FlowGraph(flow)
    problems = check_entry(graph)
    if not graph.nodes:
        return problems
    return (
        problems
        + check_node_types(graph)
        + check_connections(graph)
        + check_handles(graph)
        + check_reachability(graph)
        + check_cycles(graph)
    )
