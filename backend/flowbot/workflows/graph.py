# /flowbot/workflows/graph.py

from collections import defaultdict
from typing import Dict, Iterator, List, Optional

from flowbot.models.flow import Connection, FlowGraphModel
from flowbot.models.nodes import DEFAULT_HANDLE, BaseNode, Capability, JumpNode
from flowbot.workflows.exceptions import MissingEdge


class FlowGraph:
    """Read-only adjacency view over a flow or flow version."""

    def __init__(self, model: FlowGraphModel):
        self.model = model
        self.nodes: Dict[str, BaseNode] = dict(model.nodes)
        self._outgoing: Dict[str, List[Connection]] = defaultdict(list)
        self._incoming: Dict[str, List[Connection]] = defaultdict(list)
        for connection in model.connections:
            self._outgoing[connection.source].append(connection)
            self._incoming[connection.target].append(connection)

    @property
    def entry_node_id(self) -> Optional[str]:
        return self.model.entry_node_id

    def node(self, node_id: str) -> Optional[BaseNode]:
        return self.nodes.get(node_id)

    def triggers(self) -> Iterator[BaseNode]:
        """Trigger nodes in declaration order."""
        return (node for node in self.nodes.values() if node.capability == Capability.TRIGGER)

    def outgoing(self, node_id: str) -> List[Connection]:
        return self._outgoing.get(node_id, [])

    def incoming(self, node_id: str) -> List[Connection]:
        return self._incoming.get(node_id, [])

    def edges_for(self, node_id: str, handle: Optional[str]) -> List[Connection]:
        if handle == DEFAULT_HANDLE:
            handle = None
        return [c for c in self.outgoing(node_id) if c.handle == handle]

    def has_handle(self, node_id: str, handle: Optional[str]) -> bool:
        return bool(self.edges_for(node_id, handle))

    def next_node_id(self, node_id: str, handle: Optional[str]) -> Optional[str]:
        """
        Target of the single connection leaving ``node_id`` with ``handle``.
        An unlabelled advance with no outgoing connection ends the flow
        (returns None); a labelled advance with none, or any ambiguity,
        raises MissingEdge.
        """
        if handle == DEFAULT_HANDLE:
            handle = None
        edges = self.edges_for(node_id, handle)
        if len(edges) > 1:
            raise MissingEdge(node_id, handle, detail=f"{len(edges)} ambiguous connections")
        if edges:
            return edges[0].target
        if handle is None:
            return None
        raise MissingEdge(node_id, handle)

    def successors(self, node_id: str) -> List[str]:
        """Every node reachable in one step, including jump targets."""
        targets = [c.target for c in self.outgoing(node_id)]
        node = self.nodes.get(node_id)
        if isinstance(node, JumpNode):
            targets.append(node.config.target_node_id)
        return targets
