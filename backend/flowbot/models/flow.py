# /flowbot/models/flow.py

import uuid
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flowbot.models.nodes import Node, DEFAULT_HANDLE
from flowbot.utils.clock import utcnow


def new_id() -> str:
    return uuid.uuid4().hex


class Connection(BaseModel):
    """A directed edge between two nodes, optionally labelled with a source handle."""
    id: str = Field(default="", description="Connection identifier, derived when omitted")
    source: str = Field(description="Source node id")
    target: str = Field(description="Target node id")
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle", description="Outcome label, e.g. 'true' or 'timeout'")
    type: Optional[str] = Field(default=None, description="Legacy edge type used as the label when no handle is set")

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def derive_id(cls, raw):
        if isinstance(raw, dict) and not raw.get("id"):
            label = raw.get("sourceHandle") or raw.get("source_handle") or raw.get("type") or DEFAULT_HANDLE
            raw = {**raw, "id": f"{raw.get('source')}->{raw.get('target')}:{label}"}
        return raw

    @property
    def handle(self) -> Optional[str]:
        """The outcome label, or None for the default (unlabelled) edge."""
        label = self.source_handle or self.type
        if not label or label == DEFAULT_HANDLE:
            return None
        return label


class VariableDeclaration(BaseModel):
    type: Literal["string", "number", "boolean", "object", "array", "any"] = "any"
    default: Any = None
    description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def accept_bare_default(cls, raw):
        if isinstance(raw, dict) and ({"type", "default", "description", "defaultValue"} & raw.keys()):
            raw = dict(raw)
            if "defaultValue" in raw:
                raw["default"] = raw.pop("defaultValue")
            return raw
        return {"default": raw}


class FlowGraphModel(BaseModel):
    """Fields shared by an editable flow and its published snapshots."""
    project_id: str
    entry_node_id: Optional[str] = Field(default=None, description="Designated entry trigger")
    nodes: Dict[str, Node] = Field(default_factory=dict, description="Nodes keyed by id, in declaration order")
    connections: List[Connection] = Field(default_factory=list)
    variables: Dict[str, VariableDeclaration] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("nodes", mode="before")
    @classmethod
    def index_nodes(cls, v):
        # Editors send a list; storage keeps a mapping keyed by id
        if isinstance(v, list):
            return {node.get("id") if isinstance(node, dict) else node.id: node for node in v}
        return v

    @model_validator(mode="after")
    def node_keys_match_ids(self):
        for key, node in self.nodes.items():
            if key != node.id:
                raise ValueError(f"Node key '{key}' does not match node id '{node.id}'")
        return self


class Flow(FlowGraphModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    is_active: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FlowVersion(FlowGraphModel):
    """An immutable snapshot of a flow. Executions always run against a version."""
    id: str = Field(default_factory=new_id)
    flow_id: str
    version: int = Field(ge=1)
    is_active: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def snapshot(cls, flow: Flow, version: int) -> "FlowVersion":
        data = flow.model_dump(include={"project_id", "entry_node_id", "connections", "variables", "settings"})
        return cls(
            flow_id=flow.id,
            version=version,
            is_active=True,
            nodes=dict(flow.nodes),
            **data,
        )
