"""Workflow graph model and structural validation.

A graph is a list of typed nodes plus directed edges. Two JSON shapes
are accepted:

    {"nodes": [{"id": "n1", "kind": "action", "config": {...}}],
     "edges": [{"id": "e1", "sourceNodeId": "n0", "targetNodeId": "n1"}]}

or the shape emitted by the visual editor:

    {"nodes": [{"id": "n1", "type": "action", "data": {"label": ..., "config": {...}}}],
     "edges": [{"id": "e1", "source": "n0", "target": "n1", "sourceHandle": "true"}]}
"""

from collections import defaultdict
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    model_validator,
)

from core.constants import (
    HANDLE_AFTER,
    HANDLE_BODY,
    HANDLE_DEFAULT,
    HANDLE_FALSE,
    HANDLE_TRUE,
    LOOP_EXIT_HANDLES,
)
from core.exceptions import StructuralError


class NodeKind(str, Enum):
    """Every node type the engine knows how to run."""

    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    SWITCH = "switch"
    TRANSFORM = "transform"
    API = "api"
    AI = "ai"
    LOOP = "loop"
    TOOL = "tool"


BRANCHING_KINDS = frozenset({NodeKind.CONDITION, NodeKind.SWITCH, NodeKind.LOOP})
RESERVED_HANDLES = frozenset(
    {HANDLE_TRUE, HANDLE_FALSE, HANDLE_DEFAULT, HANDLE_BODY, HANDLE_AFTER}
)


class Node(BaseModel):
    """A single step in the graph."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    kind: NodeKind = Field(validation_alias=AliasChoices("kind", "type", "nodeType"))
    config: dict[str, Any] = Field(default_factory=dict)
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_editor_data(cls, data: Any) -> Any:
        # Editor nodes keep settings in ``data`` and sometimes ``data.config``
        if not isinstance(data, dict) or "data" not in data:
            return data
        payload = dict(data.get("data") or {})
        nested = payload.pop("config", None)
        config = {**payload, **(nested or {}), **(data.get("config") or {})}
        flattened = {k: v for k, v in data.items() if k not in ("data", "position")}
        flattened["config"] = config
        flattened.setdefault("label", payload.get("label"))
        return flattened

    @property
    def display_name(self) -> str:
        return self.label or self.config.get("label") or self.id


class Edge(BaseModel):
    """Directed control-flow edge between two nodes."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: Optional[str] = None
    source_node_id: str = Field(
        validation_alias=AliasChoices("sourceNodeId", "source", "source_node_id")
    )
    target_node_id: str = Field(
        validation_alias=AliasChoices("targetNodeId", "target", "target_node_id")
    )
    source_handle: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sourceHandle", "source_handle", "handle"),
    )

    @property
    def edge_id(self) -> str:
        return self.id or f"{self.source_node_id}->{self.target_node_id}"

    @property
    def handle(self) -> Optional[str]:
        if self.source_handle in (None, ""):
            return None
        return str(self.source_handle)


class WorkflowGraph(BaseModel):
    """Immutable node/edge graph read once per execution."""

    model_config = ConfigDict(frozen=True)

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    _index: dict[str, Node] = PrivateAttr(default_factory=dict)
    _outgoing: dict[str, list[Edge]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        outgoing: dict[str, list[Edge]] = defaultdict(list)
        for edge in self.edges:
            outgoing[edge.source_node_id].append(edge)
        self._index = {node.id: node for node in self.nodes}
        self._outgoing = dict(outgoing)

    @classmethod
    def parse(cls, data: Any) -> "WorkflowGraph":
        """Build a graph from JSON data, reporting bad input as StructuralError."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise StructuralError(
                f"Invalid workflow graph at {location or 'root'}: {first.get('msg')}"
            ) from e

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._index.get(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        """Edges leaving ``node_id`` in declaration order."""
        return list(self._outgoing.get(node_id, []))

    def has_edge_with_handle(self, node_id: str, handle: Optional[str]) -> bool:
        return any(edge.handle == handle for edge in self.outgoing(node_id))

    def to_dict(self) -> dict:
        return {
            "nodes": [
                {"id": n.id, "kind": n.kind.value, "label": n.label, "config": n.config}
                for n in self.nodes
            ],
            "edges": [
                {
                    "id": e.edge_id,
                    "sourceNodeId": e.source_node_id,
                    "targetNodeId": e.target_node_id,
                    "sourceHandle": e.handle,
                }
                for e in self.edges
            ],
        }

    # ─── Validation ───────────────────────────────────────────

    def validate_structure(self) -> Node:
        """Check the graph can be executed and return its trigger node.

        Raises:
            StructuralError: on the first structural problem found.
        """
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise StructuralError(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        triggers = [n for n in self.nodes if n.kind == NodeKind.TRIGGER]
        if not triggers:
            raise StructuralError("Workflow has no trigger node")
        if len(triggers) > 1:
            ids = ", ".join(n.id for n in triggers)
            raise StructuralError(f"Workflow has more than one trigger node: {ids}")
        trigger = triggers[0]

        for edge in self.edges:
            for endpoint in (edge.source_node_id, edge.target_node_id):
                if endpoint not in self._index:
                    raise StructuralError(
                        f"Edge '{edge.edge_id}' references unknown node '{endpoint}'"
                    )
            if edge.target_node_id == trigger.id:
                raise StructuralError(
                    f"Edge '{edge.edge_id}' points into trigger node '{trigger.id}'"
                )

        for node in self.nodes:
            self._check_handles(node)

        self._check_acyclic()
        return trigger

    def _check_handles(self, node: Node) -> None:
        edges = self.outgoing(node.id)
        handles = [edge.handle for edge in edges]

        if node.kind == NodeKind.CONDITION:
            for edge in edges:
                if edge.handle not in (HANDLE_TRUE, HANDLE_FALSE):
                    raise StructuralError(
                        f"Condition node '{node.id}' edge '{edge.edge_id}' must use "
                        f"handle 'true' or 'false', got {edge.handle!r}"
                    )
            _reject_duplicates(node, handles)

        elif node.kind == NodeKind.SWITCH:
            # An unlabelled edge out of a switch is its default branch
            normalised = [h if h is not None else HANDLE_DEFAULT for h in handles]
            _reject_duplicates(node, normalised)

        elif node.kind == NodeKind.LOOP:
            for edge in edges:
                if edge.handle != HANDLE_BODY and edge.handle not in LOOP_EXIT_HANDLES:
                    raise StructuralError(
                        f"Loop node '{node.id}' edge '{edge.edge_id}' must use "
                        f"handle 'body', 'after' or 'out', got {edge.handle!r}"
                    )

        else:
            for edge in edges:
                if edge.handle in RESERVED_HANDLES:
                    raise StructuralError(
                        f"Node '{node.id}' ({node.kind.value}) cannot branch on "
                        f"handle '{edge.handle}' (edge '{edge.edge_id}')"
                    )

    def _check_acyclic(self) -> None:
        """Reject any cycle.

        Loops are modelled by the loop node itself, so a loop body that
        leads back to its loop node is a cycle like any other.
        """
        white, grey, black = 0, 1, 2
        colour = {node.id: white for node in self.nodes}

        for root in self.nodes:
            if colour[root.id] != white:
                continue
            colour[root.id] = grey
            stack = [(root.id, iter(self.outgoing(root.id)))]
            while stack:
                node_id, edges = stack[-1]
                edge = next(edges, None)
                if edge is None:
                    colour[node_id] = black
                    stack.pop()
                    continue
                target = edge.target_node_id
                if colour[target] == grey:
                    raise StructuralError(
                        f"Cycle detected: edge '{edge.edge_id}' from '{node_id}' "
                        f"back to '{target}'"
                    )
                if colour[target] == white:
                    colour[target] = grey
                    stack.append((target, iter(self.outgoing(target))))


def _reject_duplicates(node: Node, handles: list) -> None:
    seen = set()
    for handle in handles:
        if handle in seen:
            raise StructuralError(
                f"Node '{node.id}' ({node.kind.value}) has more than one edge "
                f"for handle {handle!r}"
            )
        seen.add(handle)
