"""Workflow graph parsing, validation and ordering."""

from __future__ import annotations

import heapq
import json
from collections.abc import Iterable
from typing import Any

from .errors import CycleError, GraphValidationError
from .types import CYCLE_TOLERANT_TYPES, Edge, Node, NodeType, WorkflowRef


class WorkflowGraph:
    """Nodes and edges of one workflow, validated on construction."""

    def __init__(self, workflow: WorkflowRef, nodes: Iterable[Node], edges: Iterable[Edge]) -> None:
        self.workflow = workflow
        self._nodes: dict[str, Node] = {}
        for node in nodes:
            if node.id in self._nodes:
                raise GraphValidationError(f"duplicate node id {node.id!r}")
            self._nodes[node.id] = node
        self._edges: list[Edge] = list(edges)
        self._validate_edges()

        self._incoming: dict[str, list[Edge]] = {node_id: [] for node_id in self._nodes}
        self._outgoing: dict[str, list[Edge]] = {node_id: [] for node_id in self._nodes}
        for edge in self._edges:
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)
        self._feedback: set[Edge] | None = None

    def _validate_edges(self) -> None:
        fed_handles: dict[tuple[str, str], str] = {}
        for edge in self._edges:
            if edge.source not in self._nodes or edge.target not in self._nodes:
                raise GraphValidationError(
                    f"edge references unknown node: {edge.source} -> {edge.target}"
                )
            if edge.target_handle is None:
                continue
            if self._nodes[edge.target].type is NodeType.MERGE:
                continue
            key = (edge.target, edge.target_handle)
            existing = fed_handles.get(key)
            if existing is not None and existing != edge.source:
                raise GraphValidationError(
                    f"input {edge.target_handle!r} of node {edge.target!r} is fed by both "
                    f"{existing!r} and {edge.source!r}; add a merge node"
                )
            fed_handles[key] = edge.source

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    @property
    def edges(self) -> list[Edge]:
        return list(self._edges)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise GraphValidationError(f"unknown node {node_id!r}") from None

    def incoming(self, node_id: str) -> list[Edge]:
        return list(self._incoming.get(node_id, []))

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, []))

    def with_edge(self, edge: Edge) -> "WorkflowGraph":
        """Return a copy of the graph including ``edge``."""

        edges = [existing for existing in self._edges if existing != edge]
        edges.append(edge)
        return WorkflowGraph(self.workflow, self._nodes.values(), edges)

    # -- ordering ---------------------------------------------------------

    def feedback_edges(self) -> set[Edge]:
        """Edges closing a loop back into a loop or merge control node."""

        if self._feedback is not None:
            return self._feedback
        feedback: set[Edge] = set()
        for edge in self._edges:
            if self._nodes[edge.target].type not in CYCLE_TOLERANT_TYPES:
                continue
            if edge.source == edge.target or edge.source in self._reachable_from(edge.target):
                feedback.add(edge)
        self._feedback = feedback
        return feedback

    def _reachable_from(self, node_id: str) -> set[str]:
        seen: set[str] = set()
        stack = [edge.target for edge in self._outgoing[node_id]]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(edge.target for edge in self._outgoing[current])
        return seen

    def dependencies(self, node_id: str) -> list[str]:
        """Predecessors that must reach a terminal state before ``node_id`` runs."""

        feedback = self.feedback_edges()
        seen: list[str] = []
        for edge in self._incoming.get(node_id, []):
            if edge in feedback or edge.source in seen:
                continue
            seen.append(edge.source)
        return seen

    def execution_order(self) -> list[str]:
        """Return node ids in topological order using Kahn's algorithm.

        Ties are broken by the position of the node in the definition so that
        the order is stable between runs.
        """

        feedback = self.feedback_edges()
        position = {node_id: index for index, node_id in enumerate(self._nodes)}
        indegree: dict[str, int] = {node_id: 0 for node_id in self._nodes}
        adjacency: dict[str, set[str]] = {node_id: set() for node_id in self._nodes}

        for edge in self._edges:
            if edge in feedback or edge.target in adjacency[edge.source]:
                continue
            adjacency[edge.source].add(edge.target)
            indegree[edge.target] += 1

        heap: list[tuple[int, str]] = []
        for node_id, degree in indegree.items():
            if degree == 0:
                heapq.heappush(heap, (position[node_id], node_id))

        ordered: list[str] = []
        while heap:
            _, node_id = heapq.heappop(heap)
            ordered.append(node_id)
            for neighbour in adjacency[node_id]:
                indegree[neighbour] -= 1
                if indegree[neighbour] == 0:
                    heapq.heappush(heap, (position[neighbour], neighbour))

        if len(ordered) != len(self._nodes):
            raise CycleError([node_id for node_id in self._nodes if node_id not in ordered])
        return ordered

    def descendants(self, node_id: str) -> set[str]:
        """All nodes reachable from ``node_id`` through ordering edges."""

        feedback = self.feedback_edges()
        seen: set[str] = set()
        stack = [edge.target for edge in self._outgoing[node_id] if edge not in feedback]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(edge.target for edge in self._outgoing[current] if edge not in feedback)
        return seen

    def sinks(self) -> list[str]:
        return [node_id for node_id, edges in self._outgoing.items() if not edges]

    # -- serialisation ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [
                {
                    "id": node.id,
                    "type": node.type.value,
                    "data": {"label": node.label, "config": node.config},
                }
                for node in self._nodes.values()
            ],
            "edges": [edge.to_dict() for edge in self._edges],
        }


def _extract_nodes(raw_nodes: Any) -> list[dict[str, Any]]:
    if isinstance(raw_nodes, dict):
        items = []
        for key, node in raw_nodes.items():
            if isinstance(node, dict):
                items.append({"id": node.get("id", key), **{k: v for k, v in node.items() if k != "id"}})
        return items
    if isinstance(raw_nodes, list):
        return [node for node in raw_nodes if isinstance(node, dict)]
    return []


def _parse_node(raw: dict[str, Any]) -> Node:
    node_id = raw.get("id")
    if node_id is None or str(node_id) == "":
        raise GraphValidationError("node without id")
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}

    type_name = raw.get("type") or data.get("type")
    try:
        node_type = NodeType(type_name)
    except ValueError:
        raise GraphValidationError(f"node {node_id!r} has unknown type {type_name!r}") from None

    config = data.get("config", raw.get("config", {}))
    if not isinstance(config, dict):
        raise GraphValidationError(f"node {node_id!r} config must be an object")

    label = data.get("label") or raw.get("label") or ""
    return Node(id=str(node_id), type=node_type, config=dict(config), label=str(label))


def _parse_edge(raw: dict[str, Any]) -> Edge:
    source = raw.get("source")
    target = raw.get("target")
    if source is None or target is None:
        raise GraphValidationError("edge requires source and target")
    source_handle = raw.get("sourceHandle")
    target_handle = raw.get("targetHandle")
    return Edge(
        source=str(source),
        target=str(target),
        source_handle=str(source_handle) if source_handle else None,
        target_handle=str(target_handle) if target_handle else None,
    )


def parse_graph(workflow: WorkflowRef, definition: dict[str, Any] | str | None) -> WorkflowGraph:
    """Build a validated graph from a builder definition.

    Accepts the JSON text stored in ``workflows.graph_json`` or the decoded
    mapping with ``nodes`` and ``edges`` keys.
    """

    if definition is None:
        definition = {}
    if isinstance(definition, str):
        try:
            definition = json.loads(definition or "{}")
        except ValueError as exc:
            raise GraphValidationError(f"graph definition is not valid JSON: {exc}") from None
    if not isinstance(definition, dict):
        raise GraphValidationError("graph definition must be an object")

    nodes = [_parse_node(raw) for raw in _extract_nodes(definition.get("nodes"))]
    raw_edges = definition.get("edges")
    if raw_edges is None:
        raw_edges = []
    if not isinstance(raw_edges, list):
        raise GraphValidationError("edges must be a list")
    edges = [_parse_edge(raw) for raw in raw_edges if isinstance(raw, dict)]
    return WorkflowGraph(workflow, nodes, edges)
