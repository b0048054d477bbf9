from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from flow_runtime.graph.errors import GraphStructureError, NodeNotFoundError


class NodeKind(str, Enum):
    INPUT = "input"
    LANGUAGE_MODEL = "language_model"
    AGENT = "agent"
    OUTPUT = "output"
    OTHER = "other"


NODE_TYPE_KINDS: dict[str, NodeKind] = {
    "customInput": NodeKind.INPUT,
    "input": NodeKind.INPUT,
    "llm": NodeKind.LANGUAGE_MODEL,
    "agent": NodeKind.AGENT,
    "customOutput": NodeKind.OUTPUT,
    "output": NodeKind.OUTPUT,
}


@dataclass(frozen=True, slots=True)
class InputConfig:
    query: str


@dataclass(frozen=True, slots=True)
class LanguageModelConfig:
    provider: str | None
    model_name: str | None
    api_key: str
    instruction: str = ""


@dataclass(frozen=True, slots=True)
class AgentConfig:
    provider: str | None
    model_name: str | None
    api_key: str
    instruction: str = ""
    tool_api_key: str = ""
    allowed_tools: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class OutputConfig:
    pass


@dataclass(frozen=True, slots=True)
class PassthroughConfig:
    raw: Mapping[str, Any] = field(default_factory=dict)


NodeConfig = InputConfig | LanguageModelConfig | AgentConfig | OutputConfig | PassthroughConfig


@dataclass(frozen=True, slots=True)
class GraphNode:
    id: str
    kind: NodeKind
    type_name: str
    config: NodeConfig


@dataclass(frozen=True, slots=True)
class GraphEdge:
    id: str
    source: str
    target: str


@dataclass(frozen=True, slots=True)
class WorkflowGraph:
    nodes: tuple[GraphNode, ...]
    edges: tuple[GraphEdge, ...]


def parse_graph(payload: Mapping[str, Any]) -> WorkflowGraph:
    """Build a validated graph from the editor's ``{nodes, edges}`` arrays.

    Every structural problem is collected first and reported together.
    """
    errors: list[str] = []

    raw_nodes = payload.get("nodes") if isinstance(payload, Mapping) else None
    raw_edges = payload.get("edges") if isinstance(payload, Mapping) else None
    if not isinstance(raw_nodes, list):
        errors.append("Field 'nodes' must be a list.")
        raw_nodes = []
    if raw_edges is None:
        raw_edges = []
    if not isinstance(raw_edges, list):
        errors.append("Field 'edges' must be a list.")
        raw_edges = []

    nodes: list[GraphNode] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_nodes):
        if not isinstance(raw, Mapping):
            errors.append(f"nodes[{index}] must be an object.")
            continue
        node_id = raw.get("id")
        if not isinstance(node_id, str) or not node_id.strip():
            errors.append(f"nodes[{index}].id must be a non-empty string.")
            continue
        if node_id in seen:
            errors.append(f"Duplicate node id '{node_id}'.")
            continue
        seen.add(node_id)

        type_name = raw.get("type")
        type_name = type_name if isinstance(type_name, str) else ""
        data = raw.get("data")
        if not isinstance(data, Mapping):
            data = {}
        kind = NODE_TYPE_KINDS.get(type_name, NodeKind.OTHER)
        nodes.append(
            GraphNode(
                id=node_id,
                kind=kind,
                type_name=type_name or "unknown",
                config=_parse_config(kind, data),
            )
        )

    edges: list[GraphEdge] = []
    for index, raw in enumerate(raw_edges):
        if not isinstance(raw, Mapping):
            errors.append(f"edges[{index}] must be an object.")
            continue
        source = raw.get("source")
        target = raw.get("target")
        if not isinstance(source, str) or not source:
            errors.append(f"edges[{index}].source must be a non-empty string.")
            continue
        if not isinstance(target, str) or not target:
            errors.append(f"edges[{index}].target must be a non-empty string.")
            continue
        edge_id = raw.get("id")
        edges.append(
            GraphEdge(
                id=edge_id if isinstance(edge_id, str) and edge_id else f"{source}->{target}",
                source=source,
                target=target,
            )
        )

    if errors:
        rendered = "\n".join(f"- {error}" for error in errors)
        raise GraphStructureError(f"Graph validation failed:\n{rendered}")

    return WorkflowGraph(nodes=tuple(nodes), edges=tuple(edges))


def find_input_node(graph: WorkflowGraph) -> GraphNode:
    inputs = [node for node in graph.nodes if node.kind is NodeKind.INPUT]
    if not inputs:
        raise GraphStructureError("Graph must contain a 'customInput' node.")
    if len(inputs) > 1:
        ids = ", ".join(node.id for node in inputs)
        raise GraphStructureError(f"Graph must contain exactly one 'customInput' node, found: {ids}.")

    node = inputs[0]
    if not isinstance(node.config, InputConfig) or not node.config.query.strip():
        raise GraphStructureError("'customInput' node must contain a non-empty query.")
    return node


def next_node(graph: WorkflowGraph, node_id: str) -> str | None:
    for edge in graph.edges:
        if edge.source == node_id:
            return edge.target
    return None


def lookup(graph: WorkflowGraph, node_id: str) -> GraphNode:
    for node in graph.nodes:
        if node.id == node_id:
            return node
    raise NodeNotFoundError(f"Node with ID {node_id} not found in graph.")


def split_allow_list(raw: object) -> tuple[str, ...]:
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = [item for item in raw if isinstance(item, str)]
    else:
        return ()
    return tuple(item.strip() for item in items if item.strip())


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _optional_text(data: Mapping[str, Any], key: str) -> str | None:
    value = _text(data, key).strip()
    return value or None


def _parse_config(kind: NodeKind, data: Mapping[str, Any]) -> NodeConfig:
    if kind is NodeKind.INPUT:
        return InputConfig(query=_text(data, "query"))

    if kind is NodeKind.LANGUAGE_MODEL:
        return LanguageModelConfig(
            provider=_optional_text(data, "modelProvider"),
            model_name=_optional_text(data, "modelName"),
            api_key=_text(data, "apiKey").strip(),
            instruction=_text(data, "systemPrompt"),
        )

    if kind is NodeKind.AGENT:
        return AgentConfig(
            provider=_optional_text(data, "modelProvider"),
            model_name=_optional_text(data, "modelName"),
            api_key=_text(data, "llmApiKey").strip(),
            instruction=_text(data, "systemPrompt"),
            tool_api_key=_text(data, "composioApiKey").strip(),
            allowed_tools=split_allow_list(data.get("allowedTools")),
        )

    if kind is NodeKind.OUTPUT:
        return OutputConfig()

    return PassthroughConfig(raw=dict(data))
