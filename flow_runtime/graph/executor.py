from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from flow_runtime.graph.agent_loop import AgentNodeHandler
from flow_runtime.graph.errors import GraphExecutionError, GraphExecutionTimeout
from flow_runtime.graph.handlers import (
    HandlerContext,
    InputHandler,
    LanguageModelHandler,
    NodeHandler,
    OutputHandler,
    PassthroughHandler,
)
from flow_runtime.graph.model import (
    NodeKind,
    WorkflowGraph,
    find_input_node,
    lookup,
    next_node,
    parse_graph,
)
from flow_runtime.graph.state import ExecutionState
from flow_runtime.llm_client import LLMClientFactory, create_llm_client
from flow_runtime.settings import AppSettings
from flow_runtime.tool_registry import ToolRegistry


LOGGER = logging.getLogger(__name__)
CYCLE_TRACE_ENTRY = "Error: Infinite loop detected in graph."
CYCLE_RESPONSE = "Error: Infinite loop detected"


@dataclass(slots=True)
class GraphExecutionResult:
    response: str
    steps: list[str]
    visited_nodes: list[str]
    cycle_detected: bool = False

    def to_payload(self) -> dict[str, object]:
        return {"response": self.response, "steps": list(self.steps)}


def default_handlers(settings: AppSettings) -> dict[NodeKind, NodeHandler]:
    return {
        NodeKind.INPUT: InputHandler(),
        NodeKind.LANGUAGE_MODEL: LanguageModelHandler(),
        NodeKind.AGENT: AgentNodeHandler(max_turns=settings.agent_max_turns),
        NodeKind.OUTPUT: OutputHandler(),
        NodeKind.OTHER: PassthroughHandler(),
    }


class GraphExecutor:
    """Walks a workflow graph one successor at a time, dispatching by node kind."""

    def __init__(
        self,
        *,
        settings: AppSettings | None = None,
        client_factory: LLMClientFactory | None = None,
        tool_registry: ToolRegistry | None = None,
        handlers: Mapping[NodeKind, NodeHandler] | None = None,
    ) -> None:
        self._settings = settings or AppSettings()
        self._client_factory = client_factory or create_llm_client
        self._tool_registry = tool_registry
        self._handlers: dict[NodeKind, NodeHandler] = default_handlers(self._settings)
        if handlers:
            self._handlers.update(handlers)
        self._passthrough = PassthroughHandler()

    def handler_for(self, kind: NodeKind) -> NodeHandler:
        return self._handlers.get(kind, self._passthrough)

    async def arun(self, graph: WorkflowGraph | Mapping[str, Any]) -> GraphExecutionResult:
        workflow = graph if isinstance(graph, WorkflowGraph) else parse_graph(graph)
        timeout = self._settings.run_timeout_seconds
        if timeout <= 0:
            return await self._walk(workflow)

        try:
            return await asyncio.wait_for(self._walk(workflow), timeout=timeout)
        except TimeoutError as exc:
            raise GraphExecutionTimeout(f"Graph run exceeded {timeout}s and was cancelled.") from exc

    def run(self, graph: WorkflowGraph | Mapping[str, Any]) -> GraphExecutionResult:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            raise RuntimeError("GraphExecutor.run() cannot be called inside an active event loop. Use await arun().")
        return asyncio.run(self.arun(graph))

    async def _walk(self, graph: WorkflowGraph) -> GraphExecutionResult:
        input_node = find_input_node(graph)
        query = input_node.config.query

        LOGGER.info("Starting sequential execution at node %s", input_node.id)
        state = ExecutionState.start(query=query, input_node_id=input_node.id)
        context = HandlerContext(
            settings=self._settings,
            client_factory=self._client_factory,
            tool_registry=self._tool_registry,
        )
        visited_order: list[str] = []

        try:
            while state.current_node_id is not None and not state.done:
                node_id = state.current_node_id
                if node_id in state.visited:
                    LOGGER.error("Infinite loop detected: node %s was already visited.", node_id)
                    state.trace.append(CYCLE_TRACE_ENTRY)
                    return GraphExecutionResult(
                        response=CYCLE_RESPONSE,
                        steps=state.trace.entries(),
                        visited_nodes=visited_order,
                        cycle_detected=True,
                    )

                state.visited.add(node_id)
                visited_order.append(node_id)
                node = lookup(graph, node_id)

                LOGGER.info("Executing node %s (type %s)", node.id, node.type_name)
                state.trace.append(f"Executing: Node {node.id} (Type: {node.type_name})")

                outcome = await self.handler_for(node.kind).execute(node, state, context)
                state.apply(outcome)

                if state.done:
                    state.current_node_id = None
                    break

                successor = next_node(graph, node_id)
                if successor is None:
                    LOGGER.info("No outgoing edge found from node %s. Ending execution.", node_id)
                    state.trace.append(f"End: No outgoing edge from {node.id}")
                else:
                    LOGGER.debug("Moving to next node: %s", successor)
                state.current_node_id = successor
        except GraphExecutionError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Node %s failed unexpectedly", state.current_node_id)
            raise GraphExecutionError(str(exc)) from exc

        response = state.current_value.as_text()
        LOGGER.info("Sequential execution finished after %s nodes.", len(visited_order))
        return GraphExecutionResult(
            response=response,
            steps=state.trace.entries(),
            visited_nodes=visited_order,
        )

