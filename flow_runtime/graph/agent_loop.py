from __future__ import annotations

import asyncio
import logging
import operator
from typing import Annotated, Sequence, TypedDict

from langchain_core.messages import BaseMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from langgraph.graph import END, StateGraph

from flow_runtime.graph.errors import ConfigurationError
from flow_runtime.graph.handlers import HandlerContext, call_model, expect_config, seed_messages
from flow_runtime.graph.model import AgentConfig, GraphNode
from flow_runtime.graph.state import ExecutionState, NodeOutcome, NodeValue, preview_text
from flow_runtime.graph.tool_invoker import (
    ERROR_NOT_FOUND,
    ToolInvoker,
    ToolResult,
    tool_calls_from_message,
    tool_messages_for,
)
from flow_runtime.llm_client import extract_text_content
from flow_runtime.settings import DEFAULT_AGENT_MAX_TURNS


LOGGER = logging.getLogger(__name__)


def extend_history(history: list[BaseMessage], update: list[BaseMessage]) -> list[BaseMessage]:
    """Fold one turn's messages onto the history without touching either list."""
    return [*history, *update]


class AgentTurnState(TypedDict):
    messages: Annotated[list[BaseMessage], extend_history]
    turn: int
    trace: Annotated[list[str], operator.add]
    final_output: NodeValue | None


class AgentNodeHandler:
    """Bounded reason/act loop: ask the model, run requested tools, repeat."""

    def __init__(self, *, max_turns: int = DEFAULT_AGENT_MAX_TURNS) -> None:
        self._max_turns = max(1, int(max_turns))
        self._graph = self._build_graph()

    @property
    def max_turns(self) -> int:
        return self._max_turns

    def _build_graph(self):
        workflow = StateGraph(AgentTurnState)
        workflow.add_node("model", self._model_node)
        workflow.add_node("tools", self._tools_node)

        workflow.set_entry_point("model")
        workflow.add_conditional_edges(
            "model",
            self._route_after_model,
            {
                "tools": "tools",
                "end": END,
            },
        )
        workflow.add_conditional_edges(
            "tools",
            self._route_after_tools,
            {
                "model": "model",
                "end": END,
            },
        )
        return workflow.compile()

    async def execute(
        self,
        node: GraphNode,
        state: ExecutionState,
        context: HandlerContext,
    ) -> NodeOutcome:
        config = expect_config(node, AgentConfig)
        if not config.api_key:
            raise ConfigurationError(f"Agent Node {node.id} requires an llmApiKey.")

        client = context.client_factory(
            provider=config.provider,
            model_name=config.model_name,
            api_key=config.api_key,
            settings=context.settings,
        )
        LOGGER.info("Agent node %s using model %s", node.id, client.model_name)

        trace: list[str] = []
        tools = await self._resolve_tools(node, config, context, trace)
        invoker = ToolInvoker(tools, timeout_seconds=context.settings.tool_timeout_seconds)

        run_config: RunnableConfig = {
            "recursion_limit": self._max_turns * 2 + 4,
            "configurable": {
                "node_id": node.id,
                "llm_client": client,
                "tools": tools,
                "invoker": invoker,
                "preview_chars": context.preview_chars,
            },
        }
        initial_state: AgentTurnState = {
            "messages": seed_messages(state, config.instruction),
            "turn": 0,
            "trace": [],
            "final_output": None,
        }

        final_state: AgentTurnState = await self._graph.ainvoke(initial_state, config=run_config)
        trace.extend(final_state["trace"])

        value = final_state.get("final_output")
        if value is None:
            LOGGER.warning(
                "Agent node %s reached max iterations (%s) after tool calls.",
                node.id,
                self._max_turns,
            )
            trace.append(f"Warning (Agent {node.id}): Reached max iterations after tool calls.")
            value = self._fallback_output(final_state["messages"])

        return NodeOutcome(value=value, trace=trace)

    async def _resolve_tools(
        self,
        node: GraphNode,
        config: AgentConfig,
        context: HandlerContext,
        trace: list[str],
    ) -> list[BaseTool]:
        if not config.tool_api_key or not config.allowed_tools:
            LOGGER.info("Agent node %s has no tool credential or tools specified.", node.id)
            return []

        if context.tool_registry is None:
            trace.append(f"Warning (Agent {node.id}): Failed to load tools - no tool registry configured")
            return []

        LOGGER.info("Agent node %s fetching tools: %s", node.id, ", ".join(config.allowed_tools))
        timeout = max(1.0, float(context.settings.tool_timeout_seconds))
        try:
            tools = await asyncio.wait_for(
                context.tool_registry.resolve(config.tool_api_key, list(config.allowed_tools)),
                timeout=timeout,
            )
        except TimeoutError:
            LOGGER.error("Agent node %s timed out loading tools", node.id)
            trace.append(
                f"Warning (Agent {node.id}): Failed to load tools - timed out after {timeout:.1f}s"
            )
            return []
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Agent node %s failed to load tools: %s", node.id, exc)
            trace.append(f"Warning (Agent {node.id}): Failed to load tools - {exc}")
            return []

        LOGGER.info("Agent node %s loaded %s tools.", node.id, len(tools))
        return list(tools)

    async def _model_node(self, state: AgentTurnState, config: RunnableConfig) -> dict:
        configurable = config["configurable"]
        node_id: str = configurable["node_id"]
        tools: Sequence[BaseTool] = configurable["tools"]
        invoker: ToolInvoker = configurable["invoker"]
        preview_chars: int = configurable["preview_chars"]

        turn = state["turn"] + 1
        trace = [f"Agent {node_id} Turn {turn}: Calling LLM"]

        response = await call_model(
            configurable["llm_client"],
            state["messages"],
            node_label=f"Agent Node {node_id}",
            tools=list(tools) or None,
        )
        update: dict = {"messages": [response], "turn": turn, "trace": trace}

        calls = tool_calls_from_message(response, id_prefix=f"call_{turn}")
        if not calls or not invoker.has_tools():
            value = NodeValue.from_content(response.content)
            trace.append(f"Result (Agent {node_id}): {value.preview(preview_chars)}")
            update["final_output"] = value
            return update

        requested = ", ".join(call.tool_name for call in calls)
        trace.append(f"Agent {node_id} Turn {turn}: LLM requested tools: {requested}")
        return update

    async def _tools_node(self, state: AgentTurnState, config: RunnableConfig) -> dict:
        configurable = config["configurable"]
        node_id: str = configurable["node_id"]
        invoker: ToolInvoker = configurable["invoker"]
        preview_chars: int = configurable["preview_chars"]
        turn = state["turn"]

        calls = tool_calls_from_message(state["messages"][-1], id_prefix=f"call_{turn}")
        results = await invoker.dispatch(calls)

        trace = [
            self._describe_result(node_id, turn, results[call.id], preview_chars)
            for call in calls
        ]
        return {"messages": tool_messages_for(calls, results), "trace": trace}

    def _route_after_model(self, state: AgentTurnState) -> str:
        if state.get("final_output") is not None:
            return "end"
        return "tools"

    def _route_after_tools(self, state: AgentTurnState) -> str:
        if state["turn"] >= self._max_turns:
            return "end"
        return "model"

    def _describe_result(self, node_id: str, turn: int, result: ToolResult, preview_chars: int) -> str:
        prefix = f"Agent {node_id} Turn {turn}:"
        if not result.is_error:
            return f"{prefix} Executed {result.tool_name}. Result: {preview_text(result.content, preview_chars)}"
        if result.error_kind == ERROR_NOT_FOUND:
            return f"{prefix} Tool {result.tool_name} not found."
        return f"{prefix} Error executing {result.tool_name}: {result.detail}"

    def _fallback_output(self, messages: list[BaseMessage]) -> NodeValue:
        if messages:
            text = extract_text_content(messages[-1].content)
            if text.strip():
                return NodeValue.of_text(text)
        return NodeValue.of_text(f"Agent reached max iterations ({self._max_turns}).")
