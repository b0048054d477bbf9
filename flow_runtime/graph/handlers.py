from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence, TypeVar

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.tools import BaseTool

from flow_runtime.graph.errors import AuthenticationError, ConfigurationError, GraphExecutionError
from flow_runtime.graph.model import (
    GraphNode,
    InputConfig,
    LanguageModelConfig,
)
from flow_runtime.graph.state import ExecutionState, NodeOutcome, NodeValue
from flow_runtime.llm_client import (
    LLMAuthenticationError,
    LLMCallError,
    LLMClient,
    LLMClientFactory,
    create_llm_client,
    is_authentication_error,
)
from flow_runtime.settings import AppSettings
from flow_runtime.tool_registry import ToolRegistry


LOGGER = logging.getLogger(__name__)
ConfigT = TypeVar("ConfigT")
COMPOSIO_NODE_TYPE = "composio"


@dataclass(slots=True)
class HandlerContext:
    settings: AppSettings
    client_factory: LLMClientFactory = create_llm_client
    tool_registry: ToolRegistry | None = None

    @property
    def preview_chars(self) -> int:
        return self.settings.trace_preview_chars


class NodeHandler(Protocol):
    async def execute(
        self,
        node: GraphNode,
        state: ExecutionState,
        context: HandlerContext,
    ) -> NodeOutcome: ...


def expect_config(node: GraphNode, config_type: type[ConfigT]) -> ConfigT:
    if not isinstance(node.config, config_type):
        raise ConfigurationError(
            f"Node {node.id} of type '{node.type_name}' has an invalid configuration."
        )
    return node.config


def build_system_prompt(original_query: str, current_input: str, instruction: str | None) -> str:
    context_prompt = f"Final Goal: {original_query}\n\nCurrent Status/Input: {current_input}"
    return f"{context_prompt}\n\n{instruction or ''}".strip()


def seed_messages(state: ExecutionState, instruction: str | None) -> list[BaseMessage]:
    current_input = state.current_value.as_text()
    return [
        SystemMessage(content=build_system_prompt(state.original_query, current_input, instruction)),
        HumanMessage(content=current_input),
    ]


async def call_model(
    client: LLMClient,
    messages: Sequence[BaseMessage],
    *,
    node_label: str,
    tools: Sequence[BaseTool] | None = None,
) -> AIMessage:
    try:
        return await client.invoke(messages, tools=tools)
    except LLMAuthenticationError as exc:
        raise AuthenticationError(f"{node_label} credential was rejected: {exc}") from exc
    except LLMCallError as exc:
        raise GraphExecutionError(f"{node_label} failed: {exc}") from exc
    except GraphExecutionError:
        raise
    except Exception as exc:  # noqa: BLE001
        if is_authentication_error(exc):
            raise AuthenticationError(f"{node_label} credential was rejected: {exc}") from exc
        raise GraphExecutionError(f"{node_label} failed: {exc}") from exc


class InputHandler:
    async def execute(
        self,
        node: GraphNode,
        state: ExecutionState,
        context: HandlerContext,
    ) -> NodeOutcome:
        config = expect_config(node, InputConfig)
        value = NodeValue.of_text(config.query)
        return NodeOutcome(
            value=value,
            trace=[f"Input ({node.id}): {value.preview(context.preview_chars)}"],
        )


class LanguageModelHandler:
    """Single model call framed by the run's goal and the incoming value."""

    async def execute(
        self,
        node: GraphNode,
        state: ExecutionState,
        context: HandlerContext,
    ) -> NodeOutcome:
        config = expect_config(node, LanguageModelConfig)
        if not config.api_key:
            raise ConfigurationError(f"LLM Node {node.id} requires an apiKey.")

        client = context.client_factory(
            provider=config.provider,
            model_name=config.model_name,
            api_key=config.api_key,
            settings=context.settings,
        )
        LOGGER.info("LLM node %s invoking model %s", node.id, client.model_name)

        response = await call_model(
            client,
            seed_messages(state, config.instruction),
            node_label=f"LLM Node {node.id}",
        )
        value = NodeValue.from_content(response.content)
        return NodeOutcome(
            value=value,
            trace=[f"Result (LLM {node.id}): {value.preview(context.preview_chars)}"],
        )


class OutputHandler:
    async def execute(
        self,
        node: GraphNode,
        state: ExecutionState,
        context: HandlerContext,
    ) -> NodeOutcome:
        LOGGER.info("Reached output node %s", node.id)
        value = state.current_value
        return NodeOutcome(
            value=value,
            trace=[f"Output: {value.preview(context.preview_chars)}"],
            done=True,
        )


class PassthroughHandler:
    """Forwards the incoming value for node kinds the engine does not run."""

    async def execute(
        self,
        node: GraphNode,
        state: ExecutionState,
        context: HandlerContext,
    ) -> NodeOutcome:
        if node.type_name == COMPOSIO_NODE_TYPE:
            LOGGER.warning("Composio node %s has no sequential execution; skipping.", node.id)
            entry = f"Skipped (Composio {node.id}): Execution logic pending."
        else:
            LOGGER.warning("Unknown node type: %s. Skipping node %s.", node.type_name, node.id)
            entry = f"Skipped (Unknown Type {node.type_name} - {node.id})"
        return NodeOutcome(value=state.current_value, trace=[entry])

