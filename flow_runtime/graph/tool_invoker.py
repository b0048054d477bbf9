from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Sequence

from langchain_core.messages import AIMessage, ToolMessage
from langchain_core.tools import BaseTool

from flow_runtime.graph.errors import GraphExecutionError


LOGGER = logging.getLogger(__name__)

ERROR_NOT_FOUND = "not_found"
ERROR_ARGUMENTS = "arguments"
ERROR_EXECUTION = "execution"


class ToolArgumentsError(ValueError):
    """Raised when a tool call carries arguments that are not a JSON object."""


class ToolNotFoundError(LookupError):
    """Raised when a tool call names a tool outside the resolved set."""


class ToolInvocationError(RuntimeError):
    """Raised when the tool itself fails or times out."""


class ToolCorrelationError(GraphExecutionError):
    """Raised when a dispatched batch does not answer every call id exactly once."""


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    id: str
    tool_name: str
    raw_arguments: str


@dataclass(frozen=True, slots=True)
class ToolResult:
    call_id: str
    tool_name: str
    content: str
    is_error: bool = False
    error_kind: str | None = None
    detail: str = ""


def tool_calls_from_message(message: AIMessage, *, id_prefix: str = "call") -> list[ToolCallRecord]:
    """Collect every tool call a model response requested, parsed or not.

    Calls whose arguments the provider could not parse arrive in
    ``invalid_tool_calls`` with the raw argument string; they are kept so
    each one still gets a correlated error response.
    """
    records: list[ToolCallRecord] = []

    for call in message.tool_calls or []:
        args = call.get("args")
        raw = json.dumps(args, ensure_ascii=False) if args is not None else "{}"
        records.append(
            ToolCallRecord(
                id=call.get("id") or f"{id_prefix}_{len(records)}",
                tool_name=str(call.get("name") or ""),
                raw_arguments=raw,
            )
        )

    for call in getattr(message, "invalid_tool_calls", None) or []:
        raw_args = call.get("args")
        records.append(
            ToolCallRecord(
                id=call.get("id") or f"{id_prefix}_{len(records)}",
                tool_name=str(call.get("name") or ""),
                raw_arguments=raw_args if isinstance(raw_args, str) else "",
            )
        )

    return records


def parse_tool_arguments(raw: str) -> dict[str, object]:
    text = raw.strip() or "{}"
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolArgumentsError(f"Invalid arguments format: {raw}") from exc
    if not isinstance(payload, dict):
        raise ToolArgumentsError(f"Invalid arguments format: {raw}")
    return payload


def stringify_tool_output(result: object) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        return str(result)


class ToolInvoker:
    """Runs model-requested tool calls against a resolved tool set."""

    def __init__(self, tools: Sequence[BaseTool], *, timeout_seconds: float = 45.0) -> None:
        self._tools = {tool.name: tool for tool in tools}
        self._timeout_seconds = max(1.0, float(timeout_seconds))

    def has_tools(self) -> bool:
        return bool(self._tools)

    async def invoke(self, call: ToolCallRecord) -> ToolResult:
        try:
            tool = self._lookup(call.tool_name)
            arguments = parse_tool_arguments(call.raw_arguments)
            output = await self._run(tool, arguments)
        except ToolNotFoundError:
            LOGGER.warning("Tool %s requested but not resolved.", call.tool_name)
            return ToolResult(
                call_id=call.id,
                tool_name=call.tool_name,
                content=f'Error: Tool "{call.tool_name}" not found.',
                is_error=True,
                error_kind=ERROR_NOT_FOUND,
            )
        except ToolArgumentsError as exc:
            LOGGER.warning("Failed to parse args for %s: %s", call.tool_name, exc)
            return self._error_result(call, ERROR_ARGUMENTS, str(exc))
        except ToolInvocationError as exc:
            LOGGER.error("Tool call failed: %s (%s)", call.tool_name, exc)
            return self._error_result(call, ERROR_EXECUTION, str(exc))

        return ToolResult(
            call_id=call.id,
            tool_name=call.tool_name,
            content=stringify_tool_output(output),
        )

    async def dispatch(self, calls: Sequence[ToolCallRecord]) -> dict[str, ToolResult]:
        """Start every call at once and return only when all have resolved."""
        counts = Counter(call.id for call in calls)
        duplicates = sorted(call_id for call_id, count in counts.items() if count > 1)
        if duplicates:
            raise ToolCorrelationError(f"Tool calls share an id: {', '.join(duplicates)}")

        results = await asyncio.gather(*(self.invoke(call) for call in calls))
        by_id = {result.call_id: result for result in results}

        missing = [call.id for call in calls if call.id not in by_id]
        if missing:
            raise ToolCorrelationError(
                f"Tool calls finished without a correlated result: {', '.join(missing)}"
            )
        return by_id

    def _lookup(self, tool_name: str) -> BaseTool:
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolNotFoundError(tool_name)
        return tool

    async def _run(self, tool: BaseTool, arguments: dict[str, object]) -> object:
        try:
            return await asyncio.wait_for(tool.ainvoke(arguments), timeout=self._timeout_seconds)
        except TimeoutError as exc:
            raise ToolInvocationError(
                f"Tool '{tool.name}' timed out after {self._timeout_seconds:.1f}s."
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise ToolInvocationError(str(exc) or type(exc).__name__) from exc

    def _error_result(self, call: ToolCallRecord, error_kind: str, detail: str) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            tool_name=call.tool_name,
            content=f"Error executing tool: {detail}",
            is_error=True,
            error_kind=error_kind,
            detail=detail,
        )


def tool_messages_for(
    calls: Sequence[ToolCallRecord],
    results: dict[str, ToolResult],
) -> list[ToolMessage]:
    messages: list[ToolMessage] = []
    for call in calls:
        result = results.get(call.id)
        if result is None:
            raise ToolCorrelationError(f"Tool call '{call.id}' has no result.")
        messages.append(
            ToolMessage(
                tool_call_id=call.id,
                content=result.content,
                name=call.tool_name,
                status="error" if result.is_error else "success",
            )
        )
    return messages
