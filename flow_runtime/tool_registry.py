from __future__ import annotations

import logging
from dataclasses import dataclass
from inspect import isawaitable
from typing import Any, Protocol, Sequence

from langchain_core.tools import BaseTool
from langchain_mcp_adapters.client import MultiServerMCPClient

from flow_runtime.settings import AppSettings


LOGGER = logging.getLogger(__name__)
TOOL_SERVER_NAME = "tools"


class ToolRegistryError(RuntimeError):
    """Raised when the allow-listed tools cannot be resolved."""


class ToolRegistry(Protocol):
    async def resolve(self, credential: str, allow_list: Sequence[str]) -> list[BaseTool]: ...


@dataclass(slots=True)
class ToolServerConfig:
    url: str | None
    transport: str = "streamable_http"
    auth_header: str = "x-api-key"

    @classmethod
    def from_settings(cls, settings: AppSettings) -> ToolServerConfig:
        return cls(
            url=settings.tool_server_url,
            transport=settings.tool_server_transport,
            auth_header=settings.tool_server_auth_header,
        )

    def to_connection_dict(self, credential: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "transport": self.transport,
            "url": self.url,
        }
        if credential:
            payload["headers"] = {self.auth_header: credential}
        return payload


def filter_allowed(tools: Sequence[BaseTool], allow_list: Sequence[str]) -> list[BaseTool]:
    wanted = {name.strip().casefold() for name in allow_list if name.strip()}
    selected = [tool for tool in tools if tool.name.casefold() in wanted]
    missing = wanted - {tool.name.casefold() for tool in selected}
    if missing:
        LOGGER.warning("Allow-listed tools not offered by the tool server: %s", ", ".join(sorted(missing)))
    return selected


class MCPToolRegistry:
    """Resolves an agent's allow-list against tools served over MCP."""

    def __init__(self, config: ToolServerConfig) -> None:
        self._config = config

    async def resolve(self, credential: str, allow_list: Sequence[str]) -> list[BaseTool]:
        if not self._config.url:
            raise ToolRegistryError("No tool server is configured (set TOOL_SERVER_URL).")

        client = MultiServerMCPClient({TOOL_SERVER_NAME: self._config.to_connection_dict(credential)})
        try:
            tools = await self._load_tools_for_client(client)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to load tools from %s: %s", TOOL_SERVER_NAME, exc)
            raise ToolRegistryError(str(exc)) from exc

        selected = filter_allowed(tools, allow_list)
        LOGGER.info("Resolved %s of %s requested tools.", len(selected), len(allow_list))
        return selected

    async def _load_tools_for_client(self, client: MultiServerMCPClient) -> list[BaseTool]:
        tools_or_awaitable = client.get_tools()
        if isawaitable(tools_or_awaitable):
            tools = await tools_or_awaitable
        else:
            tools = tools_or_awaitable
        return list(tools)


class StaticToolRegistry:
    """Serves a fixed tool set; used when tools live in-process."""

    def __init__(self, tools: Sequence[BaseTool], *, credential: str | None = None) -> None:
        self._tools = list(tools)
        self._credential = credential

    async def resolve(self, credential: str, allow_list: Sequence[str]) -> list[BaseTool]:
        if self._credential is not None and credential != self._credential:
            raise ToolRegistryError("Tool credential was rejected.")
        return filter_allowed(self._tools, allow_list)
