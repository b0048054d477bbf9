from __future__ import annotations

import asyncio
import logging
import re
from copy import deepcopy
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

import httpx
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.tools import BaseTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

from flow_runtime.settings import AppSettings


LOGGER = logging.getLogger(__name__)
INVALID_FUNCTION_NAME_PATTERN = re.compile(r"function ['\"]([^'\"]+)['\"]")
INVALID_TOOL_INDEX_PATTERN = re.compile(r"tools\[(\d+)\]")
NUMERIC_SCHEMA_KEYS = {
    "minimum",
    "maximum",
    "minLength",
    "maxLength",
    "minItems",
    "maxItems",
    "multipleOf",
    "minProperties",
    "maxProperties",
}
AUTH_ERROR_MARKERS = (
    "incorrect api key",
    "invalid api key",
    "invalid_api_key",
    "invalid x-api-key",
    "error code: 401",
    "api key not valid",
    "authentication_error",
)
OPENAI_COMPATIBLE_PROVIDERS = {"openai", "openrouter"}


class LLMCallError(RuntimeError):
    """Raised when the LLM call fails after retries."""


class LLMAuthenticationError(LLMCallError):
    """Raised when the provider rejects the configured credential."""


class LLMToolUnsupportedError(LLMCallError):
    """Raised when the configured model does not support tool calling."""


class LLMClient(Protocol):
    @property
    def model_name(self) -> str: ...

    async def invoke(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[BaseTool] | None = None,
    ) -> AIMessage: ...


LLMClientFactory = Callable[..., LLMClient]


@dataclass(slots=True)
class OllamaLLMConfig:
    base_url: str
    model: str
    api_key: str | None = None
    temperature: float = 0.7
    timeout_seconds: int = 90
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.5


@dataclass(slots=True)
class OpenAILLMConfig:
    api_key: str
    model: str
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.7
    timeout_seconds: int = 90
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.5


@dataclass(slots=True)
class HostedLLMConfig:
    api_key: str
    model: str
    temperature: float = 0.7
    timeout_seconds: int = 90
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.5


def extract_text_content(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return ""


def is_authentication_error(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if status == 401:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in AUTH_ERROR_MARKERS)


async def _invoke_with_retry(
    *,
    model: object,
    messages: Sequence[BaseMessage],
    timeout_seconds: float,
    retry_attempts: int,
    retry_backoff_seconds: float,
    on_error: Callable[[Exception], bool] | None = None,
) -> AIMessage:
    last_error: Exception | None = None

    for attempt in range(1, retry_attempts + 1):
        try:
            response = await asyncio.wait_for(
                model.ainvoke(list(messages)),
                timeout=timeout_seconds,
            )
            if not isinstance(response, AIMessage):
                raise LLMCallError(
                    f"Unexpected response type from LLM: {type(response).__name__}"
                )
            return response
        except LLMCallError:
            raise
        except Exception as exc:  # noqa: BLE001
            if is_authentication_error(exc):
                raise LLMAuthenticationError(str(exc)) from exc
            if on_error is not None and on_error(exc):
                raise
            last_error = exc
            if attempt >= retry_attempts:
                break
            delay = retry_backoff_seconds * attempt
            LOGGER.debug(
                "LLM call attempt %s/%s failed (%s). Retrying in %.1fs",
                attempt,
                retry_attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)

    if isinstance(last_error, TimeoutError):
        raise LLMCallError(f"LLM call timed out after {timeout_seconds:.1f}s.")
    raise LLMCallError(f"LLM call failed after retries: {last_error}")


class OllamaLLMClient:
    """LangChain LLM wrapper around Ollama chat API with retry controls."""

    def __init__(self, config: OllamaLLMConfig) -> None:
        self._config = config
        self._tool_support_known: bool | None = None
        client_kwargs: dict[str, object] = {"timeout": config.timeout_seconds}
        if config.api_key:
            client_kwargs["headers"] = {"Authorization": f"Bearer {config.api_key}"}
        self._base_model = ChatOllama(
            base_url=config.base_url,
            model=config.model,
            temperature=config.temperature,
            client_kwargs=client_kwargs,
        )

    @property
    def model_name(self) -> str:
        return self._config.model

    async def invoke(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[BaseTool] | None = None,
    ) -> AIMessage:
        if tools and self._tool_support_known is False:
            raise LLMToolUnsupportedError(
                f"Model '{self._config.model}' does not support tool calling."
            )

        model = self._base_model.bind_tools(tools) if tools else self._base_model

        def _on_error(exc: Exception) -> bool:
            if tools and self._is_tool_unsupported_error(exc):
                self._tool_support_known = False
                return True
            return False

        try:
            response = await _invoke_with_retry(
                model=model,
                messages=messages,
                timeout_seconds=float(self._config.timeout_seconds),
                retry_attempts=self._config.retry_attempts,
                retry_backoff_seconds=self._config.retry_backoff_seconds,
                on_error=_on_error,
            )
        except LLMCallError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise LLMToolUnsupportedError(str(exc)) from exc

        if tools:
            self._tool_support_known = True
        return response

    def _is_tool_unsupported_error(self, exc: Exception) -> bool:
        text = str(exc).lower()
        return "does not support tools" in text or "tool calling is not supported" in text


class OpenAILLMClient:
    """LangChain LLM wrapper around OpenAI-compatible chat APIs with retry controls."""

    def __init__(self, config: OpenAILLMConfig) -> None:
        self._config = config
        self._base_model = ChatOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            model=config.model,
            temperature=config.temperature,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    @property
    def model_name(self) -> str:
        return self._config.model

    async def invoke(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[BaseTool] | None = None,
    ) -> AIMessage:
        tool_definitions = self._prepare_openai_tools(tools or []) if tools else []

        while True:
            model = (
                self._base_model.bind_tools(tool_definitions)
                if tool_definitions
                else self._base_model
            )
            try:
                return await _invoke_with_retry(
                    model=model,
                    messages=messages,
                    timeout_seconds=float(self._config.timeout_seconds),
                    retry_attempts=self._config.retry_attempts,
                    retry_backoff_seconds=self._config.retry_backoff_seconds,
                    on_error=self._is_invalid_tool_schema_error if tool_definitions else None,
                )
            except LLMCallError:
                raise
            except Exception as exc:  # noqa: BLE001
                reduced = self._drop_incompatible_tool(tool_definitions, exc)
                if reduced is None or len(reduced) >= len(tool_definitions):
                    raise LLMCallError(f"LLM rejected tool definitions: {exc}") from exc
                LOGGER.warning(
                    "Dropping a tool definition rejected by %s: %s",
                    self._config.model,
                    exc,
                )
                tool_definitions = reduced

    def _prepare_openai_tools(self, tools: Sequence[BaseTool]) -> list[dict]:
        prepared: list[dict] = []
        for tool in tools:
            try:
                definition = convert_to_openai_tool(tool)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Skipping tool '%s' without an OpenAI schema", tool.name, exc_info=True)
                continue

            if not isinstance(definition, dict):
                continue

            normalized = deepcopy(definition)
            function_data = normalized.get("function")
            if isinstance(function_data, dict):
                parameters = function_data.get("parameters")
                if isinstance(parameters, dict):
                    function_data["parameters"] = self._migrate_json_schema(parameters)
            prepared.append(normalized)
        return prepared

    def _migrate_json_schema(self, node: object) -> object:
        if isinstance(node, dict):
            updated = {key: self._migrate_json_schema(value) for key, value in node.items()}

            for key in NUMERIC_SCHEMA_KEYS:
                value = updated.get(key)
                if isinstance(value, bool):
                    updated.pop(key, None)

            for exclusive_key, bound_key in (
                ("exclusiveMinimum", "minimum"),
                ("exclusiveMaximum", "maximum"),
            ):
                exclusive = updated.get(exclusive_key)
                bound = updated.get(bound_key)
                if isinstance(exclusive, bool):
                    if exclusive and self._is_json_number(bound):
                        updated[exclusive_key] = bound
                        updated.pop(bound_key, None)
                    else:
                        updated.pop(exclusive_key, None)

            return updated

        if isinstance(node, list):
            return [self._migrate_json_schema(item) for item in node]

        return node

    def _is_json_number(self, value: object) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    def _is_invalid_tool_schema_error(self, exc: Exception) -> bool:
        text = str(exc).lower()
        return "invalid_function_parameters" in text or "invalid schema for function" in text

    def _drop_incompatible_tool(self, definitions: list[dict], exc: Exception) -> list[dict] | None:
        message = str(exc)
        name_match = INVALID_FUNCTION_NAME_PATTERN.search(message)
        if name_match:
            bad_name = name_match.group(1)
            reduced = [
                tool
                for tool in definitions
                if isinstance(tool.get("function"), dict)
                and tool["function"].get("name") != bad_name
            ]
            if len(reduced) < len(definitions):
                return reduced

        index_match = INVALID_TOOL_INDEX_PATTERN.search(message)
        if index_match:
            index = int(index_match.group(1))
            if 0 <= index < len(definitions):
                return [tool for i, tool in enumerate(definitions) if i != index]

        return None


class AnthropicLLMClient:
    """LangChain LLM wrapper around the Anthropic Messages API with retry controls."""

    def __init__(self, config: HostedLLMConfig) -> None:
        self._config = config
        self._base_model = ChatAnthropic(
            api_key=config.api_key,
            model=config.model,
            temperature=config.temperature,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    @property
    def model_name(self) -> str:
        return self._config.model

    async def invoke(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[BaseTool] | None = None,
    ) -> AIMessage:
        model = self._base_model.bind_tools(list(tools)) if tools else self._base_model
        return await _invoke_with_retry(
            model=model,
            messages=messages,
            timeout_seconds=float(self._config.timeout_seconds),
            retry_attempts=self._config.retry_attempts,
            retry_backoff_seconds=self._config.retry_backoff_seconds,
        )


class GoogleLLMClient:
    """LangChain LLM wrapper around Gemini models with retry controls."""

    def __init__(self, config: HostedLLMConfig) -> None:
        self._config = config
        self._base_model = ChatGoogleGenerativeAI(
            google_api_key=config.api_key,
            model=config.model,
            temperature=config.temperature,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    @property
    def model_name(self) -> str:
        return self._config.model

    async def invoke(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[BaseTool] | None = None,
    ) -> AIMessage:
        model = self._base_model.bind_tools(list(tools)) if tools else self._base_model
        return await _invoke_with_retry(
            model=model,
            messages=messages,
            timeout_seconds=float(self._config.timeout_seconds),
            retry_attempts=self._config.retry_attempts,
            retry_backoff_seconds=self._config.retry_backoff_seconds,
        )


def _hosted_config(api_key: str, model: str, settings: AppSettings) -> HostedLLMConfig:
    return HostedLLMConfig(
        api_key=api_key,
        model=model,
        temperature=settings.llm_temperature,
        timeout_seconds=settings.llm_request_timeout_seconds,
        retry_attempts=settings.llm_retry_attempts,
        retry_backoff_seconds=settings.llm_retry_backoff_seconds,
    )


def create_llm_client(
    *,
    provider: str | None,
    model_name: str | None,
    api_key: str,
    settings: AppSettings,
) -> LLMClient:
    """Build the chat client for a node's provider selector.

    Unknown providers fall back to OpenAI, matching how the editor treats an
    unset selector.
    """
    normalized = (provider or "openai").strip().lower()

    if normalized == "anthropic":
        return AnthropicLLMClient(_hosted_config(api_key, model_name or settings.anthropic_model, settings))

    if normalized == "google":
        return GoogleLLMClient(_hosted_config(api_key, model_name or settings.google_model, settings))

    if normalized == "ollama":
        return OllamaLLMClient(
            OllamaLLMConfig(
                base_url=settings.ollama_base_url,
                model=model_name or settings.ollama_model,
                api_key=api_key,
                temperature=settings.llm_temperature,
                timeout_seconds=settings.llm_request_timeout_seconds,
                retry_attempts=settings.llm_retry_attempts,
                retry_backoff_seconds=settings.llm_retry_backoff_seconds,
            )
        )

    if normalized == "openrouter":
        base_url = settings.openrouter_base_url
        default_model = settings.openrouter_model
    else:
        if normalized not in OPENAI_COMPATIBLE_PROVIDERS:
            LOGGER.warning("Unsupported model provider '%s'; using OpenAI.", normalized)
        base_url = settings.openai_base_url
        default_model = settings.openai_model

    return OpenAILLMClient(
        OpenAILLMConfig(
            api_key=api_key,
            model=model_name or default_model,
            base_url=base_url,
            temperature=settings.llm_temperature,
            timeout_seconds=settings.llm_request_timeout_seconds,
            retry_attempts=settings.llm_retry_attempts,
            retry_backoff_seconds=settings.llm_retry_backoff_seconds,
        )
    )
