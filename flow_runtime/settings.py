from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_OPENROUTER_MODEL = "openai/gpt-4o-mini"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama3.1:8b"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-sonnet-20240620"
DEFAULT_GOOGLE_MODEL = "gemini-1.5-pro-latest"
DEFAULT_AGENT_MAX_TURNS = 5
DEFAULT_TRACE_PREVIEW_CHARS = 100


@dataclass(slots=True)
class AppSettings:
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    openai_model: str = DEFAULT_OPENAI_MODEL
    openrouter_base_url: str = DEFAULT_OPENROUTER_BASE_URL
    openrouter_model: str = DEFAULT_OPENROUTER_MODEL
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    ollama_model: str = DEFAULT_OLLAMA_MODEL
    anthropic_model: str = DEFAULT_ANTHROPIC_MODEL
    google_model: str = DEFAULT_GOOGLE_MODEL
    llm_temperature: float = 0.7
    llm_request_timeout_seconds: int = 90
    llm_retry_attempts: int = 3
    llm_retry_backoff_seconds: float = 1.5
    agent_max_turns: int = DEFAULT_AGENT_MAX_TURNS
    tool_timeout_seconds: int = 45
    run_timeout_seconds: int = 0
    trace_preview_chars: int = DEFAULT_TRACE_PREVIEW_CHARS
    tool_server_url: str | None = None
    tool_server_transport: str = "streamable_http"
    tool_server_auth_header: str = "x-api-key"
    server_host: str = "127.0.0.1"
    server_port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])



def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default



def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _split_csv(raw: str | None, default: list[str]) -> list[str]:
    if not raw:
        return list(default)
    parts = [part.strip() for part in raw.split(",")]
    return [part for part in parts if part] or list(default)



def load_settings() -> AppSettings:
    load_dotenv()

    return AppSettings(
        openai_base_url=os.getenv("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL),
        openai_model=os.getenv("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
        openrouter_base_url=os.getenv("OPENROUTER_BASE_URL", DEFAULT_OPENROUTER_BASE_URL),
        openrouter_model=os.getenv("OPENROUTER_MODEL", DEFAULT_OPENROUTER_MODEL),
        ollama_base_url=os.getenv("OLLAMA_BASE_URL", DEFAULT_OLLAMA_BASE_URL),
        ollama_model=os.getenv("OLLAMA_MODEL", DEFAULT_OLLAMA_MODEL),
        anthropic_model=os.getenv("ANTHROPIC_MODEL", DEFAULT_ANTHROPIC_MODEL),
        google_model=os.getenv("GOOGLE_MODEL", DEFAULT_GOOGLE_MODEL),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        llm_request_timeout_seconds=_get_int("LLM_REQUEST_TIMEOUT_SECONDS", 90),
        llm_retry_attempts=max(1, _get_int("LLM_RETRY_ATTEMPTS", 3)),
        llm_retry_backoff_seconds=_get_float("LLM_RETRY_BACKOFF_SECONDS", 1.5),
        agent_max_turns=max(1, _get_int("AGENT_MAX_TURNS", DEFAULT_AGENT_MAX_TURNS)),
        tool_timeout_seconds=_get_int("TOOL_TIMEOUT_SECONDS", 45),
        run_timeout_seconds=max(0, _get_int("RUN_TIMEOUT_SECONDS", 0)),
        trace_preview_chars=max(1, _get_int("TRACE_PREVIEW_CHARS", DEFAULT_TRACE_PREVIEW_CHARS)),
        tool_server_url=os.getenv("TOOL_SERVER_URL") or None,
        tool_server_transport=os.getenv("TOOL_SERVER_TRANSPORT", "streamable_http"),
        tool_server_auth_header=os.getenv("TOOL_SERVER_AUTH_HEADER", "x-api-key"),
        server_host=os.getenv("SERVER_HOST", "127.0.0.1"),
        server_port=_get_int("SERVER_PORT", 8000),
        cors_origins=_split_csv(os.getenv("CORS_ORIGINS"), ["*"]),
    )
