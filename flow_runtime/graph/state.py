from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Iterable

from flow_runtime.llm_client import extract_text_content


TEXT_VALUE = "text"
STRUCTURED_VALUE = "structured"


@dataclass(frozen=True, slots=True)
class NodeValue:
    """Value passed from one node to the next, tagged with its variant."""

    kind: str
    text: str = ""
    data: object = None

    @classmethod
    def of_text(cls, text: str) -> NodeValue:
        return cls(kind=TEXT_VALUE, text=text)

    @classmethod
    def of_data(cls, data: object) -> NodeValue:
        return cls(kind=STRUCTURED_VALUE, data=data)

    @classmethod
    def from_content(cls, content: object) -> NodeValue:
        if isinstance(content, str):
            return cls.of_text(content)
        text = extract_text_content(content)
        if text:
            return cls.of_text(text)
        if content is None:
            return cls.of_text("")
        return cls.of_data(content)

    @property
    def is_text(self) -> bool:
        return self.kind == TEXT_VALUE

    def as_text(self) -> str:
        if self.is_text:
            return self.text
        return render_payload(self.data)

    def preview(self, limit: int) -> str:
        return preview_text(self.as_text(), limit)


def render_payload(value: object) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def preview_text(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class TraceLog:
    """Append-only, ordered list of human-readable step descriptions."""

    def __init__(self, entries: Iterable[str] | None = None) -> None:
        self._entries: list[str] = list(entries or [])

    def append(self, entry: str) -> None:
        self._entries.append(entry)

    def extend(self, entries: Iterable[str]) -> None:
        self._entries.extend(entries)

    def entries(self) -> list[str]:
        return list(self._entries)


@dataclass(slots=True)
class NodeOutcome:
    value: NodeValue
    trace: list[str] = field(default_factory=list)
    done: bool = False


@dataclass(slots=True)
class ExecutionState:
    original_query: str
    current_value: NodeValue
    current_node_id: str | None
    visited: set[str] = field(default_factory=set)
    trace: TraceLog = field(default_factory=TraceLog)
    done: bool = False

    @classmethod
    def start(cls, *, query: str, input_node_id: str) -> ExecutionState:
        state = cls(
            original_query=query,
            current_value=NodeValue.of_text(query),
            current_node_id=input_node_id,
        )
        state.trace.append(f'Start: Initial query = "{query}"')
        return state

    def apply(self, outcome: NodeOutcome) -> None:
        self.current_value = outcome.value
        self.trace.extend(outcome.trace)
        if outcome.done:
            self.done = True
