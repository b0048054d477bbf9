from __future__ import annotations

import asyncio
import unittest
from typing import Any

from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from langchain_core.tools import BaseTool
from pydantic import BaseModel

from flow_runtime.graph import AgentNodeHandler, ConfigurationError, GraphExecutor, extend_history
from flow_runtime.settings import AppSettings
from flow_runtime.tool_registry import StaticToolRegistry, ToolRegistryError


class _EchoArgs(BaseModel):
    text: str


class _NoArgs(BaseModel):
    pass


class _EchoTool(BaseTool):
    name: str = "echo"
    description: str = "Echo text back."
    args_schema: type[BaseModel] = _EchoArgs

    def _run(self, text: str, **kwargs: Any) -> str:
        return f"echo:{text}"

    async def _arun(self, text: str, **kwargs: Any) -> str:
        return f"echo:{text}"


class _SilentTool(BaseTool):
    name: str = "silent"
    description: str = "Returns nothing."
    args_schema: type[BaseModel] = _NoArgs

    def _run(self, **kwargs: Any) -> str:
        return ""

    async def _arun(self, **kwargs: Any) -> str:
        return ""


class _BrokenTool(BaseTool):
    name: str = "broken"
    description: str = "Always fails."
    args_schema: type[BaseModel] = _NoArgs

    def _run(self, **kwargs: Any) -> str:
        raise RuntimeError("backend unavailable")

    async def _arun(self, **kwargs: Any) -> str:
        raise RuntimeError("backend unavailable")


class _Rendezvous:
    def __init__(self, parties: int) -> None:
        self.parties = parties
        self.arrived = 0
        self.event = asyncio.Event()

    async def arrive(self) -> None:
        self.arrived += 1
        if self.arrived >= self.parties:
            self.event.set()
        await asyncio.wait_for(self.event.wait(), timeout=2)


class _MeetTool(BaseTool):
    """Only finishes once every sibling call has started."""

    description: str = "Waits for siblings."
    args_schema: type[BaseModel] = _NoArgs
    rendezvous: Any = None

    def _run(self, **kwargs: Any) -> str:
        raise NotImplementedError

    async def _arun(self, **kwargs: Any) -> str:
        await self.rendezvous.arrive()
        return f"{self.name} done"


class _ScriptedLLM:
    def __init__(self, *responses: object) -> None:
        self._responses = list(responses)
        self.calls: list[list] = []
        self.tool_names: list[list[str]] = []

    @property
    def model_name(self) -> str:
        return "scripted"

    async def invoke(self, messages, tools=None) -> AIMessage:
        self.calls.append(list(messages))
        self.tool_names.append([tool.name for tool in tools or []])
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if callable(item):
            item = item(len(self.calls))
        if isinstance(item, AIMessage):
            return item
        return AIMessage(content=str(item))


class _FailingRegistry:
    async def resolve(self, credential, allow_list):
        raise ToolRegistryError("tool server unreachable")


def _call(name: str, call_id: str, **args: Any) -> dict:
    return {"name": name, "args": args, "id": call_id, "type": "tool_call"}


def _agent_graph(**data: Any) -> dict:
    agent_data = {
        "llmApiKey": "sk-test",
        "composioApiKey": "tool-key",
        "allowedTools": "echo,broken,silent,left,right",
        "modelProvider": "openai",
        "modelName": "gpt-4o-mini",
        "systemPrompt": "Use tools when helpful.",
    }
    agent_data.update(data)
    return {
        "nodes": [
            {"id": "in", "type": "customInput", "data": {"query": "star the repo"}},
            {"id": "agent", "type": "agent", "data": agent_data},
            {"id": "out", "type": "customOutput", "data": {}},
        ],
        "edges": [
            {"id": "e1", "source": "in", "target": "agent"},
            {"id": "e2", "source": "agent", "target": "out"},
        ],
    }


def _executor(llm: _ScriptedLLM, *, tools=None, registry=None, settings=None) -> GraphExecutor:
    if registry is None:
        registry = StaticToolRegistry(tools if tools is not None else [_EchoTool()])
    return GraphExecutor(
        settings=settings or AppSettings(),
        client_factory=lambda **_: llm,
        tool_registry=registry,
    )


def _tool_messages(messages: list) -> dict[str, ToolMessage]:
    return {message.tool_call_id: message for message in messages if isinstance(message, ToolMessage)}


class AgentLoopTests(unittest.TestCase):
    def test_final_answer_without_tool_calls(self) -> None:
        llm = _ScriptedLLM("Repository starred.")
        result = _executor(llm).run(_agent_graph())

        self.assertEqual(result.response, "Repository starred.")
        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(llm.tool_names[0], ["echo"])
        self.assertIn("Agent agent Turn 1: Calling LLM", result.steps)
        self.assertIn("Result (Agent agent): Repository starred.", result.steps)

    def test_tool_result_is_fed_back_to_the_model(self) -> None:
        llm = _ScriptedLLM(
            AIMessage(content="", tool_calls=[_call("echo", "call_a", text="ping")]),
            "pong",
        )
        result = _executor(llm).run(_agent_graph())

        self.assertEqual(result.response, "pong")
        self.assertEqual(len(llm.calls), 2)
        second_turn = llm.calls[1]
        self.assertIsInstance(second_turn[-2], AIMessage)
        self.assertEqual(second_turn[-1].tool_call_id, "call_a")
        self.assertEqual(second_turn[-1].content, "echo:ping")
        self.assertIn("Agent agent Turn 1: LLM requested tools: echo", result.steps)
        self.assertIn("Agent agent Turn 1: Executed echo. Result: echo:ping", result.steps)
        self.assertIn("Agent agent Turn 2: Calling LLM", result.steps)

    def test_turns_are_capped_at_five(self) -> None:
        llm = _ScriptedLLM(
            lambda n: AIMessage(content="", tool_calls=[_call("echo", f"call_{n}", text=str(n))])
        )
        result = _executor(llm).run(_agent_graph())

        self.assertEqual(len(llm.calls), 5)
        self.assertIn("Warning (Agent agent): Reached max iterations after tool calls.", result.steps)
        self.assertEqual(result.response, "echo:5")
        self.assertNotIn("Agent agent Turn 6: Calling LLM", result.steps)

    def test_turn_cap_follows_settings(self) -> None:
        llm = _ScriptedLLM(
            lambda n: AIMessage(content="", tool_calls=[_call("echo", f"call_{n}", text="x")])
        )
        _executor(llm, settings=AppSettings(agent_max_turns=2)).run(_agent_graph())
        self.assertEqual(len(llm.calls), 2)

    def test_max_turn_fallback_when_last_message_is_empty(self) -> None:
        llm = _ScriptedLLM(
            lambda n: AIMessage(content="", tool_calls=[_call("silent", f"call_{n}")])
        )
        result = _executor(llm, tools=[_SilentTool()]).run(_agent_graph())
        self.assertEqual(result.response, "Agent reached max iterations (5).")

    def test_mixed_batch_is_answered_per_call_id(self) -> None:
        llm = _ScriptedLLM(
            AIMessage(
                content="",
                tool_calls=[
                    _call("missing_tool", "call_missing"),
                    _call("echo", "call_echo", text="ok"),
                    _call("broken", "call_broken"),
                ],
            ),
            "done",
        )
        result = _executor(llm, tools=[_EchoTool(), _BrokenTool()]).run(_agent_graph())

        self.assertEqual(result.response, "done")
        replies = _tool_messages(llm.calls[1])
        self.assertEqual(set(replies), {"call_missing", "call_echo", "call_broken"})
        self.assertEqual(replies["call_missing"].content, 'Error: Tool "missing_tool" not found.')
        self.assertEqual(replies["call_missing"].status, "error")
        self.assertEqual(replies["call_echo"].content, "echo:ok")
        self.assertEqual(replies["call_echo"].status, "success")
        self.assertEqual(replies["call_broken"].content, "Error executing tool: backend unavailable")

        self.assertIn("Agent agent Turn 1: Tool missing_tool not found.", result.steps)
        self.assertIn("Agent agent Turn 1: Error executing broken: backend unavailable", result.steps)

    def test_malformed_arguments_do_not_block_siblings(self) -> None:
        llm = _ScriptedLLM(
            AIMessage(
                content="",
                tool_calls=[_call("echo", "call_good", text="fine")],
                invalid_tool_calls=[
                    {
                        "name": "echo",
                        "args": "{not json",
                        "id": "call_bad",
                        "error": "could not parse",
                        "type": "invalid_tool_call",
                    }
                ],
            ),
            "finished",
        )
        result = _executor(llm).run(_agent_graph())

        replies = _tool_messages(llm.calls[1])
        self.assertEqual(replies["call_good"].content, "echo:fine")
        self.assertEqual(replies["call_bad"].content, "Error executing tool: Invalid arguments format: {not json")
        self.assertEqual(result.response, "finished")

    def test_tool_calls_in_one_turn_run_concurrently(self) -> None:
        rendezvous = _Rendezvous(parties=2)
        tools = [
            _MeetTool(name="left", rendezvous=rendezvous),
            _MeetTool(name="right", rendezvous=rendezvous),
        ]
        llm = _ScriptedLLM(
            AIMessage(content="", tool_calls=[_call("left", "call_l"), _call("right", "call_r")]),
            "both finished",
        )
        result = _executor(llm, tools=tools).run(_agent_graph())

        replies = _tool_messages(llm.calls[1])
        self.assertEqual(replies["call_l"].content, "left done")
        self.assertEqual(replies["call_r"].content, "right done")
        self.assertEqual(result.response, "both finished")

    def test_tool_loading_failure_is_only_a_warning(self) -> None:
        llm = _ScriptedLLM("answered without tools")
        result = _executor(llm, registry=_FailingRegistry()).run(_agent_graph())

        self.assertEqual(result.response, "answered without tools")
        self.assertIn(
            "Warning (Agent agent): Failed to load tools - tool server unreachable",
            result.steps,
        )
        self.assertEqual(llm.tool_names[0], [])

    def test_tool_calls_without_resolved_tools_end_the_loop(self) -> None:
        llm = _ScriptedLLM(
            AIMessage(content="I would call a tool", tool_calls=[_call("echo", "call_x", text="a")])
        )
        result = _executor(llm).run(_agent_graph(composioApiKey=""))

        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(result.response, "I would call a tool")

    def test_allow_list_limits_offered_tools(self) -> None:
        llm = _ScriptedLLM("ok")
        _executor(llm, tools=[_EchoTool(), _BrokenTool()]).run(_agent_graph(allowedTools="ECHO"))
        self.assertEqual(llm.tool_names[0], ["echo"])

    def test_agent_without_model_credential(self) -> None:
        with self.assertRaisesRegex(ConfigurationError, "Agent Node agent requires an llmApiKey"):
            _executor(_ScriptedLLM("unused")).run(_agent_graph(llmApiKey=""))

    def test_handler_enforces_at_least_one_turn(self) -> None:
        self.assertEqual(AgentNodeHandler(max_turns=0).max_turns, 1)


class ExtendHistoryTests(unittest.TestCase):
    def test_extend_history_leaves_inputs_untouched(self) -> None:
        history = [HumanMessage(content="a")]
        update = [AIMessage(content="b")]

        combined = extend_history(history, update)

        self.assertEqual([m.content for m in combined], ["a", "b"])
        self.assertEqual(len(history), 1)
        self.assertEqual(len(update), 1)
        self.assertIsNot(combined, history)


if __name__ == "__main__":
    unittest.main()
