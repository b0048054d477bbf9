from __future__ import annotations

import unittest

from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage

from flow_runtime.graph import GraphExecutor
from flow_runtime.llm_client import LLMAuthenticationError
from flow_runtime.server import create_app
from flow_runtime.settings import AppSettings


class _StubLLM:
    def __init__(self, outcome: object) -> None:
        self._outcome = outcome

    @property
    def model_name(self) -> str:
        return "stub"

    async def invoke(self, messages, tools=None) -> AIMessage:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return AIMessage(content=str(self._outcome))


def _client(outcome: object = "Summarized.") -> TestClient:
    settings = AppSettings()
    llm = _StubLLM(outcome)
    executor = GraphExecutor(settings=settings, client_factory=lambda **_: llm)
    return TestClient(create_app(settings=settings, executor=executor))


def _body(*, api_key: str = "sk-test", query: str = "summarize this") -> dict:
    return {
        "graphJson": {
            "nodes": [
                {"id": "in", "type": "customInput", "position": {"x": 0, "y": 0}, "data": {"query": query}},
                {
                    "id": "llm",
                    "type": "llm",
                    "data": {"apiKey": api_key, "modelProvider": "openai", "modelName": "gpt-4o-mini"},
                },
                {"id": "out", "type": "customOutput", "data": {}},
            ],
            "edges": [
                {"id": "e1", "source": "in", "target": "llm"},
                {"id": "e2", "source": "llm", "target": "out"},
            ],
        }
    }


class AgentEndpointTests(unittest.TestCase):
    def test_successful_run(self) -> None:
        response = _client().post("/api/agent", json=_body())

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["response"], "Summarized.")
        self.assertEqual(payload["steps"][0], 'Start: Initial query = "summarize this"')
        self.assertEqual(payload["steps"][-1], "Output: Summarized.")

    def test_missing_graph_field_is_bad_request(self) -> None:
        response = _client().post("/api/agent", json={"graph": {}})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "Invalid request body")

    def test_missing_input_node_is_configuration_error(self) -> None:
        response = _client().post("/api/agent", json={"graphJson": {"nodes": [], "edges": []}})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json()["error"],
            "Configuration Error: Graph must contain a 'customInput' node.",
        )

    def test_missing_model_credential_is_configuration_error(self) -> None:
        response = _client().post("/api/agent", json=_body(api_key=""))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "Configuration Error: LLM Node llm requires an apiKey.")

    def test_rejected_credential_is_unauthorized(self) -> None:
        response = _client(LLMAuthenticationError("Incorrect API key provided")).post("/api/agent", json=_body())

        self.assertEqual(response.status_code, 401)
        self.assertTrue(response.json()["error"].startswith("Authentication Error: "))

    def test_unexpected_failure_is_server_error(self) -> None:
        response = _client(RuntimeError("provider down")).post("/api/agent", json=_body())

        self.assertEqual(response.status_code, 500)
        error = response.json()["error"]
        self.assertTrue(error.startswith("Internal Server Error: "))
        self.assertIn("provider down", error)

    def test_cycle_is_a_normal_response(self) -> None:
        body = _body()
        body["graphJson"]["edges"][1] = {"id": "e2", "source": "llm", "target": "in"}

        response = _client().post("/api/agent", json=body)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["response"], "Error: Infinite loop detected")


class HealthTests(unittest.TestCase):
    def test_root_reports_status(self) -> None:
        response = _client().get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertEqual(response.json()["endpoints"]["agent"], "/api/agent")


if __name__ == "__main__":
    unittest.main()
