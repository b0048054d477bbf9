from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from rich.console import Console
from rich.markdown import Markdown
from rich.rule import Rule

from flow_runtime.graph import GraphExecutionError, GraphExecutionResult, GraphExecutor
from flow_runtime.logging_utils import configure_logging
from flow_runtime.server import build_executor, create_app
from flow_runtime.settings import AppSettings, load_settings


LOGGER = logging.getLogger(__name__)


def load_graph_file(path: Path) -> dict:
    """Read a graph from disk.

    Accepts either the HTTP request body (``{"graphJson": {...}}``) or the bare
    ``{"nodes": [...], "edges": [...]}`` object the editor saves.
    """
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict) and isinstance(payload.get("graphJson"), dict):
        return payload["graphJson"]
    if not isinstance(payload, dict):
        raise ValueError(f"{path} does not contain a graph object.")
    return payload


class FlowRunnerCLI:
    def __init__(
        self,
        *,
        settings: AppSettings | None = None,
        executor: GraphExecutor | None = None,
        console: Console | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.executor = executor or build_executor(self.settings)
        self.console = console or Console()

    async def run_graph(self, path: Path) -> int:
        try:
            graph = load_graph_file(path)
        except (OSError, ValueError) as exc:
            self.console.print(f"[red]Could not read graph:[/red] {exc}")
            return 1

        try:
            result = await self.executor.arun(graph)
        except GraphExecutionError as exc:
            LOGGER.error("Graph run failed: %s", exc)
            self.console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
            return 1

        self.print_result(result)
        return 0

    def print_result(self, result: GraphExecutionResult) -> None:
        self.console.print(Rule("Steps"))
        for index, step in enumerate(result.steps, start=1):
            self.console.print(f"{index:>3}. {step}", markup=False, highlight=False)
        self.console.print(Rule("Response"))
        if result.cycle_detected:
            self.console.print(f"[yellow]{result.response}[/yellow]")
        else:
            self.console.print(Markdown(result.response))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flow-runtime", description="Run workflow graphs.")
    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run", help="Execute a graph JSON file and print its trace.")
    run_parser.add_argument("graph", type=Path, help="Path to the graph JSON file.")

    serve_parser = commands.add_parser("serve", help="Serve the HTTP API.")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    return parser


def _serve(settings: AppSettings, host: str | None, port: int | None) -> int:
    import uvicorn

    uvicorn.run(
        create_app(settings),
        host=host or settings.server_host,
        port=port or settings.server_port,
        log_config=None,
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging()
    settings = load_settings()

    if args.command == "serve":
        return _serve(settings, args.host, args.port)

    app = FlowRunnerCLI(settings=settings)
    try:
        return asyncio.run(app.run_graph(args.graph))
    except KeyboardInterrupt:
        app.console.print("\nInterrupted.")
        return 130


def run() -> None:
    sys.exit(main())
