"""FastAPI application exposing graph execution over HTTP."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from flow_runtime import __version__
from flow_runtime.graph import (
    AuthenticationError,
    ConfigurationError,
    GraphExecutor,
    GraphStructureError,
)
from flow_runtime.settings import AppSettings, load_settings
from flow_runtime.tool_registry import MCPToolRegistry, ToolServerConfig


LOGGER = logging.getLogger(__name__)

router = APIRouter()


class GraphPayload(BaseModel):
    """Node and edge arrays as saved by the editor."""

    nodes: list[Any]
    edges: list[Any]


class AgentRunRequest(BaseModel):
    graphJson: GraphPayload


class AgentRunResponse(BaseModel):
    response: str
    steps: list[str]


def build_executor(settings: AppSettings) -> GraphExecutor:
    return GraphExecutor(
        settings=settings,
        tool_registry=MCPToolRegistry(ToolServerConfig.from_settings(settings)),
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/agent", response_model=AgentRunResponse)
async def run_agent(body: AgentRunRequest, request: Request):
    """Execute the posted graph and return its final value and steps."""
    executor: GraphExecutor = request.app.state.executor
    try:
        result = await executor.arun(body.graphJson.model_dump())
    except (ConfigurationError, GraphStructureError) as exc:
        LOGGER.warning("Rejected graph run: %s", exc)
        return _error(400, f"Configuration Error: {exc}")
    except AuthenticationError as exc:
        LOGGER.warning("Model provider rejected credentials: %s", exc)
        return _error(401, f"Authentication Error: {exc}")
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Error running agent")
        return _error(500, f"Internal Server Error: {exc}")

    return AgentRunResponse(**result.to_payload())


async def _invalid_body_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())},
    )


def create_app(
    settings: AppSettings | None = None,
    executor: GraphExecutor | None = None,
) -> FastAPI:
    active_settings = settings or load_settings()

    app = FastAPI(
        title="Flow Runtime API",
        description="Executes node graphs built in the workflow editor",
        version=__version__,
    )
    app.state.settings = active_settings
    app.state.executor = executor or build_executor(active_settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=active_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, _invalid_body_handler)
    app.include_router(router, prefix="/api")

    @app.get("/")
    def root():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "endpoints": {
                "agent": "/api/agent",
            },
        }

    return app
