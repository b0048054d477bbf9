from flow_runtime.graph.agent_loop import AgentNodeHandler, AgentTurnState, extend_history
from flow_runtime.graph.errors import (
    AuthenticationError,
    ConfigurationError,
    GraphExecutionError,
    GraphExecutionTimeout,
    GraphStructureError,
    NodeNotFoundError,
)
from flow_runtime.graph.executor import GraphExecutionResult, GraphExecutor, default_handlers
from flow_runtime.graph.handlers import HandlerContext, NodeHandler, build_system_prompt
from flow_runtime.graph.model import (
    GraphEdge,
    GraphNode,
    NodeKind,
    WorkflowGraph,
    find_input_node,
    lookup,
    next_node,
    parse_graph,
)
from flow_runtime.graph.state import ExecutionState, NodeOutcome, NodeValue, TraceLog
from flow_runtime.graph.tool_invoker import ToolCallRecord, ToolInvoker, ToolResult

__all__ = [
    "AgentNodeHandler",
    "AgentTurnState",
    "AuthenticationError",
    "ConfigurationError",
    "ExecutionState",
    "GraphEdge",
    "GraphExecutionError",
    "GraphExecutionResult",
    "GraphExecutionTimeout",
    "GraphExecutor",
    "GraphNode",
    "GraphStructureError",
    "HandlerContext",
    "NodeHandler",
    "NodeKind",
    "NodeNotFoundError",
    "NodeOutcome",
    "NodeValue",
    "ToolCallRecord",
    "ToolInvoker",
    "ToolResult",
    "TraceLog",
    "WorkflowGraph",
    "build_system_prompt",
    "default_handlers",
    "extend_history",
    "find_input_node",
    "lookup",
    "next_node",
    "parse_graph",
]
