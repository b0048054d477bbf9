from __future__ import annotations


class GraphExecutionError(RuntimeError):
    """Raised when graph execution fails."""


class GraphStructureError(GraphExecutionError):
    """Raised when the graph cannot be executed as described."""


class NodeNotFoundError(GraphStructureError):
    """Raised when an edge or lookup names a node that does not exist."""


class ConfigurationError(GraphExecutionError):
    """Raised when a node is missing configuration it needs to run."""


class AuthenticationError(GraphExecutionError):
    """Raised when a model provider rejects a node's credential."""


class GraphExecutionTimeout(GraphExecutionError):
    """Raised when a run exceeds its configured deadline."""
