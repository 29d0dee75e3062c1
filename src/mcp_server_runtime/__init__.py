"""
Kubernetes runtime for containerized MCP servers.
"""

from mcp_server_runtime._version import __version__
from mcp_server_runtime.deployment import DeploymentBundle
from mcp_server_runtime.exceptions import (
    ClusterTimeoutError,
    KubeconfigValidationError,
    KubernetesOperationError,
    RuntimeConfigError,
    RuntimeManagerError,
    TeardownError,
)
from mcp_server_runtime.kubeconfig import validate_kubeconfig
from mcp_server_runtime.logs import LogStreamHandle
from mcp_server_runtime.manager import McpServerRuntimeManager
from mcp_server_runtime.subscriptions import LogSubscriptions, StatusSubscriptions

__all__ = [
    "ClusterTimeoutError",
    "DeploymentBundle",
    "KubeconfigValidationError",
    "KubernetesOperationError",
    "LogStreamHandle",
    "LogSubscriptions",
    "McpServerRuntimeManager",
    "RuntimeConfigError",
    "RuntimeManagerError",
    "StatusSubscriptions",
    "TeardownError",
    "__version__",
    "validate_kubeconfig",
]
