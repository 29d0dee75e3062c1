"""Test configuration and fixtures."""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes.client.models import (
    V1ContainerState,
    V1ContainerStateWaiting,
    V1ContainerStatus,
    V1Deployment,
    V1DeploymentStatus,
    V1ObjectMeta,
    V1Pod,
    V1PodStatus,
    V1Secret,
)
from kubernetes.client.rest import ApiException

from mcp_server_runtime.config import RuntimeSettings
from mcp_server_runtime.manager import McpServerRuntimeManager
from mcp_server_runtime.models import ServerRecord, ServerType

TEST_NAMESPACE = "test-namespace"

CLUSTER_METHODS = (
    "create_secret",
    "replace_secret",
    "patch_secret",
    "delete_secret",
    "list_secrets",
    "create_service",
    "delete_service",
    "create_deployment",
    "delete_deployment",
    "list_deployments",
    "list_pods",
    "read_pod_log",
    "open_pod_log_stream",
    "close",
)


def api_exception(status: int, reason: str = "error") -> ApiException:
    return ApiException(status=status, reason=reason)


def make_secret(name: str, labels: dict[str, str] | None = None) -> V1Secret:
    return V1Secret(metadata=V1ObjectMeta(name=name, labels=labels))


def make_deployment(server_label: str, ready_replicas: int | None = 0) -> V1Deployment:
    return V1Deployment(
        metadata=V1ObjectMeta(
            name=f"mcp-{server_label}",
            labels={"app": "mcp-server", "mcp-server-id": server_label},
        ),
        status=V1DeploymentStatus(ready_replicas=ready_replicas),
    )


def make_pod(
    server_label: str,
    name: str = "pod-1",
    phase: str = "Running",
    waiting_reason: str | None = None,
) -> V1Pod:
    statuses = None
    if waiting_reason:
        statuses = [
            V1ContainerStatus(
                name="mcp-server",
                image="test:latest",
                image_id="",
                ready=False,
                restart_count=0,
                state=V1ContainerState(waiting=V1ContainerStateWaiting(reason=waiting_reason)),
            )
        ]
    return V1Pod(
        metadata=V1ObjectMeta(
            name=name, labels={"app": "mcp-server", "mcp-server-id": server_label}
        ),
        status=V1PodStatus(phase=phase, container_statuses=statuses),
    )


@pytest.fixture
def mock_cluster() -> Any:
    """ResourceClient double with an AsyncMock per cluster operation."""
    cluster = MagicMock()
    cluster.namespace = TEST_NAMESPACE
    for method in CLUSTER_METHODS:
        setattr(cluster, method, AsyncMock(name=method))
    cluster.list_secrets.return_value = []
    cluster.list_deployments.return_value = []
    cluster.list_pods.return_value = []
    cluster.read_pod_log.return_value = ""
    return cluster


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(namespace=TEST_NAMESPACE, status_poll_interval_seconds=0.01)


@pytest.fixture
def manager(settings: RuntimeSettings, mock_cluster: Any) -> McpServerRuntimeManager:
    """Enabled manager backed by the mock cluster."""
    return McpServerRuntimeManager(settings=settings, cluster=mock_cluster)


@pytest.fixture
def local_server() -> ServerRecord:
    return ServerRecord(
        id="server-1",
        name="Test Server",
        catalogId="catalog-1",
        ownerId="user-1",
        teamId="team-a",
        serverType=ServerType.LOCAL,
    )


@pytest.fixture
def remote_server() -> ServerRecord:
    return ServerRecord(id="remote-1", catalogId="catalog-2", serverType=ServerType.REMOTE)
