"""Tests for the MCP server runtime manager."""

import asyncio
import io
from unittest.mock import patch

import pytest
from conftest import CLUSTER_METHODS, api_exception, make_deployment, make_pod, make_secret
from kubernetes import config as k8s_config

from mcp_server_runtime import manager as runtime
from mcp_server_runtime.config import RuntimeSettings
from mcp_server_runtime.exceptions import KubeconfigValidationError, TeardownError
from mcp_server_runtime.manager import McpServerRuntimeManager
from mcp_server_runtime.models import (
    CatalogEnvironmentEntry,
    DeploymentState,
    EnvironmentValueType,
    ImagePullSecretEntry,
    ImagePullSecretSource,
    LaunchSpec,
    RuntimeStatus,
    ServerRecord,
)


@pytest.fixture
def disabled_manager(settings):
    """Manager whose cluster configuration failed to load."""
    with patch(
        "mcp_server_runtime.manager.load_cluster_client",
        side_effect=k8s_config.ConfigException("Config load failed"),
    ):
        return McpServerRuntimeManager(settings=settings)


def record_calls(mock_cluster) -> list[str]:
    """Record the order in which cluster operations are awaited."""
    calls: list[str] = []
    for name in ("delete_deployment", "delete_service", "delete_secret", "list_secrets"):

        def _side_effect(*args, _name=name, **kwargs):
            calls.append(_name)
            return [] if _name == "list_secrets" else None

        getattr(mock_cluster, name).side_effect = _side_effect
    return calls


class TestEnablement:
    """Test the enabled/disabled state."""

    def test_enabled_with_cluster(self, manager):
        """A loaded cluster client enables the runtime."""
        assert manager.is_enabled is True
        assert manager.status == RuntimeStatus.NOT_INITIALIZED

    def test_disabled_when_config_fails(self, disabled_manager):
        """A failing config load disables the runtime."""
        assert disabled_manager.is_enabled is False
        assert disabled_manager.status == RuntimeStatus.ERROR

    def test_disabled_on_invalid_kubeconfig(self, tmp_path):
        """A kubeconfig that fails validation disables the runtime."""
        settings = RuntimeSettings(kubeconfig=str(tmp_path / "missing"))
        manager = McpServerRuntimeManager(settings=settings)
        assert manager.is_enabled is False

    def test_loads_cluster_from_settings(self, settings, mock_cluster):
        """Without an injected client, one is loaded from settings."""
        with patch(
            "mcp_server_runtime.manager.load_cluster_client", return_value=mock_cluster
        ) as mock_load:
            manager = McpServerRuntimeManager(settings=settings)
        mock_load.assert_called_once_with(settings)
        assert manager.is_enabled is True

    @pytest.mark.asyncio
    async def test_shutdown_disables(self, manager, mock_cluster):
        """After shutdown the runtime is disabled and the client closed."""
        await manager.shutdown()
        assert manager.is_enabled is False
        assert manager.status == RuntimeStatus.STOPPED
        mock_cluster.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_of_disabled_manager(self, disabled_manager):
        """Shutting down a disabled manager is harmless."""
        await disabled_manager.shutdown()
        assert disabled_manager.is_enabled is False


class TestStartServer:
    """Test provisioning of server bundles."""

    @pytest.mark.asyncio
    async def test_creates_secret_service_deployment_in_order(
        self, manager, mock_cluster, local_server
    ):
        """Secret, service and deployment are created in that order."""
        calls: list[str] = []
        mock_cluster.create_secret.side_effect = lambda *a, **k: calls.append("secret")
        mock_cluster.create_service.side_effect = lambda *a, **k: calls.append("service")
        mock_cluster.create_deployment.side_effect = lambda *a, **k: calls.append("deployment")

        bundle = await manager.start_server(local_server, {"API_KEY": "k"}, [])

        assert calls == ["secret", "service", "deployment"]
        assert bundle is not None
        assert manager.get_bundle("server-1") is bundle
        assert manager.running_server_ids == ["server-1"]

    @pytest.mark.asyncio
    async def test_second_start_is_noop(self, manager, mock_cluster, local_server):
        """Starting a running server does not create anything again."""
        first = await manager.start_server(local_server, {}, [])
        second = await manager.start_server(local_server, {}, [])

        assert first is second
        assert mock_cluster.create_deployment.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_once(self, manager, mock_cluster, local_server):
        """Concurrent starts for one id are serialized."""
        results = await asyncio.gather(
            manager.start_server(local_server, {}, []),
            manager.start_server(local_server, {}, []),
        )
        assert results[0] is results[1]
        assert mock_cluster.create_deployment.await_count == 1

    @pytest.mark.asyncio
    async def test_installation_secret_wins(self, manager, mock_cluster, local_server):
        """Non-prompted catalog secrets never replace installation values."""
        catalog = [
            CatalogEnvironmentEntry(key="a", type=EnvironmentValueType.SECRET, value="2"),
            CatalogEnvironmentEntry(key="b", type=EnvironmentValueType.SECRET, value="3"),
            CatalogEnvironmentEntry(
                key="c", type=EnvironmentValueType.SECRET, value="4", promptOnInstallation=True
            ),
        ]
        await manager.start_server(local_server, {"a": "1"}, catalog)

        body = mock_cluster.create_secret.call_args.args[0]
        assert set(body.data) == {"a", "b"}
        assert body.data["a"] == "MQ=="  # base64 of "1"

    @pytest.mark.asyncio
    async def test_launch_spec_is_applied(self, manager, mock_cluster, local_server):
        """Image, arguments and pull secrets come from the launch spec."""
        launch = LaunchSpec(
            docker_image="ghcr.io/org/server:1.0",
            command="npx",
            arguments=["${user_config.dir}"],
            image_pull_secrets=[
                ImagePullSecretEntry(
                    source=ImagePullSecretSource.CREDENTIALS, server="ghcr.io", username="bot"
                )
            ],
        )
        secrets = {"__regcred_password:ghcr.io:bot": "pw"}

        bundle = await manager.start_server(
            local_server, secrets, [], launch=launch, user_config={"dir": "/data"}
        )

        deployment = mock_cluster.create_deployment.call_args.args[0]
        container = deployment.spec.template.spec.containers[0]
        assert container.image == "ghcr.io/org/server:1.0"
        assert container.args == ["/data"]
        assert deployment.spec.template.spec.image_pull_secrets[0].name == (
            "mcp-server-server-1-regcred-ghcr.io-bot"
        )
        assert bundle.registry_secret_names == ["mcp-server-server-1-regcred-ghcr.io-bot"]
        # Registry passwords never land in the generic secret
        mock_cluster.create_secret.assert_awaited_once()
        assert mock_cluster.create_secret.call_args.args[0].type == (
            "kubernetes.io/dockerconfigjson"
        )

    @pytest.mark.asyncio
    async def test_default_image(self, manager, mock_cluster, local_server, settings):
        """Without an image the base image is used."""
        await manager.start_server(local_server, {}, [])
        deployment = mock_cluster.create_deployment.call_args.args[0]
        assert deployment.spec.template.spec.containers[0].image == settings.base_image

    @pytest.mark.asyncio
    async def test_failure_cleans_up_and_raises(self, manager, mock_cluster, local_server):
        """A failed start removes what was created and propagates."""
        mock_cluster.create_deployment.side_effect = api_exception(403, "Forbidden")

        with pytest.raises(Exception, match="Forbidden"):
            await manager.start_server(local_server, {"API_KEY": "k"}, [])

        assert manager.get_bundle("server-1") is None
        mock_cluster.delete_service.assert_awaited_once_with("mcp-server-1")
        mock_cluster.delete_deployment.assert_awaited_once_with("mcp-server-1")

    @pytest.mark.asyncio
    async def test_remote_server_is_ignored(self, manager, mock_cluster, remote_server):
        """Remote servers are never orchestrated."""
        assert await manager.start_server(remote_server, {}, []) is None
        mock_cluster.create_deployment.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_start_is_noop(self, disabled_manager, local_server):
        """A disabled runtime does not raise on start."""
        assert await disabled_manager.start_server(local_server, {}, []) is None


class TestStopServer:
    """Test ordered teardown."""

    @pytest.mark.asyncio
    async def test_unknown_server_makes_no_calls(self, manager, mock_cluster):
        """Stopping an unregistered server is a no-op."""
        await manager.stop_server("unknown")
        for method in CLUSTER_METHODS:
            getattr(mock_cluster, method).assert_not_called()

    @pytest.mark.asyncio
    async def test_teardown_order(self, manager, mock_cluster, local_server):
        """Deployment, service, secret and registry secrets go in order."""
        await manager.start_server(local_server, {}, [])
        calls = record_calls(mock_cluster)

        await manager.stop_server("server-1")

        assert calls == ["delete_deployment", "delete_service", "delete_secret", "list_secrets"]
        assert manager.get_bundle("server-1") is None

    @pytest.mark.asyncio
    async def test_registry_secrets_deleted_last(self, manager, mock_cluster, local_server):
        """Regcred secrets of the server are deleted after the generic secret."""
        await manager.start_server(local_server, {}, [])
        mock_cluster.list_secrets.return_value = [make_secret("r1")]

        await manager.stop_server("server-1")

        deleted = [call.args[0] for call in mock_cluster.delete_secret.call_args_list]
        assert deleted == ["mcp-server-server-1-secrets", "r1"]

    @pytest.mark.asyncio
    async def test_failed_step_aborts_and_keeps_bundle(
        self, manager, mock_cluster, local_server
    ):
        """A failed step stops the sequence and the bundle stays indexed."""
        await manager.start_server(local_server, {}, [])
        mock_cluster.delete_service.side_effect = api_exception(500, "Internal")

        with pytest.raises(TeardownError) as exc_info:
            await manager.stop_server("server-1")

        assert exc_info.value.step == "service"
        assert exc_info.value.server_id == "server-1"
        mock_cluster.delete_secret.assert_not_called()
        assert manager.get_bundle("server-1") is not None

        mock_cluster.delete_service.side_effect = None
        await manager.stop_server("server-1")
        assert manager.get_bundle("server-1") is None

    @pytest.mark.asyncio
    async def test_already_deleted_objects_are_fine(self, manager, mock_cluster, local_server):
        """Objects that are already gone do not fail the teardown."""
        await manager.start_server(local_server, {}, [])
        mock_cluster.delete_deployment.side_effect = api_exception(404, "Not Found")
        mock_cluster.delete_secret.side_effect = api_exception(404, "Not Found")

        await manager.stop_server("server-1")
        assert manager.get_bundle("server-1") is None

    @pytest.mark.asyncio
    async def test_stop_waits_for_start_in_flight(self, manager, mock_cluster, local_server):
        """A stop issued during a start tears the new bundle down afterwards."""
        release = asyncio.Event()

        async def blocked_create(*args, **kwargs):
            await release.wait()

        mock_cluster.create_deployment.side_effect = blocked_create
        start = asyncio.create_task(manager.start_server(local_server, {}, []))
        for _ in range(100):
            if mock_cluster.create_deployment.called:
                break
            await asyncio.sleep(0)
        assert mock_cluster.create_deployment.called

        stop = asyncio.create_task(manager.stop_server("server-1"))
        await asyncio.sleep(0)
        mock_cluster.delete_deployment.assert_not_called()

        release.set()
        assert await start is not None
        await stop

        mock_cluster.delete_deployment.assert_awaited_once_with("mcp-server-1")
        assert manager.get_bundle("server-1") is None

    @pytest.mark.asyncio
    async def test_locks_are_dropped_after_stop(self, manager, local_server):
        """Stopped servers do not keep a lock entry."""
        await manager.start_server(local_server, {}, [])
        assert "server-1" in manager._locks

        await manager.stop_server("server-1")
        assert "server-1" not in manager._locks
        assert "server-1" not in manager._lock_users

    @pytest.mark.asyncio
    async def test_failed_start_drops_lock(self, manager, mock_cluster, local_server):
        """A start that failed leaves no lock entry behind."""
        mock_cluster.create_deployment.side_effect = api_exception(403, "Forbidden")
        with pytest.raises(Exception, match="Forbidden"):
            await manager.start_server(local_server, {}, [])
        assert "server-1" not in manager._locks


class TestRegistrySecretVisibility:
    """Test regcred listing through the manager."""

    @pytest.mark.asyncio
    async def test_deny_by_default(self, manager, mock_cluster):
        """No scope means no secrets and no cluster call."""
        assert await manager.list_docker_registry_secrets() == []
        assert await manager.list_docker_registry_secrets(team_ids=[]) == []
        mock_cluster.list_secrets.assert_not_called()

    @pytest.mark.asyncio
    async def test_admin_and_team_scopes(self, manager, mock_cluster):
        """Admins see all, team members their team's secrets."""
        mock_cluster.list_secrets.return_value = [
            make_secret("a", {"team-id": "team-a"}),
            make_secret("b", {"team-id": "team-b"}),
        ]
        admin = await manager.list_docker_registry_secrets(is_admin=True)
        team = await manager.list_docker_registry_secrets(team_ids=["team-a"])

        assert [secret.name for secret in admin] == ["a", "b"]
        assert [secret.name for secret in team] == ["a"]

    @pytest.mark.asyncio
    async def test_disabled_returns_empty(self, disabled_manager):
        """A disabled runtime lists nothing."""
        assert await disabled_manager.list_docker_registry_secrets(is_admin=True) == []

    @pytest.mark.asyncio
    async def test_backfill_through_manager(self, manager, mock_cluster):
        """Backfill patches legacy secrets of known servers."""
        mock_cluster.list_secrets.return_value = [
            make_secret("legacy", {"app": "mcp-server", "type": "regcred", "mcp-server-id": "s1"})
        ]
        patched = await manager.backfill_regcred_team_labels(
            [ServerRecord(id="s1", catalogId="c", teamId="team-a")]
        )
        assert patched == 1

    @pytest.mark.asyncio
    async def test_backfill_disabled(self, disabled_manager):
        """A disabled runtime skips the backfill."""
        servers = [ServerRecord(id="s1", catalogId="c", teamId="team-a")]
        assert await disabled_manager.backfill_regcred_team_labels(servers) == 0


class TestStatusSummary:
    """Test status summaries built from the cluster snapshot."""

    @pytest.mark.asyncio
    async def test_not_created_then_running(self, manager, mock_cluster):
        """Servers missing from the cluster are not_created until deployed."""
        manager.register_servers(
            [ServerRecord(id="s1", catalogId="c"), ServerRecord(id="s2", catalogId="c")]
        )
        await manager.refresh_status()

        summary = manager.status_summary
        assert set(summary.mcpServers) == {"s1", "s2"}
        assert all(
            entry.state == DeploymentState.NOT_CREATED for entry in summary.mcpServers.values()
        )

        mock_cluster.list_deployments.return_value = [make_deployment("s1", ready_replicas=1)]
        mock_cluster.list_pods.return_value = [make_pod("s1")]
        await manager.refresh_status()

        summary = manager.status_summary
        assert summary.mcpServers["s1"].state == DeploymentState.RUNNING
        assert summary.mcpServers["s2"].state == DeploymentState.NOT_CREATED

    def test_remote_servers_are_excluded(self, manager, local_server, remote_server):
        """Remote servers never appear in the summary."""
        manager.register_servers([local_server, remote_server])
        assert list(manager.status_summary.mcpServers) == ["server-1"]

    @pytest.mark.asyncio
    async def test_tool_discovery_marker(self, manager, mock_cluster):
        """Marking discovery flips a running server to discovering_tools."""
        manager.register_servers([ServerRecord(id="s1", catalogId="c")])
        mock_cluster.list_deployments.return_value = [make_deployment("s1", ready_replicas=1)]
        await manager.refresh_status()

        manager.mark_tool_discovery("s1", True)
        assert manager.status_summary.mcpServers["s1"].state == DeploymentState.DISCOVERING_TOOLS
        manager.mark_tool_discovery("s1", False)
        assert manager.status_summary.mcpServers["s1"].state == DeploymentState.RUNNING

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_snapshot(self, manager, mock_cluster):
        """A failed refresh keeps the previous snapshot."""
        manager.register_servers([ServerRecord(id="s1", catalogId="c")])
        mock_cluster.list_deployments.return_value = [make_deployment("s1", ready_replicas=1)]
        assert await manager.refresh_status() is True

        mock_cluster.list_deployments.side_effect = api_exception(500, "Internal")
        assert await manager.refresh_status() is False
        assert manager.status_summary.mcpServers["s1"].state == DeploymentState.RUNNING

    @pytest.mark.asyncio
    async def test_initialize_starts_polling(self, manager, mock_cluster):
        """initialize refreshes once and then keeps refreshing."""
        await manager.initialize()
        assert manager.status == RuntimeStatus.RUNNING

        await asyncio.sleep(0.05)
        assert mock_cluster.list_deployments.await_count >= 2
        await manager.shutdown()
        assert manager.status_summary.status == RuntimeStatus.STOPPED

    @pytest.mark.asyncio
    async def test_initialize_disabled(self, disabled_manager):
        """A disabled runtime does not start polling."""
        await disabled_manager.initialize()
        assert disabled_manager.status == RuntimeStatus.ERROR


class TestLogs:
    """Test log access through the manager."""

    @pytest.mark.asyncio
    async def test_disabled_stream_writes_explanation(self, disabled_manager):
        """A disabled runtime explains why logs cannot be streamed."""
        sink = io.StringIO()
        handle = await disabled_manager.stream_mcp_server_logs("X", sink)

        output = sink.getvalue()
        assert handle is None
        assert "Unable to stream logs" in output
        assert "Kubernetes runtime is not configured on this instance." in output
        assert "mcp-server-id=X" in output

    def test_appropriate_command(self, manager):
        """The command follows the server's pod logs with kubectl."""
        command = manager.get_appropriate_command("server-1")
        assert command.startswith("kubectl logs -n test-namespace")
        assert "-l mcp-server-id=server-1" in command

    @pytest.mark.asyncio
    async def test_container_logs(self, manager, mock_cluster):
        """Container logs are read from the server's pod."""
        mock_cluster.list_pods.return_value = [make_pod("server-1", name="pod-7")]
        mock_cluster.read_pod_log.return_value = "line 1\nline 2\n"

        logs = await manager.get_container_logs("server-1", lines=10)

        assert logs.logs == "line 1\nline 2\n"
        assert logs.containerName == "mcp-server"
        assert logs.namespace == "test-namespace"
        mock_cluster.read_pod_log.assert_awaited_once_with("pod-7", "mcp-server", 10)

    @pytest.mark.asyncio
    async def test_container_logs_disabled(self, disabled_manager):
        """A disabled runtime returns the explanation as logs."""
        logs = await disabled_manager.get_container_logs("server-1")
        assert "Unable to stream logs" in logs.logs


class TestProcessManager:
    """Test the process-wide manager functions."""

    @pytest.mark.asyncio
    async def test_configure_initialize_shutdown(self, settings, mock_cluster):
        """The shared manager follows configure/initialize/shutdown."""
        shared = runtime.configure(settings=settings, cluster=mock_cluster)
        assert runtime.get_manager() is shared

        await runtime.initialize()
        assert shared.status == RuntimeStatus.RUNNING

        await runtime.shutdown()
        assert shared.is_enabled is False
        assert runtime._manager is None

    def test_get_manager_configures_from_environment(self, monkeypatch):
        """get_manager builds a manager on first use."""
        monkeypatch.setattr(runtime, "_manager", None)
        with patch(
            "mcp_server_runtime.manager.load_cluster_client",
            side_effect=KubeconfigValidationError("Kubeconfig file not found: x", "x"),
        ):
            shared = runtime.get_manager()
        assert shared.is_enabled is False
        monkeypatch.setattr(runtime, "_manager", None)

