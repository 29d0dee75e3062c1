"""
MCP server runtime manager.

The manager owns the index of running MCP servers (server id to
DeploymentBundle), provisions and tears down bundles, and keeps a cached
snapshot of the cluster for status summaries.

When cluster credentials cannot be loaded the manager is disabled: every
operation degrades to a safe default instead of raising.

Module-level configure/get_manager/initialize/shutdown manage one shared
manager for hosts that want a process-wide instance.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from typing import Any

from kubernetes.client.models import V1Deployment, V1Pod

from mcp_server_runtime.cluster import ResourceClient, load_cluster_client
from mcp_server_runtime.config import RuntimeSettings
from mcp_server_runtime.deployment import (
    CONTAINER_NAME,
    DeploymentBundle,
    DeploymentOperations,
    build_deployment_manifest,
    build_service_manifest,
    interpolate_arguments,
    not_created_status,
    render_environment,
    synthesize_status,
)
from mcp_server_runtime.exceptions import (
    RuntimeConfigError,
    TeardownError,
    log_operation_start,
    log_operation_success,
)
from mcp_server_runtime.logs import (
    LogSink,
    LogStreamer,
    LogStreamHandle,
    disabled_runtime_message,
    kubectl_logs_command,
    select_pod,
    write_to_sink,
)
from mcp_server_runtime.models import (
    CatalogEnvironmentEntry,
    ContainerLogs,
    DeploymentStatusEntry,
    LaunchSpec,
    RegistrySecretSummary,
    RuntimeStatus,
    RuntimeStatusSummary,
    ServerRecord,
)
from mcp_server_runtime.naming import (
    APP_LABEL,
    APP_LABEL_VALUE,
    SERVER_ID_LABEL,
    label_selector,
    sanitize_label_value,
    server_selector,
)
from mcp_server_runtime.secrets import (
    SecretsCoordinator,
    merge_installation_secrets,
    split_registry_passwords,
)

logger = logging.getLogger(__name__)

# Live objects of one server as of the last refresh
ClusterObservation = tuple[V1Deployment, list[V1Pod]]


class McpServerRuntimeManager:
    """Runs MCP servers as Kubernetes Deployments"""

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        cluster: ResourceClient | None = None,
    ) -> None:
        self.status = RuntimeStatus.NOT_INITIALIZED
        self._enabled = False
        self._cluster: ResourceClient | None = None

        self._bundles: dict[str, DeploymentBundle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Tasks holding or waiting for each lock
        self._lock_users: dict[str, int] = {}
        self._known_servers: dict[str, ServerRecord] = {}
        self._discovering: set[str] = set()
        self._snapshot: dict[str, ClusterObservation] = {}
        self._poll_task: asyncio.Task[None] | None = None

        if settings is None:
            try:
                settings = RuntimeSettings.from_env()
            except RuntimeConfigError as e:
                logger.warning("Invalid runtime settings, using defaults: %s", e)
                self.settings = RuntimeSettings()
                self._disable(e)
                return
        self.settings = settings

        if cluster is None:
            try:
                cluster = load_cluster_client(settings)
            except Exception as e:
                self._disable(e)
                return

        self._cluster = cluster
        self._secrets = SecretsCoordinator(cluster)
        self._deployments = DeploymentOperations(cluster)
        self._logs = LogStreamer(cluster)
        self._enabled = True
        logger.info("MCP server runtime enabled in namespace %s", settings.namespace)

    def _disable(self, error: Exception) -> None:
        self.status = RuntimeStatus.ERROR
        self._enabled = False
        logger.warning(
            "Kubernetes runtime is not configured, MCP servers will not be started: %s", error
        )

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def namespace(self) -> str:
        return self.settings.namespace

    @contextlib.asynccontextmanager
    async def _serialized(self, server_id: str) -> AsyncIterator[None]:
        """Hold the lock of one server id.

        The lock is dropped once nobody holds or waits for it and the server
        has no indexed bundle.
        """
        lock = self._locks.setdefault(server_id, asyncio.Lock())
        self._lock_users[server_id] = self._lock_users.get(server_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[server_id] -= 1
            if not self._lock_users[server_id]:
                del self._lock_users[server_id]
                if server_id not in self._bundles:
                    self._locks.pop(server_id, None)

    def get_bundle(self, server_id: str) -> DeploymentBundle | None:
        return self._bundles.get(server_id)

    @property
    def running_server_ids(self) -> list[str]:
        return list(self._bundles)

    # Lifecycle

    async def initialize(self) -> None:
        """Take a first cluster snapshot and start the background refresh"""
        if not self._enabled:
            logger.warning("Skipping runtime initialization, Kubernetes runtime is disabled")
            return
        if self._poll_task is not None:
            return

        self.status = RuntimeStatus.INITIALIZING
        ok = await self.refresh_status()
        self.status = RuntimeStatus.RUNNING if ok else RuntimeStatus.ERROR
        self._poll_task = asyncio.create_task(self._poll_status(), name="mcp-runtime-status")
        logger.info("MCP server runtime initialized with status %s", self.status.value)

    async def _poll_status(self) -> None:
        while True:
            await asyncio.sleep(self.settings.status_poll_interval_seconds)
            ok = await self.refresh_status()
            if self._enabled:
                self.status = RuntimeStatus.RUNNING if ok else RuntimeStatus.ERROR

    async def refresh_status(self) -> bool:
        """Refresh the cached cluster snapshot.

        Failures keep the previous snapshot.

        Returns:
            True if the snapshot was refreshed
        """
        if self._cluster is None or not self._enabled:
            return False

        selector = label_selector({APP_LABEL: APP_LABEL_VALUE})
        try:
            deployments = await self._cluster.list_deployments(selector)
            pods = await self._cluster.list_pods(selector)
        except Exception as e:
            logger.error("Failed to refresh MCP server status: %s", e)
            return False

        pods_by_server: dict[str, list[V1Pod]] = {}
        for pod in pods:
            labels = (pod.metadata.labels if pod.metadata else None) or {}
            if SERVER_ID_LABEL in labels:
                pods_by_server.setdefault(labels[SERVER_ID_LABEL], []).append(pod)

        snapshot: dict[str, ClusterObservation] = {}
        for deployment in deployments:
            labels = (deployment.metadata.labels if deployment.metadata else None) or {}
            server_label = labels.get(SERVER_ID_LABEL)
            if server_label:
                snapshot[server_label] = (deployment, pods_by_server.get(server_label, []))

        self._snapshot = snapshot
        logger.debug("Refreshed status of %d MCP server deployments", len(snapshot))
        return True

    async def shutdown(self) -> None:
        """Stop background work and release the cluster client"""
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._cluster is not None:
            await self._logs.close_all()
            await self._cluster.close()
            self._cluster = None

        self._enabled = False
        self.status = RuntimeStatus.STOPPED
        logger.info("MCP server runtime shut down")

    # Known servers and status

    def register_servers(self, servers: Iterable[ServerRecord]) -> None:
        """Replace the set of server records known to the runtime"""
        self._known_servers = {server.id: server for server in servers if server.is_local}

    def mark_tool_discovery(self, server_id: str, in_progress: bool) -> None:
        if in_progress:
            self._discovering.add(server_id)
        else:
            self._discovering.discard(server_id)

    def _status_entry(self, server: ServerRecord) -> DeploymentStatusEntry:
        observed = self._snapshot.get(sanitize_label_value(server.id))
        if observed is None:
            return not_created_status(server.display_name, self.namespace)
        deployment, pods = observed
        return synthesize_status(
            deployment,
            pods,
            server.display_name,
            self.namespace,
            discovering_tools=server.id in self._discovering,
        )

    @property
    def status_summary(self) -> RuntimeStatusSummary:
        """Status of the runtime and every known local server"""
        return RuntimeStatusSummary(
            status=self.status,
            mcpServers={
                server_id: self._status_entry(server)
                for server_id, server in self._known_servers.items()
                if server.is_local
            },
        )

    # Start and stop

    async def start_server(
        self,
        server: ServerRecord,
        secret_values: Mapping[str, str] | None = None,
        catalog_environment: Iterable[CatalogEnvironmentEntry] | None = None,
        *,
        launch: LaunchSpec | None = None,
        environment_values: Mapping[str, Any] | None = None,
        user_config: Mapping[str, str] | None = None,
    ) -> DeploymentBundle | None:
        """Provision the secret, service and deployment of a local server.

        Starting a server that is already running returns its bundle without
        creating anything. Remote servers and a disabled runtime are no-ops.

        Args:
            server: Server record from the data layer
            secret_values: Installation secret values
            catalog_environment: Environment entries declared by the catalog item
            launch: Container launch configuration
            environment_values: Plain environment values chosen at installation
            user_config: Values for ${user_config.*} placeholders in arguments
        """
        if not server.is_local:
            logger.debug("Server %s is remote, not starting a deployment", server.id)
            return None

        self._known_servers[server.id] = server
        if not self._enabled:
            logger.warning("Cannot start MCP server %s, Kubernetes runtime is disabled", server.id)
            return None

        async with self._serialized(server.id):
            existing = self._bundles.get(server.id)
            if existing is not None:
                logger.info("MCP server %s is already running", server.id)
                return existing

            log_operation_start("starting", "MCP server", server.id)
            bundle = await self._provision(
                server,
                secret_values or {},
                list(catalog_environment or []),
                launch or LaunchSpec(),
                environment_values or {},
                user_config or {},
            )
            self._bundles[server.id] = bundle
            log_operation_success("starting", "MCP server", server.id)
            return bundle

    async def _provision(
        self,
        server: ServerRecord,
        secret_values: Mapping[str, str],
        catalog_environment: list[CatalogEnvironmentEntry],
        launch: LaunchSpec,
        environment_values: Mapping[str, Any],
        user_config: Mapping[str, str],
    ) -> DeploymentBundle:
        bundle = DeploymentBundle.for_server(server.id, self.namespace)
        environment_secrets, passwords = split_registry_passwords(secret_values)
        merged_secrets = merge_installation_secrets(environment_secrets, catalog_environment)

        try:
            await self._secrets.ensure_generic_secret(server.id, merged_secrets, server.name)
            pull_secrets = await self._secrets.create_registry_secrets(
                server, launch.image_pull_secrets, passwords
            )
            bundle.registry_secret_names = [
                name
                for name in pull_secrets
                if name not in {entry.name for entry in launch.image_pull_secrets}
            ]

            await self._deployments.ensure_service(
                bundle, build_service_manifest(bundle, server, launch)
            )

            env = render_environment(
                catalog_environment, merged_secrets, environment_values, bundle.secret_name
            )
            arguments = interpolate_arguments(
                launch.arguments, {**user_config, **_plain_values(environment_values)}
            )
            manifest = build_deployment_manifest(
                bundle,
                server,
                launch,
                image=launch.docker_image or self.settings.base_image,
                env=env,
                arguments=arguments,
                image_pull_secrets=pull_secrets,
            )
            await self._deployments.ensure_deployment(bundle, manifest)
        except Exception as e:
            logger.error("Failed to start MCP server %s, cleaning up: %s", server.id, e)
            await self._teardown_best_effort(bundle)
            raise

        return bundle

    def _teardown_steps(
        self, bundle: DeploymentBundle
    ) -> list[tuple[str, Callable[[], Awaitable[Any]]]]:
        # Deployment first: it references the service, the secret and the pull secrets
        return [
            ("deployment", lambda: self._deployments.stop_deployment(bundle)),
            ("service", lambda: self._deployments.delete_service(bundle)),
            ("secret", lambda: self._secrets.delete_generic_secret(bundle.server_id)),
            ("registry-secrets", lambda: self._secrets.delete_registry_secrets(bundle.server_id)),
        ]

    async def _teardown_best_effort(self, bundle: DeploymentBundle) -> None:
        for step, action in self._teardown_steps(bundle):
            try:
                await action()
            except Exception as e:
                logger.error(
                    "Cleanup of MCP server %s failed at step %s: %s", bundle.server_id, step, e
                )

    async def stop_server(self, server_id: str) -> None:
        """Tear down a running server.

        Unknown servers are ignored. A stop issued while a start of the same
        server is in flight waits for the start and then tears it down. Steps
        run strictly in the order deployment, service, secret, registry
        secrets; the first failure stops the sequence and the bundle stays
        registered so the call can be retried.

        Raises:
            TeardownError: If one of the steps failed
        """
        if server_id not in self._bundles and server_id not in self._lock_users:
            logger.debug("MCP server %s is not running, nothing to stop", server_id)
            return

        # A start in progress holds the lock; its bundle is indexed once we get it
        async with self._serialized(server_id):
            bundle = self._bundles.get(server_id)
            if bundle is None:
                logger.debug("MCP server %s is not running, nothing to stop", server_id)
                return

            log_operation_start("stopping", "MCP server", server_id)
            for step, action in self._teardown_steps(bundle):
                try:
                    await action()
                except Exception as e:
                    logger.error("Failed to stop MCP server %s at step %s: %s", server_id, step, e)
                    raise TeardownError(server_id, step, e) from e

            del self._bundles[server_id]
            self._discovering.discard(server_id)
            log_operation_success("stopping", "MCP server", server_id)

    # Registry secrets

    async def list_docker_registry_secrets(
        self, is_admin: bool = False, team_ids: Iterable[str] | None = None
    ) -> list[RegistrySecretSummary]:
        if not self._enabled:
            return []
        return await self._secrets.list_registry_secrets(is_admin=is_admin, team_ids=team_ids)

    async def backfill_regcred_team_labels(self, servers: Iterable[ServerRecord]) -> int:
        if not self._enabled:
            logger.debug("Kubernetes runtime is disabled, skipping registry secret backfill")
            return 0
        return await self._secrets.backfill_team_labels(servers)

    # Logs

    def get_appropriate_command(self, server_id: str) -> str:
        """Command an operator can run to follow a server's logs"""
        return kubectl_logs_command(server_id, self.namespace)

    async def stream_mcp_server_logs(
        self, server_id: str, sink: LogSink, lines: int | None = None
    ) -> LogStreamHandle | None:
        """Attach a live log stream of a server to sink.

        Returns:
            Handle to cancel the stream, or None if nothing was attached
        """
        if not self._enabled:
            logger.warning("Cannot stream logs of MCP server %s, runtime is disabled", server_id)
            await write_to_sink(sink, disabled_runtime_message(server_id, self.namespace))
            return None
        return await self._logs.stream(server_id, sink, lines or self.settings.log_tail_lines)

    async def get_container_logs(self, server_id: str, lines: int | None = None) -> ContainerLogs:
        """Recent log lines of a server's container"""
        command = self.get_appropriate_command(server_id)
        if self._cluster is None or not self._enabled:
            return ContainerLogs(
                logs=disabled_runtime_message(server_id, self.namespace),
                containerName=CONTAINER_NAME,
                command=command,
                namespace=self.namespace,
            )

        pod = select_pod(await self._cluster.list_pods(server_selector(server_id)))
        if pod is None:
            logs = f"No pod found for MCP server {server_id}"
        else:
            logs = await self._cluster.read_pod_log(
                pod.metadata.name, CONTAINER_NAME, lines or self.settings.log_tail_lines
            )
        return ContainerLogs(
            logs=logs, containerName=CONTAINER_NAME, command=command, namespace=self.namespace
        )


def _plain_values(values: Mapping[str, Any]) -> dict[str, str]:
    return {key: str(value) for key, value in values.items()}


# Process-wide manager
_manager: McpServerRuntimeManager | None = None


def configure(
    settings: RuntimeSettings | None = None, cluster: ResourceClient | None = None
) -> McpServerRuntimeManager:
    """Create the shared manager, replacing any previous one"""
    global _manager  # noqa: PLW0603
    _manager = McpServerRuntimeManager(settings=settings, cluster=cluster)
    return _manager


def get_manager() -> McpServerRuntimeManager:
    """Get the shared manager, creating it from the environment on first use"""
    if _manager is None:
        return configure()
    return _manager


async def initialize() -> None:
    await get_manager().initialize()


async def shutdown() -> None:
    global _manager  # noqa: PLW0603
    if _manager is None:
        return
    await _manager.shutdown()
    _manager = None
