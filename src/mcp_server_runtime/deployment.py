"""
Deployment bundle of an MCP server.

A bundle is the unit of ownership for one server: a Deployment, a Service,
the generic secret and the registry secrets created for it. The bundle only
records object names; the objects themselves live in the cluster.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client.models import (
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1EnvVarSource,
    V1LabelSelector,
    V1LocalObjectReference,
    V1ObjectMeta,
    V1Pod,
    V1PodSpec,
    V1PodTemplateSpec,
    V1SecretKeySelector,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)
from kubernetes.client.rest import ApiException

from mcp_server_runtime.cluster import ResourceClient
from mcp_server_runtime.exceptions import (
    handle_kubernetes_errors,
    handle_optional_kubernetes_resource,
)
from mcp_server_runtime.models import (
    CatalogEnvironmentEntry,
    DeploymentState,
    DeploymentStatusEntry,
    EnvironmentValueType,
    LaunchSpec,
    ServerRecord,
)
from mcp_server_runtime.naming import (
    APP_LABEL,
    APP_LABEL_VALUE,
    SERVER_ID_LABEL,
    deployment_name,
    sanitize_label_value,
    secret_name,
    server_labels,
    service_name,
)

logger = logging.getLogger(__name__)

CONTAINER_NAME = "mcp-server"

# Container waiting reasons that will not resolve on their own
FAILURE_REASONS = frozenset(
    {
        "ImagePullBackOff",
        "ErrImagePull",
        "CrashLoopBackOff",
        "CreateContainerConfigError",
        "InvalidImageName",
    }
)

_USER_CONFIG_PLACEHOLDER = re.compile(r"\$\{user_config\.([A-Za-z0-9_.-]+)\}")


@dataclass
class DeploymentBundle:
    """Names of the cluster objects owned by one MCP server"""

    server_id: str
    namespace: str
    deployment_name: str
    service_name: str
    secret_name: str
    registry_secret_names: list[str] = field(default_factory=list)

    @classmethod
    def for_server(cls, server_id: str, namespace: str) -> "DeploymentBundle":
        return cls(
            server_id=server_id,
            namespace=namespace,
            deployment_name=deployment_name(server_id),
            service_name=service_name(server_id),
            secret_name=secret_name(server_id),
        )

    def __str__(self) -> str:
        return self.server_id


def strip_matching_quotes(value: str) -> str:
    """Remove one pair of surrounding quotes when both ends match"""
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def interpolate_arguments(arguments: Iterable[str], values: Mapping[str, str]) -> list[str]:
    """Replace ${user_config.<key>} placeholders, keeping unknown ones as they are"""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        return values[key] if key in values else match.group(0)

    return [_USER_CONFIG_PLACEHOLDER.sub(_replace, argument) for argument in arguments]


def render_environment(
    catalog_environment: Iterable[CatalogEnvironmentEntry],
    secret_keys: Iterable[str],
    environment_values: Mapping[str, Any],
    secret_ref_name: str,
) -> list[V1EnvVar]:
    """Build container environment variables.

    Keys stored in the generic secret are referenced through secretKeyRef so
    their values never appear in the Deployment. Every other value is set
    literally with surrounding matching quotes stripped.
    """
    secret_key_set = set(secret_keys)
    env_vars: list[V1EnvVar] = []
    seen: set[str] = set()

    def _secret_ref(key: str) -> V1EnvVar:
        return V1EnvVar(
            name=key,
            value_from=V1EnvVarSource(
                secret_key_ref=V1SecretKeySelector(name=secret_ref_name, key=key)
            ),
        )

    for entry in catalog_environment:
        if entry.key in seen:
            continue
        seen.add(entry.key)

        if entry.key in secret_key_set:
            env_vars.append(_secret_ref(entry.key))
            continue

        value = environment_values.get(entry.key, entry.value)
        if value is None or entry.type == EnvironmentValueType.SECRET:
            if entry.required:
                logger.warning("Required environment variable %s has no value", entry.key)
            continue
        env_vars.append(V1EnvVar(name=entry.key, value=_stringify(value)))

    for key, value in environment_values.items():
        if key not in seen and key not in secret_key_set:
            seen.add(key)
            env_vars.append(V1EnvVar(name=key, value=_stringify(value)))

    for key in sorted(secret_key_set - seen):
        env_vars.append(_secret_ref(key))

    return env_vars


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return strip_matching_quotes(str(value))


def _selector_labels(server_id: str) -> dict[str, str]:
    return {APP_LABEL: APP_LABEL_VALUE, SERVER_ID_LABEL: sanitize_label_value(server_id)}


def build_deployment_manifest(
    bundle: DeploymentBundle,
    server: ServerRecord,
    launch: LaunchSpec,
    image: str,
    env: list[V1EnvVar],
    arguments: list[str],
    image_pull_secrets: Iterable[str] = (),
) -> V1Deployment:
    """Deployment running one MCP server container"""
    labels = server_labels(server.id, server.name)
    ports = (
        [V1ContainerPort(container_port=launch.http_port, name="http", protocol="TCP")]
        if launch.needs_http
        else None
    )
    pull_secrets = [V1LocalObjectReference(name=name) for name in image_pull_secrets]

    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(
            name=bundle.deployment_name,
            namespace=bundle.namespace,
            labels=labels,
        ),
        spec=V1DeploymentSpec(
            replicas=1,
            selector=V1LabelSelector(match_labels=_selector_labels(server.id)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=labels),
                spec=V1PodSpec(
                    restart_policy="Always",
                    image_pull_secrets=pull_secrets or None,
                    containers=[
                        V1Container(
                            name=CONTAINER_NAME,
                            image=image,
                            command=[launch.command] if launch.command else None,
                            args=arguments,
                            env=env or None,
                            ports=ports,
                            # stdio servers are attached to through stdin
                            stdin=True,
                            tty=False,
                        )
                    ],
                ),
            ),
        ),
    )


def build_service_manifest(
    bundle: DeploymentBundle, server: ServerRecord, launch: LaunchSpec
) -> V1Service:
    """Service in front of the MCP server pod.

    HTTP servers get a ClusterIP service on their port; stdio servers get a
    headless service so the pod still has a stable DNS name.
    """
    if launch.needs_http:
        spec = V1ServiceSpec(
            selector=_selector_labels(server.id),
            type="ClusterIP",
            ports=[
                V1ServicePort(
                    name="http",
                    port=launch.http_port,
                    target_port=launch.http_port,
                    protocol="TCP",
                )
            ],
        )
    else:
        spec = V1ServiceSpec(selector=_selector_labels(server.id), cluster_ip="None")

    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(
            name=bundle.service_name,
            namespace=bundle.namespace,
            labels=server_labels(server.id, server.name),
        ),
        spec=spec,
    )


def _pod_failure_reason(pods: Iterable[V1Pod]) -> str | None:
    for pod in pods:
        statuses = (pod.status.container_statuses if pod.status else None) or []
        for container_status in statuses:
            waiting = container_status.state.waiting if container_status.state else None
            if waiting and waiting.reason in FAILURE_REASONS:
                return str(waiting.reason)
    return None


def _replica_failure(deployment: V1Deployment) -> str | None:
    conditions = (deployment.status.conditions if deployment.status else None) or []
    for condition in conditions:
        if condition.type == "ReplicaFailure" and condition.status == "True":
            return str(condition.message or condition.reason or "ReplicaFailure")
    return None


def synthesize_status(
    deployment: V1Deployment,
    pods: Iterable[V1Pod],
    server_name: str,
    namespace: str,
    discovering_tools: bool = False,
) -> DeploymentStatusEntry:
    """Derive the status entry of a server from its live cluster objects"""
    pods = list(pods)
    name = deployment.metadata.name if deployment.metadata else None
    ready_replicas = (deployment.status.ready_replicas if deployment.status else None) or 0

    failure = _pod_failure_reason(pods) or _replica_failure(deployment)
    if failure:
        state, message, error = DeploymentState.ERROR, f"Deployment failed: {failure}", failure
    elif ready_replicas > 0 and discovering_tools:
        state, message, error = DeploymentState.DISCOVERING_TOOLS, "Discovering tools", None
    elif ready_replicas > 0:
        state, message, error = DeploymentState.RUNNING, "Deployment is running", None
    else:
        state, message, error = DeploymentState.PENDING, "Deployment is starting", None

    return DeploymentStatusEntry(
        state=state,
        message=message,
        error=error,
        serverName=server_name,
        deploymentName=name,
        namespace=namespace,
    )


def not_created_status(server_name: str, namespace: str) -> DeploymentStatusEntry:
    return DeploymentStatusEntry(
        state=DeploymentState.NOT_CREATED,
        message="Deployment not created",
        serverName=server_name,
        namespace=namespace,
    )


class DeploymentOperations:
    """Create and remove the Deployment and Service of a bundle"""

    def __init__(self, cluster: ResourceClient) -> None:
        self.cluster = cluster

    @handle_kubernetes_errors("creating", "service")
    async def ensure_service(self, bundle: DeploymentBundle, body: V1Service) -> bool:
        """Create the service if it does not exist yet.

        Returns:
            True when the service was created by this call
        """
        try:
            await self.cluster.create_service(body)
        except ApiException as e:
            if e.status != 409:
                raise
            logger.debug("Service %s already exists", bundle.service_name)
            return False
        logger.info("Created service %s for MCP server %s", bundle.service_name, bundle)
        return True

    @handle_kubernetes_errors("creating", "deployment")
    async def ensure_deployment(self, bundle: DeploymentBundle, body: V1Deployment) -> bool:
        """Create the deployment if it does not exist yet.

        Returns:
            True when the deployment was created by this call
        """
        try:
            await self.cluster.create_deployment(body)
        except ApiException as e:
            if e.status != 409:
                raise
            logger.debug("Deployment %s already exists", bundle.deployment_name)
            return False
        logger.info("Created deployment %s for MCP server %s", bundle.deployment_name, bundle)
        return True

    @handle_optional_kubernetes_resource("deleting", "deployment", default_value=None)
    async def stop_deployment(self, bundle: DeploymentBundle) -> None:
        await self.cluster.delete_deployment(bundle.deployment_name)
        logger.info("Deleted deployment %s", bundle.deployment_name)

    @handle_optional_kubernetes_resource("deleting", "service", default_value=None)
    async def delete_service(self, bundle: DeploymentBundle) -> None:
        await self.cluster.delete_service(bundle.service_name)
        logger.info("Deleted service %s", bundle.service_name)
