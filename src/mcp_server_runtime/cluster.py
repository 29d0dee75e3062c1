"""
Cluster API client used by the runtime manager.

The manager only talks to the cluster through the ResourceClient protocol so
tests (and alternative backends) can substitute their own implementation.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client.models import (
    V1DeleteOptions,
    V1Deployment,
    V1Pod,
    V1Secret,
    V1Service,
)
from urllib3.exceptions import MaxRetryError
from urllib3.exceptions import TimeoutError as Urllib3TimeoutError

from mcp_server_runtime.config import RuntimeSettings
from mcp_server_runtime.exceptions import ClusterTimeoutError
from mcp_server_runtime.kubeconfig import (
    parse_kubeconfig,
    validate_kubeconfig,
    validate_kubeconfig_document,
)

logger = logging.getLogger(__name__)


class LogStream(Protocol):
    """Streaming pod log response (urllib3.HTTPResponse in practice)"""

    def stream(self, amt: int | None = ..., decode_content: bool | None = ...) -> Any: ...

    def close(self) -> None: ...

    def release_conn(self) -> None: ...


class ResourceClient(Protocol):
    """Namespaced cluster operations needed by the runtime manager.

    Implementations raise kubernetes ApiException for API errors and
    ClusterTimeoutError when a call exceeds its timeout.
    """

    namespace: str

    async def create_secret(self, body: V1Secret) -> Any: ...

    async def replace_secret(self, name: str, body: V1Secret) -> Any: ...

    async def patch_secret(self, name: str, body: dict[str, Any]) -> Any: ...

    async def delete_secret(self, name: str) -> Any: ...

    async def list_secrets(self, label_selector: str) -> list[V1Secret]: ...

    async def create_service(self, body: V1Service) -> Any: ...

    async def delete_service(self, name: str) -> Any: ...

    async def create_deployment(self, body: V1Deployment) -> Any: ...

    async def delete_deployment(self, name: str) -> Any: ...

    async def list_deployments(self, label_selector: str) -> list[V1Deployment]: ...

    async def list_pods(self, label_selector: str) -> list[V1Pod]: ...

    async def read_pod_log(self, pod_name: str, container: str, tail_lines: int) -> str: ...

    async def open_pod_log_stream(
        self, pod_name: str, container: str, tail_lines: int
    ) -> LogStream: ...

    async def close(self) -> None: ...


def _is_timeout(error: Exception) -> bool:
    if isinstance(error, Urllib3TimeoutError | TimeoutError):
        return True
    return isinstance(error, MaxRetryError) and isinstance(error.reason, Urllib3TimeoutError)


class KubernetesResourceClient:
    """ResourceClient backed by the official kubernetes client"""

    def __init__(
        self,
        api_client: client.ApiClient,
        namespace: str,
        request_timeout: float = 30.0,
    ) -> None:
        self.api_client = api_client
        self.namespace = namespace
        self.request_timeout = request_timeout
        self.k8s_core = client.CoreV1Api(api_client)
        self.k8s_apps = client.AppsV1Api(api_client)

    async def _call(
        self,
        operation: str,
        resource: str,
        func: Callable[..., Any],
        request_timeout: Any = None,
        **kwargs: Any,
    ) -> Any:
        timeout = self.request_timeout if request_timeout is None else request_timeout
        try:
            return await asyncio.to_thread(
                func, namespace=self.namespace, _request_timeout=timeout, **kwargs
            )
        except Exception as e:
            if _is_timeout(e):
                logger.error("Timed out %s %s in namespace %s", operation, resource, self.namespace)
                raise ClusterTimeoutError(operation, resource, self.request_timeout) from e
            raise

    async def create_secret(self, body: V1Secret) -> Any:
        return await self._call(
            "creating",
            f"secret:{body.metadata.name}",
            self.k8s_core.create_namespaced_secret,
            body=body,
        )

    async def replace_secret(self, name: str, body: V1Secret) -> Any:
        return await self._call(
            "replacing",
            f"secret:{name}",
            self.k8s_core.replace_namespaced_secret,
            name=name,
            body=body,
        )

    async def patch_secret(self, name: str, body: dict[str, Any]) -> Any:
        return await self._call(
            "patching",
            f"secret:{name}",
            self.k8s_core.patch_namespaced_secret,
            name=name,
            body=body,
        )

    async def delete_secret(self, name: str) -> Any:
        return await self._call(
            "deleting", f"secret:{name}", self.k8s_core.delete_namespaced_secret, name=name
        )

    async def list_secrets(self, label_selector: str) -> list[V1Secret]:
        result = await self._call(
            "listing",
            f"secrets:{label_selector}",
            self.k8s_core.list_namespaced_secret,
            label_selector=label_selector,
        )
        return list(result.items or [])

    async def create_service(self, body: V1Service) -> Any:
        return await self._call(
            "creating",
            f"service:{body.metadata.name}",
            self.k8s_core.create_namespaced_service,
            body=body,
        )

    async def delete_service(self, name: str) -> Any:
        return await self._call(
            "deleting", f"service:{name}", self.k8s_core.delete_namespaced_service, name=name
        )

    async def create_deployment(self, body: V1Deployment) -> Any:
        return await self._call(
            "creating",
            f"deployment:{body.metadata.name}",
            self.k8s_apps.create_namespaced_deployment,
            body=body,
        )

    async def delete_deployment(self, name: str) -> Any:
        # Foreground deletion removes the pods before the deployment disappears
        return await self._call(
            "deleting",
            f"deployment:{name}",
            self.k8s_apps.delete_namespaced_deployment,
            name=name,
            body=V1DeleteOptions(propagation_policy="Foreground"),
        )

    async def list_deployments(self, label_selector: str) -> list[V1Deployment]:
        result = await self._call(
            "listing",
            f"deployments:{label_selector}",
            self.k8s_apps.list_namespaced_deployment,
            label_selector=label_selector,
        )
        return list(result.items or [])

    async def list_pods(self, label_selector: str) -> list[V1Pod]:
        result = await self._call(
            "listing",
            f"pods:{label_selector}",
            self.k8s_core.list_namespaced_pod,
            label_selector=label_selector,
        )
        return list(result.items or [])

    async def read_pod_log(self, pod_name: str, container: str, tail_lines: int) -> str:
        result = await self._call(
            "reading logs of",
            f"pod:{pod_name}",
            self.k8s_core.read_namespaced_pod_log,
            name=pod_name,
            container=container,
            tail_lines=tail_lines,
        )
        return str(result or "")

    async def open_pod_log_stream(
        self, pod_name: str, container: str, tail_lines: int
    ) -> LogStream:
        # Only the connect phase is bounded; a followed log stays open until cancelled
        response: LogStream = await self._call(
            "streaming logs of",
            f"pod:{pod_name}",
            self.k8s_core.read_namespaced_pod_log,
            request_timeout=(self.request_timeout, None),
            name=pod_name,
            container=container,
            tail_lines=tail_lines,
            follow=True,
            _preload_content=False,
        )
        return response

    async def close(self) -> None:
        await asyncio.to_thread(self.api_client.close)


def load_cluster_client(settings: RuntimeSettings) -> KubernetesResourceClient:
    """Build a cluster client from settings.

    Resolution order: current cluster flag, inline kubeconfig, kubeconfig
    path, then in-cluster with a fallback to the default kubeconfig.

    Raises:
        KubeconfigValidationError: If a supplied kubeconfig is malformed
        kubernetes.config.ConfigException: If no configuration can be loaded
    """
    configuration = client.Configuration()

    if settings.load_from_current_cluster:
        config.load_incluster_config(client_configuration=configuration)
        logger.info("Loaded in-cluster Kubernetes configuration")
    elif settings.kubeconfig_content:
        document = parse_kubeconfig(settings.kubeconfig_content)
        validate_kubeconfig_document(document)
        config.load_kube_config_from_dict(document, client_configuration=configuration)
        logger.info("Loaded inline Kubernetes configuration")
    elif settings.kubeconfig:
        validate_kubeconfig(settings.kubeconfig)
        config.load_kube_config(config_file=settings.kubeconfig, client_configuration=configuration)
        logger.info("Loaded Kubernetes configuration from %s", settings.kubeconfig)
    else:
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            config.load_kube_config(client_configuration=configuration)
            logger.info("Loaded local Kubernetes configuration")

    return KubernetesResourceClient(
        client.ApiClient(configuration),
        settings.namespace,
        settings.request_timeout_seconds,
    )
