"""
Live log streaming from MCP server pods.

A stream is represented by a LogStreamHandle. Cancelling the handle closes
the underlying HTTP response before the pump task is cancelled, so the
connection is released even while a worker thread is blocked reading it.
"""

import asyncio
import codecs
import inspect
import logging
from collections.abc import Iterator
from typing import Any, Protocol

from kubernetes.client.models import V1Pod

from mcp_server_runtime.cluster import LogStream, ResourceClient
from mcp_server_runtime.deployment import CONTAINER_NAME
from mcp_server_runtime.exceptions import KubernetesOperationError, handle_kubernetes_errors
from mcp_server_runtime.naming import SERVER_ID_LABEL, sanitize_label_value, server_selector

logger = logging.getLogger(__name__)


class LogSink(Protocol):
    """Destination for log text; write may return an awaitable"""

    def write(self, data: str) -> Any: ...


async def write_to_sink(sink: LogSink, data: str) -> None:
    result = sink.write(data)
    if inspect.isawaitable(result):
        await result


def kubectl_logs_command(server_id: str, namespace: str, follow: bool = True) -> str:
    """kubectl invocation that shows the logs of a server's pod"""
    command = (
        f"kubectl logs -n {namespace} -l {SERVER_ID_LABEL}={sanitize_label_value(server_id)}"
        f" -c {CONTAINER_NAME} --tail=100"
    )
    return f"{command} -f" if follow else command


def disabled_runtime_message(server_id: str, namespace: str) -> str:
    return (
        f"Unable to stream logs for MCP server {server_id}.\n"
        "Kubernetes runtime is not configured on this instance.\n"
        f"Pods of this server carry the label {SERVER_ID_LABEL}={server_id}; once the runtime "
        f"is configured you can inspect them with:\n"
        f"  {kubectl_logs_command(server_id, namespace)}\n"
    )


def select_pod(pods: list[V1Pod]) -> V1Pod | None:
    """Prefer a running pod, otherwise the first one listed"""
    for pod in pods:
        if pod.status and pod.status.phase == "Running":
            return pod
    return pods[0] if pods else None


class LogStreamHandle:
    """Cancellation handle of one attached log stream"""

    def __init__(self, server_id: str, pod_name: str, response: LogStream) -> None:
        self.server_id = server_id
        self.pod_name = pod_name
        self.response = response
        self.task: asyncio.Task[None] | None = None
        self.released = False

    @property
    def done(self) -> bool:
        return self.task is None or self.task.done()

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        try:
            self.response.close()
            self.response.release_conn()
        except Exception as e:
            logger.debug("Error releasing log stream of pod %s: %s", self.pod_name, e)

    async def cancel(self) -> None:
        """Close the connection and wait for the pump task to finish"""
        self.release()
        if self.task is None:
            return
        if not self.task.done():
            self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        logger.debug("Cancelled log stream of MCP server %s", self.server_id)

    async def wait(self) -> None:
        """Wait until the source closes the stream"""
        if self.task is not None:
            await self.task


class LogStreamer:
    """Attaches log streams of MCP server pods to sinks"""

    def __init__(self, cluster: ResourceClient) -> None:
        self.cluster = cluster
        self._handles: set[LogStreamHandle] = set()

    @property
    def active_streams(self) -> int:
        return len(self._handles)

    async def stream(self, server_id: str, sink: LogSink, lines: int) -> LogStreamHandle | None:
        """Follow the logs of a server's pod.

        Returns:
            A handle to cancel the stream, or None if no pod exists

        Raises:
            KubernetesOperationError: If the log stream could not be opened
        """
        pods = await self.cluster.list_pods(server_selector(server_id))
        pod = select_pod(pods)
        if pod is None:
            logger.info("No pod found for MCP server %s, nothing to stream", server_id)
            await write_to_sink(
                sink,
                f"No pod found for MCP server {server_id} "
                f"({SERVER_ID_LABEL}={sanitize_label_value(server_id)}). "
                "The server may not be running.\n",
            )
            return None

        pod_name = pod.metadata.name
        try:
            response = await self._open(pod_name, lines)
        except KubernetesOperationError as e:
            await write_to_sink(sink, f"Unable to stream logs of pod {pod_name}: {e.message}\n")
            raise
        handle = LogStreamHandle(server_id, pod_name, response)
        handle.task = asyncio.create_task(self._pump(handle, sink), name=f"mcp-logs-{server_id}")
        self._handles.add(handle)
        handle.task.add_done_callback(lambda _task: self._handles.discard(handle))
        logger.info("Streaming logs of pod %s for MCP server %s", pod_name, server_id)
        return handle

    @handle_kubernetes_errors("opening", "log stream")
    async def _open(self, pod_name: str, lines: int) -> LogStream:
        return await self.cluster.open_pod_log_stream(pod_name, CONTAINER_NAME, lines)

    async def _pump(self, handle: LogStreamHandle, sink: LogSink) -> None:
        chunks: Iterator[Any] = iter(handle.response.stream(decode_content=True))
        # Multibyte characters may be split across chunks
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await asyncio.to_thread(next, chunks, None)
                if chunk is None:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        await write_to_sink(sink, tail)
                    break
                if isinstance(chunk, bytes):
                    chunk = decoder.decode(chunk)
                if chunk:
                    await write_to_sink(sink, chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Closing the response from cancel() surfaces here as a read error
            if not handle.released:
                logger.warning("Log stream of pod %s ended with error: %s", handle.pod_name, e)
        finally:
            handle.release()
        logger.debug("Log stream of pod %s finished", handle.pod_name)

    async def close_all(self) -> None:
        for handle in list(self._handles):
            await handle.cancel()
