"""
Per-subscriber bookkeeping for log streams and status polling.

A subscriber (typically one websocket client) has at most one log stream and
at most one status polling loop. Subscribing again replaces the previous one,
which is fully cancelled before the new one starts.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from mcp_server_runtime.logs import LogSink, LogStreamHandle
from mcp_server_runtime.models import RuntimeStatusSummary

if TYPE_CHECKING:
    from mcp_server_runtime.manager import McpServerRuntimeManager

logger = logging.getLogger(__name__)

StatusCallback = Callable[[RuntimeStatusSummary], Awaitable[None] | None]


class LogSubscriptions:
    """At most one active log stream per subscriber"""

    def __init__(self, manager: "McpServerRuntimeManager") -> None:
        self.manager = manager
        self._streams: dict[str, LogStreamHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def active(self, subscriber_id: str) -> LogStreamHandle | None:
        return self._streams.get(subscriber_id)

    async def subscribe(
        self, subscriber_id: str, server_id: str, sink: LogSink, lines: int | None = None
    ) -> LogStreamHandle | None:
        """Replace the subscriber's log stream with one for server_id"""
        async with self._locks.setdefault(subscriber_id, asyncio.Lock()):
            await self._cancel(subscriber_id)
            handle = await self.manager.stream_mcp_server_logs(server_id, sink, lines)
            if handle is not None:
                self._streams[subscriber_id] = handle
            return handle

    async def unsubscribe(self, subscriber_id: str) -> None:
        async with self._locks.setdefault(subscriber_id, asyncio.Lock()):
            await self._cancel(subscriber_id)
        self._locks.pop(subscriber_id, None)

    async def _cancel(self, subscriber_id: str) -> None:
        previous = self._streams.pop(subscriber_id, None)
        if previous is not None:
            logger.debug(
                "Cancelling log stream of %s for subscriber %s", previous.server_id, subscriber_id
            )
            await previous.cancel()

    async def close(self) -> None:
        for subscriber_id in list(self._streams.keys() | self._locks.keys()):
            await self.unsubscribe(subscriber_id)


class StatusSubscriptions:
    """At most one status polling loop per subscriber"""

    def __init__(self, manager: "McpServerRuntimeManager", interval: float | None = None) -> None:
        self.manager = manager
        self.interval = interval or manager.settings.status_poll_interval_seconds
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def is_subscribed(self, subscriber_id: str) -> bool:
        task = self._tasks.get(subscriber_id)
        return task is not None and not task.done()

    async def subscribe(self, subscriber_id: str, callback: StatusCallback) -> None:
        """Start delivering status summaries, replacing any previous loop"""
        await self.unsubscribe(subscriber_id)
        self._tasks[subscriber_id] = asyncio.create_task(
            self._poll(subscriber_id, callback), name=f"mcp-status-{subscriber_id}"
        )

    async def unsubscribe(self, subscriber_id: str) -> None:
        task = self._tasks.pop(subscriber_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll(self, subscriber_id: str, callback: StatusCallback) -> None:
        while True:
            try:
                result: Any = callback(self.manager.status_summary)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Status delivery to subscriber %s failed: %s", subscriber_id, e)
                return
            await asyncio.sleep(self.interval)

    async def close(self) -> None:
        for subscriber_id in list(self._tasks):
            await self.unsubscribe(subscriber_id)
