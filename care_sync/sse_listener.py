"""
SSE change event source.

Opens one persistent SSE connection per subscription with:
- A bounded first connection attempt (failure raises SubscriptionError)
- Automatic reconnection with exponential backoff afterwards
- A reconnect callback, since the stream does not replay missed events
- Heartbeat timeout detection through the read timeout
- Graceful shutdown support
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Any

import httpx
import structlog

from .errors import SubscriptionError
from .event_source import EventHandler, ReconnectHandler, SubscriptionHandle
from .models import ChangeEvent

log = structlog.get_logger()

# Reconnection parameters
RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 60.0
RECONNECT_MULTIPLIER = 2.0

_CONTROL_EVENTS = {"heartbeat", "keepalive", "system"}


class _SSEStream:
    """A single subscription's SSE connection and its reconnect loop."""

    def __init__(
        self,
        source: SSEChangeEventSource,
        handle: SubscriptionHandle,
        on_event: EventHandler,
        on_reconnect: ReconnectHandler | None,
    ):
        self._source = source
        self._handle = handle
        self._on_event = on_event
        self._on_reconnect = on_reconnect

        self._running = False
        self._connected = False
        self._last_event_at: float | None = None
        self._reconnect_count = 0
        self._task: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def last_event_at(self) -> float | None:
        return self._last_event_at

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    async def start(self) -> None:
        """Start the loop and wait for the first connection."""
        self._ready = asyncio.get_running_loop().create_future()
        self._running = True
        self._task = asyncio.create_task(self._listen_loop())
        try:
            await asyncio.wait_for(
                asyncio.shield(self._ready), timeout=self._source.connect_timeout
            )
        except Exception as exc:
            await self.stop()
            raise SubscriptionError(
                f"could not open stream for {self._handle.topic}: {exc!r}",
                topic=self._handle.topic,
            ) from exc

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._ready and not self._ready.done():
            self._ready.cancel()
        self._connected = False

    async def _listen_loop(self) -> None:
        backoff = self._source.reconnect_base

        while self._running:
            try:
                await self._connect_and_stream()
                backoff = self._source.reconnect_base  # Reset on clean disconnect
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._connected = False
                if self._ready and not self._ready.done():
                    self._ready.set_exception(exc)
                    return
                log.warning(
                    "sse_listener.connection_lost",
                    topic=self._handle.topic,
                    error=str(exc),
                    backoff=backoff,
                )

            if not self._running:
                break

            self._connected = False
            self._reconnect_count += 1
            log.info(
                "sse_listener.reconnecting",
                topic=self._handle.topic,
                backoff=backoff,
                attempt=self._reconnect_count,
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * RECONNECT_MULTIPLIER, self._source.reconnect_max)

    async def _connect_and_stream(self) -> None:
        async with self._source.client() as client:
            async with client.stream(
                "GET",
                self._source.stream_url,
                params={"topic": self._handle.topic, "filter": self._handle.filter_expr},
                headers=self._source.headers(),
            ) as response:
                response.raise_for_status()
                self._connected = True
                self._last_event_at = time.time()

                if self._ready and not self._ready.done():
                    self._ready.set_result(None)
                    log.info(
                        "sse_listener.connected",
                        topic=self._handle.topic,
                        filter=self._handle.filter_expr,
                    )
                else:
                    log.info(
                        "sse_listener.reconnected",
                        topic=self._handle.topic,
                        attempt=self._reconnect_count,
                    )
                    await self._notify_reconnect()

                current_event_type: str | None = None
                current_data_lines: list[str] = []

                async for line in response.aiter_lines():
                    if not self._running:
                        break

                    line = line.rstrip("\n")
                    self._last_event_at = time.time()

                    if line.startswith("event:"):
                        current_event_type = line[6:].strip()
                    elif line.startswith("data:"):
                        current_data_lines.append(line[5:].strip())
                    elif line.startswith(":") or line.startswith("id:"):
                        # Comment / keepalive, or an id we cannot resume from
                        pass
                    elif line == "":
                        if current_data_lines and current_event_type not in _CONTROL_EVENTS:
                            await self._dispatch_event(current_data_lines)
                        current_event_type = None
                        current_data_lines = []

    async def _notify_reconnect(self) -> None:
        if self._on_reconnect is None:
            return
        try:
            await self._on_reconnect()
        except Exception:
            log.exception("sse_listener.reconnect_handler_error", topic=self._handle.topic)

    async def _dispatch_event(self, data_lines: list[str]) -> None:
        data_str = "\n".join(data_lines)
        try:
            data = json.loads(data_str)
            event = ChangeEvent.from_wire(data, topic=self._handle.topic)
        except (json.JSONDecodeError, ValueError, AttributeError):
            log.warning("sse_listener.parse_error", topic=self._handle.topic, data=data_str[:200])
            return

        try:
            await self._on_event(event)
        except Exception:
            log.exception(
                "sse_listener.handler_error",
                topic=event.topic,
                operation=event.operation.value,
            )


class SSEChangeEventSource:
    """
    Change event source backed by the backend's SSE realtime endpoint.

    Each subscription gets its own connection so one failing topic does not
    take the others down.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        realtime_path: str = "/realtime/v1/stream",
        connect_timeout: float = 10.0,
        heartbeat_timeout: float = 90.0,
        reconnect_base: float = RECONNECT_BASE_SECONDS,
        reconnect_max: float = RECONNECT_MAX_SECONDS,
        verify_tls: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._realtime_path = realtime_path
        self.connect_timeout = connect_timeout
        self.heartbeat_timeout = heartbeat_timeout
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max
        self._verify_tls = verify_tls
        self._transport = transport
        self._streams: dict[str, _SSEStream] = {}

    @property
    def stream_url(self) -> str:
        return f"{self._url}{self._realtime_path}"

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "apikey": self._api_key,
            "Accept": "text/event-stream",
        }

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.connect_timeout, read=self.heartbeat_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def subscribe(
        self,
        topic: str,
        filter_expr: str,
        on_event: EventHandler,
        on_reconnect: ReconnectHandler | None = None,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(uuid.uuid4().hex, topic, filter_expr)
        stream = _SSEStream(self, handle, on_event, on_reconnect)
        await stream.start()
        self._streams[handle.id] = stream
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        stream = self._streams.pop(handle.id, None)
        if stream is None:
            return
        await stream.stop()
        log.info("sse_listener.stopped", topic=handle.topic)

    async def close(self) -> None:
        for stream in list(self._streams.values()):
            await stream.stop()
        self._streams.clear()

    def status(self) -> list[dict[str, Any]]:
        return [
            {
                "topic": stream._handle.topic,
                "connected": stream.connected,
                "last_event_at": stream.last_event_at,
                "reconnect_count": stream.reconnect_count,
            }
            for stream in self._streams.values()
        ]
