# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Spout - live stream consumer over WebSocket.

A Spout subscribes to one stream kind and buffers what the server pushes
in a bounded FIFO. When the buffer is full a new item waits a few
milliseconds for room and is then dropped and counted; items are never
reordered.

Stream kinds: event, detect, audit, deployment, billing

Accounting:
    received == delivered + dropped + buffered
where `received` includes the items the server reports it dropped itself
(`{"__trace": "dropped", "n": N}` frames) and `delivered` includes items
routed to a registered FutureResults.

Shutdown is idempotent and does not drain the buffer: once stopped, get()
returns None for every current and future caller. A read error other than
a normal close is reported once on `errors` and stops the Spout the same
way. There is no automatic reconnect.

Usage:
    async with Client(opts) as client:
        async with Spout(client, "event", tag="vip") as spout:
            async for event in spout:
                print(event["routing"]["hostname"])

    # Or explicitly
    spout = Spout(client, "detect", max_buffer=100)
    await spout.start()
    item = await spout.get(timeout=5)
    await spout.shutdown()
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from .client import Client
from .errors import DecodeError, InvalidOptionsError, NetworkError
from .serialization import dumps_json, loads_json

logger = logging.getLogger(__name__)

STREAM_KINDS = ("event", "detect", "audit", "deployment", "billing")

DEFAULT_MAX_BUFFER = 1024
DEFAULT_READ_TIMEOUT = 30.0
DEFAULT_ENQUEUE_TIMEOUT = 0.01
DEFAULT_CONNECT_TIMEOUT = 10.0
FUTURES_CLEANUP_INTERVAL = 30.0
MAX_PENDING_ERRORS = 1024

# Returned internally by _next_item when the owner stopped
_STOPPED = object()


async def _get_counted(queue: asyncio.Queue, on_item: Callable[[], None] | None) -> Any:
    item = await queue.get()
    if on_item is not None:
        on_item()
    return item


async def _next_item(
    queue: asyncio.Queue,
    stopped: asyncio.Event,
    timeout: float | None,
    on_item: Callable[[], None] | None = None,
) -> Any:
    """Wait for a queue item or the stop signal, whichever comes first.

    `on_item` runs in the same step as the dequeue.
    """
    if stopped.is_set():
        return _STOPPED
    getter = asyncio.ensure_future(_get_counted(queue, on_item))
    stopper = asyncio.ensure_future(stopped.wait())
    try:
        done, _ = await asyncio.wait(
            {getter, stopper},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (getter, stopper):
            if not task.done():
                task.cancel()
    # An item already dequeued is handed out even if stop raced with it.
    if getter in done:
        return getter.result()
    if stopper in done:
        return _STOPPED
    raise asyncio.TimeoutError()


@dataclass
class SpoutMetrics:
    """Spout runtime counters."""
    received: int = 0
    delivered: int = 0
    dropped: int = 0
    routed: int = 0
    errors: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "received": self.received,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "routed": self.routed,
            "errors": self.errors,
            "last_error": self.last_error,
        }


class FutureResults:
    """
    Receives the stream items tagged with one investigation ID.

    Items whose routing.event_type is CLOUD_NOTIFICATION only mark
    `was_received`; every other item is also accumulated for
    get_new_responses(). All items go to the queue read by get().
    """

    def __init__(self, buffer_size: int = 1000):
        self.was_received = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._results: list = []
        self._new_result = asyncio.Event()
        self._closed = asyncio.Event()

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def add_result(self, result: Any) -> bool:
        """Queue a result; False when the queue is full or closed."""
        if self.is_closed:
            return False
        routing = result.get("routing") if isinstance(result, dict) else None
        if isinstance(routing, dict) and routing.get("event_type") == "CLOUD_NOTIFICATION":
            self.was_received = True
        else:
            self._results.append(result)
            self._new_result.set()
        try:
            self._queue.put_nowait(result)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> Any:
        """Next result, or None once closed."""
        item = await _next_item(self._queue, self._closed, None)
        return None if item is _STOPPED else item

    async def get_with_timeout(self, timeout: float) -> Any:
        """
        Next result within `timeout` seconds.

        Raises:
            asyncio.TimeoutError: nothing arrived in time
        """
        item = await _next_item(self._queue, self._closed, timeout)
        return None if item is _STOPPED else item

    async def get_new_responses(self, timeout: float) -> list:
        """All results accumulated since the last call, waiting up to `timeout`."""
        if not self._results:
            try:
                await asyncio.wait_for(self._new_result.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return []
        results, self._results = self._results, []
        self._new_result.clear()
        return results

    def close(self) -> None:
        self._closed.set()


class Spout:
    """
    Live stream subscription.

    Filters are fixed at construction. The reader loop is the single
    producer; any number of consumers may call get() concurrently.
    """

    def __init__(
        self,
        client: Client,
        kind: str,
        *,
        tag: str | None = None,
        category: str | None = None,
        investigation_id: str | None = None,
        sensor_id: str | None = None,
        user_id: str | None = None,
        parse_messages: bool = True,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        extra_params: dict[str, Any] | None = None,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        enqueue_timeout: float = DEFAULT_ENQUEUE_TIMEOUT,
        stream_url: str | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        if kind not in STREAM_KINDS:
            raise InvalidOptionsError(
                f"invalid stream type '{kind}', must be one of: {', '.join(STREAM_KINDS)}",
                field="kind",
            )
        if max_buffer < 1:
            raise InvalidOptionsError("max_buffer must be at least 1", field="max_buffer")
        if not 0 < enqueue_timeout <= DEFAULT_ENQUEUE_TIMEOUT:
            raise InvalidOptionsError(
                f"enqueue_timeout must be in (0, {DEFAULT_ENQUEUE_TIMEOUT}]", field="enqueue_timeout"
            )

        self._client = client
        self.kind = kind
        self.tag = tag
        self.category = category
        self.investigation_id = investigation_id
        self.sensor_id = sensor_id
        self.user_id = user_id
        self.parse_messages = parse_messages
        self.max_buffer = max_buffer
        self.extra_params = dict(extra_params or {})
        self.read_timeout = read_timeout
        self.enqueue_timeout = enqueue_timeout
        self.stream_url = stream_url or client.config.stream_url
        self._on_error = on_error

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_buffer)
        self.errors: asyncio.Queue = asyncio.Queue(maxsize=MAX_PENDING_ERRORS)
        self._metrics = SpoutMetrics()
        self._futures: dict[str, tuple[FutureResults, float]] = {}

        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._connected = asyncio.Event()
        self._stopped = asyncio.Event()
        self._started = False

    @property
    def metrics(self) -> SpoutMetrics:
        return self._metrics

    @property
    def is_running(self) -> bool:
        return self._started and not self._stopped.is_set()

    @property
    def buffered(self) -> int:
        return self._queue.qsize()

    def subscription_header(self) -> dict[str, Any]:
        """The JSON frame sent right after connecting."""
        header: dict[str, Any] = {
            "oid": self._client.oid,
            "api_key": self._client.options.api_key,
            "jwt": self._client.session.current_token(),
            "type": self.kind,
            "tag": self.tag,
            "cat": self.category,
            "inv_id": self.investigation_id,
            "sid": self.sensor_id,
            "uid": self.user_id,
        }
        header = {k: v for k, v in header.items() if v}
        if self._client.oid:
            header["resume_context"] = {"oid": self._client.oid}
        header.update(self.extra_params)
        return header

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self.get()
        if item is None and self._stopped.is_set():
            raise StopAsyncIteration
        return item

    async def start(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
        """
        Connect, send the subscription header and wait for the server's
        "connected" trace.

        Raises:
            InvalidOptionsError: already started
            NetworkError: connection failed or was not confirmed in time
        """
        if self._started:
            raise InvalidOptionsError("spout already started", field="kind")
        self._started = True

        if self._client.session.has_api_key:
            await self._client.ensure_token()

        http = await self._client.get_http_session()
        try:
            self._ws = await http.ws_connect(
                self.stream_url,
                headers={"User-Agent": self._client.config.user_agent},
            )
            await self._ws.send_str(dumps_json(self.subscription_header()))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._stopped.set()
            raise NetworkError("WS", self.stream_url, e) from e

        self._reader_task = asyncio.create_task(self._reader_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_futures_loop())

        connected = asyncio.ensure_future(self._connected.wait())
        stopped = asyncio.ensure_future(self._stopped.wait())
        try:
            done, _ = await asyncio.wait(
                {connected, stopped},
                timeout=connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            connected.cancel()
            stopped.cancel()
        if not self._connected.is_set():
            await self.shutdown()
            reason = self._metrics.last_error or "timeout waiting for connection confirmation"
            raise NetworkError("WS", self.stream_url, reason)
        logger.info(f"Spout connected: type={self.kind} buffer={self.max_buffer}")

    async def _reader_loop(self) -> None:
        ws = self._ws
        try:
            while not self._stopped.is_set():
                try:
                    msg = await asyncio.wait_for(ws.receive(), timeout=self.read_timeout)
                except asyncio.TimeoutError:
                    self._report_error(NetworkError("WS", self.stream_url, f"no frame within {self.read_timeout}s"))
                    break

                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._process(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._report_error(NetworkError("WS", self.stream_url, ws.exception() or "stream error"))
                    break
                elif msg.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.CLOSED,
                ):
                    code = ws.close_code
                    if code not in (None, aiohttp.WSCloseCode.OK) and not self._stopped.is_set():
                        self._report_error(NetworkError("WS", self.stream_url, f"stream closed with code {code}"))
                    break
        finally:
            self._mark_stopped()
            if not ws.closed:
                await ws.close()

    def _is_connected_trace(self, data: str | bytes) -> bool:
        try:
            value = loads_json(data)
        except DecodeError:
            return False
        return isinstance(value, dict) and value.get("__trace") == "connected"

    async def _process(self, data: str | bytes) -> None:
        # The confirmation trace is consumed in both modes.
        if not self._connected.is_set() and self._is_connected_trace(data):
            logger.debug("Spout: connection confirmed")
            self._connected.set()
            return

        if not self.parse_messages:
            await self._enqueue(data)
            return

        try:
            value = loads_json(data)
        except DecodeError as e:
            self._report_error(e)
            return

        if isinstance(value, dict) and isinstance(value.get("__trace"), str):
            trace = value["__trace"]
            if trace == "connected":
                self._connected.set()
            elif trace == "dropped":
                n = value.get("n")
                if isinstance(n, int) and not isinstance(n, bool) and n > 0:
                    self._metrics.received += n
                    self._metrics.dropped += n
                    logger.warning(f"Spout: server dropped {n} messages")
            return

        if self._route_to_future(value):
            return
        await self._enqueue(value)

    def _route_to_future(self, value: Any) -> bool:
        routing = value.get("routing") if isinstance(value, dict) else None
        inv_id = routing.get("investigation_id") if isinstance(routing, dict) else None
        if not inv_id or not isinstance(inv_id, str):
            return False
        registration = self._futures.get(inv_id)
        if registration is None:
            logger.debug(f"Spout: no FutureResults for {inv_id}, using main buffer")
            return False
        future, expires_at = registration
        if expires_at <= time.monotonic():
            self._futures.pop(inv_id, None)
            future.close()
            return False

        self._metrics.received += 1
        if future.add_result(value):
            self._metrics.routed += 1
            self._metrics.delivered += 1
        else:
            self._metrics.dropped += 1
            logger.warning(f"Spout: FutureResults for {inv_id} full, message dropped")
        return True

    async def _put_counted(self, item: Any) -> None:
        # No await between placement and the count.
        await self._queue.put(item)
        self._metrics.received += 1

    async def _enqueue(self, item: Any) -> None:
        """Buffer an item, or drop it after enqueue_timeout.

        `received` moves together with the buffer or the drop counter, so
        received == delivered + dropped + buffered holds at every await.
        """
        try:
            self._queue.put_nowait(item)
            self._metrics.received += 1
            return
        except asyncio.QueueFull:
            pass
        try:
            await asyncio.wait_for(self._put_counted(item), timeout=self.enqueue_timeout)
        except asyncio.TimeoutError:
            self._metrics.received += 1
            self._metrics.dropped += 1
            logger.warning(f"Spout buffer full ({self.max_buffer}), message dropped")

    def _report_error(self, error: Exception) -> None:
        self._metrics.errors += 1
        self._metrics.last_error = str(error)
        logger.warning(f"Spout error: {error}")
        try:
            self.errors.put_nowait(error)
        except asyncio.QueueFull:
            logger.warning("Spout error queue full, error not queued")
        if self._on_error:
            try:
                self._on_error(error)
            except Exception as e:
                logger.warning(f"Spout on_error callback error: {e}")

    async def _cleanup_futures_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=FUTURES_CLEANUP_INTERVAL)
            except asyncio.TimeoutError:
                self.purge_expired_futures()

    def purge_expired_futures(self) -> int:
        """Drop expired FutureResults registrations; returns how many."""
        now = time.monotonic()
        expired = [k for k, (_, expires_at) in self._futures.items() if expires_at <= now]
        for tracking_id in expired:
            future, _ = self._futures.pop(tracking_id)
            future.close()
        if expired:
            logger.debug(f"Spout: purged {len(expired)} expired FutureResults")
        return len(expired)

    def register_future_results(self, tracking_id: str, future: FutureResults, ttl: float) -> None:
        """
        Route items whose routing.investigation_id equals `tracking_id`
        to `future` for the next `ttl` seconds.
        """
        self._futures[tracking_id] = (future, time.monotonic() + ttl)

    async def get(self, timeout: float | None = None) -> Any:
        """
        Next buffered item, or None once the Spout is stopped.

        Raises:
            asyncio.TimeoutError: `timeout` elapsed with nothing buffered
        """
        item = await _next_item(self._queue, self._stopped, timeout, on_item=self._count_delivered)
        return None if item is _STOPPED else item

    def _count_delivered(self) -> None:
        self._metrics.delivered += 1

    def get_dropped(self) -> int:
        return self._metrics.dropped

    def reset_dropped(self) -> None:
        self._metrics.dropped = 0

    def _mark_stopped(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        for future, _ in self._futures.values():
            future.close()
        self._futures.clear()
        logger.info(f"Spout stopped: {self._metrics.to_dict()}")

    async def shutdown(self) -> None:
        """Stop the reader loop and close the socket. Safe to call repeatedly."""
        self._mark_stopped()

        for task in (self._reader_task, self._cleanup_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
