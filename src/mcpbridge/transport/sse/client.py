"""SSE transport: persistent event stream plus a discovered POST endpoint."""

import asyncio
import json
import logging
from collections import deque
from typing import Any

import httpx
from httpx_sse import EventSource, ServerSentEvent

from mcpbridge.config import ServerConfig, TransportKind
from mcpbridge.exceptions import (
    BridgeError,
    ConnectionLost,
    JsonRpcError,
    ProtocolError,
    RequestTimeout,
    TransportInitError,
)
from mcpbridge.shared.message_parser import RequestId, has_id, require_valid_id
from mcpbridge.shared.request_tracker import RequestTracker
from mcpbridge.transport.auth import build_auth
from mcpbridge.transport.base import Transport

logger = logging.getLogger(__name__)


class SseTransport(Transport):
    """Transport over a long-lived SSE stream.

    Two independent channels are involved:
    - Inbound: a GET request whose text/event-stream body carries every
      reply from the server as a ``message`` event
    - Outbound: POSTs to a message endpoint the server announces with an
      ``endpoint`` event on the stream

    Messages sent before the endpoint is known wait in a FIFO queue and are
    posted in submission order once it arrives. Requests are re-numbered with
    a local counter so replies can be correlated regardless of caller ids.
    """

    kind = TransportKind.SSE

    def __init__(
        self,
        name: str,
        config: ServerConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(name, config)
        self._http_client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None
        self._requests = RequestTracker(name)
        self._message_endpoint: str | None = None
        self._queue: deque[dict[str, Any]] = deque()
        self._drain_lock = asyncio.Lock()
        self._request_counter = 0
        self._stream_response: httpx.Response | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._connected = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._connected and not self._closed

    @property
    def message_endpoint(self) -> str | None:
        return self._message_endpoint

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def describe(self) -> dict[str, Any]:
        return {"url": self.config.url, "endpoint": self._message_endpoint}

    # ================================
    # Lifecycle
    # ================================

    async def connect(self) -> None:
        """Open the event stream and start the background reader.

        Raises:
            TransportInitError: If the stream cannot be opened
        """
        if self._closed:
            raise TransportInitError(f"SSE transport for '{self.name}' is closed")
        if self._connected:
            return

        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        auth_headers, auth = build_auth(self.config.auth)
        headers.update(auth_headers)

        request = self._http_client.build_request(
            "GET",
            self.config.url,
            headers=headers,
            timeout=httpx.Timeout(self.config.timeout_seconds, read=None),
        )
        try:
            response = await self._http_client.send(request, auth=auth, stream=True)
        except httpx.RequestError as e:
            raise TransportInitError(
                f"Failed to establish SSE connection to '{self.name}': {e}"
            ) from e

        if not response.is_success:
            await response.aclose()
            raise TransportInitError(
                f"Failed to establish SSE connection: "
                f"HTTP {response.status_code}: {response.reason_phrase}"
            )

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" not in content_type:
            await response.aclose()
            raise TransportInitError(
                f"Server '{self.name}' returned non-SSE content type: {content_type}"
            )

        self._stream_response = response
        self._connected = True
        self._reader_task = asyncio.create_task(
            self._read_stream(EventSource(response)), name=f"sse-stream-{self.name}"
        )
        self._reader_task.add_done_callback(self._on_reader_done)
        logger.debug(f"Opened SSE stream for '{self.name}' at {self.config.url}")

    async def close(self) -> None:
        """Stop the reader, fail pending requests and drop queued messages."""
        if self._closed:
            return
        self._closed = True
        self._initialized = False

        for task in (self._reader_task, self._drain_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._stream_response is not None:
            await self._stream_response.aclose()
            self._stream_response = None

        self._requests.reject_all(ConnectionLost("Transport closed"))
        self._queue.clear()
        self._connected = False

        if self._owns_client and not self._http_client.is_closed:
            await self._http_client.aclose()
        logger.debug(f"SSE transport closed for '{self.name}'")

    # ================================
    # Sending
    # ================================

    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Send a message and wait for its reply on the event stream.

        Notifications settle as soon as they are posted or queued.
        """
        if not self.is_open:
            raise ConnectionLost(f"SSE transport for '{self.name}' is not connected")

        if not has_id(message):
            await self._submit(message)
            return None

        original_id = require_valid_id(message)
        request_id = self._next_request_id()
        outbound = {**message, "id": request_id}
        future = self._requests.track(request_id, self.config.timeout_seconds)

        try:
            await self._submit(outbound)
            response = await future
        except JsonRpcError as e:
            e.response = {**e.response, "id": original_id}
            raise
        finally:
            self._requests.discard(request_id, future)

        return {**response, "id": original_id}

    def _next_request_id(self) -> RequestId:
        self._request_counter += 1
        while self._request_counter in self._requests:
            self._request_counter += 1
        return self._request_counter

    async def _submit(self, message: dict[str, Any]) -> None:
        """Post a message, or queue it behind earlier undelivered ones."""
        if (
            self._message_endpoint is None
            or self._queue
            or self._drain_lock.locked()
        ):
            self._queue.append(message)
            logger.debug(
                f"Queued SSE message for '{self.name}' ({len(self._queue)} waiting)"
            )
            if self._message_endpoint is not None:
                await self._drain_queue()
            return

        await self._post(message)

    async def _drain_queue(self) -> None:
        """Post queued messages in order, stopping at the first failure."""
        async with self._drain_lock:
            if self._queue and self._message_endpoint is not None:
                logger.info(
                    f"Processing {len(self._queue)} queued messages for '{self.name}'"
                )
            while self._queue and self._message_endpoint is not None:
                message = self._queue.popleft()
                try:
                    await self._post(message)
                except BridgeError as e:
                    logger.error(f"Failed to send queued message to '{self.name}': {e}")
                    self._queue.appendleft(message)
                    break

    async def _post(self, message: dict[str, Any]) -> None:
        """POST to the message endpoint; the reply arrives on the stream."""
        if self._message_endpoint is None:
            raise ProtocolError("No message endpoint available")

        headers = {"Content-Type": "application/json"}
        auth_headers, auth = build_auth(self.config.auth)
        headers.update(auth_headers)

        try:
            response = await self._http_client.post(
                self._message_endpoint,
                json=message,
                headers=headers,
                auth=auth,
                timeout=self.config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeout(f"POST to '{self.name}' timed out: {e}") from e
        except httpx.RequestError as e:
            raise ConnectionLost(f"POST to '{self.name}' failed: {e}") from e

        if not response.is_success:
            raise ProtocolError(
                f"Failed to send message: "
                f"HTTP {response.status_code}: {response.reason_phrase}"
            )
        logger.debug(f"Message sent to '{self.name}' at {self._message_endpoint}")

    # ================================
    # Receiving
    # ================================

    async def _read_stream(self, event_source: EventSource) -> None:
        """Background task: consume events until the stream ends."""
        async for sse_event in event_source.aiter_sse():
            self._handle_event(sse_event)
        logger.info(f"SSE stream ended for '{self.name}'")

    def _handle_event(self, sse_event: ServerSentEvent) -> None:
        event = sse_event.event or "message"
        data = sse_event.data.strip()
        logger.debug(f"Received SSE event [{event}] from '{self.name}': {data}")

        if event == "message":
            if data:
                self._handle_message(data)
        elif event == "endpoint":
            if data:
                self._set_endpoint(data)
        elif event == "ping":
            pass
        else:
            logger.debug(f"Ignoring SSE event '{event}' from '{self.name}'")

    def _handle_message(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse SSE message from '{self.name}': {e}")
            return
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object SSE message from '{self.name}'")
            return

        if not self._requests.resolve(message):
            logger.debug(f"Unsolicited message from '{self.name}': {message}")

    def _set_endpoint(self, data: str) -> None:
        self._message_endpoint = str(httpx.URL(self.config.url).join(data))
        logger.info(f"Message endpoint set for '{self.name}': {self._message_endpoint}")
        if self._queue:
            self._drain_task = asyncio.create_task(
                self._drain_queue(), name=f"sse-drain-{self.name}"
            )

    def _on_reader_done(self, task: asyncio.Task[None]) -> None:
        if self._closed:
            return
        if task.cancelled():
            reason = "stream reader cancelled"
        elif task.exception() is not None:
            reason = f"stream error: {task.exception()}"
            logger.error(f"SSE stream error for '{self.name}': {task.exception()}")
        else:
            reason = "stream ended"
        self._handle_disconnection(reason)

    def _handle_disconnection(self, reason: str) -> None:
        if not self._connected:
            return
        self._connected = False

        rejected = self._requests.reject_all(
            ConnectionLost(f"SSE connection lost for '{self.name}': {reason}")
        )
        logger.warning(
            f"SSE connection lost for '{self.name}' ({reason}); "
            f"rejected {rejected} pending requests"
        )
        self._notify_disconnected()
