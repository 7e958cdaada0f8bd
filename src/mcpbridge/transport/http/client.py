"""Request/response HTTP transport."""

import json
import logging
import uuid
from typing import Any

import httpx
from httpx_sse import EventSource

from mcpbridge.config import ServerConfig, TransportKind
from mcpbridge.exceptions import ConnectionLost, ProtocolError, RequestTimeout
from mcpbridge.shared.message_parser import (
    INITIALIZE_METHOD,
    has_id,
    raise_for_error,
    require_valid_id,
)
from mcpbridge.transport.auth import build_auth
from mcpbridge.transport.base import Transport

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class HttpTransport(Transport):
    """HTTP transport where every message is one POST to the server URL.

    There is no persistent connection: the reply to a request is the body of
    the POST response, either plain JSON or a single-event SSE payload. The
    server may hand out a session id through the Mcp-Session-Id header, which
    is echoed on every later call.
    """

    kind = TransportKind.HTTP

    def __init__(
        self,
        name: str,
        config: ServerConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(name, config)
        self._http_client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None
        self._session_id: str | None = None
        self._fallback_session_id = f"session-{uuid.uuid4().hex}"
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def session_id(self) -> str:
        """Session id sent on non-initialize calls."""
        return self._session_id or self._fallback_session_id

    def describe(self) -> dict[str, Any]:
        return {"url": self.config.url}

    async def connect(self) -> None:
        """Nothing to open; the first POST is the initialize request."""
        if self._closed:
            raise ConnectionLost(f"HTTP transport for '{self.name}' is closed")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._initialized = False
        if self._owns_client and not self._http_client.is_closed:
            await self._http_client.aclose()
        logger.debug(f"HTTP transport closed for '{self.name}'")

    # ================================
    # Sending
    # ================================

    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """POST one message and return the reply carried by the response.

        Raises:
            AuthError: If a configured secret cannot be resolved
            ProtocolError: On non-2xx status or an unparseable body
            RequestTimeout: If the server doesn't answer in time
            ConnectionLost: If the request cannot reach the server
            JsonRpcError: If the reply carries a JSON-RPC error object
        """
        if self._closed:
            raise ConnectionLost(f"HTTP transport for '{self.name}' is closed")
        if has_id(message):
            require_valid_id(message)

        headers = self._build_headers(message)
        auth_headers, auth = build_auth(self.config.auth)
        headers.update(auth_headers)

        logger.debug(f"Sending {message.get('method', 'message')} to {self.config.url}")
        try:
            response = await self._http_client.post(
                self.config.url,
                json=message,
                headers=headers,
                auth=auth,
                timeout=self.config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeout(
                f"HTTP request to '{self.name}' timed out: {e}"
            ) from e
        except httpx.RequestError as e:
            raise ConnectionLost(
                f"HTTP request failed for server '{self.name}': {e}"
            ) from e

        if not response.is_success:
            logger.debug(f"Error response from '{self.name}': {response.text}")
            raise ProtocolError(
                f"HTTP {response.status_code}: {response.reason_phrase}"
            )

        self._handle_session_id(response)
        return await self._handle_response(response)

    def _build_headers(self, message: dict[str, Any]) -> dict[str, str]:
        """Build headers for a POST.

        The session header is left out of the initialize request only.
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if message.get("method") != INITIALIZE_METHOD:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _handle_session_id(self, response: httpx.Response) -> None:
        session_id = response.headers.get(SESSION_HEADER)
        if session_id and session_id != self._session_id:
            self._session_id = session_id
            logger.debug(f"Established session for server '{self.name}': {session_id}")

    # ================================
    # Response Handling
    # ================================

    async def _handle_response(self, response: httpx.Response) -> dict[str, Any] | None:
        content_type = response.headers.get("content-type", "")

        if "text/event-stream" in content_type:
            return await self._parse_event_stream(response)

        if not response.content.strip():
            logger.debug(f"Empty response from '{self.name}' (acknowledged)")
            return None

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON response: {response.text!r}") from e
        if not isinstance(payload, dict):
            raise ProtocolError(f"Expected a JSON object, got: {response.text!r}")
        return raise_for_error(payload)

    async def _parse_event_stream(self, response: httpx.Response) -> dict[str, Any]:
        """Treat an event-stream body as a single reply: first JSON data field."""
        async for sse_event in EventSource(response).aiter_sse():
            if not sse_event.data.strip():
                continue
            try:
                payload = json.loads(sse_event.data)
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse SSE data from '{self.name}': {sse_event.data}")
                continue
            if isinstance(payload, dict):
                return raise_for_error(payload)

        raise ProtocolError("No valid JSON data found in SSE response")
