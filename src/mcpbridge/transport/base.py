import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from types import TracebackType
from typing import Any, Self

from mcpbridge.config import ServerConfig, TransportKind
from mcpbridge.exceptions import AuthError, BridgeError, TransportInitError
from mcpbridge.shared.message_parser import (
    build_initialize_request,
    build_initialized_notification,
)

logger = logging.getLogger(__name__)

DisconnectCallback = Callable[["Transport"], None]


class Transport(ABC):
    """Abstract transport to a single MCP server.

    Concrete transports handle connecting, framing and reply correlation for
    one wire protocol. This base class owns the initialize handshake so every
    transport opens the same way:

    - connect() establishes the wire connection
    - initialize() connects and runs the initialize/initialized exchange
    - send() delivers one JSON-RPC message and returns its reply
    - close() tears the connection down

    Transports report fatal disconnects through registered callbacks rather
    than raising, since the failure usually happens in a background reader.
    """

    kind: TransportKind

    def __init__(self, name: str, config: ServerConfig) -> None:
        self.name = name
        self.config = config
        self._initialized = False
        self._disconnect_callbacks: list[DisconnectCallback] = []

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the underlying connection is usable."""

    @property
    def is_ready(self) -> bool:
        """True once the handshake completed and the connection is still open."""
        return self._initialized and self.is_open

    @abstractmethod
    async def connect(self) -> None:
        """Establish the wire connection.

        Raises:
            TransportInitError: If the connection cannot be established
        """

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Send one JSON-RPC message.

        Args:
            message: The JSON-RPC request or notification

        Returns:
            The JSON-RPC response for requests, or None once a notification
            (or an acknowledged message without a reply body) was delivered

        Raises:
            RequestTimeout: If no reply arrives in time
            ConnectionLost: If the connection dies while the call is in flight
            ProtocolError: If the peer sends something unusable
            JsonRpcError: If the reply carries a JSON-RPC error object
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call multiple times."""

    @abstractmethod
    def describe(self) -> dict[str, Any]:
        """Transport-specific status details (process id or remote URL)."""

    async def initialize(self) -> dict[str, Any] | None:
        """Connect and perform the initialize handshake.

        Returns:
            The server's initialize response

        Raises:
            TransportInitError: If connecting or the handshake fails
            AuthError: If a configured secret cannot be resolved
        """
        try:
            await self.connect()
            response = await self.send(build_initialize_request())
            await self.send(build_initialized_notification())
        except AuthError:
            raise
        except TransportInitError:
            raise
        except (BridgeError, ConnectionError, OSError) as e:
            raise TransportInitError(
                f"Failed to initialize '{self.name}': {e}"
            ) from e

        self._initialized = True
        logger.info(f"{self.kind.value} transport initialized for '{self.name}'")
        return response

    def add_disconnect_callback(self, callback: DisconnectCallback) -> None:
        """Register a callback invoked once when the connection dies."""
        self._disconnect_callbacks.append(callback)

    def _notify_disconnected(self) -> None:
        self._initialized = False
        callbacks, self._disconnect_callbacks = self._disconnect_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Disconnect callback for '{self.name}' failed: {e}")

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
        return None
