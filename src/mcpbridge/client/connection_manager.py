import asyncio
import logging
from collections.abc import Callable
from typing import Any

from mcpbridge.client.connection import Connection, ConnectionInfo
from mcpbridge.config import BridgeConfig, ServerConfig
from mcpbridge.exceptions import NotConfigured
from mcpbridge.transport.base import Transport
from mcpbridge.transport.factory import create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, ServerConfig], Transport]

DEFAULT_SHUTDOWN_TIMEOUT = 10.0


class ConnectionManager:
    """Owns the registry of logical server name -> live connection.

    Connections are created lazily on first use, handshaken before they are
    registered, and evicted as soon as their transport reports a fatal
    disconnect so the next acquire starts from scratch. Handshakes for the
    same name are serialized; different names proceed independently.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        transport_factory: TransportFactory = create_transport,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        self._config = config or BridgeConfig()
        self._transport_factory = transport_factory
        self._shutdown_timeout = shutdown_timeout
        self._extra_servers: dict[str, ServerConfig] = {}
        self._connections: dict[str, Connection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._close_tasks: set[asyncio.Task[None]] = set()

    # ================================
    # Configuration
    # ================================

    def add_server(self, name: str, config: ServerConfig) -> None:
        """Register a server outside the config document (e.g. from the CLI).

        Takes precedence over a config entry with the same name.
        """
        self._extra_servers[name] = config
        logger.debug(f"Registered server '{name}'")

    def get_server_config(self, name: str) -> ServerConfig | None:
        if name in self._extra_servers:
            return self._extra_servers[name]
        return self._config.get_server(name)

    def server_names(self) -> list[str]:
        """All configured server names, connected or not."""
        names = list(self._extra_servers)
        names.extend(name for name in self._config.servers if name not in names)
        return names

    # ================================
    # Registry
    # ================================

    def get_connection(self, name: str) -> Connection | None:
        return self._connections.get(name)

    def connection_names(self) -> list[str]:
        return list(self._connections)

    def connection_count(self) -> int:
        return len(self._connections)

    def status(self) -> list[ConnectionInfo]:
        """Status of every registered connection."""
        return [connection.info() for connection in self._connections.values()]

    # ================================
    # Lifecycle
    # ================================

    async def acquire(self, name: str) -> Connection:
        """Return a ready connection for the name, connecting if needed.

        Raises:
            NotConfigured: If no configuration exists for the name
            TransportInitError: If connecting or the handshake fails
            AuthError: If a configured secret cannot be resolved
        """
        connection = self._connections.get(name)
        if connection is not None and connection.is_ready:
            return connection

        config = self.get_server_config(name)
        if config is None:
            raise NotConfigured(name)

        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            connection = self._connections.get(name)
            if connection is not None:
                if connection.is_ready:
                    return connection
                self._evict(name, connection)

            transport = self._transport_factory(name, config)
            connection = Connection(name, transport)
            transport.add_disconnect_callback(
                lambda _: self._evict(name, connection)
            )

            try:
                await connection.initialize()
            except BaseException as e:
                logger.error(f"Handshake with '{name}' failed: {e}")
                await self._close_connection(connection)
                raise

            self._connections[name] = connection
            logger.info(f"Connection to '{name}' ready ({connection.kind.value})")
            return connection

    async def send(self, name: str, message: dict[str, Any]) -> dict[str, Any] | None:
        """Acquire the named connection and forward one message to it."""
        connection = await self.acquire(name)
        return await connection.send(message)

    async def release(self, name: str) -> None:
        """Close and unregister one connection. No-op if not connected."""
        connection = self._connections.pop(name, None)
        if connection is None:
            return
        await self._close_connection(connection)
        logger.info(f"Released connection to '{name}'")

    async def release_all(self) -> None:
        """Close and unregister every connection concurrently."""
        connections = list(self._connections.values())
        self._connections.clear()
        if connections:
            logger.info(f"Closing {len(connections)} connections")
            await asyncio.gather(
                *(self._close_connection(connection) for connection in connections)
            )

        pending_closes = list(self._close_tasks)
        if pending_closes:
            await asyncio.gather(*pending_closes, return_exceptions=True)

    def _evict(self, name: str, connection: Connection) -> None:
        """Drop a dead connection, but only if it is still the registered one."""
        if self._connections.get(name) is not connection:
            return
        del self._connections[name]
        logger.warning(f"Connection to '{name}' lost, removed from registry")

        task = asyncio.create_task(
            self._close_connection(connection), name=f"close_{name}"
        )
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)

    async def _close_connection(self, connection: Connection) -> None:
        """Best-effort close bounded by the shutdown timeout."""
        try:
            await asyncio.wait_for(connection.close(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"Closing '{connection.name}' took longer than "
                f"{self._shutdown_timeout}s, abandoning it"
            )
        except Exception as e:
            logger.error(f"Error closing connection '{connection.name}': {e}")

    def __repr__(self) -> str:
        return (
            f"ConnectionManager(configured={len(self.server_names())}, "
            f"connected={len(self._connections)})"
        )
