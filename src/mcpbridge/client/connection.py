import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mcpbridge.config import TransportKind
from mcpbridge.exceptions import ConnectionLost, TransportInitError
from mcpbridge.transport.base import Transport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class ConnectionInfo:
    """Read-only status of one connection."""

    name: str
    transport: TransportKind
    alive: bool
    pid: int | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        info: dict[str, Any] = {"transport": self.transport.value, "alive": self.alive}
        if self.transport is TransportKind.STDIO:
            info["pid"] = self.pid
        else:
            info["url"] = self.url
        return info


class Connection:
    """A logical server name bound to one transport.

    Tracks the lifecycle created -> initializing -> ready -> closed and refuses
    application traffic until the handshake has completed.
    """

    def __init__(self, name: str, transport: Transport) -> None:
        self.name = name
        self.transport = transport
        self.state = ConnectionState.CREATED

    @property
    def kind(self) -> TransportKind:
        return self.transport.kind

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY and self.transport.is_ready

    async def initialize(self) -> None:
        """Run the initialize handshake on the transport.

        Raises:
            TransportInitError: If the connection is not fresh or the handshake fails
            AuthError: If a configured secret cannot be resolved
        """
        if self.state is not ConnectionState.CREATED:
            raise TransportInitError(
                f"Connection '{self.name}' cannot initialize from state {self.state.value}"
            )

        self.state = ConnectionState.INITIALIZING
        try:
            await self.transport.initialize()
        except BaseException:
            self.state = ConnectionState.CLOSED
            raise
        self.state = ConnectionState.READY

    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Forward an application message once the handshake is done."""
        if self.state is not ConnectionState.READY or not self.transport.is_ready:
            raise ConnectionLost(f"Connection '{self.name}' is not ready")
        return await self.transport.send(message)

    async def close(self) -> None:
        self.state = ConnectionState.CLOSED
        await self.transport.close()

    def info(self) -> ConnectionInfo:
        details = self.transport.describe()
        return ConnectionInfo(
            name=self.name,
            transport=self.kind,
            alive=self.is_ready,
            pid=details.get("pid"),
            url=details.get("url"),
        )

    def __repr__(self) -> str:
        return f"Connection(name={self.name!r}, kind={self.kind.value}, state={self.state.value})"
