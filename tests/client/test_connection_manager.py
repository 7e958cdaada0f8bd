import asyncio

import pytest

from mcpbridge.client.connection import Connection, ConnectionState
from mcpbridge.client.connection_manager import ConnectionManager
from mcpbridge.config import BridgeConfig, ServerConfig
from mcpbridge.exceptions import (
    AuthError,
    ConnectionLost,
    NotConfigured,
    TransportInitError,
)
from support import FakeTransport, FakeTransportFactory, echo_server_config, wait_until


def remote_config(url: str = "https://example.com/mcp") -> BridgeConfig:
    return BridgeConfig(servers={"remote": ServerConfig(url=url)})


@pytest.fixture
def factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
async def manager(factory):
    manager = ConnectionManager(remote_config(), transport_factory=factory)
    yield manager
    await manager.release_all()


class TestConnection:
    async def test_refuses_traffic_before_handshake(self):
        # Arrange
        connection = Connection("remote", FakeTransport("remote", ServerConfig(url="https://x/mcp")))

        # Act & Assert
        with pytest.raises(ConnectionLost, match="not ready"):
            await connection.send({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        assert connection.state is ConnectionState.CREATED

    async def test_handshake_moves_to_ready(self):
        # Arrange
        transport = FakeTransport("remote", ServerConfig(url="https://x/mcp"))
        connection = Connection("remote", transport)

        # Act
        await connection.initialize()

        # Assert
        assert connection.state is ConnectionState.READY
        assert connection.is_ready
        assert [m["method"] for m in transport.sent] == [
            "initialize",
            "notifications/initialized",
        ]

    async def test_failed_handshake_closes_and_cannot_retry(self):
        # Arrange
        transport = FakeTransport("remote", ServerConfig(url="https://x/mcp"))
        transport.fail_with = OSError("refused")
        connection = Connection("remote", transport)

        # Act
        with pytest.raises(TransportInitError):
            await connection.initialize()

        # Assert
        assert connection.state is ConnectionState.CLOSED
        with pytest.raises(TransportInitError, match="cannot initialize"):
            await connection.initialize()

    async def test_info_reports_transport_details(self):
        # Arrange
        transport = FakeTransport("remote", ServerConfig(url="https://x/mcp"))
        connection = Connection("remote", transport)
        await connection.initialize()

        # Act
        info = connection.info()

        # Assert
        assert info.to_dict() == {"transport": "http", "alive": True, "url": "https://x/mcp"}


class TestAcquire:
    async def test_first_call_connects_and_registers(self, manager, factory):
        # Act
        response = await manager.send(
            "remote", {"jsonrpc": "2.0", "id": 7, "method": "tools/list"}
        )

        # Assert
        assert response == {"jsonrpc": "2.0", "id": 7, "result": {}}
        assert manager.connection_names() == ["remote"]
        assert len(factory.created) == 1

    async def test_second_call_reuses_connection(self, manager, factory):
        # Act
        first = await manager.acquire("remote")
        second = await manager.acquire("remote")

        # Assert
        assert first is second
        assert len(factory.created) == 1
        assert factory.created[0].connects == 1

    async def test_unknown_name_raises_not_configured(self, manager, factory):
        # Act & Assert
        with pytest.raises(NotConfigured, match="ghost"):
            await manager.acquire("ghost")
        assert factory.created == []
        assert manager.connection_count() == 0

    async def test_unknown_names_leave_no_lock_behind(self, manager):
        # Act
        for name in ("ghost-1", "ghost-2", "ghost-1"):
            with pytest.raises(NotConfigured):
                await manager.acquire(name)

        # Assert
        assert manager._locks == {}

    async def test_failed_handshake_is_not_registered(self, manager, factory):
        # Arrange
        factory.fail_with = OSError("connection refused")

        # Act & Assert
        with pytest.raises(TransportInitError):
            await manager.acquire("remote")
        assert manager.connection_count() == 0
        assert factory.created[0].closed

    async def test_auth_error_propagates_unwrapped(self, manager, factory):
        # Arrange
        factory.fail_with = AuthError("Environment variable 'TOKEN' is not set")

        # Act & Assert
        with pytest.raises(AuthError):
            await manager.acquire("remote")
        assert manager.connection_count() == 0

    async def test_retry_after_failure_starts_fresh(self, manager, factory):
        # Arrange
        factory.fail_with = OSError("down")
        with pytest.raises(TransportInitError):
            await manager.acquire("remote")
        factory.fail_with = None

        # Act
        connection = await manager.acquire("remote")

        # Assert
        assert connection.is_ready
        assert len(factory.created) == 2

    async def test_concurrent_acquires_share_one_handshake(self, manager, factory):
        # Arrange
        factory.handshake_delay = 0.05

        # Act
        connections = await asyncio.gather(*(manager.acquire("remote") for _ in range(5)))

        # Assert
        assert len(factory.created) == 1
        assert all(connection is connections[0] for connection in connections)

    async def test_added_server_takes_precedence_over_config(self, factory):
        # Arrange
        manager = ConnectionManager(remote_config(), transport_factory=factory)
        manager.add_server("remote", ServerConfig(url="https://override.example.com/mcp"))

        # Act
        await manager.acquire("remote")

        # Assert
        assert factory.created[0].config.url == "https://override.example.com/mcp"
        assert manager.server_names() == ["remote"]

        await manager.release_all()


class TestEviction:
    async def test_disconnect_evicts_and_next_call_reconnects(self, manager, factory):
        # Arrange
        first = await manager.acquire("remote")

        # Act
        factory.created[0].kill()
        await wait_until(lambda: manager.connection_count() == 0)
        second = await manager.acquire("remote")

        # Assert
        assert second is not first
        assert len(factory.created) == 2
        await wait_until(lambda: first.state is ConnectionState.CLOSED)

    async def test_stale_disconnect_does_not_evict_replacement(self, manager, factory):
        # Arrange
        first = await manager.acquire("remote")
        await manager.release("remote")
        second = await manager.acquire("remote")

        # Act
        factory.created[0].kill()

        # Assert
        assert manager.get_connection("remote") is second
        assert first is not second


class TestRelease:
    async def test_release_closes_one_connection(self, factory):
        # Arrange
        config = BridgeConfig(
            servers={
                "a": ServerConfig(url="https://a.example.com/mcp"),
                "b": ServerConfig(url="https://b.example.com/mcp"),
            }
        )
        manager = ConnectionManager(config, transport_factory=factory)
        await manager.acquire("a")
        await manager.acquire("b")

        # Act
        await manager.release("a")
        await manager.release("missing")

        # Assert
        assert manager.connection_names() == ["b"]
        assert factory.created[0].closed
        assert not factory.created[1].closed

        await manager.release_all()
        assert factory.created[1].closed
        assert manager.connection_count() == 0

    async def test_slow_close_is_bounded(self, factory):
        # Arrange
        class StuckTransport(FakeTransport):
            async def close(self):
                await asyncio.sleep(10)

        manager = ConnectionManager(
            remote_config(),
            transport_factory=StuckTransport,
            shutdown_timeout=0.05,
        )
        await manager.acquire("remote")

        # Act
        await asyncio.wait_for(manager.release_all(), timeout=1.0)

        # Assert
        assert manager.connection_count() == 0

    async def test_status_lists_live_connections(self, manager):
        # Arrange
        await manager.acquire("remote")

        # Act
        status = manager.status()

        # Assert
        assert [info.name for info in status] == ["remote"]
        assert status[0].alive


class TestStdioEndToEnd:
    async def test_process_reused_across_calls(self):
        # Arrange
        manager = ConnectionManager(BridgeConfig(servers={"calc": echo_server_config()}))
        message = {"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}}

        # Act
        first = await manager.send("calc", message)
        second = await manager.send("calc", {**message, "id": 3})

        # Assert
        assert first["result"]["method"] == "tools/list"
        assert second["id"] == 3
        assert first["result"]["pid"] == second["result"]["pid"]
        assert manager.connection_count() == 1
        assert manager.status()[0].pid == first["result"]["pid"]

        await manager.release_all()

    async def test_dead_process_is_respawned(self):
        # Arrange
        manager = ConnectionManager(BridgeConfig(servers={"calc": echo_server_config()}))
        first = await manager.send("calc", {"jsonrpc": "2.0", "id": 2, "method": "ping"})

        # Act
        with pytest.raises(ConnectionLost):
            await manager.send("calc", {"jsonrpc": "2.0", "id": 3, "method": "exit"})
        await wait_until(lambda: manager.connection_count() == 0)
        second = await manager.send("calc", {"jsonrpc": "2.0", "id": 4, "method": "ping"})

        # Assert
        assert first["result"]["pid"] != second["result"]["pid"]

        await manager.release_all()
