import pytest

from mcpbridge.config import ServerConfig
from support import FakeSseServer, echo_server_config


@pytest.fixture
def echo_config() -> ServerConfig:
    return echo_server_config()


@pytest.fixture
def sse_server() -> FakeSseServer:
    return FakeSseServer()
