"""Transport selection from server configuration."""

import logging

import httpx

from mcpbridge.config import ServerConfig, TransportKind
from mcpbridge.transport.base import Transport
from mcpbridge.transport.http.client import HttpTransport
from mcpbridge.transport.sse.client import SseTransport
from mcpbridge.transport.stdio.client import StdioTransport

logger = logging.getLogger(__name__)

TRANSPORTS: dict[TransportKind, type[Transport]] = {
    TransportKind.STDIO: StdioTransport,
    TransportKind.HTTP: HttpTransport,
    TransportKind.SSE: SseTransport,
}


def select_transport_kind(config: ServerConfig) -> TransportKind:
    """Pick the transport for a server without touching the network.

    An explicit ``transport`` wins. Otherwise process descriptors use stdio,
    and URLs that look like SSE endpoints (path ending in ``/sse``, containing
    ``/sse/``, or an ``sse.`` host) use the SSE transport. Everything else
    is plain HTTP.
    """
    if config.transport is not None:
        return config.transport

    if config.command is not None:
        return TransportKind.STDIO

    url = httpx.URL(config.url)
    if url.path.rstrip("/").endswith("/sse") or "/sse/" in url.path or url.host.startswith("sse."):
        return TransportKind.SSE

    return TransportKind.HTTP


def create_transport(name: str, config: ServerConfig) -> Transport:
    """Create an unconnected transport for a named server."""
    kind = select_transport_kind(config)
    logger.info(f"Creating {kind.value} transport for '{name}'")
    return TRANSPORTS[kind](name, config)
