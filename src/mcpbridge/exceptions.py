"""Exception hierarchy for bridge failures.

Every error carries a stable ``kind`` so the HTTP boundary can tell callers
which failure mode they hit instead of a generic error.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    kind = "bridge_error"


class ConfigError(BridgeError):
    """Raised when the configuration document is missing fields or malformed."""

    kind = "config_error"


class NotConfigured(BridgeError):
    """Raised when a logical server name has no configuration."""

    kind = "not_configured"

    def __init__(self, server_name: str) -> None:
        super().__init__(f"Server '{server_name}' is not configured")
        self.server_name = server_name


class TransportInitError(BridgeError):
    """Raised when connecting or the initialize handshake fails.

    The connection is discarded and never registered.
    """

    kind = "transport_init_error"


class RequestTimeout(BridgeError):
    """Raised when no reply arrives within the request deadline."""

    kind = "request_timeout"


class ConnectionLost(BridgeError):
    """Raised when the stream or process terminates under an in-flight call."""

    kind = "connection_lost"


class ProtocolError(BridgeError):
    """Raised for malformed payloads or unexpected HTTP status codes."""

    kind = "protocol_error"


class AuthError(BridgeError):
    """Raised when a required secret is missing or cannot be resolved."""

    kind = "auth_error"


class JsonRpcError(BridgeError):
    """Raised when the backend answers a request with a JSON-RPC error object.

    The full response is kept so it can be relayed to the caller unchanged.
    """

    kind = "jsonrpc_error"

    def __init__(self, response: dict[str, Any]) -> None:
        error = response.get("error") or {}
        message = error.get("message", "Unknown error") if isinstance(error, dict) else str(error)
        super().__init__(f"JSON-RPC error: {message}")
        self.response = response
        self.error = error
