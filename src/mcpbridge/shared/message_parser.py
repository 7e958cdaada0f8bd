"""JSON-RPC message helpers shared by every transport.

Classifies raw payloads and builds the handshake messages. Payloads stay
plain dicts; the bridge relays messages and never needs typed MCP objects.
"""

from typing import Any

from mcpbridge import __version__
from mcpbridge.exceptions import JsonRpcError, ProtocolError

RequestId = str | int

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "mcp-http-bridge"

INITIALIZE_REQUEST_ID = 1
INITIALIZE_METHOD = "initialize"
INITIALIZED_METHOD = "notifications/initialized"


def has_id(payload: dict[str, Any]) -> bool:
    """True if the payload carries a JSON-RPC id (anything but null)."""
    return payload.get("id") is not None


def is_valid_id(value: Any) -> bool:
    """True for ids a reply can be correlated by: strings and integers.

    Booleans are excluded since they hash equal to 0 and 1.
    """
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def require_valid_id(payload: dict[str, Any]) -> RequestId:
    """Return the request id or raise if it cannot be correlated.

    Raises:
        ProtocolError: If the id is not a string or integer
    """
    request_id = payload.get("id")
    if not is_valid_id(request_id):
        raise ProtocolError(
            f"Request id must be a string or integer, got {request_id!r}"
        )
    return request_id


def is_request(payload: dict[str, Any]) -> bool:
    """Check if payload is a JSON-RPC request (method and id)."""
    return "method" in payload and has_id(payload)


def is_notification(payload: dict[str, Any]) -> bool:
    """Check if payload is a JSON-RPC notification (method, no id)."""
    return "method" in payload and not has_id(payload)


def is_response(payload: dict[str, Any]) -> bool:
    """Check if payload is a JSON-RPC response (id plus result or error)."""
    return (
        "method" not in payload
        and has_id(payload)
        and ("result" in payload or "error" in payload)
    )


def is_error_response(payload: dict[str, Any]) -> bool:
    return payload.get("error") is not None


def raise_for_error(payload: dict[str, Any]) -> dict[str, Any]:
    """Return the payload unchanged unless it carries a JSON-RPC error.

    Raises:
        JsonRpcError: If the payload has an ``error`` member
    """
    if is_error_response(payload):
        raise JsonRpcError(payload)
    return payload


def build_initialize_request(request_id: RequestId = INITIALIZE_REQUEST_ID) -> dict[str, Any]:
    """Build the initialize request that opens every connection."""
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": INITIALIZE_METHOD,
        "params": {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {
                "roots": {"listChanged": True},
                "sampling": {},
            },
            "clientInfo": {"name": CLIENT_NAME, "version": __version__},
        },
    }


def build_initialized_notification() -> dict[str, Any]:
    return {"jsonrpc": "2.0", "method": INITIALIZED_METHOD}
