"""HTTP front door: routes JSON-RPC calls to named servers."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from mcpbridge.client.connection_manager import ConnectionManager
from mcpbridge.exceptions import (
    AuthError,
    BridgeError,
    JsonRpcError,
    NotConfigured,
    RequestTimeout,
)

logger = logging.getLogger(__name__)

ALLOWED_ORIGINS = ["https://roamresearch.com"]
ALLOWED_ORIGIN_REGEX = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"

ERROR_STATUS: dict[type[BridgeError], int] = {
    NotConfigured: 404,
    AuthError: 401,
    RequestTimeout: 504,
}


def error_status(error: BridgeError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 502


def error_response(error: BridgeError) -> JSONResponse:
    return JSONResponse(
        {"error": {"type": error.kind, "message": str(error)}},
        status_code=error_status(error),
    )


def bad_request(kind: str, message: str) -> JSONResponse:
    return JSONResponse({"error": {"type": kind, "message": message}}, status_code=400)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        logger.info(f"{request.method} {request.url.path}")
        return await call_next(request)


class BridgeApp:
    """Starlette routes over a ConnectionManager."""

    def __init__(self, manager: ConnectionManager) -> None:
        self.manager = manager

    async def handle_rpc(self, request: Request) -> Response:
        """Forward one JSON-RPC message to the server named in the path."""
        server_name = request.path_params["server"]

        try:
            message = await request.json()
        except ValueError:
            return bad_request("invalid_json", "Invalid JSON")
        if not isinstance(message, dict):
            return bad_request("invalid_message", "Expected a JSON-RPC object")

        logger.debug(f"Handling RPC for server '{server_name}': {message.get('method')}")
        try:
            response = await self.manager.send(server_name, message)
        except JsonRpcError as e:
            return JSONResponse(e.response)
        except BridgeError as e:
            logger.error(f"Error handling RPC for '{server_name}': {e}")
            return error_response(e)

        if response is None:
            return Response(status_code=202)
        return JSONResponse(response)

    async def handle_health(self, request: Request) -> JSONResponse:
        return JSONResponse(
            {"status": "ok", "servers": self.manager.connection_names()}
        )

    async def handle_servers(self, request: Request) -> JSONResponse:
        return JSONResponse(
            {info.name: info.to_dict() for info in self.manager.status()}
        )


def create_app(manager: ConnectionManager) -> Starlette:
    """Build the Starlette application.

    Every connection is released when the application shuts down.
    """
    bridge = BridgeApp(manager)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        yield
        logger.info("Shutting down, closing all connections")
        await manager.release_all()

    routes = [
        Route("/rpc/{server:path}", bridge.handle_rpc, methods=["POST"]),
        Route("/health", bridge.handle_health, methods=["GET"]),
        Route("/servers", bridge.handle_servers, methods=["GET"]),
    ]
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=ALLOWED_ORIGINS,
            allow_origin_regex=ALLOWED_ORIGIN_REGEX,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        ),
        Middleware(RequestLoggingMiddleware),
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.manager = manager
    return app
