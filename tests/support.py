"""Test doubles shared across the suite."""

import asyncio
import json
import sys
from collections.abc import Callable
from typing import Any

import httpx

from mcpbridge.config import ServerConfig, TransportKind
from mcpbridge.transport.base import Transport

# Minimal newline-delimited JSON-RPC server used by the stdio tests.
ECHO_SERVER = r"""
import json, os, sys, time

for line in sys.stdin:
    line = line.strip()
    if not line:
        continue
    message = json.loads(line)
    if "id" not in message:
        continue
    method = message.get("method")
    params = message.get("params") or {}
    if method == "exit":
        sys.exit(0)
    if method == "ignore":
        continue
    if method == "delayed":
        time.sleep(params.get("delay", 0.3))
    if method == "poison":
        print(json.dumps({"jsonrpc": "2.0", "id": [message["id"]], "result": "bad"}), flush=True)
        print(json.dumps({"jsonrpc": "2.0", "id": {}, "result": "bad"}), flush=True)
        print(json.dumps({"jsonrpc": "2.0", "id": True, "result": "bad"}), flush=True)
    if method == "noisy":
        print("this is not json", flush=True)
        print("diagnostic output", file=sys.stderr, flush=True)

    if method == "fail":
        reply = {"jsonrpc": "2.0", "id": message["id"],
                 "error": {"code": -32000, "message": "boom"}}
    elif method == "initialize":
        reply = {"jsonrpc": "2.0", "id": message["id"],
                 "result": {"protocolVersion": params.get("protocolVersion"),
                            "capabilities": {},
                            "serverInfo": {"name": "echo", "version": "0"}}}
    else:
        reply = {"jsonrpc": "2.0", "id": message["id"],
                 "result": {"method": method, "params": params, "pid": os.getpid()}}

    text = json.dumps(reply)
    if method == "split":
        sys.stdout.write(text[:7])
        sys.stdout.flush()
        time.sleep(0.05)
        sys.stdout.write(text[7:] + "\n")
        sys.stdout.flush()
    else:
        print(text, flush=True)
"""


def echo_server_config(**overrides: Any) -> ServerConfig:
    return ServerConfig(command=sys.executable, args=["-c", ECHO_SERVER], **overrides)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


class FakeSseServer:
    """In-memory SSE server behind an httpx.MockTransport.

    GET opens an event stream fed from emit(); POSTs are recorded and
    answered with ``post_status``. With ``auto_reply`` every posted request
    is answered on the stream with an echo result.
    """

    def __init__(self, auto_reply: bool = False) -> None:
        self.auto_reply = auto_reply
        self.post_status = 202
        self.stream_status = 200
        self.posts: list[tuple[str, dict[str, Any]]] = []
        self.stream_requests: list[httpx.Request] = []
        self._events: asyncio.Queue[str | None] = asyncio.Queue()

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def emit(self, event: str, data: str) -> None:
        self._events.put_nowait(f"event: {event}\ndata: {data}\n\n")

    def emit_raw(self, chunk: str) -> None:
        self._events.put_nowait(chunk)

    def end_stream(self) -> None:
        self._events.put_nowait(None)

    def reply(self, request_id: Any, result: Any) -> None:
        self.emit("message", json.dumps({"jsonrpc": "2.0", "id": request_id, "result": result}))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.stream_requests.append(request)
            if self.stream_status != 200:
                return httpx.Response(self.stream_status)
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=self._stream(),
            )

        message = json.loads(request.content)
        self.posts.append((str(request.url), message))
        if self.auto_reply and "id" in message:
            self.reply(message["id"], {"method": message.get("method")})
        return httpx.Response(self.post_status)

    async def _stream(self):
        while True:
            chunk = await self._events.get()
            if chunk is None:
                return
            yield chunk.encode("utf-8")


class FakeTransport(Transport):
    """Scriptable in-memory transport for manager and app tests."""

    kind = TransportKind.HTTP

    def __init__(self, name: str, config: ServerConfig) -> None:
        super().__init__(name, config)
        self.fail_with: BaseException | None = None
        self.handshake_delay = 0.0
        self.sent: list[dict[str, Any]] = []
        self.connects = 0
        self.closed = False
        self.replies: dict[str, Any] = {}

    @property
    def is_open(self) -> bool:
        return self.connects > 0 and not self.closed

    def describe(self) -> dict[str, Any]:
        return {"url": self.config.url}

    async def connect(self) -> None:
        self.connects += 1
        if self.handshake_delay:
            await asyncio.sleep(self.handshake_delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None:
        self.sent.append(message)
        if "id" not in message:
            return None
        reply = self.replies.get(message.get("method"))
        if isinstance(reply, BaseException):
            raise reply
        return {"jsonrpc": "2.0", "id": message["id"], "result": reply or {}}

    async def close(self) -> None:
        self.closed = True

    def kill(self) -> None:
        """Simulate the peer going away."""
        self.closed = True
        self._notify_disconnected()


class FakeTransportFactory:
    """Transport factory that hands out FakeTransports and remembers them."""

    def __init__(self) -> None:
        self.created: list[FakeTransport] = []
        self.fail_with: BaseException | None = None
        self.handshake_delay = 0.0
        self.replies: dict[str, Any] = {}

    def __call__(self, name: str, config: ServerConfig) -> FakeTransport:
        transport = FakeTransport(name, config)
        transport.fail_with = self.fail_with
        transport.handshake_delay = self.handshake_delay
        transport.replies = self.replies
        self.created.append(transport)
        return transport
