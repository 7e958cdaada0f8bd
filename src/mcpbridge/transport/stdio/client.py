import asyncio
import logging
import os
from typing import Any

from mcpbridge.config import ServerConfig, TransportKind
from mcpbridge.exceptions import ConnectionLost, ProtocolError, TransportInitError
from mcpbridge.shared.message_parser import require_valid_id
from mcpbridge.shared.request_tracker import RequestTracker
from mcpbridge.transport.base import Transport
from mcpbridge.transport.stdio.shared import (
    LineBuffer,
    parse_json_message,
    serialize_message,
)

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class StdioTransport(Transport):
    """Transport to a spawned server subprocess.

    Speaks newline-delimited JSON-RPC over the child's stdin/stdout. Replies
    are matched to requests by id, so several requests may be in flight at
    once. The child's stderr is logged as diagnostic output.
    """

    kind = TransportKind.STDIO

    def __init__(self, name: str, config: ServerConfig) -> None:
        super().__init__(name, config)
        self._process: asyncio.subprocess.Process | None = None
        self._requests = RequestTracker(name)
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._dead = False

    @property
    def is_open(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._dead
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def describe(self) -> dict[str, Any]:
        return {"pid": self.pid}

    # ================================
    # Lifecycle
    # ================================

    async def connect(self) -> None:
        """Spawn the server subprocess and start reading its output.

        Raises:
            TransportInitError: If the process cannot be started
        """
        if self._process is not None:
            return

        command = [self.config.command, *self.config.args]
        env = {**os.environ, **self.config.env}
        try:
            logger.debug(f"Starting server subprocess '{self.name}': {command}")
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            logger.error(f"Failed to start server '{self.name}': {e}")
            self._dead = True
            raise TransportInitError(f"Failed to start server '{self.name}': {e}") from e

        logger.info(f"Server '{self.name}' subprocess started (PID: {self.pid})")

        self._reader_task = asyncio.create_task(
            self._read_stdout(), name=f"stdout_reader_{self.name}"
        )
        self._reader_task.add_done_callback(self._on_reader_done)
        self._stderr_task = asyncio.create_task(
            self._read_stderr(), name=f"stderr_reader_{self.name}"
        )

    async def close(self) -> None:
        """Shut the subprocess down, escalating from EOF to SIGTERM to SIGKILL."""
        process = self._process
        if process is not None and process.returncode is None:
            await self._shutdown_process(process)

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._mark_dead("transport closed")
        logger.debug(f"Stdio transport closed for '{self.name}'")

    # ================================
    # Sending
    # ================================

    async def send(self, message: dict[str, Any]) -> dict[str, Any] | None:
        if not self.is_open:
            raise ConnectionLost(f"Server '{self.name}' process is not running")

        try:
            data = serialize_message(message)
        except ValueError as e:
            raise ProtocolError(str(e)) from e

        request_id = message.get("id")
        if request_id is None:
            await self._write(data)
            logger.debug(f"Sent notification to '{self.name}': {message.get('method')}")
            return None

        require_valid_id(message)
        try:
            future = self._requests.track(request_id, self.config.timeout_seconds)
        except ValueError as e:
            raise ProtocolError(str(e)) from e

        try:
            await self._write(data)
            logger.debug(f"Sent request {request_id!r} to '{self.name}'")
            return await future
        finally:
            self._requests.discard(request_id, future)

    async def _write(self, data: bytes) -> None:
        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ConnectionLost(f"Server '{self.name}' closed its stdin") from e

    # ================================
    # Reading
    # ================================

    async def _read_stdout(self) -> None:
        """Background task: split stdout into lines and correlate replies."""
        buffer = LineBuffer()
        stdout = self._process.stdout
        while True:
            try:
                chunk = await stdout.read(READ_CHUNK_SIZE)
            except Exception as e:
                raise ConnectionLost(f"Failed to read from server stdout: {e}") from e
            if not chunk:
                logger.debug(f"Server '{self.name}' closed stdout")
                return
            for line in buffer.feed(chunk):
                self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return

        message = parse_json_message(line)
        if message is None:
            logger.warning(f"Invalid JSON from server '{self.name}': {line}")
            return

        if not self._requests.resolve(message):
            logger.debug(f"Unsolicited message from '{self.name}': {message}")

    async def _read_stderr(self) -> None:
        stderr = self._process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info(f"[{self.name}] {text}")

    def _on_reader_done(self, task: asyncio.Task[None]) -> None:
        """Reader completion always means the server is gone."""
        if task.cancelled():
            reason = "reader cancelled"
        elif task.exception() is not None:
            reason = str(task.exception())
            logger.error(f"Reader task for server '{self.name}' failed: {reason}")
        else:
            reason = "process exited"
        self._mark_dead(reason)

    def _mark_dead(self, reason: str) -> None:
        if self._dead:
            return
        self._dead = True

        rejected = self._requests.reject_all(
            ConnectionLost(f"Server '{self.name}' connection lost: {reason}")
        )
        if rejected:
            logger.warning(
                f"Rejected {rejected} pending requests to '{self.name}': {reason}"
            )
        logger.info(f"Server '{self.name}' is no longer available ({reason})")
        self._notify_disconnected()

    async def _shutdown_process(self, process: asyncio.subprocess.Process) -> None:
        try:
            # Closing stdin signals shutdown
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
                try:
                    await process.stdin.wait_closed()
                except (BrokenPipeError, ConnectionResetError):
                    pass

            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
                logger.debug(f"Server '{self.name}' exited gracefully")
                return
            except asyncio.TimeoutError:
                logger.debug(f"Server '{self.name}' didn't exit, sending SIGTERM")

            try:
                process.terminate()
            except ProcessLookupError:
                return

            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
                logger.debug(f"Server '{self.name}' exited after SIGTERM")
                return
            except asyncio.TimeoutError:
                logger.debug(f"Server '{self.name}' ignored SIGTERM, sending SIGKILL")

            try:
                process.kill()
            except ProcessLookupError:
                return

            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.error(f"Server '{self.name}' didn't die after SIGKILL")
        except Exception as e:
            logger.error(f"Error during shutdown of server '{self.name}': {e}")
