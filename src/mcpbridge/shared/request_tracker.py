"""Per-connection correlation of outstanding requests.

Each transport owns one RequestTracker. An entry pairs the future the caller
awaits with a cancellable deadline; every way of settling an entry (reply,
rejection, timeout, discard) pops it from the table first, so exactly one of
them wins for a given id.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from mcpbridge.exceptions import JsonRpcError, RequestTimeout
from mcpbridge.shared.message_parser import RequestId, is_error_response, is_valid_id

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class PendingRequest:
    """One outstanding request awaiting its reply."""

    request_id: RequestId
    future: asyncio.Future[dict[str, Any]]
    deadline: float
    timer: asyncio.TimerHandle


class RequestTracker:
    """Maps request ids to pending futures with per-entry deadlines."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._pending: dict[RequestId, PendingRequest] = {}

    def __contains__(self, request_id: RequestId) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[RequestId]:
        return list(self._pending)

    def track(
        self, request_id: RequestId, timeout: float = DEFAULT_TIMEOUT
    ) -> asyncio.Future[dict[str, Any]]:
        """Start tracking a request and return the future its reply resolves.

        Args:
            request_id: Id the reply will carry
            timeout: Seconds until the entry is rejected with RequestTimeout

        Raises:
            ValueError: If the id is not a string or integer, or is already
                outstanding
        """
        if not is_valid_id(request_id):
            raise ValueError(f"Request id {request_id!r} cannot be correlated")
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id!r} is already outstanding")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = PendingRequest(
            request_id=request_id,
            future=future,
            deadline=loop.time() + timeout,
            timer=timer,
        )
        return future

    def resolve(self, message: dict[str, Any]) -> bool:
        """Settle the entry matching the message id.

        A message carrying an error object rejects the entry with
        JsonRpcError; anything else resolves it with the message.

        Returns:
            True if an outstanding entry matched, False for unsolicited messages
            or ids that cannot be correlated
        """
        request_id = message.get("id")
        if not is_valid_id(request_id):
            return False
        pending = self._pop(request_id)
        if pending is None:
            return False

        if is_error_response(message):
            pending.future.set_exception(JsonRpcError(message))
        else:
            pending.future.set_result(message)
        return True

    def reject(self, request_id: RequestId, error: BaseException) -> bool:
        """Reject one entry. Returns False if it was no longer outstanding."""
        pending = self._pop(request_id)
        if pending is None:
            return False
        pending.future.set_exception(error)
        return True

    def reject_all(self, error: BaseException) -> int:
        """Reject every outstanding entry with the same error and clear the table."""
        request_ids = list(self._pending)
        for request_id in request_ids:
            self.reject(request_id, error)
        return len(request_ids)

    def discard(
        self,
        request_id: RequestId,
        future: asyncio.Future[dict[str, Any]] | None = None,
    ) -> None:
        """Drop an entry without settling it (e.g. the caller was cancelled).

        When ``future`` is given, the entry is only dropped if it still
        belongs to that future, so a settled caller never removes a newer
        request that reused its id.
        """
        current = self._pending.get(request_id)
        if current is None:
            return
        if future is not None and current.future is not future:
            return
        pending = self._pop(request_id)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    def _pop(self, request_id: RequestId) -> PendingRequest | None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return None
        pending.timer.cancel()
        if pending.future.done():
            return None
        return pending

    def _expire(self, request_id: RequestId, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        logger.warning(
            f"Request {request_id!r} to '{self._name}' timed out after {timeout}s"
        )
        pending.future.set_exception(
            RequestTimeout(f"Request {request_id!r} timed out after {timeout}s")
        )
