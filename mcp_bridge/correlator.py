"""
Request/response correlation.

Every outgoing request gets a fresh integer id and a PendingRequest with a
deadline. The reader thread hands each incoming response to resolve(),
which wakes the caller blocked in wait(). Ids come from a monotonic counter
and are never reused, so a late response to a timed-out request can never
be mistaken for the answer to a newer one.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time

from mcp_bridge.errors import MCPError, RequestTimeout
from mcp_bridge.transport import JsonRpcResponse

logger = logging.getLogger(__name__)


class PendingRequest:
    """One-shot slot for the outcome of a single request."""

    def __init__(self, request_id: int, method: str, timeout: float):
        self.id = request_id
        self.method = method
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout
        self._event = threading.Event()
        self._response: JsonRpcResponse | None = None
        self._error: MCPError | None = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def _deliver(
        self,
        response: JsonRpcResponse | None = None,
        error: MCPError | None = None,
    ) -> None:
        self._response = response
        self._error = error
        self._event.set()

    def __repr__(self) -> str:
        return f"PendingRequest(id={self.id}, method={self.method!r}, done={self.done})"


class Correlator:
    """
    Thread-safe table of outstanding requests, keyed by id.

    Callers register before sending and wait after; the reader resolves.
    The table lock makes register and resolve atomic with respect to each
    other.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: dict[int, PendingRequest] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        """Generate the next request ID."""
        with self._lock:
            return next(self._ids)

    def register(self, request_id: int, method: str, timeout: float) -> PendingRequest:
        """Create the PendingRequest for an id that is about to be sent."""
        pending = PendingRequest(request_id, method, timeout)
        with self._lock:
            if request_id in self._pending:
                raise ValueError(f"Request id {request_id} is already outstanding")
            self._pending[request_id] = pending
        return pending

    def resolve(self, response: JsonRpcResponse) -> bool:
        """
        Deliver a response to the request waiting for it.

        Returns:
            False if nothing was waiting for this id (late or duplicate
            response); the response is dropped.
        """
        with self._lock:
            pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.warning(f"Dropping response for unknown request id {response.id!r}")
            return False
        pending._deliver(response=response)
        return True

    def wait(self, pending: PendingRequest) -> JsonRpcResponse:
        """
        Block until the request is resolved.

        Raises:
            RequestTimeout: The deadline passed. The request is removed.
            MCPError: Whatever fail_all() delivered (transport closure,
                      cancellation).
        """
        remaining = max(0.0, pending.deadline - time.monotonic())
        if not pending._event.wait(timeout=remaining):
            with self._lock:
                if self._pending.get(pending.id) is pending:
                    del self._pending[pending.id]
            # resolve() may have won the race between the wait and the lock
            if not pending.done:
                raise RequestTimeout(pending.method, pending.id, pending.timeout)

        if pending._error is not None:
            raise pending._error
        return pending._response

    def discard(self, request_id: int) -> None:
        """Forget a request that was never sent."""
        with self._lock:
            self._pending.pop(request_id, None)

    def fail_all(self, error: MCPError) -> int:
        """Resolve every outstanding request with `error`. Returns how many."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for p in pending:
            p._deliver(error=error)
        if pending:
            logger.debug(f"Failed {len(pending)} pending request(s): {error}")
        return len(pending)

    def pending_ids(self) -> list[int]:
        with self._lock:
            return list(self._pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
