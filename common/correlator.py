"""Request/response correlation for the ECU link.

Contains:
- PendingRequest: One outstanding request awaiting its response
- Correlator: Single-flight pending table keyed by (class, command)

The correlator does not read from the stream itself. The session's read loop
hands every decoded message to resolve(); messages nobody is waiting for are
reported back as unsolicited.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import CancelledError, Future, InvalidStateError
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field

from common.connection import (
    CancellationToken,
    CommandInFlightError,
    ConnectionClosedError,
    OperationCancelledError,
    RequestTimeoutError,
)
from common.message import Message

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PendingRequest:
    """A request registered under its correlation key."""

    key: int
    timeout_s: float
    future: "Future[Message]" = field(default_factory=Future)
    started: float = field(default_factory=time.monotonic)

    @property
    def deadline(self) -> float:
        return self.started + self.timeout_s


class Correlator:
    """Pending-request table with at most one request in flight per key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[int, PendingRequest] = {}
        self._closed: BaseException | None = None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, key: int) -> bool:
        with self._lock:
            return key in self._pending

    def send_request(
        self,
        message: Message,
        write: Callable[[Message], None],
        timeout_s: float,
        cancel: CancellationToken | None = None,
    ) -> Message:
        """Register a pending entry, write the request and wait for its response.

        Raises CommandInFlightError immediately if the key is already pending,
        RequestTimeoutError when the deadline passes, OperationCancelledError
        on cancellation and ConnectionClosedError on teardown. The pending
        entry is always removed before the error reaches the caller.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        key = message.correlation_key
        pending = PendingRequest(key=key, timeout_s=timeout_s)

        with self._lock:
            if self._closed is not None:
                raise ConnectionClosedError("Session closed") from self._closed
            if key in self._pending:
                raise CommandInFlightError(key)
            self._pending[key] = pending

        unregister = None
        try:
            if cancel is not None:
                unregister = cancel.register(pending.future.cancel)
            if pending.future.cancelled():
                # Cancelled before anything reached the wire
                raise CancelledError
            write(message)
            try:
                return pending.future.result(timeout=timeout_s)
            except FutureTimeoutError:
                if not pending.future.cancel():
                    # Resolved while the wait was expiring
                    return pending.future.result()
                logger.warning(f"Request 0x{key:04X} timed out after {timeout_s:.2f}s")
                raise RequestTimeoutError(key, timeout_s) from None
        except CancelledError:
            logger.debug(f"Request 0x{key:04X} cancelled")
            raise OperationCancelledError(f"Request 0x{key:04X} cancelled") from None
        finally:
            if unregister is not None:
                unregister()
            self._discard(pending)

    def resolve(self, message: Message) -> bool:
        """Complete the request waiting on this message's key.

        Returns False if nobody is waiting (the message is unsolicited).
        """
        key = message.correlation_key
        with self._lock:
            pending = self._pending.pop(key, None)
        if pending is None:
            return False
        try:
            pending.future.set_result(message)
        except InvalidStateError:
            # Waiter already gave up (cancelled) between pop and set
            logger.debug(f"Response 0x{key:04X} arrived after its request was cancelled")
            return False
        return True

    def close(self, error: BaseException | None = None) -> None:
        """Fail every pending request with a connection-closed error."""
        exc = error if error is not None else ConnectionClosedError("Session closed")
        with self._lock:
            self._closed = exc
            pending = list(self._pending.values())
            self._pending.clear()
        for entry in pending:
            try:
                entry.future.set_exception(exc)
            except InvalidStateError:
                pass  # already cancelled by its caller
        if pending:
            logger.debug(f"Failed {len(pending)} pending request(s) on close")

    def _discard(self, pending: PendingRequest) -> None:
        with self._lock:
            if self._pending.get(pending.key) is pending:
                del self._pending[pending.key]
