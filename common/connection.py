"""Connection state, errors and cancellation for the ECU link.

Contains:
- SessionState / StreamState: Enums for the transport and realtime state machines
- EcuLinkError and its subclasses: the error taxonomy seen by callers
- TransportOpenError: Raised when a byte stream cannot be opened
- CancellationToken: Thread-safe cooperative cancellation signal
"""

import threading
from collections.abc import Callable
from enum import Enum


class SessionState(Enum):
    """Lifecycle of a transport session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class StreamState(Enum):
    """Lifecycle of a realtime streaming session."""

    IDLE = "idle"
    ENABLING = "enabling"
    STREAMING = "streaming"
    DISABLING = "disabling"


class EcuLinkError(Exception):
    """Base class for errors surfaced to callers of the ECU link."""

    pass


class ConnectionClosedError(EcuLinkError):
    """Raised when the session is torn down or its stream fails."""

    pass


class NotConnectedError(ConnectionClosedError):
    """Raised when an operation needs a connected session and there is none."""

    pass


class TransportOpenError(EcuLinkError):
    """Raised when the underlying byte stream cannot be opened."""

    pass


class CommandInFlightError(EcuLinkError):
    """Raised when a request with the same (class, command) is still pending."""

    def __init__(self, key: int) -> None:
        super().__init__(f"Command 0x{key:04X} already in flight")
        self.key = key


class RequestTimeoutError(EcuLinkError, TimeoutError):
    """Raised when no response arrives before the request deadline."""

    def __init__(self, key: int, timeout_s: float) -> None:
        super().__init__(f"Command 0x{key:04X} timed out after {timeout_s:.2f}s")
        self.key = key
        self.timeout_s = timeout_s


class OperationCancelledError(EcuLinkError):
    """Raised when a blocking operation is cancelled by its caller."""

    pass


class DeviceRejectedError(EcuLinkError):
    """Raised when the device answers a mutating command with a non-zero status."""

    def __init__(self, operation: str, object_id: int, status: int | None) -> None:
        status_text = "empty reply" if status is None else f"status 0x{status:02X}"
        super().__init__(f"Device rejected {operation} for id {object_id} ({status_text})")
        self.operation = operation
        self.object_id = object_id
        self.status = status


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a blocking wait.

    Callbacks registered before cancel() run once, on the cancelling thread.
    Registering on an already-cancelled token runs the callback immediately.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], object]] = {}
        self._next_handle = 0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep until cancelled or timeout elapses. Returns True if cancelled."""
        return self._event.wait(timeout)

    def register(self, callback: Callable[[], object]) -> Callable[[], None]:
        """Run callback on cancellation. Returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                handle = self._next_handle
                self._next_handle += 1
                self._callbacks[handle] = callback

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(handle, None)

                return unregister
        callback()
        return lambda: None
