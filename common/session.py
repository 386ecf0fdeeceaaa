"""Transport session: owns one byte stream and its read/dispatch loop.

Contains:
- SessionStats: Traffic counters snapshot
- TransportSession: Connect/attach, read loop with resync, request/response
  dispatch, unsolicited queue and serialized writes

The same session runs on both peers: the client connects by name, the
simulator attaches to an accepted stream.
"""

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass

from common.connection import (
    CancellationToken,
    ConnectionClosedError,
    NotConnectedError,
    SessionState,
)
from common.correlator import Correlator
from common.device import open_byte_stream
from common.message import FrameDecoder, Message, encode_frame
from common.protocol import DEFAULT_BAUDRATE, READ_CHUNK_SIZE, READ_POLL_S, TRACE, ByteStream

logger = logging.getLogger(__name__)

StreamOpener = Callable[[str, int], ByteStream]

# Marks the end of the unsolicited queue
_CLOSED = None


@dataclass(frozen=True)
class SessionStats:
    """Traffic counters for one session."""

    frames_received: int = 0
    frames_sent: int = 0
    discarded_bytes: int = 0
    checksum_failures: int = 0
    unsolicited: int = 0


class TransportSession:
    """One connection to a peer over a duplex byte stream.

    Usage::

        with TransportSession() as session:
            session.connect("tcp://127.0.0.1:54321")
            reply = session.send_request(request(0x04, 0x00), timeout_s=2.0)
    """

    def __init__(self, opener: StreamOpener = open_byte_stream) -> None:
        self._opener = opener
        self._state = SessionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._stream: ByteStream | None = None
        self._reader: threading.Thread | None = None
        self._stop = threading.Event()
        self._closed_event = threading.Event()
        self._closed_event.set()
        self._correlator = Correlator()
        self._unsolicited: "queue.Queue[Message | None]" = queue.Queue()
        self._decoder = FrameDecoder()
        self._name = ""
        self._frames_sent = 0
        self._frames_received = 0
        self._unsolicited_count = 0
        self._close_reason: BaseException | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def name(self) -> str:
        return self._name

    @property
    def correlator(self) -> Correlator:
        return self._correlator

    def stats(self) -> SessionStats:
        return SessionStats(
            frames_received=self._frames_received,
            frames_sent=self._frames_sent,
            discarded_bytes=self._decoder.discarded_bytes,
            checksum_failures=self._decoder.checksum_failures,
            unsolicited=self._unsolicited_count,
        )

    def connect(self, name: str, speed_hint: int = DEFAULT_BAUDRATE) -> None:
        """Open the named stream and start the read loop.

        Raises TransportOpenError if the stream cannot be opened; the session
        is then left DISCONNECTED and may be connected again.
        """
        self._begin_connect(name)
        try:
            stream = self._opener(name, speed_hint)
        except BaseException:
            self._set_state(SessionState.DISCONNECTED)
            raise
        self._start(stream)

    def attach(self, stream: ByteStream, name: str = "attached") -> None:
        """Take ownership of an already-open stream (server role)."""
        self._begin_connect(name)
        self._start(stream)

    def _begin_connect(self, name: str) -> None:
        with self._state_lock:
            if self._state is not SessionState.DISCONNECTED:
                raise RuntimeError(f"Session is {self._state.value}, close it before reconnecting")
            self._state = SessionState.CONNECTING
        # Previous teardown must be complete before reusing the session
        self._closed_event.wait()
        self._name = name
        logger.debug(f"Session {name}: connecting")

    def _start(self, stream: ByteStream) -> None:
        self._stream = stream
        self._correlator = Correlator()
        self._unsolicited = queue.Queue()
        self._decoder = FrameDecoder()
        self._frames_sent = 0
        self._frames_received = 0
        self._unsolicited_count = 0
        self._close_reason = None
        self._stop.clear()
        self._closed_event.clear()
        self._reader = threading.Thread(
            target=self._read_loop, name=f"ecu-read-{self._name}", daemon=True
        )
        self._set_state(SessionState.CONNECTED)
        self._reader.start()
        logger.info(f"Session {self._name}: connected")

    def _set_state(self, state: SessionState) -> None:
        with self._state_lock:
            self._state = state

    def _read_loop(self) -> None:
        stream = self._stream
        assert stream is not None
        reason: BaseException | None = None
        try:
            while not self._stop.is_set():
                data = stream.read(READ_CHUNK_SIZE)
                if not data:
                    continue
                logger.log(TRACE, f"RX {data.hex(' ')}")
                for message in self._decoder.feed(data):
                    self._dispatch(message)
        except EOFError as e:
            logger.info(f"Session {self._name}: stream ended ({e})")
            reason = e
        except OSError as e:
            if not self._stop.is_set():
                logger.warning(f"Session {self._name}: read failed: {e}")
            reason = e
        finally:
            self._teardown(reason)

    def _dispatch(self, message: Message) -> None:
        self._frames_received += 1
        logger.debug(f"Received {message}")
        if self._correlator.resolve(message):
            return
        self._unsolicited_count += 1
        self._unsolicited.put(message)

    def _write(self, message: Message) -> None:
        stream = self._stream
        if stream is None or self._state is not SessionState.CONNECTED:
            raise NotConnectedError(f"Session {self._name or '?'} is {self._state.value}")
        frame = encode_frame(message)
        with self._write_lock:
            try:
                stream.write(frame)
            except OSError as e:
                logger.warning(f"Session {self._name}: write failed: {e}")
                raise ConnectionClosedError(f"Write failed: {e}") from e
            self._frames_sent += 1
        logger.log(TRACE, f"TX {frame.hex(' ')}")

    def post(self, message: Message) -> None:
        """Write a message without waiting for any reply."""
        self._write(message)

    def send_request(
        self,
        message: Message,
        timeout_s: float,
        cancel: CancellationToken | None = None,
    ) -> Message:
        """Write a request and wait for the response with the same (class, command)."""
        if not self.connected:
            raise NotConnectedError(f"Session {self._name or '?'} is {self._state.value}")
        return self._correlator.send_request(message, self._write, timeout_s, cancel)

    def receive(
        self,
        timeout_s: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> Message | None:
        """Take the next unsolicited message.

        Returns None if nothing arrived within timeout_s. Raises
        ConnectionClosedError once the session has been torn down and the
        queue is drained, OperationCancelledError if cancel fires first.
        """
        unsolicited = self._unsolicited
        waited = 0.0
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            step = READ_POLL_S if timeout_s is None else min(READ_POLL_S, timeout_s - waited)
            try:
                message = unsolicited.get(timeout=max(step, 0.0))
            except queue.Empty:
                waited += step
                if timeout_s is not None and waited >= timeout_s:
                    return None
                continue
            if message is _CLOSED:
                # Leave the marker for any other consumer
                unsolicited.put(_CLOSED)
                raise ConnectionClosedError("Session closed") from self._close_reason
            return message

    def close(self) -> None:
        """Stop the read loop and release the stream. Safe to call repeatedly."""
        with self._state_lock:
            if self._state in (SessionState.DISCONNECTED, SessionState.CLOSING):
                reader = None
            else:
                self._state = SessionState.CLOSING
                reader = self._reader
        if reader is None:
            self._closed_event.wait(timeout=2.0)
            return
        self._stop.set()
        stream = self._stream
        if stream is not None:
            # Unblocks a pending read on most adapters
            try:
                stream.close()
            except OSError as e:
                logger.debug(f"Session {self._name}: close: {e}")
        if reader is threading.current_thread():
            return
        reader.join(timeout=2.0)
        if reader.is_alive():
            logger.warning(f"Session {self._name}: read loop did not stop")

    def wait_closed(self, timeout_s: float | None = None) -> bool:
        """Block until the read loop has ended. Returns True once closed."""
        return self._closed_event.wait(timeout_s)

    def _teardown(self, reason: BaseException | None) -> None:
        self._set_state(SessionState.CLOSING)
        self._close_reason = reason
        error = ConnectionClosedError(f"Session {self._name} closed")
        if reason is not None:
            error.__cause__ = reason
        self._correlator.close(error)
        self._unsolicited.put(_CLOSED)
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.close()
            except OSError as e:
                logger.debug(f"Session {self._name}: close: {e}")
        self._set_state(SessionState.DISCONNECTED)
        self._closed_event.set()
        logger.info(f"Session {self._name}: disconnected")

    def __enter__(self) -> "TransportSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
