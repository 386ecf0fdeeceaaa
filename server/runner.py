"""Simulator runner for the ECU link.

Contains:
- SimulatorServer: Threaded TCP listener, one ClientHandler per connection
- serve_stream: Serve one already-open byte stream (serial port, pty)
- run_server: Persistent loop with SIGINT/SIGTERM handling, returns an exit code
"""

import logging
import signal
import socketserver
import threading
from types import FrameType

from common.catalog import EcuCatalog, default_catalog
from common.connection import TransportOpenError
from common.device import SerialStream, SocketStream
from common.protocol import (
    DEFAULT_BAUDRATE,
    DEFAULT_SIM_HOST,
    DEFAULT_SIM_PORT,
    SIMULATOR_PUSH_INTERVAL_S,
    ByteStream,
)
from common.session import TransportSession
from server.handler import ClientHandler
from server.state import SimulatedEcuState

logger = logging.getLogger(__name__)

# Poll interval for the accept loop - allows quick response to shutdown signals
SERVE_POLL_S = 0.5


def serve_stream(
    stream: ByteStream,
    state: SimulatedEcuState,
    name: str = "stream",
    push_interval_s: float = SIMULATOR_PUSH_INTERVAL_S,
) -> ClientHandler:
    """Attach a session to stream and serve it on the calling thread until it ends."""
    session = TransportSession()
    session.attach(stream, name)
    handler = ClientHandler(session, state, push_interval_s)
    handler.run()
    return handler


class _ConnectionHandler(socketserver.BaseRequestHandler):
    server: "SimulatorServer"

    def handle(self) -> None:
        host, port = self.client_address[:2]
        session = TransportSession()
        session.attach(SocketStream(self.request), f"{host}:{port}")
        handler = ClientHandler(session, self.server.state, self.server.push_interval_s)
        self.server.track(handler)
        try:
            handler.run()
        finally:
            self.server.untrack(handler)


class SimulatorServer(socketserver.ThreadingTCPServer):
    """TCP simulator. Port 0 binds an ephemeral port; see address."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        host: str = DEFAULT_SIM_HOST,
        port: int = DEFAULT_SIM_PORT,
        state: SimulatedEcuState | None = None,
        push_interval_s: float = SIMULATOR_PUSH_INTERVAL_S,
    ) -> None:
        super().__init__((host, port), _ConnectionHandler)
        self.state = state if state is not None else SimulatedEcuState(default_catalog())
        self.push_interval_s = push_interval_s
        self._handlers: set[ClientHandler] = set()
        self._handlers_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        host, port = self.server_address[:2]
        return str(host), int(port)

    @property
    def client_count(self) -> int:
        with self._handlers_lock:
            return len(self._handlers)

    def track(self, handler: ClientHandler) -> None:
        with self._handlers_lock:
            self._handlers.add(handler)

    def untrack(self, handler: ClientHandler) -> None:
        with self._handlers_lock:
            self._handlers.discard(handler)

    def start(self) -> "SimulatorServer":
        """Serve in a background thread."""
        self._thread = threading.Thread(
            target=self.serve_forever,
            kwargs={"poll_interval": SERVE_POLL_S},
            name="sim-accept",
            daemon=True,
        )
        self._thread.start()
        host, port = self.address
        logger.info(f"Simulator listening on {host}:{port}")
        return self

    def stop(self) -> None:
        """Stop accepting, disconnect every client and release the socket."""
        if self._thread is not None:
            self.shutdown()
            self._thread.join(timeout=2.0)
            self._thread = None
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler.stop()
        self.server_close()
        logger.info("Simulator stopped")

    def __enter__(self) -> "SimulatorServer":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


def run_server(
    host: str = DEFAULT_SIM_HOST,
    port: int = DEFAULT_SIM_PORT,
    serial_device: str | None = None,
    baudrate: int = DEFAULT_BAUDRATE,
    catalog: EcuCatalog | None = None,
) -> int:
    """Run the simulator until SIGINT/SIGTERM. Returns 0 unless startup fails.

    Serves TCP clients on host:port, or a single serial device when
    serial_device is given (reopened after each peer session ends).
    """
    stop = threading.Event()
    state = SimulatedEcuState(catalog if catalog is not None else default_catalog())
    active: list[ClientHandler] = []

    def handle_signal(_sig: int, _frame: FrameType | None) -> None:
        logger.info("Signal received - shutting down")
        stop.set()
        for handler in active:
            handler.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if serial_device is not None:
        return _run_serial(serial_device, baudrate, state, stop, active)

    try:
        server = SimulatorServer(host, port, state)
    except OSError as e:
        logger.error(f"Failed to listen on {host}:{port}: {e}")
        return 1

    with server:
        while not stop.wait(SERVE_POLL_S):
            pass
    logger.info("Simulator shutdown complete")
    return 0


def _run_serial(
    device: str,
    baudrate: int,
    state: SimulatedEcuState,
    stop: threading.Event,
    active: list[ClientHandler],
) -> int:
    while not stop.is_set():
        try:
            stream = SerialStream.open(device, baudrate)
        except (TransportOpenError, OSError) as e:
            logger.error(f"Failed to open serial port: {e}")
            return 1

        logger.info(f"Simulator serving {device}")
        session = TransportSession()
        session.attach(stream, device)
        handler = ClientHandler(session, state)
        active.append(handler)
        try:
            handler.run()
        finally:
            active.remove(handler)
    logger.info("Simulator shutdown complete")
    return 0
