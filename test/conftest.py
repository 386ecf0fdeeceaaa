"""pytest configuration and fixtures for ecu-link tests.

Provides:
- ConnectedStreams: In-memory duplex ByteStream pair
- FakeDevice: Scriptable device on one end of a ConnectedStreams pair
- Session/device and simulator fixtures
- socat PTY pair fixture for integration tests
- Markers for unit vs integration tests
"""

import re
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Generator

import pytest

from client.interaction import EcuClient
from common.catalog import EcuCatalog, default_catalog
from common.message import FrameDecoder, Message, encode_frame
from common.protocol import READ_POLL_S, ByteStream
from common.session import TransportSession
from server.runner import SimulatorServer
from server.state import SimulatedEcuState


class _Pipe:
    """One direction of a ConnectedStreams pair."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.closed = False
        self.cond = threading.Condition()


class ConnectedStreams:
    """Bidirectional in-memory stream pair.

    Bytes written to stream_a are read from stream_b and vice versa. Reads
    block for up to READ_POLL_S and return b"" when nothing arrived, like a
    serial port with a read timeout. Closing either end ends both directions:
    pending data is still delivered, then reads raise EOFError.
    """

    def __init__(self) -> None:
        a_to_b = _Pipe()
        b_to_a = _Pipe()
        self.stream_a = _ConnectedStream(rx=b_to_a, tx=a_to_b)
        self.stream_b = _ConnectedStream(rx=a_to_b, tx=b_to_a)

    def close(self) -> None:
        self.stream_a.close()
        self.stream_b.close()


class _ConnectedStream:
    """One end of a ConnectedStreams pair."""

    def __init__(self, rx: _Pipe, tx: _Pipe) -> None:
        self._rx = rx
        self._tx = tx
        self.bytes_written = 0

    def read(self, size: int, /) -> bytes:
        rx = self._rx
        with rx.cond:
            if not rx.buffer and not rx.closed:
                rx.cond.wait(READ_POLL_S)
            if rx.buffer:
                data = bytes(rx.buffer[:size])
                del rx.buffer[:size]
                return data
            if rx.closed:
                raise EOFError("peer closed")
            return b""

    def write(self, data: bytes, /) -> int:
        tx = self._tx
        with tx.cond:
            if tx.closed:
                raise OSError("stream closed")
            tx.buffer.extend(data)
            tx.cond.notify_all()
        self.bytes_written += len(data)
        return len(data)

    def inject(self, data: bytes) -> None:
        """Inject data as if it came from the peer."""
        with self._rx.cond:
            self._rx.buffer.extend(data)
            self._rx.cond.notify_all()

    def close(self) -> None:
        for pipe in (self._rx, self._tx):
            with pipe.cond:
                pipe.closed = True
                pipe.cond.notify_all()


def wait_until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> bool:
    """Poll predicate until it holds or timeout_s elapses."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


Responder = Callable[[Message], list[Message]]


class FakeDevice:
    """Device double that decodes frames from its stream and answers via responder.

    The default responder stays silent. Replace it per test; every decoded
    message is recorded in received.
    """

    def __init__(self, stream: ByteStream) -> None:
        self.stream = stream
        self.received: list[Message] = []
        self.responder: Responder = self.silent
        self._decoder = FrameDecoder()
        self._thread = threading.Thread(target=self._run, name="fake-device", daemon=True)
        self._thread.start()

    @staticmethod
    def silent(message: Message) -> list[Message]:
        return []

    def _run(self) -> None:
        try:
            while True:
                data = self.stream.read(1024)
                for message in self._decoder.feed(data):
                    self.received.append(message)
                    for reply in self.responder(message):
                        self.send(reply)
        except (EOFError, OSError):
            return

    def send(self, message: Message) -> None:
        self.stream.write(encode_frame(message))

    def send_bytes(self, data: bytes) -> None:
        self.stream.write(data)

    def wait_for(self, predicate: Callable[[list[Message]], bool], timeout_s: float = 2.0) -> bool:
        """Poll received until predicate holds or timeout_s elapses."""
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            if predicate(list(self.received)):
                return True
            time.sleep(0.01)
        return predicate(list(self.received))


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (localhost TCP or socat)"
    )


@pytest.fixture
def streams() -> Generator[ConnectedStreams, None, None]:
    pair = ConnectedStreams()
    yield pair
    pair.close()


@pytest.fixture
def session_and_device(
    streams: ConnectedStreams,
) -> Generator[tuple[TransportSession, FakeDevice], None, None]:
    """A connected client session on stream_a and a FakeDevice on stream_b."""
    session = TransportSession()
    session.attach(streams.stream_a, "test")
    device = FakeDevice(streams.stream_b)
    yield session, device
    session.close()


@pytest.fixture
def catalog() -> EcuCatalog:
    return default_catalog()


@pytest.fixture
def sim_state(catalog: EcuCatalog) -> SimulatedEcuState:
    return SimulatedEcuState(catalog)


@pytest.fixture
def simulator(sim_state: SimulatedEcuState) -> Generator[SimulatorServer, None, None]:
    """Simulator on an ephemeral localhost port with a fast push interval."""
    server = SimulatorServer("127.0.0.1", 0, sim_state, push_interval_s=0.02)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def sim_address(simulator: SimulatorServer) -> str:
    host, port = simulator.address
    return f"tcp://{host}:{port}"


@pytest.fixture
def sim_client(
    sim_address: str, catalog: EcuCatalog
) -> Generator[EcuClient, None, None]:
    """EcuClient connected to the simulator fixture over TCP."""
    session = TransportSession()
    session.connect(sim_address)
    yield EcuClient(session, catalog)
    session.close()


@pytest.fixture
def pty_pair() -> Generator[tuple[str, str, subprocess.Popen[str]], None, None]:
    """Create a connected PTY pair using socat.

    Yields (pty1, pty2, socat_process).

    The PTYs are connected: data written to pty1 appears on pty2 and vice versa.
    This enables testing the serial transport without real hardware.

    Requires: socat installed and Linux platform.
    """
    if sys.platform != "linux":
        pytest.skip("socat PTY fixture requires Linux")

    try:
        subprocess.run(["which", "socat"], check=True, capture_output=True)
    except subprocess.CalledProcessError:
        pytest.skip("socat not installed")

    socat = subprocess.Popen(
        ["socat", "-d", "-d", "pty,raw,echo=0", "pty,raw,echo=0"],
        stderr=subprocess.PIPE,
        text=True,
    )

    # Parse PTY names from socat stderr output
    ptys: list[str] = []
    try:
        for _ in range(20):
            if socat.poll() is not None:
                raise RuntimeError(f"socat exited early with code {socat.returncode}")

            assert socat.stderr is not None
            line = socat.stderr.readline()
            if "PTY is" in line:
                match = re.search(r"/dev/pts/\d+", line)
                if match:
                    ptys.append(match.group())
            if len(ptys) == 2:
                break
            time.sleep(0.05)
        else:
            raise RuntimeError(f"Failed to get PTY pair from socat, got: {ptys}")

        yield ptys[0], ptys[1], socat

    finally:
        if socat.poll() is None:
            socat.terminate()
            socat.wait(timeout=5)
        if socat.stderr:
            socat.stderr.close()
