"""Unit tests for stream-name parsing and the TCP byte-stream adapter."""

import socket
from collections.abc import Generator

import pytest

from common.connection import TransportOpenError
from common.device import SocketStream, open_byte_stream, parse_stream_name


@pytest.mark.unit
class TestParseStreamName:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("tcp://127.0.0.1:54321", ("tcp", "127.0.0.1:54321")),
            ("localhost:54321", ("tcp", "localhost:54321")),
            ("usb:0483:5740", ("usb", "0483:5740")),
            ("USB:0483:5740", ("usb", "0483:5740")),
            ("/dev/ttyACM0", ("serial", "/dev/ttyACM0")),
            ("COM3", ("serial", "COM3")),
            ("/dev/serial/by-id/usb-x:1", ("serial", "/dev/serial/by-id/usb-x:1")),
        ],
    )
    def test_classify(self, name: str, expected: tuple[str, str]) -> None:
        assert parse_stream_name(name) == expected


@pytest.mark.unit
class TestOpenByteStream:
    def test_bad_tcp_target(self) -> None:
        with pytest.raises(TransportOpenError):
            open_byte_stream("tcp://nohost")

    def test_bad_usb_ids(self) -> None:
        with pytest.raises(TransportOpenError):
            open_byte_stream("usb:zz:yy")

    def test_missing_serial_port(self) -> None:
        with pytest.raises(TransportOpenError):
            open_byte_stream("/dev/does-not-exist-ecu")

    def test_refused_tcp(self) -> None:
        with pytest.raises(TransportOpenError):
            open_byte_stream("tcp://127.0.0.1:1")


@pytest.fixture
def tcp_pair() -> Generator[tuple[socket.socket, socket.socket], None, None]:
    """Connected localhost TCP sockets (client, accepted)."""
    with socket.create_server(("127.0.0.1", 0)) as listener:
        client = socket.create_connection(listener.getsockname()[:2])
        accepted, _ = listener.accept()
    yield client, accepted
    client.close()
    accepted.close()


@pytest.mark.unit
class TestSocketStream:
    """SocketStream over a localhost TCP connection."""

    def test_read_write(self, tcp_pair: tuple[socket.socket, socket.socket]) -> None:
        left, right = tcp_pair
        stream = SocketStream(left)
        try:
            right.sendall(b"abc")
            assert stream.read(16) == b"abc"
            stream.write(b"xyz")
            assert right.recv(16) == b"xyz"
        finally:
            stream.close()
            right.close()

    def test_read_timeout_returns_empty(self, tcp_pair: tuple[socket.socket, socket.socket]) -> None:
        left, right = tcp_pair
        stream = SocketStream(left)
        try:
            assert stream.read(16) == b""
        finally:
            stream.close()
            right.close()

    def test_peer_close_is_eof(self, tcp_pair: tuple[socket.socket, socket.socket]) -> None:
        left, right = tcp_pair
        stream = SocketStream(left)
        right.close()
        with pytest.raises(EOFError):
            stream.read(16)
        stream.close()

    def test_read_after_close(self, tcp_pair: tuple[socket.socket, socket.socket]) -> None:
        left, right = tcp_pair
        stream = SocketStream(left)
        stream.close()
        stream.close()
        with pytest.raises(EOFError):
            stream.read(16)
        right.close()
