"""Byte-stream adapters for the ECU link.

Contains:
- SerialStream: Serial port via pyserial
- SocketStream: TCP socket (client connection or accepted server socket)
- UsbBulkStream: USB bulk endpoints via pyusb
- parse_stream_name: Split a stream name into (kind, target)
- open_byte_stream: Open the adapter matching a stream name

All adapters satisfy common.protocol.ByteStream: read() returns b"" when
nothing arrived within the poll interval and raises EOFError/OSError when
the stream is gone.
"""

import logging
import os
import select
import socket
import threading

import serial
import serial.tools.list_ports
import usb.core
import usb.util

from common.connection import TransportOpenError
from common.protocol import DEFAULT_BAUDRATE, READ_POLL_S, ByteStream

logger = logging.getLogger(__name__)

USB_INTERFACE = 0
USB_WRITE_TIMEOUT_MS = 1000

TCP_PREFIX = "tcp://"
USB_PREFIX = "usb:"


def log_device_info(device: str) -> None:
    """Log information about a serial device."""
    real_path = os.path.realpath(device)
    if real_path.startswith("/dev/pts/"):
        logger.info(f"Device: {device} -> {real_path} (pty)")
        return

    ports = [p for p in serial.tools.list_ports.comports() if p.device == device]
    if not ports:
        logger.info(f"Device: {device} (not in port list)")
        return

    info = ports[0]
    logger.info(f"Device: {info.device} ({info.description})")
    if info.vid is not None:
        logger.info(f"VID:PID: {info.vid:04x}:{info.pid:04x}")


class SerialStream:
    """Serial port with a short read timeout so the read loop can poll."""

    def __init__(self, ser: serial.Serial) -> None:
        self._ser = ser
        self._read_lock = threading.Lock()

    @classmethod
    def open(cls, device: str, baudrate: int = DEFAULT_BAUDRATE) -> "SerialStream":
        log_device_info(device)
        ser = serial.Serial(
            port=device,
            baudrate=baudrate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            xonxoff=False,
            rtscts=False,
            timeout=READ_POLL_S,
            write_timeout=1.0,
        )
        ser.reset_input_buffer()
        ser.reset_output_buffer()
        logger.debug(f"Serial port: baudrate={ser.baudrate}")
        return cls(ser)

    def read(self, size: int, /) -> bytes:
        with self._read_lock:
            if not self._ser.is_open:
                raise EOFError("Serial port closed")
            # Block for the first byte (up to the poll timeout), then drain what is waiting
            data = self._ser.read(1)
            if data:
                waiting = min(self._ser.in_waiting, size - 1)
                if waiting > 0:
                    data += self._ser.read(waiting)
            return data

    def write(self, data: bytes, /) -> int | None:
        return self._ser.write(data)

    def close(self) -> None:
        # Wake a blocked read, then close once it has returned
        self._ser.cancel_read()
        with self._read_lock:
            self._ser.close()


class SocketStream:
    """TCP socket; reads poll with select() so writes stay fully blocking."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._closed = False
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    @classmethod
    def connect(cls, host: str, port: int, timeout_s: float = 5.0) -> "SocketStream":
        sock = socket.create_connection((host, port), timeout=timeout_s)
        sock.settimeout(None)
        logger.info(f"Connected to {host}:{port}")
        return cls(sock)

    def read(self, size: int, /) -> bytes:
        if self._closed:
            raise EOFError("Socket closed")
        try:
            ready, _, _ = select.select([self._sock], [], [], READ_POLL_S)
        except ValueError as e:
            # fileno() is -1 once the socket was closed from another thread
            raise EOFError("Socket closed") from e
        if not ready:
            return b""
        data = self._sock.recv(size)
        if not data:
            raise EOFError("Peer closed the connection")
        return data

    def write(self, data: bytes, /) -> int | None:
        self._sock.sendall(data)
        return len(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket shutdown: {e}")
        self._sock.close()


class UsbBulkStream:
    """Bulk IN/OUT endpoint pair on a claimed USB interface."""

    def __init__(self, dev: usb.core.Device, ep_in: int, ep_out: int, interface: int) -> None:
        self._dev = dev
        self._ep_in = ep_in
        self._ep_out = ep_out
        self._interface = interface
        self._closed = False

    @classmethod
    def open(cls, vendor_id: int, product_id: int, interface: int = USB_INTERFACE) -> "UsbBulkStream":
        dev = usb.core.find(idVendor=vendor_id, idProduct=product_id)
        if dev is None:
            raise TransportOpenError(f"USB device {vendor_id:04x}:{product_id:04x} not found")

        try:
            if dev.is_kernel_driver_active(interface):
                dev.detach_kernel_driver(interface)
        except NotImplementedError:
            # Not supported on every platform backend
            pass

        usb.util.claim_interface(dev, interface)
        intf = dev.get_active_configuration()[(interface, 0)]

        def bulk(direction: int) -> usb.core.Endpoint | None:
            return usb.util.find_descriptor(
                intf,
                custom_match=lambda ep: (
                    usb.util.endpoint_direction(ep.bEndpointAddress) == direction
                    and usb.util.endpoint_type(ep.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
                ),
            )

        ep_in = bulk(usb.util.ENDPOINT_IN)
        ep_out = bulk(usb.util.ENDPOINT_OUT)
        if ep_in is None or ep_out is None:
            usb.util.release_interface(dev, interface)
            raise TransportOpenError(f"No bulk endpoint pair on interface {interface}")

        logger.info(
            f"USB {vendor_id:04x}:{product_id:04x} IN=0x{ep_in.bEndpointAddress:02x} "
            f"OUT=0x{ep_out.bEndpointAddress:02x}"
        )
        return cls(dev, ep_in.bEndpointAddress, ep_out.bEndpointAddress, interface)

    def read(self, size: int, /) -> bytes:
        if self._closed:
            raise EOFError("USB stream closed")
        try:
            return bytes(self._dev.read(self._ep_in, size, timeout=int(READ_POLL_S * 1000)))
        except usb.core.USBTimeoutError:
            return b""

    def write(self, data: bytes, /) -> int | None:
        return self._dev.write(self._ep_out, data, timeout=USB_WRITE_TIMEOUT_MS)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            usb.util.release_interface(self._dev, self._interface)
        finally:
            usb.util.dispose_resources(self._dev)


def parse_stream_name(name: str) -> tuple[str, str]:
    """Classify a stream name as ("tcp", "host:port"), ("usb", "VID:PID") or ("serial", path)."""
    if name.startswith(TCP_PREFIX):
        return "tcp", name[len(TCP_PREFIX) :]
    if name.lower().startswith(USB_PREFIX):
        return "usb", name[len(USB_PREFIX) :]
    host, sep, port = name.rpartition(":")
    if sep and host and port.isdigit() and "/" not in host and "\\" not in host:
        return "tcp", name
    return "serial", name


def _split_host_port(target: str) -> tuple[str, int]:
    host, sep, port = target.rpartition(":")
    if not sep or not port.isdigit():
        raise TransportOpenError(f"Expected host:port, got {target!r}")
    return host or "127.0.0.1", int(port)


def _split_vid_pid(target: str) -> tuple[int, int]:
    vid, sep, pid = target.partition(":")
    try:
        return int(vid, 16), int(pid, 16)
    except ValueError as e:
        raise TransportOpenError(f"Expected usb:VID:PID in hex, got usb:{target}") from e


def open_byte_stream(name: str, speed_hint: int = DEFAULT_BAUDRATE) -> ByteStream:
    """Open the byte stream named by name.

    speed_hint is the baudrate for serial ports and ignored otherwise.
    Raises TransportOpenError if the stream cannot be opened.
    """
    kind, target = parse_stream_name(name)
    try:
        if kind == "tcp":
            host, port = _split_host_port(target)
            return SocketStream.connect(host, port)
        if kind == "usb":
            vendor_id, product_id = _split_vid_pid(target)
            return UsbBulkStream.open(vendor_id, product_id)
        return SerialStream.open(target, speed_hint)
    except TransportOpenError:
        raise
    except (serial.SerialException, usb.core.USBError, OSError) as e:
        raise TransportOpenError(f"Failed to open {name}: {e}") from e
