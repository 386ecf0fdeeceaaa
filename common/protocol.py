"""Protocol definitions for the ECU link.

Contains:
- Wire constants (sync marker, content ceiling, message type bytes)
- Message class / command codes and the realtime DataType enum
- ByteStream Protocol for the duplex transports
- Timing constants (per-command timeouts, keep-alive, settle, push cadence)
- Environment-driven defaults and the TRACE logging level
"""

import logging
import os
from enum import IntEnum
from typing import Protocol

# TRACE logging level (below DEBUG), used for per-frame hex dumps
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Sync marker 'M','E' at the start of every frame
SYNC_BYTES = b"ME"

# Frame = sync(2) + length(2) + content + checksum(2)
HEADER_SIZE = 4
CHECKSUM_SIZE = 2
CONTENT_HEADER_SIZE = 3  # type + class + command

# Frames whose content would reach this size are treated as corrupt
MAX_CONTENT_SIZE = 4096

# Bytes requested from the stream per read
READ_CHUNK_SIZE = 1024

# Poll interval for blocking reads so shutdown is noticed promptly
READ_POLL_S = 0.1


class MsgType(IntEnum):
    """Message direction byte."""

    REQUEST = 0x00
    RESPONSE = 0x0F


class MsgClass(IntEnum):
    """Message class byte (object family)."""

    REALTIME = 0x00
    TABLE = 0x01
    DRIVER = 0x02
    SYSTEM = 0x04


# (class, command) pairs
CMD_REALTIME_DATA = (MsgClass.REALTIME, 0x00)
CMD_REALTIME_ACK = (MsgClass.REALTIME, 0x01)
CMD_SET_REPORTING = (MsgClass.REALTIME, 0x02)
CMD_SET_TABLE = (MsgClass.TABLE, 0x00)
CMD_GET_TABLE = (MsgClass.TABLE, 0x01)
CMD_STORE_TABLE = (MsgClass.TABLE, 0x06)
CMD_SET_DRIVER = (MsgClass.DRIVER, 0x00)
CMD_GET_DRIVER = (MsgClass.DRIVER, 0x01)
CMD_STORE_DRIVER = (MsgClass.DRIVER, 0x02)
CMD_GET_ECU_INFO = (MsgClass.SYSTEM, 0x00)
CMD_GET_OBJECT_LIST = (MsgClass.SYSTEM, 0x01)

STATUS_OK = 0x00
STATUS_REJECTED = 0x01


class DataType(IntEnum):
    """Wire encoding of one realtime item, as declared in the reporting map."""

    FLOAT32 = 0x00
    INT16 = 0x01
    UINT16 = 0x02
    INT8 = 0x03
    UINT8 = 0x04
    BOOL = 0x05

    @property
    def size(self) -> int:
        return _DATA_TYPE_SIZES[self]

    @property
    def struct_format(self) -> str:
        return _DATA_TYPE_FORMATS[self]


_DATA_TYPE_SIZES = {
    DataType.FLOAT32: 4,
    DataType.INT16: 2,
    DataType.UINT16: 2,
    DataType.INT8: 1,
    DataType.UINT8: 1,
    DataType.BOOL: 1,
}

_DATA_TYPE_FORMATS = {
    DataType.FLOAT32: "<f",
    DataType.INT16: "<h",
    DataType.UINT16: "<H",
    DataType.INT8: "<b",
    DataType.UINT8: "<B",
    DataType.BOOL: "<B",
}


class ByteStream(Protocol):
    """Duplex byte stream owned by one transport session.

    read() returns whatever is available (b"" when nothing arrived within the
    poll interval) and raises EOFError or OSError once the stream is gone.
    """

    def read(self, size: int, /) -> bytes: ...
    def write(self, data: bytes, /) -> int | None: ...
    def close(self) -> None: ...


# Default per-command timeouts (seconds)
INFO_TIMEOUT_S = 2.0
OBJECT_LIST_TIMEOUT_S = 5.0
REPORTING_TIMEOUT_S = 2.0
GET_OBJECT_TIMEOUT_S = 5.0
UPDATE_TIMEOUT_S = 5.0
STORE_TIMEOUT_S = 2.0

# Realtime streaming cadence
KEEPALIVE_INTERVAL_S = 1.0
SETTLE_DELAY_S = 0.1
SIMULATOR_PUSH_INTERVAL_S = 0.05

# Environment-driven defaults
DEFAULT_BAUDRATE = int(os.environ.get("ECU_BAUDRATE", "115200"))
DEFAULT_SIM_HOST = os.environ.get("ECU_SIM_HOST", "127.0.0.1")
DEFAULT_SIM_PORT = int(os.environ.get("ECU_SIM_PORT", "54321"))
DEFAULT_LOG_LEVEL = os.environ.get("ECU_LOG_LEVEL", "WARNING")
