"""Common modules for the ECU link.

This package contains shared code used by both client and simulator:
- protocol: wire constants, command codes, DataType, timing, ByteStream Protocol
- checksum: Fletcher-16
- message: Message value type, frame encoding and the incremental FrameDecoder
- models: ECU domain value objects
- codec: binary codec for ECU objects in message payloads
- catalog: CatalogLookup Protocol and the built-in demo catalog
- connection: state enums, error taxonomy and CancellationToken
- correlator: single-flight pending-request table
- session: TransportSession, the read/dispatch loop shared by both peers
- device: serial, TCP and USB byte-stream adapters
- report: console reports for CLI commands
"""

from common.catalog import CatalogLookup, EcuCatalog, default_catalog
from common.connection import (
    CancellationToken,
    CommandInFlightError,
    ConnectionClosedError,
    DeviceRejectedError,
    EcuLinkError,
    NotConnectedError,
    OperationCancelledError,
    RequestTimeoutError,
    SessionState,
    StreamState,
    TransportOpenError,
)
from common.correlator import Correlator, PendingRequest
from common.message import FrameDecoder, Message, decode_frame, encode_frame
from common.models import (
    DriverData,
    EcuInfo,
    EcuObjectDefinition,
    ObjectType,
    RealtimeDataPoint,
    ReportingMapEntry,
    TableData,
)
from common.protocol import ByteStream, DataType, MsgClass, MsgType
from common.session import SessionStats, TransportSession

__all__ = [
    # Protocol
    "ByteStream",
    "DataType",
    "MsgClass",
    "MsgType",
    # Framing
    "Message",
    "FrameDecoder",
    "encode_frame",
    "decode_frame",
    # Models
    "DriverData",
    "EcuInfo",
    "EcuObjectDefinition",
    "ObjectType",
    "RealtimeDataPoint",
    "ReportingMapEntry",
    "TableData",
    # Catalog
    "CatalogLookup",
    "EcuCatalog",
    "default_catalog",
    # Connection
    "CancellationToken",
    "SessionState",
    "StreamState",
    # Session
    "Correlator",
    "PendingRequest",
    "SessionStats",
    "TransportSession",
    # Exceptions
    "CommandInFlightError",
    "ConnectionClosedError",
    "DeviceRejectedError",
    "EcuLinkError",
    "NotConnectedError",
    "OperationCancelledError",
    "RequestTimeoutError",
    "TransportOpenError",
]
