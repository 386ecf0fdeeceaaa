"""Command-level API for talking to an ECU.

Contains:
- EcuClient: One-shot commands (info, object list, tables, drivers, store,
  raw send/receive) built on a TransportSession
- RealtimeStream: Enable/keep-alive/decode/disable cycle for realtime data

Every method takes its own timeout and an optional CancellationToken. Set and
store commands raise DeviceRejectedError when the device answers with a
non-zero status; get commands return None for a missing or malformed object.
"""

import logging
import threading
import time
from collections.abc import Iterator

from common.catalog import CatalogLookup, EcuCatalog
from common.codec import (
    build_id_payload,
    build_set_driver_payload,
    build_set_table_payload,
    parse_driver_response,
    parse_ecu_info,
    parse_object_list,
    parse_realtime_data,
    parse_set_state_response,
    parse_table_response,
    response_status,
)
from common.connection import (
    CancellationToken,
    DeviceRejectedError,
    EcuLinkError,
    StreamState,
)
from common.message import Message, request
from common.models import (
    DriverData,
    EcuInfo,
    EcuObjectDefinition,
    RealtimeDataPoint,
    ReportingMapEntry,
    TableData,
)
from common.protocol import (
    CMD_GET_DRIVER,
    CMD_GET_ECU_INFO,
    CMD_GET_OBJECT_LIST,
    CMD_GET_TABLE,
    CMD_REALTIME_ACK,
    CMD_REALTIME_DATA,
    CMD_SET_DRIVER,
    CMD_SET_REPORTING,
    CMD_SET_TABLE,
    CMD_STORE_DRIVER,
    CMD_STORE_TABLE,
    GET_OBJECT_TIMEOUT_S,
    INFO_TIMEOUT_S,
    KEEPALIVE_INTERVAL_S,
    OBJECT_LIST_TIMEOUT_S,
    REPORTING_TIMEOUT_S,
    SETTLE_DELAY_S,
    STATUS_OK,
    STORE_TIMEOUT_S,
    UPDATE_TIMEOUT_S,
    MsgType,
)
from common.session import TransportSession

logger = logging.getLogger(__name__)

REPORTING_ON = b"\x01"
REPORTING_OFF = b"\x00"
OBJECT_LIST_ALL = b"\x01"


def enable_reporting_request() -> Message:
    return request(*CMD_SET_REPORTING, REPORTING_ON)


def disable_reporting_request() -> Message:
    return request(*CMD_SET_REPORTING, REPORTING_OFF)


def keepalive_message() -> Message:
    return Message(MsgType.RESPONSE, *CMD_REALTIME_ACK, b"\x00")


def is_realtime_frame(message: Message) -> bool:
    return (
        message.type == MsgType.RESPONSE
        and (message.msg_class, message.command) == CMD_REALTIME_DATA
    )


class RealtimeStream:
    """One realtime streaming session: Idle -> Enabling -> Streaming -> Disabling -> Idle.

    Usage::

        with client.stream_realtime() as stream:
            for points in stream:
                ...

    An empty reporting map ends the stream immediately. Leaving the with
    block or a for loop over the stream (or calling close()) always stops
    the keep-alive, asks the device to stop reporting and waits a short
    settle delay before returning.
    """

    def __init__(
        self,
        session: TransportSession,
        catalog: CatalogLookup | None = None,
        timeout_s: float = REPORTING_TIMEOUT_S,
        cancel: CancellationToken | None = None,
        keepalive_interval_s: float = KEEPALIVE_INTERVAL_S,
    ) -> None:
        self._session = session
        self._catalog = catalog
        self._timeout_s = timeout_s
        self._cancel = cancel
        self._keepalive_interval_s = keepalive_interval_s
        self._state = StreamState.IDLE
        self._reporting_map: tuple[ReportingMapEntry, ...] = ()
        self._finished = False
        self._keepalive_stop = threading.Event()
        self._keepalive: threading.Thread | None = None
        self.frames_decoded = 0
        self.keepalives_sent = 0

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def reporting_map(self) -> tuple[ReportingMapEntry, ...]:
        return self._reporting_map

    @property
    def keepalive_running(self) -> bool:
        return self._keepalive is not None and self._keepalive.is_alive()

    def open(self) -> "RealtimeStream":
        """Enable reporting and start the keep-alive."""
        if self._state is not StreamState.IDLE or self._finished:
            raise RuntimeError(f"Realtime stream cannot be opened from {self._state.value}")
        self._state = StreamState.ENABLING
        try:
            reply = self._session.send_request(
                enable_reporting_request(), self._timeout_s, self._cancel
            )
        except BaseException:
            self._state = StreamState.IDLE
            self._finished = True
            raise

        self._reporting_map = tuple(parse_set_state_response(reply.payload))
        if not self._reporting_map:
            logger.info("Device reports no realtime items, nothing to stream")
            self._state = StreamState.IDLE
            self._finished = True
            return self

        logger.debug(f"Reporting map: {len(self._reporting_map)} item(s)")
        self._state = StreamState.STREAMING
        self._keepalive_stop.clear()
        self._keepalive = threading.Thread(
            target=self._keepalive_loop, name="ecu-keepalive", daemon=True
        )
        self._keepalive.start()
        return self

    def _keepalive_loop(self) -> None:
        message = keepalive_message()
        while not self._keepalive_stop.wait(self._keepalive_interval_s):
            try:
                self._session.post(message)
            except EcuLinkError as e:
                logger.debug(f"Keep-alive stopped: {e}")
                return
            self.keepalives_sent += 1

    def next_frame(self, timeout_s: float | None = None) -> list[RealtimeDataPoint] | None:
        """Block for the next realtime frame and decode it.

        Returns None when timeout_s elapses without a frame or the stream has
        already ended. Cancellation and connection loss close the stream
        before the error propagates.
        """
        if self._state is not StreamState.STREAMING:
            return None
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        try:
            while True:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                message = self._session.receive(remaining, self._cancel)
                if message is None:
                    return None
                if not is_realtime_frame(message):
                    logger.debug(f"Ignoring unsolicited {message}")
                    continue
                self.frames_decoded += 1
                return parse_realtime_data(message.payload, self._reporting_map, self._catalog)
        except EcuLinkError:
            self.close()
            raise

    def close(self) -> None:
        """Stop the keep-alive, disable reporting (best effort) and settle."""
        if self._state is not StreamState.STREAMING:
            self._finished = True
            return
        self._state = StreamState.DISABLING
        self._finished = True

        self._keepalive_stop.set()
        if self._keepalive is not None and self._keepalive is not threading.current_thread():
            self._keepalive.join(timeout=self._keepalive_interval_s + 1.0)
        self._keepalive = None

        if self._session.connected:
            try:
                # Not tied to the caller's token so a cancelled stream still disables
                self._session.send_request(disable_reporting_request(), self._timeout_s)
            except EcuLinkError as e:
                logger.warning(f"Failed to disable realtime reporting: {e}")
        else:
            logger.debug("Session gone, skipping disable")
        time.sleep(SETTLE_DELAY_S)
        self._state = StreamState.IDLE
        logger.debug(f"Realtime stream closed after {self.frames_decoded} frame(s)")

    def __enter__(self) -> "RealtimeStream":
        if self._state is StreamState.IDLE and not self._finished:
            self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __iter__(self) -> Iterator[list[RealtimeDataPoint]]:
        """Yield decoded frames; leaving the loop closes the stream."""
        if self._state is StreamState.IDLE and not self._finished:
            self.open()
        try:
            while True:
                points = self.next_frame()
                if points is None:
                    return
                yield points
        finally:
            self.close()


class EcuClient:
    """Command API over a connected TransportSession."""

    def __init__(self, session: TransportSession, catalog: CatalogLookup | None = None) -> None:
        self._session = session
        self._catalog: CatalogLookup = catalog if catalog is not None else EcuCatalog()

    @property
    def session(self) -> TransportSession:
        return self._session

    @property
    def catalog(self) -> CatalogLookup:
        return self._catalog

    def _round_trip(
        self,
        command: tuple[int, int],
        payload: bytes,
        timeout_s: float,
        cancel: CancellationToken | None,
    ) -> Message:
        return self._session.send_request(request(*command, payload), timeout_s, cancel)

    def _expect_ok(self, operation: str, object_id: int, reply: Message) -> None:
        status = response_status(reply.payload)
        if status != STATUS_OK:
            logger.warning(f"Device rejected {operation} for id {object_id}: {status}")
            raise DeviceRejectedError(operation, object_id, status)

    def get_ecu_info(
        self, timeout_s: float = INFO_TIMEOUT_S, cancel: CancellationToken | None = None
    ) -> EcuInfo | None:
        reply = self._round_trip(CMD_GET_ECU_INFO, b"", timeout_s, cancel)
        return parse_ecu_info(reply.payload)

    def get_object_list(
        self, timeout_s: float = OBJECT_LIST_TIMEOUT_S, cancel: CancellationToken | None = None
    ) -> list[EcuObjectDefinition]:
        """List the device's tables and drivers that the catalog knows."""
        reply = self._round_trip(CMD_GET_OBJECT_LIST, OBJECT_LIST_ALL, timeout_s, cancel)
        return parse_object_list(reply.payload, self._catalog)

    def get_datalink_list(
        self, timeout_s: float = REPORTING_TIMEOUT_S, cancel: CancellationToken | None = None
    ) -> list[EcuObjectDefinition]:
        """List the device's realtime datalinks that the catalog knows.

        The device only reveals them through the reporting map, so this
        briefly enables reporting and disables it again.
        """
        reply = self._session.send_request(enable_reporting_request(), timeout_s, cancel)
        reporting_map = parse_set_state_response(reply.payload)
        try:
            self._session.send_request(disable_reporting_request(), timeout_s)
        except EcuLinkError as e:
            logger.warning(f"Failed to disable realtime reporting: {e}")
        time.sleep(SETTLE_DELAY_S)

        datalinks = []
        for entry in reporting_map:
            definition = self._catalog.lookup(entry.id)
            if definition is not None:
                datalinks.append(definition)
        return datalinks

    def get_table(
        self,
        table_id: int,
        timeout_s: float = GET_OBJECT_TIMEOUT_S,
        cancel: CancellationToken | None = None,
    ) -> TableData | None:
        reply = self._round_trip(CMD_GET_TABLE, build_id_payload(table_id), timeout_s, cancel)
        return parse_table_response(reply.payload, self._catalog)

    def get_driver(
        self,
        driver_id: int,
        timeout_s: float = GET_OBJECT_TIMEOUT_S,
        cancel: CancellationToken | None = None,
    ) -> DriverData | None:
        reply = self._round_trip(CMD_GET_DRIVER, build_id_payload(driver_id), timeout_s, cancel)
        return parse_driver_response(reply.payload, self._catalog)

    def update_table(
        self,
        table: TableData,
        timeout_s: float = UPDATE_TIMEOUT_S,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Replace the whole table on the device (RAM only, see store_table)."""
        reply = self._round_trip(CMD_SET_TABLE, build_set_table_payload(table), timeout_s, cancel)
        self._expect_ok("update table", table.id, reply)

    def update_driver(
        self,
        driver: DriverData,
        timeout_s: float = UPDATE_TIMEOUT_S,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Replace the whole driver on the device (RAM only, see store_driver)."""
        reply = self._round_trip(
            CMD_SET_DRIVER, build_set_driver_payload(driver), timeout_s, cancel
        )
        self._expect_ok("update driver", driver.id, reply)

    def store_table(
        self,
        table_id: int,
        timeout_s: float = STORE_TIMEOUT_S,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Persist the table to the device's flash."""
        reply = self._round_trip(CMD_STORE_TABLE, build_id_payload(table_id), timeout_s, cancel)
        self._expect_ok("store table", table_id, reply)

    def store_driver(
        self,
        driver_id: int,
        timeout_s: float = STORE_TIMEOUT_S,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Persist the driver to the device's flash."""
        reply = self._round_trip(CMD_STORE_DRIVER, build_id_payload(driver_id), timeout_s, cancel)
        self._expect_ok("store driver", driver_id, reply)

    def stream_realtime(
        self,
        timeout_s: float = REPORTING_TIMEOUT_S,
        cancel: CancellationToken | None = None,
        keepalive_interval_s: float = KEEPALIVE_INTERVAL_S,
    ) -> RealtimeStream:
        """Create a realtime stream; it is enabled on enter or first iteration."""
        return RealtimeStream(
            self._session,
            self._catalog,
            timeout_s=timeout_s,
            cancel=cancel,
            keepalive_interval_s=keepalive_interval_s,
        )

    def get_realtime_value(
        self,
        datalink_id: int,
        timeout_s: float = REPORTING_TIMEOUT_S,
        cancel: CancellationToken | None = None,
    ) -> RealtimeDataPoint | None:
        """Read one realtime frame and return the point for datalink_id, if present."""
        with self.stream_realtime(timeout_s, cancel) as stream:
            points = stream.next_frame(timeout_s)
        if not points:
            return None
        for point in points:
            if point.id == datalink_id:
                return point
        return None

    def send_raw(
        self,
        msg_type: int,
        msg_class: int,
        command: int,
        payload: bytes = b"",
        timeout_s: float = INFO_TIMEOUT_S,
        cancel: CancellationToken | None = None,
    ) -> Message:
        """Send an arbitrary message and wait for the reply with the same key."""
        message = Message(msg_type, msg_class, command, payload)
        return self._session.send_request(message, timeout_s, cancel)

    def receive_raw(
        self, timeout_s: float | None = None, cancel: CancellationToken | None = None
    ) -> Message | None:
        """Take the next unsolicited message, or None after timeout_s."""
        return self._session.receive(timeout_s, cancel)
