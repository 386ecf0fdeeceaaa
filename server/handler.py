"""Request dispatch and per-connection loops for the ECU simulator.

Contains:
- DISPATCH: (class, command) -> handler table for stateless commands
- process_request: Compute the reply for one request
- ClientHandler: Read/dispatch loop plus realtime push loop over one session
"""

import logging
import threading
from collections.abc import Callable

from common.codec import (
    build_ecu_info_payload,
    build_get_driver_response,
    build_get_table_response,
    build_object_list_payload,
    build_realtime_payload,
    build_set_state_response,
    parse_id_payload,
    parse_set_driver_payload,
    parse_set_table_payload,
)
from common.connection import CancellationToken, EcuLinkError
from common.message import Message, response
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
    SIMULATOR_PUSH_INTERVAL_S,
    STATUS_OK,
    STATUS_REJECTED,
    MsgType,
)
from common.session import TransportSession
from server.state import SimulatedEcuState

logger = logging.getLogger(__name__)

OK = bytes([STATUS_OK])
REJECTED = bytes([STATUS_REJECTED])

CommandHandler = Callable[[SimulatedEcuState, bytes], bytes]


def _ecu_info(state: SimulatedEcuState, payload: bytes) -> bytes:
    return build_ecu_info_payload(state.ecu_info())


def _object_list(state: SimulatedEcuState, payload: bytes) -> bytes:
    return build_object_list_payload([d.id for d in state.object_list()])


def _get_table(state: SimulatedEcuState, payload: bytes) -> bytes:
    table_id = parse_id_payload(payload)
    table = state.get_table(table_id) if table_id is not None else None
    return build_get_table_response(table) if table is not None else REJECTED


def _set_table(state: SimulatedEcuState, payload: bytes) -> bytes:
    table = parse_set_table_payload(payload, state.catalog)
    if table is not None:
        state.update_table(table)
    return OK


def _set_driver(state: SimulatedEcuState, payload: bytes) -> bytes:
    driver = parse_set_driver_payload(payload, state.catalog)
    if driver is not None:
        state.update_driver(driver)
    return OK


def _get_driver(state: SimulatedEcuState, payload: bytes) -> bytes:
    driver_id = parse_id_payload(payload)
    driver = state.get_driver(driver_id) if driver_id is not None else None
    return build_get_driver_response(driver) if driver is not None else REJECTED


def _store(state: SimulatedEcuState, payload: bytes) -> bytes:
    return OK


DISPATCH: dict[tuple[int, int], CommandHandler] = {
    CMD_GET_ECU_INFO: _ecu_info,
    CMD_GET_OBJECT_LIST: _object_list,
    CMD_GET_TABLE: _get_table,
    CMD_SET_TABLE: _set_table,
    CMD_STORE_TABLE: _store,
    CMD_GET_DRIVER: _get_driver,
    CMD_SET_DRIVER: _set_driver,
    CMD_STORE_DRIVER: _store,
}


def process_request(
    state: SimulatedEcuState, message: Message, set_reporting: Callable[[bool], None]
) -> Message | None:
    """Compute the reply to one message, or None when no reply is due."""
    command = (message.msg_class, message.command)

    if message.type == MsgType.RESPONSE and command == CMD_REALTIME_ACK:
        return None

    if command == CMD_SET_REPORTING:
        set_reporting(message.payload[:1] == b"\x01")
        payload = build_set_state_response(state.reporting_map())
    else:
        handler = DISPATCH.get(command)
        payload = handler(state, message.payload) if handler is not None else REJECTED

    if not payload:
        return None
    return response(message.msg_class, message.command, payload)


class ClientHandler:
    """Serves one connected peer until either of its loops ends.

    The read loop answers requests from the session's unsolicited queue; the
    push loop sends a realtime frame every push interval while reporting is
    enabled. Whichever stops first closes the session and stops the other.
    """

    def __init__(
        self,
        session: TransportSession,
        state: SimulatedEcuState,
        push_interval_s: float = SIMULATOR_PUSH_INTERVAL_S,
    ) -> None:
        self._session = session
        self._state = state
        self._push_interval_s = push_interval_s
        self._reporting = threading.Event()
        self._stop = CancellationToken()
        self.requests_handled = 0
        self.frames_pushed = 0

    @property
    def reporting_enabled(self) -> bool:
        return self._reporting.is_set()

    def _set_reporting(self, enabled: bool) -> None:
        if enabled:
            self._reporting.set()
        else:
            self._reporting.clear()
        logger.debug(f"{self._session.name}: reporting {'enabled' if enabled else 'disabled'}")

    def stop(self) -> None:
        self._stop.cancel()

    def run(self) -> None:
        """Serve until the peer disconnects or stop() is called."""
        logger.info(f"Client connected: {self._session.name}")
        pusher = threading.Thread(
            target=self._push_loop, name=f"sim-push-{self._session.name}", daemon=True
        )
        pusher.start()
        try:
            self._read_loop()
        finally:
            self._stop.cancel()
            pusher.join(timeout=2.0)
            self._session.close()
            logger.info(f"Client disconnected: {self._session.name}")

    def _read_loop(self) -> None:
        try:
            while True:
                message = self._session.receive(None, self._stop)
                if message is None:
                    continue
                reply = process_request(self._state, message, self._set_reporting)
                self.requests_handled += 1
                if reply is not None:
                    self._session.post(reply)
        except EcuLinkError as e:
            logger.debug(f"{self._session.name}: read loop ended: {e}")

    def _push_loop(self) -> None:
        try:
            while not self._stop.wait(self._push_interval_s):
                if not self._reporting.is_set():
                    continue
                values = self._state.advance()
                payload = build_realtime_payload(values, self._state.reporting_map())
                self._session.post(response(*CMD_REALTIME_DATA, payload))
                self.frames_pushed += 1
        except EcuLinkError as e:
            logger.debug(f"{self._session.name}: push loop ended: {e}")
        finally:
            self._stop.cancel()
