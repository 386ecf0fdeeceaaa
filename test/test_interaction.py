"""Unit tests for the command API and the realtime streaming cycle."""

import threading
import time

import pytest

from client.interaction import (
    EcuClient,
    RealtimeStream,
    disable_reporting_request,
    enable_reporting_request,
    keepalive_message,
)
from common.catalog import EcuCatalog
from common.codec import (
    build_ecu_info_payload,
    build_get_table_response,
    build_object_list_payload,
    build_realtime_payload,
    build_set_state_response,
)
from common.connection import (
    CancellationToken,
    ConnectionClosedError,
    DeviceRejectedError,
    OperationCancelledError,
    RequestTimeoutError,
    StreamState,
)
from common.message import Message, response
from common.models import EcuInfo, ReportingMapEntry, TableData
from common.protocol import (
    CMD_GET_ECU_INFO,
    CMD_GET_OBJECT_LIST,
    CMD_GET_TABLE,
    CMD_REALTIME_DATA,
    CMD_SET_REPORTING,
    CMD_SET_TABLE,
    CMD_STORE_TABLE,
    SETTLE_DELAY_S,
    MsgType,
)
from common.session import TransportSession
from conftest import ConnectedStreams, FakeDevice, Responder, wait_until

REPORTING_MAP = [ReportingMapEntry(200, 0), ReportingMapEntry(202, 4)]

TABLE = TableData(1, "Fuel Base", 0, True, 1, 2, (0.0, 1.0), (), (10.0, 20.0))


def reply_to(command: tuple[int, int], payload: bytes) -> Responder:
    """Responder answering one (class, command) request with payload."""

    def responder(message: Message) -> list[Message]:
        if message.type == MsgType.REQUEST and (message.msg_class, message.command) == command:
            return [response(*command, payload)]
        return []

    return responder


def reporting_device(reporting_map: list[ReportingMapEntry]) -> Responder:
    return reply_to(CMD_SET_REPORTING, build_set_state_response(reporting_map))


def realtime_frame(values: dict[int, float]) -> Message:
    return response(*CMD_REALTIME_DATA, build_realtime_payload(values, REPORTING_MAP))


@pytest.fixture
def client(
    session_and_device: tuple[TransportSession, FakeDevice], catalog: EcuCatalog
) -> EcuClient:
    session, _ = session_and_device
    return EcuClient(session, catalog)


@pytest.fixture
def device(session_and_device: tuple[TransportSession, FakeDevice]) -> FakeDevice:
    return session_and_device[1]


@pytest.mark.unit
class TestCommands:
    """Tests for one-shot commands against a scripted device."""

    def test_get_ecu_info(self, client: EcuClient, device: FakeDevice) -> None:
        info = EcuInfo("ME221", "PnP", "1", "2", "u", "h")
        device.responder = reply_to(CMD_GET_ECU_INFO, build_ecu_info_payload(info))
        assert client.get_ecu_info(timeout_s=2.0) == info

    def test_get_ecu_info_malformed(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to(CMD_GET_ECU_INFO, b"\x00only\0two")
        assert client.get_ecu_info(timeout_s=2.0) is None

    def test_get_object_list(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to(CMD_GET_OBJECT_LIST, build_object_list_payload([1, 999, 100]))
        objects = client.get_object_list(timeout_s=2.0)
        assert [o.name for o in objects] == ["Fuel Base", "Idle Control"]
        assert device.received[0].payload == b"\x01"

    def test_get_table(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to(CMD_GET_TABLE, build_get_table_response(TABLE))
        assert client.get_table(1, timeout_s=2.0) == TABLE
        assert device.received[0].payload == b"\x01\x00"

    def test_get_table_rejected_is_none(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to(CMD_GET_TABLE, b"\x01")
        assert client.get_table(9, timeout_s=2.0) is None

    def test_update_table_ok(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to(CMD_SET_TABLE, b"\x00")
        client.update_table(TABLE, timeout_s=2.0)

    def test_update_table_rejected(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to(CMD_SET_TABLE, b"\x01")
        with pytest.raises(DeviceRejectedError) as exc_info:
            client.update_table(TABLE, timeout_s=2.0)
        assert exc_info.value.status == 1
        assert exc_info.value.object_id == 1

    def test_store_table(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to(CMD_STORE_TABLE, b"\x00")
        client.store_table(1, timeout_s=2.0)
        assert device.received[0].payload == b"\x01\x00"

    def test_cancelled_update_never_sent(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to(CMD_SET_TABLE, b"\x00")
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            client.update_table(TABLE, timeout_s=2.0, cancel=token)
        time.sleep(0.1)
        assert device.received == []

    def test_store_table_no_reply(self, client: EcuClient) -> None:
        with pytest.raises(RequestTimeoutError):
            client.store_table(1, timeout_s=0.1)

    def test_send_raw(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reply_to((0x07, 0x03), b"\xaa")
        reply = client.send_raw(0x00, 0x07, 0x03, b"\x01")
        assert reply == response(0x07, 0x03, b"\xaa")

    def test_receive_raw(self, client: EcuClient, device: FakeDevice) -> None:
        device.send(response(0x09, 0x09, b"\x01"))
        assert client.receive_raw(timeout_s=2.0) == response(0x09, 0x09, b"\x01")

    def test_get_datalink_list_disables_again(
        self, client: EcuClient, device: FakeDevice
    ) -> None:
        device.responder = reporting_device(REPORTING_MAP + [ReportingMapEntry(999, 0)])
        datalinks = client.get_datalink_list(timeout_s=2.0)
        assert [d.name for d in datalinks] == ["RPM", "Coolant Temp"]
        assert device.received == [enable_reporting_request(), disable_reporting_request()]


@pytest.mark.unit
class TestRealtimeStream:
    """Tests for the enable, keep-alive, decode and disable cycle."""

    def test_stream_decodes_frames(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        with client.stream_realtime(timeout_s=2.0) as stream:
            assert stream.state is StreamState.STREAMING
            assert list(stream.reporting_map) == REPORTING_MAP
            device.send(realtime_frame({200: 1.5, 202: 7}))
            points = stream.next_frame(timeout_s=2.0)
        assert points is not None
        assert [(p.name, p.value) for p in points] == [("RPM", 1.5), ("Coolant Temp", 7)]
        assert stream.state is StreamState.IDLE

    def test_other_messages_are_skipped(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        with client.stream_realtime(timeout_s=2.0) as stream:
            device.send(response(0x04, 0x00, b"\x00"))
            device.send(realtime_frame({200: 2.0, 202: 1}))
            points = stream.next_frame(timeout_s=2.0)
        assert points is not None and points[0].value == 2.0

    def test_next_frame_timeout(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        with client.stream_realtime(timeout_s=2.0) as stream:
            assert stream.next_frame(timeout_s=0.1) is None
            assert stream.state is StreamState.STREAMING

    def test_keepalive_sent_then_stopped(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        ack = keepalive_message()
        with client.stream_realtime(timeout_s=2.0, keepalive_interval_s=0.05) as stream:
            assert device.wait_for(lambda received: received.count(ack) >= 2)
            assert stream.keepalive_running
        assert not stream.keepalive_running

        sent = device.received.count(ack)
        time.sleep(0.2)
        assert device.received.count(ack) == sent
        assert device.received[-1] == disable_reporting_request()

    def test_close_waits_fixed_settle_delay(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        stream = client.stream_realtime(timeout_s=2.0).open()
        started = time.monotonic()
        stream.close()
        assert time.monotonic() - started >= SETTLE_DELAY_S
        with pytest.raises(TypeError):
            RealtimeStream(client.session, settle_s=0.0)  # type: ignore[call-arg]

    def test_stream_twice(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        for value in (1.0, 2.0):
            with client.stream_realtime(timeout_s=2.0, keepalive_interval_s=0.05) as stream:
                device.send(realtime_frame({200: value, 202: 0}))
                points = stream.next_frame(timeout_s=2.0)
            assert points is not None and points[0].value == value
            assert not stream.keepalive_running

        enables = device.received.count(enable_reporting_request())
        disables = device.received.count(disable_reporting_request())
        assert (enables, disables) == (2, 2)

    def test_empty_map_ends_immediately(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reporting_device([])
        with client.stream_realtime(timeout_s=2.0, keepalive_interval_s=0.05) as stream:
            assert stream.state is StreamState.IDLE
            assert stream.next_frame(timeout_s=0.1) is None
            assert not stream.keepalive_running
        assert list(stream) == []
        time.sleep(0.1)
        assert device.received == [enable_reporting_request()]

    def test_iteration(self, client: EcuClient, device: FakeDevice) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        device.send(realtime_frame({200: 1.0, 202: 1}))
        device.send(realtime_frame({200: 2.0, 202: 2}))
        stream = client.stream_realtime(timeout_s=2.0, keepalive_interval_s=0.05)
        values = []
        for points in stream:
            values.append(points[0].value)
            if len(values) == 2:
                break
        assert values == [1.0, 2.0]
        assert stream.state is StreamState.IDLE
        assert not stream.keepalive_running
        assert device.wait_for(lambda received: disable_reporting_request() in received)

        sent = device.received.count(keepalive_message())
        time.sleep(0.2)
        assert device.received.count(keepalive_message()) == sent
        assert device.received[-1] == disable_reporting_request()

    def test_cancel_while_waiting_disables(
        self, client: EcuClient, device: FakeDevice
    ) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        token = CancellationToken()
        stream = client.stream_realtime(timeout_s=2.0, cancel=token).open()

        threading.Timer(0.1, token.cancel).start()
        with pytest.raises(OperationCancelledError):
            stream.next_frame(timeout_s=5.0)
        assert stream.state is StreamState.IDLE
        assert not stream.keepalive_running
        assert device.wait_for(lambda received: disable_reporting_request() in received)

    def test_connection_lost_while_streaming(
        self, streams: ConnectedStreams, client: EcuClient, device: FakeDevice
    ) -> None:
        device.responder = reporting_device(REPORTING_MAP)
        stream = client.stream_realtime(timeout_s=2.0, keepalive_interval_s=0.05).open()

        threading.Timer(0.1, streams.stream_b.close).start()
        with pytest.raises(ConnectionClosedError):
            stream.next_frame(timeout_s=5.0)
        assert stream.state is StreamState.IDLE
        assert wait_until(lambda: not stream.keepalive_running)

    def test_get_realtime_value(self, client: EcuClient, device: FakeDevice) -> None:
        def responder(message: Message) -> list[Message]:
            replies = reporting_device(REPORTING_MAP)(message)
            if message == enable_reporting_request():
                replies.append(realtime_frame({200: 4.5, 202: 9}))
            return replies

        device.responder = responder
        point = client.get_realtime_value(202, timeout_s=2.0)
        assert point is not None
        assert (point.name, point.value) == ("Coolant Temp", 9)
