"""Unit tests for request/response correlation and cancellation tokens."""

import threading

import pytest

from common.connection import (
    CancellationToken,
    CommandInFlightError,
    ConnectionClosedError,
    OperationCancelledError,
    RequestTimeoutError,
)
from common.correlator import Correlator
from common.message import Message, request, response

from conftest import wait_until


def no_write(message: Message) -> None:
    pass


class BackgroundRequest:
    """Runs Correlator.send_request on a thread and captures the outcome."""

    def __init__(
        self,
        correlator: Correlator,
        message: Message,
        timeout_s: float = 2.0,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.result: Message | None = None
        self.error: BaseException | None = None
        self._thread = threading.Thread(
            target=self._run, args=(correlator, message, timeout_s, cancel), daemon=True
        )
        self._thread.start()

    def _run(
        self,
        correlator: Correlator,
        message: Message,
        timeout_s: float,
        cancel: CancellationToken | None,
    ) -> None:
        try:
            self.result = correlator.send_request(message, no_write, timeout_s, cancel)
        except Exception as e:
            self.error = e

    def join(self) -> None:
        self._thread.join(timeout=3.0)
        assert not self._thread.is_alive()


@pytest.mark.unit
class TestCorrelator:
    """Tests for the single-flight pending table."""

    def test_response_resolves_request(self) -> None:
        correlator = Correlator()
        req = request(0x04, 0x00)
        pending = BackgroundRequest(correlator, req)
        assert wait_until(lambda: correlator.is_pending(req.correlation_key))

        assert correlator.resolve(response(0x04, 0x00, b"\x00"))
        pending.join()
        assert pending.result == response(0x04, 0x00, b"\x00")
        assert correlator.pending_count == 0

    def test_second_request_with_same_key_rejected(self) -> None:
        correlator = Correlator()
        pending = BackgroundRequest(correlator, request(0x01, 0x01, b"\x01\x00"))
        assert wait_until(lambda: correlator.pending_count == 1)

        with pytest.raises(CommandInFlightError):
            correlator.send_request(request(0x01, 0x01, b"\x02\x00"), no_write, 1.0)

        correlator.resolve(response(0x01, 0x01, b"\x01"))
        pending.join()
        assert pending.error is None

    def test_different_keys_in_flight_together(self) -> None:
        correlator = Correlator()
        first = BackgroundRequest(correlator, request(0x01, 0x01))
        second = BackgroundRequest(correlator, request(0x02, 0x01))
        assert wait_until(lambda: correlator.pending_count == 2)

        correlator.resolve(response(0x02, 0x01, b"b"))
        correlator.resolve(response(0x01, 0x01, b"a"))
        first.join()
        second.join()
        assert first.result is not None and first.result.payload == b"a"
        assert second.result is not None and second.result.payload == b"b"

    def test_timeout_clears_entry(self) -> None:
        correlator = Correlator()
        with pytest.raises(RequestTimeoutError) as exc_info:
            correlator.send_request(request(0x04, 0x00), no_write, 0.05)
        assert exc_info.value.key == request(0x04, 0x00).correlation_key
        assert correlator.pending_count == 0

    def test_same_key_usable_after_timeout(self) -> None:
        correlator = Correlator()
        with pytest.raises(RequestTimeoutError):
            correlator.send_request(request(0x04, 0x00), no_write, 0.05)

        def answer(message: Message) -> None:
            correlator.resolve(response(message.msg_class, message.command, b"\x00"))

        reply = correlator.send_request(request(0x04, 0x00), answer, 1.0)
        assert reply.payload == b"\x00"

    def test_response_after_timeout_is_unsolicited(self) -> None:
        correlator = Correlator()
        with pytest.raises(RequestTimeoutError):
            correlator.send_request(request(0x04, 0x00), no_write, 0.05)
        assert not correlator.resolve(response(0x04, 0x00))

    def test_unknown_response_is_unsolicited(self) -> None:
        assert not Correlator().resolve(response(0x00, 0x00, b"\x00"))

    def test_cancel_while_waiting(self) -> None:
        correlator = Correlator()
        token = CancellationToken()
        pending = BackgroundRequest(correlator, request(0x04, 0x00), cancel=token)
        assert wait_until(lambda: correlator.pending_count == 1)

        token.cancel()
        pending.join()
        assert isinstance(pending.error, OperationCancelledError)
        assert correlator.pending_count == 0

    def test_already_cancelled_token(self) -> None:
        correlator = Correlator()
        token = CancellationToken()
        token.cancel()
        written: list[Message] = []
        with pytest.raises(OperationCancelledError):
            correlator.send_request(request(0x04, 0x00), written.append, 1.0, token)
        assert written == []
        assert correlator.pending_count == 0

    def test_write_failure_clears_entry(self) -> None:
        correlator = Correlator()

        def broken(message: Message) -> None:
            raise ConnectionClosedError("write failed")

        with pytest.raises(ConnectionClosedError):
            correlator.send_request(request(0x04, 0x00), broken, 1.0)
        assert correlator.pending_count == 0

    def test_close_fails_pending(self) -> None:
        correlator = Correlator()
        pending = BackgroundRequest(correlator, request(0x02, 0x01))
        assert wait_until(lambda: correlator.pending_count == 1)

        correlator.close()
        pending.join()
        assert isinstance(pending.error, ConnectionClosedError)
        assert correlator.pending_count == 0

    def test_send_after_close(self) -> None:
        correlator = Correlator()
        correlator.close()
        with pytest.raises(ConnectionClosedError):
            correlator.send_request(request(0x04, 0x00), no_write, 1.0)


@pytest.mark.unit
class TestCancellationToken:
    def test_callbacks_run_once(self) -> None:
        token = CancellationToken()
        calls: list[int] = []
        token.register(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert calls == [1]
        assert token.cancelled

    def test_unregister(self) -> None:
        token = CancellationToken()
        calls: list[int] = []
        unregister = token.register(lambda: calls.append(1))
        unregister()
        token.cancel()
        assert calls == []

    def test_register_after_cancel_runs_immediately(self) -> None:
        token = CancellationToken()
        token.cancel()
        calls: list[int] = []
        token.register(lambda: calls.append(1))
        assert calls == [1]

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            token.raise_if_cancelled()

    def test_wait(self) -> None:
        token = CancellationToken()
        assert not token.wait(0.01)
        threading.Timer(0.02, token.cancel).start()
        assert token.wait(2.0)
