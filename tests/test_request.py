"""
Unit tests for request units.

Tests the lifecycle state machine, outcome delivery, streaming and buffering,
and cancellation against an in-memory transport.
"""

import asyncio
import io

import pytest

from fakes import FakeExchange, FakeTransport, LoggingObserver, Recorder, wait_until
from webservice.descriptor import RequestDescriptor
from webservice.errors import InvalidState, StreamWriteFailed, TransportError
from webservice.request import RequestState, RequestUnit
from webservice.sink import UNAVAILABLE


def make_unit(url="https://example.com/data", destination=None, **kwargs):
    log = []
    target = Recorder(log)
    observer = LoggingObserver(log)
    descriptor = RequestDescriptor(url, "GET", destination=destination, **kwargs)
    unit = RequestUnit(descriptor, target, "request_succeeded", "request_failed", observer)
    return unit, target, observer, log


class BrokenStream(io.RawIOBase):
    def writable(self):
        return True

    def write(self, data):
        raise PermissionError("read-only destination")


class TestCompletion:
    """Successful exchanges."""

    @pytest.mark.asyncio
    async def test_completes_once_and_notifies_success(self):
        unit, target, observer, log = make_unit()
        transport = FakeTransport([FakeExchange(headers={"X-Reply": "1"}, chunks=[b"ab", b"cd", b"ef"])])

        await unit.run(transport)

        assert unit.state is RequestState.COMPLETED
        assert unit.data == b"abcdef"
        assert target.successes == [(unit, b"abcdef")]
        assert observer.completed == [(unit, b"abcdef")]
        assert target.failures == [] and observer.failed == []
        assert log == [("target", "success"), ("observer", "success")]
        assert transport.served[0].closed

    @pytest.mark.asyncio
    async def test_response_headers_and_status_are_captured(self):
        unit, _, _, _ = make_unit()
        await unit.run(FakeTransport([FakeExchange(201, {"Content-Type": "application/json"}, [b"{}"])]))
        assert unit.status_code == 201
        assert unit.response_headers["content-type"] == "application/json"
        assert unit.elapsed is not None and unit.elapsed >= 0
        assert unit.started_at <= unit.finished_at

    @pytest.mark.asyncio
    async def test_error_status_is_still_completed(self):
        unit, target, _, _ = make_unit()
        await unit.run(FakeTransport([FakeExchange(503, {}, [b"busy"])]))
        assert unit.state is RequestState.COMPLETED
        assert unit.status_code == 503
        assert target.successes == [(unit, b"busy")]
        assert target.failures == []

    @pytest.mark.asyncio
    async def test_streamed_body_never_in_memory(self, tmp_path):
        destination = tmp_path / "body.bin"
        unit, target, _, _ = make_unit(destination=destination)
        await unit.run(FakeTransport([FakeExchange(chunks=[b"first-", b"second-", b"third"])]))

        assert unit.state is RequestState.COMPLETED
        assert unit.streamed
        assert unit.data is UNAVAILABLE
        assert destination.read_bytes() == b"first-second-third"
        assert target.successes == [(unit, destination)]
        assert not unit.sink.is_open

    @pytest.mark.asyncio
    async def test_descriptor_is_sent_to_transport(self):
        unit, _, _, _ = make_unit(parameters={"q": "x"})
        unit.set_header("X-Test", "a")
        transport = FakeTransport()
        await unit.run(transport)
        assert transport.opened == [unit.descriptor]
        assert transport.opened[0].query_params == [("q", "x")]

    @pytest.mark.asyncio
    async def test_user_info_reaches_callbacks(self):
        unit, target, _, _ = make_unit(user_info={"row": 3})
        await unit.run(FakeTransport())
        completed_unit, _ = target.successes[0]
        assert completed_unit.user_info == {"row": 3}


class TestHeaders:

    def test_last_write_wins_before_submission(self):
        unit, _, _, _ = make_unit()
        unit.set_header("X-Test", "a")
        unit.set_header("X-Test", "b")
        assert unit.headers["X-Test"] == "b"
        assert len(unit.headers) == 1

    def test_prepare_freezes_headers(self):
        unit, _, _, _ = make_unit()
        unit.prepare()
        assert unit.state is RequestState.READY
        with pytest.raises(InvalidState):
            unit.set_header("X-Test", "late")

    def test_user_info_is_settable_until_prepared(self):
        unit, _, _, _ = make_unit(user_info="first")
        unit.user_info = "second"
        unit.prepare()
        with pytest.raises(InvalidState):
            unit.user_info = "late"
        assert unit.user_info == "second"

    @pytest.mark.asyncio
    async def test_setting_header_while_executing_fails(self):
        gate = asyncio.Event()
        unit, _, _, _ = make_unit()
        unit.set_header("X-Test", "a")
        task = asyncio.create_task(unit.run(FakeTransport(open_gate=gate)))

        await wait_until(lambda: unit.state is RequestState.EXECUTING)
        with pytest.raises(InvalidState):
            unit.set_header("X-Test", "b")

        gate.set()
        await task
        assert unit.state is RequestState.COMPLETED
        assert unit.headers["X-Test"] == "a"


class TestFailure:
    """Transport and sink failures end in FAILED with one failure notification."""

    @pytest.mark.asyncio
    async def test_transport_error_mid_exchange(self):
        unit, target, observer, log = make_unit()
        exchange = FakeExchange(
            headers={"X-Partial": "yes"},
            chunks=[b"ab", b"cd"],
            error=TransportError("connection reset", reason="transport"),
            error_after=1,
        )

        await unit.run(FakeTransport([exchange]))

        assert unit.state is RequestState.FAILED
        assert target.successes == [] and observer.completed == []
        assert len(target.failures) == 1 and len(observer.failed) == 1
        error = target.failures[0][1]
        assert isinstance(error, TransportError)
        assert unit.error is error
        assert unit.response_headers["x-partial"] == "yes"
        assert error.response_headers["x-partial"] == "yes"
        assert exchange.closed
        assert log == [("target", "failure"), ("observer", "failure")]

    @pytest.mark.asyncio
    async def test_connect_failure_has_no_headers(self):
        unit, target, _, _ = make_unit()
        await unit.run(FakeTransport(open_error=TransportError("refused", reason="connect")))
        assert unit.state is RequestState.FAILED
        assert unit.status_code is None
        assert len(unit.response_headers) == 0
        assert target.failures[0][1].reason == "connect"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_transport_error(self):
        unit, target, _, _ = make_unit()
        await unit.run(FakeTransport(open_error=RuntimeError("boom")))
        error = target.failures[0][1]
        assert isinstance(error, TransportError)
        assert error.reason == "unexpected"
        assert isinstance(error.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_unwritable_destination_fails(self, tmp_path):
        unit, target, _, _ = make_unit(destination=tmp_path / "no" / "such" / "dir.bin")
        exchange = FakeExchange(headers={"Content-Length": "3"}, chunks=[b"abc"])
        await unit.run(FakeTransport([exchange]))
        assert unit.state is RequestState.FAILED
        assert isinstance(target.failures[0][1], StreamWriteFailed)
        assert exchange.closed

    @pytest.mark.asyncio
    async def test_write_failure_aborts_exchange(self):
        unit, target, _, _ = make_unit(destination=BrokenStream())
        exchange = FakeExchange(chunks=[b"a", b"b", b"c"])
        await unit.run(FakeTransport([exchange]))
        error = target.failures[0][1]
        assert isinstance(error, StreamWriteFailed)
        assert isinstance(error.__cause__, PermissionError)
        assert unit.bytes_received == 0
        assert exchange.closed

    @pytest.mark.asyncio
    async def test_failed_unit_cannot_run_again(self):
        unit, target, _, _ = make_unit()
        await unit.run(FakeTransport(open_error=TransportError("down")))
        with pytest.raises(InvalidState):
            await unit.run(FakeTransport())
        assert len(target.failures) == 1


class TestCancellation:
    """Cancellation is silent and never starts or continues network activity."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        unit, target, observer, log = make_unit()
        transport = FakeTransport()

        assert unit.cancel()
        assert unit.state is RequestState.CANCELLED
        await unit.run(transport)

        assert unit.state is RequestState.CANCELLED
        assert transport.opened == []
        assert log == []
        assert target.successes == target.failures == []
        assert observer.completed == observer.failed == []

    def test_cancel_ready_unit(self):
        unit, _, _, log = make_unit()
        unit.prepare()
        assert unit.cancel()
        assert unit.state is RequestState.CANCELLED
        assert log == []

    @pytest.mark.asyncio
    async def test_cancel_after_headers_inside_exchange(self, tmp_path):
        destination = tmp_path / "truncated.bin"
        unit, _, _, log = make_unit(destination=destination)
        exchange = FakeExchange(
            headers={"Content-Length": "9"},
            chunks=[b"abc", b"def", b"ghi"],
            after_chunk=lambda index: unit.cancel(),
        )

        await unit.run(FakeTransport([exchange]))

        assert unit.state is RequestState.CANCELLED
        assert unit.response_headers["content-length"] == "9"
        assert log == []
        assert exchange.closed
        assert not unit.sink.is_open
        assert destination.read_bytes() == b"abc"

    @pytest.mark.asyncio
    async def test_cancel_from_another_task_aborts_io(self, tmp_path):
        destination = tmp_path / "partial.bin"
        unit, _, _, log = make_unit(destination=destination)
        exchange = FakeExchange(chunks=[b"head", b"never"], chunk_gate=asyncio.Event())
        task = asyncio.create_task(unit.run(FakeTransport([exchange])))

        await wait_until(lambda: unit.bytes_received == 4)
        assert unit.cancel()
        await task

        assert not task.cancelled()
        assert unit.state is RequestState.CANCELLED
        assert exchange.closed
        assert not unit.sink.is_open
        assert destination.read_bytes() == b"head"
        assert log == []

    @pytest.mark.asyncio
    async def test_repeated_cancel_leaves_task_uncancelled(self):
        unit, _, _, log = make_unit()
        exchange = FakeExchange(chunks=[b"head", b"never"], chunk_gate=asyncio.Event())
        task = asyncio.create_task(unit.run(FakeTransport([exchange])))

        await wait_until(lambda: unit.bytes_received == 4)
        assert unit.cancel()
        assert unit.cancel()
        await task

        assert not task.cancelled()
        assert task.cancelling() == 0
        assert unit.state is RequestState.CANCELLED
        assert exchange.closed
        assert log == []

    @pytest.mark.asyncio
    async def test_cancel_while_connecting(self):
        unit, _, _, log = make_unit()
        task = asyncio.create_task(unit.run(FakeTransport(open_gate=asyncio.Event())))
        await wait_until(lambda: unit.state is RequestState.EXECUTING)

        unit.cancel()
        await task

        assert unit.state is RequestState.CANCELLED
        assert len(unit.response_headers) == 0
        assert log == []

    @pytest.mark.asyncio
    async def test_foreign_task_cancellation_propagates(self):
        unit, _, _, log = make_unit()
        task = asyncio.create_task(unit.run(FakeTransport(open_gate=asyncio.Event())))
        await wait_until(lambda: unit.state is RequestState.EXECUTING)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert unit.state is RequestState.CANCELLED
        assert log == []

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_a_no_op(self):
        unit, target, _, _ = make_unit()
        await unit.run(FakeTransport())
        assert not unit.cancel()
        assert unit.state is RequestState.COMPLETED
        assert len(target.successes) == 1


class TestConstructors:

    def test_from_api_info(self):
        target = Recorder()
        unit = RequestUnit.from_api_info(
            {
                "url": "https://api.example.com/users",
                "method": "post",
                "expected_result_type": "json",
                "success_handler": "request_succeeded",
                "failure_handler": "request_failed",
            },
            target,
            parameters={"name": "ada"},
        )
        assert unit.state is RequestState.CREATED
        assert unit.method == "POST"
        assert unit.expected_result_type == "json"
        assert unit.parameters == (("name", "ada"),)
        assert unit.target is target
        assert unit.success_handler == "request_succeeded"
        assert unit.failure_handler == "request_failed"
        assert not unit.streamed

    def test_for_url(self, tmp_path):
        target = Recorder()
        unit = RequestUnit.for_url(
            "https://example.com/file.zip", "GET", target, "request_succeeded", "request_failed",
            expected_result_type="file", destination=tmp_path / "file.zip",
        )
        assert unit.streamed
        assert unit.destination == tmp_path / "file.zip"
        assert unit.observer is None

    def test_prepare_from_terminal_state_fails(self):
        unit, _, _, _ = make_unit()
        unit.cancel()
        with pytest.raises(InvalidState):
            unit.prepare()
