"""Tests for sandbench/tunnel/dispatcher.py

Forwarded connections are simulated with in-memory streams and served by
the real FastAPI app through uvicorn's protocols.
"""

import asyncio
import os

import pytest
from wsproto import ConnectionType, WSConnection
from wsproto.events import AcceptConnection, BytesMessage, CloseConnection, Request, TextMessage

from helpers.fakes import FakeWriter, response_body, split_http_response, stream_pair
from sandbench.tunnel.dispatcher import WRITE_HIGH_WATER, ChannelTransport, ConnectionDispatcher
from sandbench.tunnel.forward import FORWARD_HOST, FORWARD_PORT
from sandbench.web.service import PayloadBuffer, create_app

PEER = ("203.0.113.7", 40522)
TIMEOUT = 5


def make_dispatcher(payload: bytes = bytes(range(256)) * 4):
    app = create_app(len(payload), payload=PayloadBuffer(payload))
    return ConnectionDispatcher(app, log_level="warning")


def http_request(method: str, target: str, body: bytes = b"") -> bytes:
    head = f"{method} {target} HTTP/1.1\r\nHost: measure\r\nConnection: close\r\n"
    if body or method == "POST":
        head += f"Content-Length: {len(body)}\r\n"
    return head.encode() + b"\r\n" + body


async def serve_request(dispatcher, raw: bytes) -> bytes:
    reader, writer = stream_pair()
    task = asyncio.create_task(dispatcher.serve(reader, writer, PEER))
    reader.feed(raw)
    await asyncio.wait_for(task, TIMEOUT)
    assert writer.closed
    return bytes(writer.buffer)


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class RecordingProtocol(asyncio.Protocol):
    def __init__(self):
        self.calls = []

    def pause_writing(self):
        self.calls.append("pause")

    def resume_writing(self):
        self.calls.append("resume")


class TestChannelTransport:
    """ChannelTransport over an in-memory SSHWriter"""

    def test_extra_info(self):
        """Test peername and sockname are exposed, socket is not"""


        async def scenario():
            return ChannelTransport(FakeWriter(), PEER, (FORWARD_HOST, FORWARD_PORT))

        transport = asyncio.run(scenario())
        assert transport.get_extra_info("peername") == PEER
        assert transport.get_extra_info("sockname") == ("measure", 80)
        assert transport.get_extra_info("socket") is None

    def test_write_after_close_is_dropped(self):
        """Test writes after close never reach the channel"""


        async def scenario():
            writer = FakeWriter()
            transport = ChannelTransport(writer, PEER, None)
            transport.write(b"before")
            transport.close()
            transport.write(b"after")
            transport.close()
            return writer, transport

        writer, transport = asyncio.run(scenario())
        assert bytes(writer.buffer) == b"before"
        assert writer.closed
        assert transport.is_closing()

    def test_pause_and_resume_reading(self):
        """Test wait_readable blocks while reading is paused"""


        async def scenario():
            transport = ChannelTransport(FakeWriter(), PEER, None)
            transport.pause_reading()
            paused = transport.is_reading()
            waiter = asyncio.create_task(transport.wait_readable())
            await asyncio.sleep(0)
            blocked = not waiter.done()
            transport.resume_reading()
            await asyncio.wait_for(waiter, TIMEOUT)
            return paused, blocked

        paused, blocked = asyncio.run(scenario())
        assert paused is False
        assert blocked is True

    def test_memoryview_write(self):
        """Test memoryview chunks are written as bytes"""


        async def scenario():
            writer = FakeWriter()
            ChannelTransport(writer, PEER, None).write(memoryview(b"abc"))
            return writer

        assert bytes(asyncio.run(scenario()).buffer) == b"abc"

    def test_channel_limits_follow_high_water(self):
        """Test the channel pauses its stream at the transport's high water mark"""


        async def scenario():
            writer = FakeWriter()
            ChannelTransport(writer, PEER, None)
            return writer

        assert asyncio.run(scenario()).channel.limits == (WRITE_HIGH_WATER, None)


class TestWriteBackpressure:
    """Protocol pause_writing/resume_writing driven by the channel buffer"""

    def test_small_writes_never_pause(self):
        """Test writes below the high water mark leave the protocol alone"""


        async def scenario():
            writer = FakeWriter(hold_writes=True)
            transport = ChannelTransport(writer, PEER, None)
            protocol = RecordingProtocol()
            transport.set_protocol(protocol)
            transport.write(b"x" * WRITE_HIGH_WATER)
            return transport, protocol

        transport, protocol = asyncio.run(scenario())
        assert protocol.calls == []
        assert transport.get_write_buffer_size() == WRITE_HIGH_WATER
        assert transport.is_write_paused() is False

    def test_pause_until_channel_drains(self):
        """Test the protocol is paused above high water and resumed after drain"""


        async def scenario():
            writer = FakeWriter(hold_writes=True)
            transport = ChannelTransport(writer, PEER, None)
            protocol = RecordingProtocol()
            transport.set_protocol(protocol)

            transport.write(b"x" * (WRITE_HIGH_WATER + 1))
            transport.write(b"y")
            await settle()
            while_held = (list(protocol.calls), transport.is_write_paused())

            writer.release()
            await settle()
            return while_held, protocol.calls, transport.is_write_paused()

        while_held, calls, paused_after = asyncio.run(scenario())
        assert while_held == (["pause"], True)
        assert calls == ["pause", "resume"]
        assert paused_after is False

    def test_close_while_paused_does_not_resume(self):
        """Test closing a paused transport never resumes the protocol"""


        async def scenario():
            writer = FakeWriter(hold_writes=True)
            transport = ChannelTransport(writer, PEER, None)
            protocol = RecordingProtocol()
            transport.set_protocol(protocol)
            transport.write(b"x" * (WRITE_HIGH_WATER + 1))
            await settle()
            transport.close()
            await settle()
            return protocol.calls

        assert asyncio.run(scenario()) == ["pause"]

    def test_slow_peer_holds_back_large_get(self):
        """Test a GET response stops growing while the channel buffer is full"""
        size = 1_000_000

        async def scenario():
            dispatcher = make_dispatcher(os.urandom(size))
            reader, writer = stream_pair(hold_writes=True)
            task = asyncio.create_task(dispatcher.serve(reader, writer, PEER))
            reader.feed(http_request("GET", f"/get/{size}"))

            await asyncio.wait_for(
                writer.wait_for(lambda b: len(b) > WRITE_HIGH_WATER), TIMEOUT
            )
            await asyncio.sleep(0.05)
            held = len(writer.buffer)
            done_while_held = task.done()

            writer.release()
            await asyncio.wait_for(task, TIMEOUT)
            return held, done_while_held, bytes(writer.buffer)

        held, done_while_held, raw = asyncio.run(scenario())
        assert held < size
        assert done_while_held is False
        status, _, body = split_http_response(raw)
        assert status == 200
        assert len(body) == size


class TestHttpOverChannel:
    """HTTP/1.1 requests served through uvicorn's h11 protocol"""

    def test_get_returns_requested_size(self):
        """Test GET /get/16 returns exactly 16 bytes"""


        async def scenario():
            dispatcher = make_dispatcher()
            raw = await serve_request(dispatcher, http_request("GET", "/get/16"))
            return dispatcher, raw

        dispatcher, raw = asyncio.run(scenario())
        status, headers, body = split_http_response(raw)
        assert status == 200
        assert headers["content-length"] == "16"
        assert len(body) == 16
        assert dispatcher.served == 1
        assert dispatcher.failed == 0

    def test_get_too_large(self):
        """Test GET beyond the payload buffer is rejected"""


        async def scenario():
            return await serve_request(make_dispatcher(), http_request("GET", "/get/4096"))

        status, _, _ = split_http_response(asyncio.run(scenario()))
        assert status == 400

    def test_post_exact_size(self):
        """Test POST with a matching body length returns 204"""


        async def scenario():
            return await serve_request(
                make_dispatcher(), http_request("POST", "/post/5", b"12345")
            )

        status, _, _ = split_http_response(asyncio.run(scenario()))
        assert status == 204

    def test_echo_streams_body_back(self):
        """Test POST /echo returns the body unchanged"""


        async def scenario():
            return await serve_request(
                make_dispatcher(), http_request("POST", "/echo", b"hello tunnel")
            )

        raw = asyncio.run(scenario())
        status, _, _ = split_http_response(raw)
        assert status == 200
        assert response_body(raw) == b"hello tunnel"

    def test_echo_body_split_across_reads(self):
        """Test a large echo body arriving in many channel reads comes back byte-identical"""
        body = os.urandom(512 * 1024)

        async def scenario():
            dispatcher = make_dispatcher(bytes(len(body)))
            reader, writer = stream_pair()
            task = asyncio.create_task(dispatcher.serve(reader, writer, PEER))
            raw = http_request("POST", "/echo", body)
            for i in range(0, len(raw), 16 * 1024):
                reader.feed(raw[i : i + 16 * 1024])
                await asyncio.sleep(0)
            await asyncio.wait_for(task, TIMEOUT)
            return dispatcher, bytes(writer.buffer)

        dispatcher, raw = asyncio.run(scenario())
        status, _, _ = split_http_response(raw)
        assert status == 200
        assert response_body(raw) == body
        assert dispatcher.failed == 0

    def test_malformed_request_gets_400(self):
        """Test garbage input gets a 400 from uvicorn and is not a serve failure"""


        async def scenario():
            dispatcher = make_dispatcher()
            raw = await serve_request(dispatcher, b"NOT AN HTTP REQUEST\r\n\r\n")
            return dispatcher, raw

        dispatcher, raw = asyncio.run(scenario())
        status, _, _ = split_http_response(raw)
        assert status == 400
        assert dispatcher.failed == 0

    def test_request_split_across_reads(self):
        """Test request headers arriving in small pieces are reassembled"""


        async def scenario():
            dispatcher = make_dispatcher()
            reader, writer = stream_pair()
            task = asyncio.create_task(dispatcher.serve(reader, writer, PEER))
            raw = http_request("GET", "/get/8")
            for i in range(0, len(raw), 7):
                reader.feed(raw[i : i + 7])
            await asyncio.wait_for(task, TIMEOUT)
            return bytes(writer.buffer)

        status, _, body = split_http_response(asyncio.run(scenario()))
        assert status == 200
        assert len(body) == 8

    def test_peer_eof_ends_connection(self):
        """Test EOF before any request closes the connection quietly"""


        async def scenario():
            dispatcher = make_dispatcher()
            reader, writer = stream_pair()
            task = asyncio.create_task(dispatcher.serve(reader, writer, PEER))
            reader.feed_eof()
            await asyncio.wait_for(task, TIMEOUT)
            return dispatcher, writer

        dispatcher, writer = asyncio.run(scenario())
        assert writer.closed
        assert writer.buffer == b""
        assert dispatcher.served == 1


class TestFailureIsolation:
    """Errors stay inside the task of one forwarded connection"""

    def test_read_error_counts_as_failed(self):
        """Test a channel read error is logged and counted, not raised"""


        async def scenario():
            dispatcher = make_dispatcher()
            reader, writer = stream_pair()
            task = asyncio.create_task(dispatcher.serve(reader, writer, PEER))
            reader.feed_error(ConnectionResetError("channel reset"))
            await asyncio.wait_for(task, TIMEOUT)
            return dispatcher, writer

        dispatcher, writer = asyncio.run(scenario())
        assert dispatcher.failed == 1
        assert dispatcher.served == 0
        assert writer.closed

    def test_failing_connection_does_not_affect_sibling(self):
        """Test one broken connection leaves a concurrent one unaffected"""


        async def scenario():
            dispatcher = make_dispatcher()
            bad_reader, bad_writer = stream_pair()
            good_reader, good_writer = stream_pair()

            dispatcher("198.51.100.1", 1000)(bad_reader, bad_writer)
            dispatcher("198.51.100.2", 2000)(good_reader, good_writer)
            assert dispatcher.active == 2

            bad_reader.feed_error(ConnectionResetError("boom"))
            good_reader.feed(http_request("GET", "/get/32"))

            async def drained():
                while dispatcher.active:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(drained(), TIMEOUT)
            return dispatcher, bytes(good_writer.buffer)

        dispatcher, raw = asyncio.run(scenario())
        status, _, body = split_http_response(raw)
        assert status == 200
        assert len(body) == 32
        assert dispatcher.served == 1
        assert dispatcher.failed == 1


class TestWebSocketOverChannel:
    """WebSocket upgrade switches the channel to uvicorn's wsproto protocol"""

    def test_upgrade_and_echo(self):
        """Test binary and text frames are echoed after the upgrade"""


        async def scenario():
            dispatcher = make_dispatcher()
            reader, writer = stream_pair()
            task = asyncio.create_task(dispatcher.serve(reader, writer, PEER))
            client = WSConnection(ConnectionType.CLIENT)
            received = []

            reader.feed(client.send(Request(host="measure", target="/ws")))
            await asyncio.wait_for(writer.wait_for(lambda b: b"\r\n\r\n" in b), TIMEOUT)
            client.receive_data(writer.take())
            received.extend(client.events())

            reader.feed(client.send(BytesMessage(data=b"\x00\x01payload")))
            reader.feed(client.send(TextMessage(data="hello")))
            await asyncio.wait_for(writer.wait_for(lambda b: b"hello" in b), TIMEOUT)
            client.receive_data(writer.take())
            received.extend(client.events())

            reader.feed(client.send(CloseConnection(code=1000)))
            await asyncio.wait_for(task, TIMEOUT)
            return dispatcher, received

        dispatcher, received = asyncio.run(scenario())
        assert isinstance(received[0], AcceptConnection)
        binary = [bytes(e.data) for e in received if isinstance(e, BytesMessage)]
        text = [e.data for e in received if isinstance(e, TextMessage)]
        assert binary == [b"\x00\x01payload"]
        assert text == ["hello"]
        assert dispatcher.failed == 0


@pytest.mark.parametrize("log_level", ["debug", "warning"])
def test_dispatcher_loads_uvicorn_protocols(log_level):
    """Test the dispatcher resolves uvicorn's h11 and wsproto protocol classes"""
    dispatcher = ConnectionDispatcher(create_app(16), log_level=log_level)
    assert dispatcher.config.http_protocol_class.__name__ == "H11Protocol"
    assert dispatcher.config.ws_protocol_class.__name__ == "WSProtocol"
