"""Unit tests for the streaming proxy."""

from __future__ import annotations

import json
import logging

import anyio
import anyio.lowlevel
import pytest
from conftest import FakeChannel, FakeSource
from media_relay.proxy import (
    AsgiResponseChannel,
    ClientDisconnected,
    HeadersAlreadyCommitted,
    Outcome,
    ProtocolError,
    StreamingProxy,
)
from media_relay.ranges import ByteRange
from media_relay.source import SourceUnavailable

PAYLOAD = (bytes(range(256)) * 4)[:1000]


@pytest.fixture
def proxy(source: FakeSource) -> StreamingProxy:
    source.add("movie", PAYLOAD)
    return StreamingProxy(source)


class TestStreamingProxy:
    """Test request handling from metadata lookup to the last byte."""

    @pytest.mark.anyio
    async def test_full_content(self, proxy: StreamingProxy, source: FakeSource):
        """No Range header streams the whole object with a 200."""
        channel = FakeChannel()
        outcome = await proxy.serve("movie", None, channel)

        assert outcome is Outcome.COMPLETED
        assert channel.status_code == 200
        assert channel.headers["Content-Length"] == "1000"
        assert channel.headers["Content-Type"] == "video/mp4"
        assert bytes(channel.body) == PAYLOAD
        assert channel.finished
        assert source.open_calls == [("movie", None)]
        assert source.open_handles == []

    @pytest.mark.anyio
    async def test_partial_content(self, proxy: StreamingProxy, source: FakeSource):
        """bytes=200-499 streams exactly 300 bytes with a 206."""
        channel = FakeChannel()
        outcome = await proxy.serve("movie", "bytes=200-499", channel)

        assert outcome is Outcome.COMPLETED
        assert channel.status_code == 206
        assert channel.headers["Content-Range"] == "bytes 200-499/1000"
        assert channel.headers["Content-Length"] == "300"
        assert len(channel.body) == 300
        assert bytes(channel.body) == PAYLOAD[200:500]
        assert source.open_calls == [("movie", ByteRange(200, 499, 1000))]

    @pytest.mark.anyio
    async def test_clamped_range(self, proxy: StreamingProxy):
        """An end past the object is clamped to the last byte."""
        channel = FakeChannel()
        await proxy.serve("movie", "bytes=900-2000", channel)

        assert channel.status_code == 206
        assert channel.headers["Content-Range"] == "bytes 900-999/1000"
        assert channel.headers["Content-Length"] == "100"
        assert bytes(channel.body) == PAYLOAD[900:]

    @pytest.mark.anyio
    async def test_content_length_matches_bytes_sent(self, proxy: StreamingProxy):
        """The declared length equals the bytes actually piped."""
        for header in ("bytes=0-0", "bytes=3-997", "bytes=-7", "bytes=995-"):
            channel = FakeChannel()
            await proxy.serve("movie", header, channel)
            assert int(channel.headers["Content-Length"]) == len(channel.body)

    @pytest.mark.anyio
    async def test_unsatisfiable_opens_no_stream(
        self, proxy: StreamingProxy, source: FakeSource
    ):
        """A 416 is answered without touching the backend stream."""
        channel = FakeChannel()
        outcome = await proxy.serve("movie", "bytes=1000-1200", channel)

        assert outcome is Outcome.REJECTED
        assert channel.status_code == 416
        assert channel.headers == {"Content-Range": "bytes */1000"}
        assert channel.body == b""
        assert channel.finished
        assert source.open_calls == []

    @pytest.mark.anyio
    async def test_non_ascii_digits_are_rejected(
        self, proxy: StreamingProxy, source: FakeSource
    ):
        """A superscript digit in the header is a 416, not a server error."""
        channel = FakeChannel()
        outcome = await proxy.serve("movie", "bytes=0-³", channel)

        assert outcome is Outcome.REJECTED
        assert channel.status_code == 416
        assert channel.headers == {"Content-Range": "bytes */1000"}
        assert source.open_calls == []

    @pytest.mark.anyio
    async def test_malformed_range_is_ignored(
        self, proxy: StreamingProxy, source: FakeSource
    ):
        """A malformed header is served as full content."""
        channel = FakeChannel()
        outcome = await proxy.serve("movie", "items=0-10", channel)

        assert outcome is Outcome.COMPLETED
        assert channel.status_code == 200
        assert len(channel.body) == 1000
        assert source.open_calls == [("movie", None)]

    @pytest.mark.anyio
    async def test_head_request(self, proxy: StreamingProxy, source: FakeSource):
        """HEAD commits the same headers without opening a stream."""
        channel = FakeChannel()
        outcome = await proxy.serve(
            "movie", "bytes=200-499", channel, include_body=False
        )

        assert outcome is Outcome.COMPLETED
        assert channel.status_code == 206
        assert channel.headers["Content-Length"] == "300"
        assert channel.body == b""
        assert source.open_calls == []

    @pytest.mark.anyio
    async def test_not_found(self, proxy: StreamingProxy, source: FakeSource):
        """Unknown ids give a JSON 404."""
        channel = FakeChannel()
        outcome = await proxy.serve("missing", None, channel)

        assert outcome is Outcome.FAILED
        assert channel.status_code == 404
        assert channel.headers["Content-Type"] == "application/json"
        assert json.loads(channel.body) == {"error": "Resource not found"}
        assert source.open_calls == []

    @pytest.mark.anyio
    async def test_metadata_unavailable_hides_backend_detail(
        self, proxy: StreamingProxy, source: FakeSource, caplog
    ):
        """Backend failures become a generic 502 and are logged."""
        source.metadata_error = SourceUnavailable("secret backend token expired")
        channel = FakeChannel()

        with caplog.at_level(logging.WARNING, logger="media_relay.proxy"):
            outcome = await proxy.serve("movie", None, channel)

        assert outcome is Outcome.FAILED
        assert channel.status_code == 502
        assert json.loads(channel.body) == {"error": "Failed to stream content"}
        assert b"secret" not in channel.body
        assert any("secret backend" in r.getMessage() for r in caplog.records)

    @pytest.mark.anyio
    async def test_open_failure_before_headers(
        self, proxy: StreamingProxy, source: FakeSource
    ):
        """A stream that cannot be opened still gets a JSON 502."""
        source.open_error = SourceUnavailable("boom")
        channel = FakeChannel()
        outcome = await proxy.serve("movie", "bytes=0-99", channel)

        assert outcome is Outcome.FAILED
        assert channel.status_code == 502
        assert json.loads(channel.body) == {"error": "Failed to stream content"}

    @pytest.mark.anyio
    async def test_client_disconnect_releases_stream(
        self, proxy: StreamingProxy, source: FakeSource, caplog
    ):
        """A disconnect after 50 of 300 bytes stops the copy and closes the handle."""
        channel = FakeChannel(disconnect_after=50)

        with caplog.at_level(logging.DEBUG, logger="media_relay"):
            outcome = await proxy.serve("movie", "bytes=200-499", channel)

        assert outcome is Outcome.ABORTED
        assert len(channel.body) == 50
        assert not channel.finished
        assert len(source.handles) == 1
        assert source.open_handles == []
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
        assert any(
            r.levelno == logging.INFO and "client went away" in r.getMessage()
            for r in caplog.records
        )

    @pytest.mark.anyio
    async def test_backend_failure_mid_stream(
        self, proxy: StreamingProxy, source: FakeSource, caplog
    ):
        """A backend error after headers aborts without raising."""
        source.fail_after = 100
        channel = FakeChannel()

        with caplog.at_level(logging.WARNING, logger="media_relay.proxy"):
            outcome = await proxy.serve("movie", None, channel)

        assert outcome is Outcome.ABORTED
        assert channel.status_code == 200
        assert len(channel.body) == 100
        assert not channel.finished
        assert source.open_handles == []
        assert any("aborted" in r.getMessage() for r in caplog.records)

    @pytest.mark.anyio
    async def test_truncated_backend_stream(
        self, proxy: StreamingProxy, source: FakeSource, caplog
    ):
        """A backend that stops short is reported instead of completing."""
        source.short_by = 5
        channel = FakeChannel()

        with caplog.at_level(logging.WARNING, logger="media_relay.proxy"):
            outcome = await proxy.serve("movie", "bytes=0-99", channel)

        assert outcome is Outcome.ABORTED
        assert len(channel.body) == 95
        assert not channel.finished
        assert any("expected 100 bytes" in r.getMessage() for r in caplog.records)

    @pytest.mark.anyio
    async def test_short_stream_without_declared_length(
        self, proxy: StreamingProxy, source: FakeSource
    ):
        """The promised Content-Length is enforced even if the backend gave none."""
        source.short_by = 600
        source.declare_length = False
        channel = FakeChannel()
        outcome = await proxy.serve("movie", None, channel)

        assert outcome is Outcome.ABORTED
        assert channel.headers["Content-Length"] == "1000"
        assert len(channel.body) == 400
        assert not channel.finished
        assert source.handles[0].expected == 1000

    @pytest.mark.anyio
    async def test_concurrent_requests(self, proxy: StreamingProxy, source: FakeSource):
        """Requests sharing a proxy do not interfere."""
        channels = {header: FakeChannel() for header in ("bytes=0-9", "bytes=500-", None)}

        async with anyio.create_task_group() as tg:
            for header, channel in channels.items():
                tg.start_soon(proxy.serve, "movie", header, channel)

        assert bytes(channels["bytes=0-9"].body) == PAYLOAD[:10]
        assert bytes(channels["bytes=500-"].body) == PAYLOAD[500:]
        assert bytes(channels[None].body) == PAYLOAD
        assert source.open_handles == []


class TestAsgiResponseChannel:
    """Test the ASGI adapter used by the HTTP surface."""

    @pytest.mark.anyio
    async def test_writes_asgi_messages(self):
        """Headers and body are sent as ASGI messages."""
        messages = []

        async def send(message):
            messages.append(message)

        async def receive():
            return {"type": "http.disconnect"}

        channel = AsgiResponseChannel(send, receive)
        await channel.start(206, {"Content-Range": "bytes 0-1/2"})
        await channel.send(b"ab", more_body=False)

        assert messages[0] == {
            "type": "http.response.start",
            "status": 206,
            "headers": [(b"content-range", b"bytes 0-1/2")],
        }
        assert messages[1] == {
            "type": "http.response.body",
            "body": b"ab",
            "more_body": False,
        }

    @pytest.mark.anyio
    async def test_headers_commit_once(self):
        """A second start is a programming error."""

        async def send(message):
            return None

        async def receive():
            return {"type": "http.disconnect"}

        channel = AsgiResponseChannel(send, receive)
        await channel.start(200, {})
        with pytest.raises(HeadersAlreadyCommitted):
            await channel.start(200, {})

    @pytest.mark.anyio
    async def test_body_requires_headers(self):
        """Body frames cannot precede the status line."""

        async def send(message):
            return None

        async def receive():
            return {"type": "http.disconnect"}

        channel = AsgiResponseChannel(send, receive)
        with pytest.raises(ProtocolError):
            await channel.send(b"x")

    @pytest.mark.anyio
    async def test_send_failure_is_a_disconnect(self):
        """Transport errors surface as ClientDisconnected."""

        async def send(message):
            if message["type"] == "http.response.body":
                raise OSError("broken pipe")

        async def receive():
            return {"type": "http.disconnect"}

        channel = AsgiResponseChannel(send, receive)
        await channel.start(200, {})
        with pytest.raises(ClientDisconnected):
            await channel.send(b"x")

    @pytest.mark.anyio
    async def test_wait_disconnected_skips_request_messages(self):
        """Only http.disconnect ends the wait."""
        incoming = [
            {"type": "http.request", "body": b"", "more_body": False},
            {"type": "http.disconnect"},
        ]

        async def send(message):
            return None

        async def receive():
            return incoming.pop(0)

        channel = AsgiResponseChannel(send, receive)
        await channel.wait_disconnected()
        assert incoming == []

    @pytest.mark.anyio
    async def test_proxy_over_asgi_disconnect(self, proxy: StreamingProxy, source):
        """An ASGI disconnect cancels an in-flight transfer."""
        disconnect = anyio.Event()
        sent: list[bytes] = []

        async def send(message):
            await anyio.lowlevel.checkpoint()
            if message["type"] == "http.response.body":
                sent.append(message["body"])
                if sum(len(chunk) for chunk in sent) >= 50:
                    disconnect.set()

        async def receive():
            await disconnect.wait()
            return {"type": "http.disconnect"}

        outcome = await proxy.serve(
            "movie", "bytes=200-499", AsgiResponseChannel(send, receive)
        )

        assert outcome is Outcome.ABORTED
        assert sum(len(chunk) for chunk in sent) == 50
        assert source.open_handles == []
