from __future__ import annotations

import enum
import logging
from contextlib import aclosing
from typing import TYPE_CHECKING, Any, Protocol

import anyio
from litestar.serialization import encode_json

from .framing import frame
from .ranges import MalformedRange, RangeError, parse_range
from .source import ResourceNotFound, SourceError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar.types import Receive, Send

    from .ranges import ByteRange
    from .source import ContentSource, StreamHandle
else:  # pragma: no cover
    Mapping = Any

LOG = logging.getLogger("media_relay.proxy")


class ProtocolError(Exception):
    """Programmer error in the use of a response channel."""


class HeadersAlreadyCommitted(ProtocolError):
    pass


class ClientDisconnected(Exception):
    pass


class Outcome(enum.Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    REJECTED = "rejected"
    FAILED = "failed"


class ResponseChannel(Protocol):
    async def start(self, status_code: int, headers: Mapping[str, str]) -> None: ...

    async def send(self, chunk: bytes, *, more_body: bool = True) -> None: ...

    async def wait_disconnected(self) -> None: ...


class AsgiResponseChannel:
    """Writes a response straight onto an ASGI ``send``/``receive`` pair."""

    def __init__(self, send: Send, receive: Receive):
        self._send = send
        self._receive = receive
        self.committed = False
        self.finished = False

    async def start(self, status_code: int, headers: Mapping[str, str]) -> None:
        if self.committed:
            msg = "response headers were already sent"
            raise HeadersAlreadyCommitted(msg)
        self.committed = True
        await self._send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": [
                    (key.lower().encode("latin-1"), value.encode("latin-1"))
                    for key, value in headers.items()
                ],
            }
        )

    async def send(self, chunk: bytes, *, more_body: bool = True) -> None:
        if not self.committed:
            msg = "body sent before response headers"
            raise ProtocolError(msg)
        if self.finished:
            msg = "body sent after the response was finished"
            raise ProtocolError(msg)
        try:
            await self._send(
                {"type": "http.response.body", "body": chunk, "more_body": more_body}
            )
        except OSError as error:
            raise ClientDisconnected(str(error)) from error
        if not more_body:
            self.finished = True

    async def wait_disconnected(self) -> None:
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                return


class StreamingProxy:
    """Serves one resource per call with Range support.

    The proxy holds no per-request state, so a single instance is shared by
    all concurrent requests.
    """

    def __init__(self, source: ContentSource):
        self._source = source

    async def serve(
        self,
        resource_id: str,
        range_header: str | None,
        channel: ResponseChannel,
        *,
        include_body: bool = True,
    ) -> Outcome:
        """Answer one request for ``resource_id`` on ``channel``.

        Errors never escape: lookup failures become JSON error responses and
        mid-stream failures abort the transfer. ``include_body=False`` serves
        HEAD requests without opening a backend stream.
        """
        LOG.debug("serve resource=%s range=%s", resource_id, range_header)
        try:
            metadata = await self._source.get_metadata(resource_id)
        except ResourceNotFound:
            LOG.info("resource %s not found", resource_id)
            await self._send_error(channel, 404, "Resource not found")
            return Outcome.FAILED
        except SourceError as error:
            LOG.warning("metadata lookup failed for %s: %s", resource_id, error)
            await self._send_error(channel, 502, "Failed to stream content")
            return Outcome.FAILED

        requested: ByteRange | RangeError | None
        try:
            requested = parse_range(range_header, metadata.size)
        except MalformedRange as error:
            LOG.debug("ignoring malformed range %r: %s", range_header, error)
            requested = None
        except RangeError as error:
            requested = error

        plan = frame(metadata, requested)
        if not plan.has_body:
            LOG.debug(
                "unsatisfiable range %r for %s (size=%d)",
                range_header,
                resource_id,
                metadata.size,
            )
            await self._respond(channel, plan.status_code, plan.headers)
            return Outcome.REJECTED

        if not include_body:
            await self._respond(channel, plan.status_code, plan.headers)
            return Outcome.COMPLETED

        try:
            handle = await self._source.open_stream(resource_id, plan.byte_range)
        except ResourceNotFound:
            LOG.info("resource %s disappeared before streaming", resource_id)
            await self._send_error(channel, 404, "Resource not found")
            return Outcome.FAILED
        except SourceError as error:
            LOG.warning("failed to open stream for %s: %s", resource_id, error)
            await self._send_error(channel, 502, "Failed to stream content")
            return Outcome.FAILED

        async with handle:
            if plan.content_length is not None:
                handle.expect(plan.content_length)
            await channel.start(plan.status_code, plan.headers)
            return await self._pipe(resource_id, handle, channel)

    async def _pipe(
        self, resource_id: str, handle: StreamHandle, channel: ResponseChannel
    ) -> Outcome:
        disconnected = False
        failure: SourceError | None = None

        async with anyio.create_task_group() as tg:

            async def watch_disconnect() -> None:
                nonlocal disconnected
                await channel.wait_disconnected()
                disconnected = True
                tg.cancel_scope.cancel()

            tg.start_soon(watch_disconnect)
            try:
                async with aclosing(handle.iter_chunks()) as chunks:
                    async for chunk in chunks:
                        await channel.send(chunk)
            except ClientDisconnected:
                disconnected = True
            except SourceError as error:
                failure = error
            finally:
                tg.cancel_scope.cancel()

        if disconnected:
            LOG.info(
                "client went away from %s after %d of %s bytes",
                resource_id,
                handle.delivered,
                handle.expected,
            )
            return Outcome.ABORTED
        if failure is not None:
            LOG.warning(
                "stream for %s aborted after %d bytes: %s",
                resource_id,
                handle.delivered,
                failure,
            )
            return Outcome.ABORTED

        try:
            await channel.send(b"", more_body=False)
        except ClientDisconnected:
            LOG.info("client went away from %s before the final frame", resource_id)
            return Outcome.ABORTED
        LOG.debug("streamed %d bytes of %s", handle.delivered, resource_id)
        return Outcome.COMPLETED

    async def _send_error(
        self, channel: ResponseChannel, status_code: int, message: str
    ) -> None:
        body = encode_json({"error": message})
        headers = {"Content-Type": "application/json", "Content-Length": str(len(body))}
        await self._respond(channel, status_code, headers, body)

    async def _respond(
        self,
        channel: ResponseChannel,
        status_code: int,
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> None:
        try:
            await channel.start(status_code, headers)
            await channel.send(body, more_body=False)
        except ClientDisconnected:
            LOG.info("client went away before the %d response was sent", status_code)
