from __future__ import annotations

import os
from typing import TYPE_CHECKING

import anyio
import anyio.lowlevel
import pytest
from media_relay.proxy import HeadersAlreadyCommitted
from media_relay.source import (
    ChildEntry,
    ContentSource,
    ResourceMetadata,
    ResourceNotFound,
    SourceError,
    SourceUnavailable,
    StreamHandle,
    sort_children,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Generator, Mapping

    from media_relay.ranges import ByteRange


class FakeSource(ContentSource):
    """In-memory content source that records every stream it opens."""

    name = "fake"

    def __init__(self, chunk_size: int = 10):
        self.chunk_size = chunk_size
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.children: dict[str, list[ChildEntry]] = {}
        self.thumbnails: dict[str, str] = {}
        self.metadata_error: SourceError | None = None
        self.open_error: SourceError | None = None
        self.fail_after: int | None = None
        self.short_by = 0
        self.declare_length = True
        self.open_calls: list[tuple[str, ByteRange | None]] = []
        self.handles: list[StreamHandle] = []
        self.started = False
        self.stopped = False

    def add(self, resource_id: str, data: bytes, media_type: str = "video/mp4") -> None:
        self.objects[resource_id] = (data, media_type)

    @property
    def open_handles(self) -> list[StreamHandle]:
        return [handle for handle in self.handles if not handle.closed]

    async def startup(self) -> None:
        self.started = True

    async def shutdown(self) -> None:
        self.stopped = True

    async def get_metadata(self, resource_id: str) -> ResourceMetadata:
        if self.metadata_error is not None:
            raise self.metadata_error
        if resource_id not in self.objects:
            raise ResourceNotFound(resource_id)
        data, media_type = self.objects[resource_id]
        return ResourceMetadata(size=len(data), media_type=media_type)

    async def open_stream(
        self, resource_id: str, byte_range: ByteRange | None
    ) -> StreamHandle:
        self.open_calls.append((resource_id, byte_range))
        if self.open_error is not None:
            raise self.open_error
        data, _ = self.objects[resource_id]
        if byte_range is not None:
            payload = data[byte_range.start : byte_range.end + 1]
        else:
            payload = data
        expected = len(payload) if self.declare_length else None
        payload = payload[: len(payload) - self.short_by]
        fail_after = self.fail_after
        chunk_size = self.chunk_size

        async def chunks() -> AsyncIterator[bytes]:
            for offset in range(0, len(payload), chunk_size):
                if fail_after is not None and offset >= fail_after:
                    msg = "connection reset by backend"
                    raise SourceUnavailable(msg)
                await anyio.lowlevel.checkpoint()
                yield payload[offset : offset + chunk_size]

        async def close() -> None:
            await anyio.lowlevel.checkpoint()

        handle = StreamHandle(chunks(), expected, close)
        self.handles.append(handle)
        return handle

    async def list_children(self, container_id: str) -> list[ChildEntry]:
        if self.metadata_error is not None:
            raise self.metadata_error
        return sort_children(self.children.get(container_id, []))

    async def get_thumbnail_ref(self, resource_id: str) -> str | None:
        if self.metadata_error is not None:
            raise self.metadata_error
        return self.thumbnails.get(resource_id)


class FakeChannel:
    """Response channel that collects the response and can simulate a disconnect."""

    def __init__(self, disconnect_after: int | None = None):
        self.disconnect_after = disconnect_after
        self.status_code: int | None = None
        self.headers: dict[str, str] = {}
        self.body = bytearray()
        self.finished = False
        self._disconnected = anyio.Event()

    async def start(self, status_code: int, headers: Mapping[str, str]) -> None:
        if self.status_code is not None:
            msg = "headers already sent"
            raise HeadersAlreadyCommitted(msg)
        self.status_code = status_code
        self.headers = dict(headers)

    async def send(self, chunk: bytes, *, more_body: bool = True) -> None:
        await anyio.lowlevel.checkpoint()
        self.body += chunk
        if not more_body:
            self.finished = True
        if self.disconnect_after is not None and len(self.body) >= self.disconnect_after:
            self._disconnected.set()

    async def wait_disconnected(self) -> None:
        await self._disconnected.wait()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def set_env() -> Generator[Callable[..., None]]:
    """Set environment variables and restore the originals afterwards."""
    original_values: dict[str, str | None] = {}

    def _set(**values: str) -> None:
        for key, value in values.items():
            original_values.setdefault(key, os.environ.get(key))
            os.environ[key] = value

    yield _set

    for key, original_value in original_values.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value
