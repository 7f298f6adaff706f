from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import anyio

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from .ranges import ByteRange
else:  # pragma: no cover
    AsyncIterator = Awaitable = Callable = Any


class SourceError(Exception):
    """Base class for backend failures."""


class ResourceNotFound(SourceError):
    pass


class SourceUnavailable(SourceError):
    pass


class SourceTruncated(SourceError):
    """The backend ended a stream before delivering the contracted bytes."""

    def __init__(self, expected: int, delivered: int):
        super().__init__(f"expected {expected} bytes, backend delivered {delivered}")
        self.expected = expected
        self.delivered = delivered


@dataclass(frozen=True)
class ResourceMetadata:
    size: int
    media_type: str


@dataclass(frozen=True)
class ChildEntry:
    id: str
    name: str
    media_type: str
    size: int | None = None


def sort_children(entries: list[ChildEntry]) -> list[ChildEntry]:
    """Order entries by name using case-sensitive code point order."""
    return sorted(entries, key=lambda entry: entry.name)


class StreamHandle:
    """Forward-only byte stream owned by a single request.

    ``expected`` is the number of bytes the backend promised. The handle never
    yields more than that and raises ``SourceTruncated`` if the backend stops
    short. ``None`` disables the check when the length is unknown.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        expected: int | None,
        close: Callable[[], Awaitable[None]],
    ):
        self._chunks = chunks
        self._close = close
        self.expected = expected
        self.delivered = 0
        self.closed = False

    def expect(self, length: int) -> None:
        """Hold the stream to the ``length`` already promised to the client."""
        self.expected = length

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        if self.closed:
            msg = "stream handle already closed"
            raise RuntimeError(msg)
        remaining = self.expected
        if remaining == 0:
            return
        async for chunk in self._chunks:
            if remaining is not None:
                chunk = chunk[:remaining]
                remaining -= len(chunk)
            if chunk:
                self.delivered += len(chunk)
                yield chunk
            if remaining == 0:
                return
        if remaining:
            raise SourceTruncated(self.expected or 0, self.delivered)

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        with anyio.CancelScope(shield=True):
            await self._close()

    async def __aenter__(self) -> StreamHandle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class ContentSource(ABC):
    """Backend-agnostic access to a hierarchical object store."""

    name = "source"

    async def startup(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None

    @abstractmethod
    async def get_metadata(self, resource_id: str) -> ResourceMetadata:
        """Return size and media type, or raise ``ResourceNotFound``."""

    @abstractmethod
    async def open_stream(
        self, resource_id: str, byte_range: ByteRange | None
    ) -> StreamHandle:
        """Open a stream over ``byte_range`` or the whole object."""

    @abstractmethod
    async def list_children(self, container_id: str) -> list[ChildEntry]:
        """List a container's children ordered by name."""

    @abstractmethod
    async def get_thumbnail_ref(self, resource_id: str) -> str | None:
        """Return an external thumbnail URL if the backend has one."""
