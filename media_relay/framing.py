from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .ranges import ByteRange, RangeError, UnsatisfiableRange

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .source import ResourceMetadata
else:  # pragma: no cover
    Mapping = Any


@dataclass(frozen=True)
class ResponsePlan:
    status_code: int
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    byte_range: ByteRange | None = None

    @property
    def has_body(self) -> bool:
        return self.status_code != 416

    @property
    def content_length(self) -> int | None:
        length = self.headers.get("Content-Length")
        return int(length) if length is not None else None


def frame(
    metadata: ResourceMetadata, requested: ByteRange | RangeError | None
) -> ResponsePlan:
    """Build the status line and headers for a parsed Range request.

    ``requested`` is what the range parser produced: a ``ByteRange``, no range
    at all, or the error it raised. Malformed headers are served as full
    content. The result depends only on the arguments.
    """
    if isinstance(requested, UnsatisfiableRange):
        return ResponsePlan(
            status_code=416,
            headers=MappingProxyType({"Content-Range": f"bytes */{metadata.size}"}),
        )

    if isinstance(requested, ByteRange):
        return ResponsePlan(
            status_code=206,
            headers=MappingProxyType(
                {
                    "Content-Range": requested.content_range(),
                    "Accept-Ranges": "bytes",
                    "Content-Length": str(requested.length),
                    "Content-Type": metadata.media_type,
                }
            ),
            byte_range=requested,
        )

    return ResponsePlan(
        status_code=200,
        headers=MappingProxyType(
            {
                "Accept-Ranges": "bytes",
                "Content-Length": str(metadata.size),
                "Content-Type": metadata.media_type,
            }
        ),
    )
