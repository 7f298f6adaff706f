from __future__ import annotations

from dataclasses import dataclass


class RangeError(Exception):
    """Base class for Range header problems."""


class MalformedRange(RangeError):
    """The header could not be parsed at all and should be ignored."""


class UnsatisfiableRange(RangeError):
    """The header is well formed but cannot be served for this resource."""

    def __init__(self, total: int, message: str = "range not satisfiable"):
        super().__init__(message)
        self.total = total


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"

    def to_header(self) -> str:
        """Render the range as an upstream ``Range`` request header value."""
        return f"bytes={self.start}-{self.end}"


def _to_int(value: str, total: int) -> int:
    if not (value.isascii() and value.isdigit()):
        msg = f"non-numeric range bound {value!r}"
        raise UnsatisfiableRange(total, msg)
    return int(value)


def parse_range(range_header: str | None, total_size: int) -> ByteRange | None:
    """Parse a single-range ``Range`` header against a resource of ``total_size``.

    Returns ``None`` when no header was sent. Raises ``MalformedRange`` for
    syntax that cannot be understood and ``UnsatisfiableRange`` when the range
    does not overlap the resource. An end past the last byte is clamped.
    """
    if range_header is None or not range_header.strip():
        return None

    unit, sep, ranges = range_header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        msg = f"unsupported range unit in {range_header!r}"
        raise MalformedRange(msg)

    byte_spec = ranges.strip()
    if "," in byte_spec:
        msg = "multiple ranges are not supported"
        raise MalformedRange(msg)
    if "-" not in byte_spec:
        msg = f"missing '-' in {range_header!r}"
        raise MalformedRange(msg)

    start_str, end_str = (part.strip() for part in byte_spec.split("-", 1))
    if not start_str and not end_str:
        msg = "empty range"
        raise MalformedRange(msg)

    if not start_str:
        # bytes=-N: the final N bytes
        suffix = _to_int(end_str, total_size)
        if suffix == 0 or total_size == 0:
            raise UnsatisfiableRange(total_size)
        start = max(total_size - suffix, 0)
        return ByteRange(start=start, end=total_size - 1, total=total_size)

    start = _to_int(start_str, total_size)
    end = _to_int(end_str, total_size) if end_str else total_size - 1

    if start > end:
        msg = f"range start {start} is after end {end}"
        raise UnsatisfiableRange(total_size, msg)
    if start >= total_size:
        msg = f"range start {start} is beyond resource size {total_size}"
        raise UnsatisfiableRange(total_size, msg)

    return ByteRange(start=start, end=min(end, total_size - 1), total=total_size)
