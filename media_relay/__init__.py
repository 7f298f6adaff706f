"""HTTP range-streaming relay for remote object stores."""

from .app import create_app
from .framing import ResponsePlan, frame
from .proxy import Outcome, StreamingProxy
from .ranges import ByteRange, MalformedRange, RangeError, UnsatisfiableRange, parse_range
from .settings import DriveSettings, RelaySettings, S3Settings
from .source import ContentSource, ResourceMetadata

__all__ = [
    "ByteRange",
    "ContentSource",
    "DriveSettings",
    "MalformedRange",
    "Outcome",
    "RangeError",
    "RelaySettings",
    "ResourceMetadata",
    "ResponsePlan",
    "S3Settings",
    "StreamingProxy",
    "UnsatisfiableRange",
    "create_app",
    "frame",
    "parse_range",
]
