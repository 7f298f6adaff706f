from __future__ import annotations

import logging
import mimetypes
from functools import partial
from typing import TYPE_CHECKING, Any, NoReturn

from anyio import to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .source import (
    ChildEntry,
    ContentSource,
    ResourceMetadata,
    ResourceNotFound,
    SourceUnavailable,
    StreamHandle,
    sort_children,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from .ranges import ByteRange
    from .settings import S3Settings
else:  # pragma: no cover
    AsyncIterator = Callable = Any

LOG = logging.getLogger("media_relay.s3")

MISSING_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
DEFAULT_MEDIA_TYPE = "application/octet-stream"


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(partial(func, *args, **kwargs))


def _error_code(error: ClientError) -> str | None:
    return error.response.get("Error", {}).get("Code")


class S3ContentSource(ContentSource):
    """S3-compatible backend; resource ids are object keys, containers are prefixes.

    The boto3 client is thread-safe and shared by all requests; blocking
    calls run in worker threads.
    """

    name = "s3"

    def __init__(self, settings: S3Settings, chunk_size: int = 64 * 1024, client=None):
        self._settings = settings
        self._chunk_size = chunk_size
        self._client = client if client is not None else self._build_client()

    def _build_client(self):
        session = Session(
            aws_access_key_id=self._settings.access_key,
            aws_secret_access_key=self._settings.secret_key,
            aws_session_token=self._settings.session_token,
            region_name=self._settings.region,
        )
        return session.client(
            "s3",
            endpoint_url=self._settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 3},
                s3={"addressing_style": self._settings.addressing_style},
            ),
        )

    async def startup(self) -> None:
        LOG.info(
            "S3 source ready (endpoint=%s, bucket=%s)",
            self._settings.endpoint or "aws",
            self._settings.bucket,
        )

    async def get_metadata(self, resource_id: str) -> ResourceMetadata:
        head = await self._head(resource_id)
        return ResourceMetadata(
            size=int(head.get("ContentLength", 0)),
            media_type=head.get("ContentType") or DEFAULT_MEDIA_TYPE,
        )

    async def open_stream(
        self, resource_id: str, byte_range: ByteRange | None
    ) -> StreamHandle:
        get_kwargs: dict[str, Any] = {"Bucket": self._settings.bucket, "Key": resource_id}
        if byte_range is not None:
            get_kwargs["Range"] = byte_range.to_header()
        try:
            result = await _run_sync(self._client.get_object, **get_kwargs)
        except ClientError as error:
            self._raise_client_error(error, resource_id)
        except BotoCoreError as error:
            msg = f"S3 download failed for {resource_id}: {error}"
            raise SourceUnavailable(msg) from error

        body = result["Body"]
        if byte_range is not None:
            whole = byte_range.start == 0 and byte_range.end == byte_range.total - 1
            content_range = result.get("ContentRange")
            if content_range != byte_range.content_range() and not (
                whole and content_range is None
            ):
                await _run_sync(body.close)
                msg = (
                    f"S3 answered {content_range or 'the whole object'} "
                    f"for {resource_id} instead of {byte_range.content_range()}"
                )
                raise SourceUnavailable(msg)
            expected: int | None = byte_range.length
        else:
            length = result.get("ContentLength")
            expected = int(length) if length is not None else None

        async def chunks() -> AsyncIterator[bytes]:
            while True:
                try:
                    chunk = await _run_sync(body.read, self._chunk_size)
                except (BotoCoreError, OSError) as error:
                    msg = f"S3 stream for {resource_id} failed: {error}"
                    raise SourceUnavailable(msg) from error
                if not chunk:
                    break
                yield chunk

        async def close() -> None:
            await _run_sync(body.close)

        return StreamHandle(chunks(), expected, close)

    async def list_children(self, container_id: str) -> list[ChildEntry]:
        prefix = container_id.strip("/")
        prefix = f"{prefix}/" if prefix else ""
        try:
            pages = await _run_sync(self._list_pages, prefix)
        except ClientError as error:
            self._raise_client_error(error, container_id)
        except BotoCoreError as error:
            msg = f"S3 listing failed for {container_id}: {error}"
            raise SourceUnavailable(msg) from error

        entries: list[ChildEntry] = []
        for page in pages:
            for common in page.get("CommonPrefixes", []):
                key = common["Prefix"]
                entries.append(
                    ChildEntry(
                        id=key.rstrip("/"),
                        name=key[len(prefix) :].rstrip("/"),
                        media_type="inode/directory",
                    )
                )
            for item in page.get("Contents", []):
                key = item["Key"]
                if key == prefix:
                    continue
                name = key[len(prefix) :]
                media_type, _ = mimetypes.guess_type(name)
                entries.append(
                    ChildEntry(
                        id=key,
                        name=name,
                        media_type=media_type or DEFAULT_MEDIA_TYPE,
                        size=int(item.get("Size", 0)),
                    )
                )
        return sort_children(entries)

    def _list_pages(self, prefix: str) -> list[dict[str, Any]]:
        paginator = self._client.get_paginator("list_objects_v2")
        return list(
            paginator.paginate(
                Bucket=self._settings.bucket, Prefix=prefix, Delimiter="/"
            )
        )

    async def get_thumbnail_ref(self, resource_id: str) -> str | None:
        head = await self._head(resource_id)
        thumbnail_key = (head.get("Metadata") or {}).get("thumbnail")
        if not thumbnail_key:
            return None
        try:
            return await _run_sync(
                self._client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self._settings.bucket, "Key": thumbnail_key},
                ExpiresIn=self._settings.presign_expiry,
            )
        except (ClientError, BotoCoreError) as error:
            msg = f"could not sign thumbnail for {resource_id}: {error}"
            raise SourceUnavailable(msg) from error

    async def _head(self, resource_id: str) -> dict[str, Any]:
        try:
            return await _run_sync(
                self._client.head_object, Bucket=self._settings.bucket, Key=resource_id
            )
        except ClientError as error:
            self._raise_client_error(error, resource_id)
        except BotoCoreError as error:
            msg = f"S3 lookup failed for {resource_id}: {error}"
            raise SourceUnavailable(msg) from error

    def _raise_client_error(self, error: ClientError, resource_id: str) -> NoReturn:
        code = _error_code(error)
        if code in MISSING_CODES:
            raise ResourceNotFound(resource_id) from error
        LOG.debug("S3 error for %s: %s", resource_id, error)
        msg = f"S3 returned {code} for {resource_id}"
        raise SourceUnavailable(msg) from error
