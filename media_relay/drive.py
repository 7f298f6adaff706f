from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import anyio
import httpx

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
    from collections.abc import AsyncGenerator, AsyncIterator, Generator

    from .ranges import ByteRange
    from .settings import DriveSettings
else:  # pragma: no cover
    AsyncGenerator = AsyncIterator = Generator = Any

LOG = logging.getLogger("media_relay.drive")

DEFAULT_MEDIA_TYPE = "application/octet-stream"
# Refresh this many seconds before Google says the token expires.
EXPIRY_MARGIN = 60.0


class CredentialsError(SourceUnavailable):
    pass


class GoogleCredentials(httpx.Auth):
    """OAuth refresh-token credentials shared by all requests.

    Access tokens are cached until shortly before expiry. Refreshes are
    serialized with a lock, so concurrent requests trigger a single token
    exchange. A 401 from the API invalidates the token and the request is
    retried once.
    """

    def __init__(self, settings: DriveSettings, token_client: httpx.AsyncClient):
        self._settings = settings
        self._token_client = token_client
        self._lock = anyio.Lock()
        self._access_token: str | None = None
        self._expires_at = 0.0
        self.refresh_count = 0

    def sync_auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        msg = "GoogleCredentials only supports httpx.AsyncClient"
        raise RuntimeError(msg)

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self.access_token()
        request.headers["Authorization"] = f"Bearer {token}"
        response = yield request
        if response.status_code == 401:
            LOG.info("access token rejected, refreshing")
            await self.invalidate(token)
            token = await self.access_token()
            request.headers["Authorization"] = f"Bearer {token}"
            yield request

    async def access_token(self) -> str:
        async with self._lock:
            token = self._access_token
            if token is None or time.monotonic() >= self._expires_at:
                token = await self._refresh()
            return token

    async def invalidate(self, token: str) -> None:
        async with self._lock:
            if self._access_token == token:
                self._access_token = None

    async def _refresh(self) -> str:
        if not self._settings.enabled:
            msg = "Google Drive credentials are not configured"
            raise CredentialsError(msg)
        try:
            response = await self._token_client.post(
                self._settings.token_uri,
                data={
                    "client_id": self._settings.client_id,
                    "client_secret": self._settings.client_secret,
                    "refresh_token": self._settings.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as error:
            msg = f"token refresh failed: {error}"
            raise CredentialsError(msg) from error
        if response.is_error:
            msg = f"token refresh failed with status {response.status_code}"
            raise CredentialsError(msg)
        try:
            payload = response.json()
            token = str(payload["access_token"])
            lifetime = float(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as error:
            msg = "token endpoint returned an unusable response"
            raise CredentialsError(msg) from error
        self._access_token = token
        self._expires_at = time.monotonic() + max(lifetime - EXPIRY_MARGIN, 0.0)
        self.refresh_count += 1
        LOG.debug("refreshed Drive access token (expires in %.0fs)", lifetime)
        return token


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveContentSource(ContentSource):
    """Google Drive v3 backend."""

    name = "drive"

    def __init__(
        self,
        settings: DriveSettings,
        chunk_size: int = 64 * 1024,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._chunk_size = chunk_size
        self._transport = transport
        self._token_client: httpx.AsyncClient | None = None
        self._client: httpx.AsyncClient | None = None
        self.credentials: GoogleCredentials | None = None

    async def startup(self) -> None:
        timeout = httpx.Timeout(self._settings.timeout, read=self._settings.read_timeout)
        self._token_client = httpx.AsyncClient(
            timeout=timeout, transport=self._transport
        )
        self.credentials = GoogleCredentials(self._settings, self._token_client)
        self._client = httpx.AsyncClient(
            base_url=self._settings.api_base,
            auth=self.credentials,
            timeout=timeout,
            transport=self._transport,
        )
        if not self._settings.enabled:
            LOG.warning("Google Drive credentials are incomplete, requests will fail")
        LOG.info("Drive source ready (api=%s)", self._settings.api_base)

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._token_client is not None:
            await self._token_client.aclose()
            self._token_client = None

    def get_authorized_client(self) -> httpx.AsyncClient:
        if self._client is None:
            message = "source not initialised"
            raise RuntimeError(message)
        return self._client

    async def get_metadata(self, resource_id: str) -> ResourceMetadata:
        data = await self._get_file(resource_id, "name,mimeType,size")
        size = data.get("size")
        if size is None:
            msg = f"{resource_id} has no downloadable content"
            raise SourceUnavailable(msg)
        try:
            size = int(size)
        except (TypeError, ValueError) as error:
            msg = f"Drive reported an invalid size {size!r} for {resource_id}"
            raise SourceUnavailable(msg) from error
        return ResourceMetadata(
            size=size, media_type=data.get("mimeType") or DEFAULT_MEDIA_TYPE
        )

    async def open_stream(
        self, resource_id: str, byte_range: ByteRange | None
    ) -> StreamHandle:
        client = self.get_authorized_client()
        headers = {"Range": byte_range.to_header()} if byte_range is not None else {}
        request = client.build_request(
            "GET",
            f"/files/{quote(resource_id, safe='')}",
            params={"alt": "media", "supportsAllDrives": "true"},
            headers=headers,
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as error:
            msg = f"Drive download failed for {resource_id}: {error}"
            raise SourceUnavailable(msg) from error

        if response.is_error:
            await response.aclose()
            self._raise_for_status(response, resource_id)

        if byte_range is not None:
            whole = byte_range.start == 0 and byte_range.end == byte_range.total - 1
            if response.status_code != 206 and not (whole and response.status_code == 200):
                await response.aclose()
                msg = f"Drive ignored the range request for {resource_id}"
                raise SourceUnavailable(msg)
            expected: int | None = byte_range.length
        else:
            expected = self._declared_length(response)

        async def chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes(self._chunk_size):
                    yield chunk
            except httpx.HTTPError as error:
                msg = f"Drive stream for {resource_id} failed: {error}"
                raise SourceUnavailable(msg) from error

        return StreamHandle(chunks(), expected, response.aclose)

    async def list_children(self, container_id: str) -> list[ChildEntry]:
        client = self.get_authorized_client()
        params: dict[str, Any] = {
            "q": f"'{_escape_query(container_id)}' in parents and trashed=false",
            "fields": "nextPageToken, files(id, name, mimeType, size)",
            "orderBy": "name",
            "pageSize": 1000,
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        }
        entries: list[ChildEntry] = []
        while True:
            try:
                response = await client.get("/files", params=params)
            except httpx.HTTPError as error:
                msg = f"Drive listing failed for {container_id}: {error}"
                raise SourceUnavailable(msg) from error
            self._raise_for_status(response, container_id)
            payload = self._read_json(response, container_id)
            try:
                for item in payload.get("files", []):
                    size = item.get("size")
                    entries.append(
                        ChildEntry(
                            id=item["id"],
                            name=item["name"],
                            media_type=item.get("mimeType") or DEFAULT_MEDIA_TYPE,
                            size=int(size) if size is not None else None,
                        )
                    )
            except (AttributeError, KeyError, TypeError, ValueError) as error:
                msg = f"Drive returned an unexpected listing for {container_id}"
                raise SourceUnavailable(msg) from error
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token
        return sort_children(entries)

    async def get_thumbnail_ref(self, resource_id: str) -> str | None:
        data = await self._get_file(resource_id, "thumbnailLink")
        return data.get("thumbnailLink") or None

    async def _get_file(self, resource_id: str, fields: str) -> dict[str, Any]:
        client = self.get_authorized_client()
        try:
            response = await client.get(
                f"/files/{quote(resource_id, safe='')}",
                params={"fields": fields, "supportsAllDrives": "true"},
            )
        except httpx.HTTPError as error:
            msg = f"Drive lookup failed for {resource_id}: {error}"
            raise SourceUnavailable(msg) from error
        self._raise_for_status(response, resource_id)
        return self._read_json(response, resource_id)

    @staticmethod
    def _read_json(response: httpx.Response, resource_id: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as error:
            msg = f"Drive returned an unreadable body for {resource_id}"
            raise SourceUnavailable(msg) from error
        if not isinstance(payload, dict):
            msg = f"Drive returned an unexpected body for {resource_id}"
            raise SourceUnavailable(msg)
        return payload

    @staticmethod
    def _declared_length(response: httpx.Response) -> int | None:
        if "content-encoding" in response.headers:
            return None
        length = response.headers.get("content-length")
        return int(length) if length and length.isdigit() else None

    @staticmethod
    def _raise_for_status(response: httpx.Response, resource_id: str) -> None:
        if response.status_code == 404:
            raise ResourceNotFound(resource_id)
        if response.is_error:
            msg = f"Drive returned {response.status_code} for {resource_id}"
            raise SourceUnavailable(msg)
