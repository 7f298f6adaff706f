from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from litestar import Litestar, Request, Response, get
from litestar.config.cors import CORSConfig
from litestar.handlers import asgi
from litestar.logging.config import LoggingConfig
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import File, Redirect

from .drive import DriveContentSource
from .proxy import AsgiResponseChannel, StreamingProxy
from .s3 import S3ContentSource
from .settings import (
    DEFAULT_CATEGORY_LABELS,
    RelaySettings,
    load_drive_settings_from_env,
    load_relay_settings_from_env,
    load_s3_settings_from_env,
)
from .source import ChildEntry, ContentSource, SourceError

if TYPE_CHECKING:
    from litestar.types import Receive, Scope, Send

LOG = logging.getLogger("media_relay.app")

EXTENSION = re.compile(r"\.[^/.]+$")

prometheus_config = PrometheusConfig(app_name="media_relay", prefix="media_relay")


def build_source(settings: RelaySettings) -> ContentSource:
    """Create the content source selected by ``MEDIA_RELAY_BACKEND``."""
    if settings.backend == "s3":
        return S3ContentSource(load_s3_settings_from_env(), chunk_size=settings.chunk_size)
    return DriveContentSource(
        load_drive_settings_from_env(), chunk_size=settings.chunk_size
    )


def format_library_item(entry: ChildEntry) -> dict[str, str]:
    resource = quote(entry.id, safe="/")
    return {
        "id": entry.id,
        "title": EXTENSION.sub("", entry.name),
        "source": f"/api/stream/{resource}",
        "poster": f"/api/thumbnail/{resource}",
        "type": entry.media_type,
    }


def _error(message: str, status_code: int) -> Response[Any]:
    return Response(content={"error": message}, status_code=status_code)


def _resource_id(value: object) -> str:
    return str(value).lstrip("/")


def create_app(
    settings: RelaySettings | None = None, source: ContentSource | None = None
) -> Litestar:
    """Create the media relay ASGI application."""
    settings = settings or load_relay_settings_from_env()
    source = source or build_source(settings)
    proxy = StreamingProxy(source)

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @asgi(path="/api/stream/{resource_id:path}", copy_scope=True)
    async def stream_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request: Request[Any, Any, Any] = Request(scope=scope, receive=receive)
        if request.method not in {"GET", "HEAD"}:
            response = Response(
                content={"error": "Method not allowed"},
                status_code=405,
                headers={"Allow": "GET, HEAD"},
            )
            asgi_response = response.to_asgi_response(None, request)
            await asgi_response(scope, receive, send)
            return
        resource_id = _resource_id(scope.get("path_params", {}).get("resource_id", ""))
        await proxy.serve(
            resource_id,
            request.headers.get("range"),
            AsgiResponseChannel(send, receive),
            include_body=request.method == "GET",
        )

    @get("/api/library/{category:str}")
    async def library(category: str) -> Response[Any]:
        folder = settings.library_folders.get(category)
        if folder is None:
            return _error("Invalid content type", 400)
        try:
            children = await source.list_children(folder)
        except SourceError as error:
            LOG.warning("failed to list library %s (%s): %s", category, folder, error)
            return _error("Failed to fetch content library", 500)
        return Response(content=[format_library_item(child) for child in children])

    @get("/api/thumbnail/{resource_id:path}")
    async def thumbnail(resource_id: Path) -> Response[Any]:
        resource = _resource_id(resource_id)
        try:
            link = await source.get_thumbnail_ref(resource)
        except SourceError as error:
            LOG.warning("failed to fetch thumbnail for %s: %s", resource, error)
            return _error("Failed to fetch thumbnail", 500)
        if link:
            return Redirect(path=link)
        fallback = settings.default_thumbnail
        if fallback is not None and fallback.is_file():
            return File(path=fallback, content_disposition_type="inline")
        return _error("Thumbnail not found", 404)

    @get("/api/manifest")
    async def manifest() -> dict[str, Any]:
        return {
            "name": settings.manifest_name,
            "version": settings.manifest_version,
            "description": settings.manifest_description,
            "categories": [
                {
                    "name": DEFAULT_CATEGORY_LABELS.get(category, category.title()),
                    "endpoint": f"/api/library/{category}",
                }
                for category in settings.library_folders
            ],
        }

    async def startup(app: Litestar) -> None:
        await source.startup()
        LOG.info(
            "media relay ready (backend=%s, categories=%s)",
            source.name,
            ", ".join(settings.library_folders) or "none",
        )

    async def shutdown(app: Litestar) -> None:
        await source.shutdown()

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Accept-Ranges", "Content-Length", "Content-Range"],
    )

    return Litestar(
        route_handlers=[
            health,
            stream_handler,
            library,
            thumbnail,
            manifest,
            PrometheusController,
        ],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
        logging_config=LoggingConfig(
            root={"level": settings.log_level, "handlers": ["queue_listener"]},
        ),
    )


app = create_app()
