from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from litestar import Litestar, MediaType, Request, Response, delete, get, post
from litestar.config.cors import CORSConfig
from litestar.datastructures import UploadFile
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController

from .errors import (
    InvalidParameter,
    MissingParameter,
    ObjectNotFound,
    RangeNotSatisfiable,
    StreamAborted,
    VidstreamError,
)
from .models import BackendKind, RemoteObjectRef, format_size
from .proxy import StreamProxy
from .ranges import unsatisfiable_headers
from .uploads import IncomingFile

if TYPE_CHECKING:
    from litestar.datastructures import FormMultiDict
    from litestar.types import Receive, Scope, Send


prometheus_config = PrometheusConfig(app_name="vidstream", prefix="vidstream")

_SCHEME_PREFIX = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:/")


def _parse_backend(value: object) -> BackendKind | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return BackendKind(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(kind.value for kind in BackendKind)
        msg = f"Unknown storage backend '{value}' (expected one of: {choices})"
        raise InvalidParameter(msg) from None


def _form_text(form: FormMultiDict, key: str) -> str | None:
    value = form.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _ref_payload(ref: RemoteObjectRef, original_name: str, size: int) -> dict[str, Any]:
    return {
        "url": ref.locator,
        "backend": ref.backend_kind.value,
        "fileName": ref.key,
        "originalName": original_name,
        "size": size,
        "sizeFormatted": format_size(size),
    }


async def _read_upload(upload: UploadFile) -> IncomingFile:
    try:
        buffer = await upload.read()
    finally:
        await upload.close()
    return IncomingFile(
        buffer=buffer,
        original_name=upload.filename,
        mime_type=upload.content_type,
    )


def create_app(proxy: StreamProxy | None = None) -> Litestar:
    """Create the video streaming ASGI application."""
    proxy = proxy or StreamProxy.from_env()
    settings = proxy.settings
    logging.getLogger("vidstream").setLevel(settings.log_level.upper())

    def error_response(_: Request, exc: VidstreamError) -> Response:
        if isinstance(exc, RangeNotSatisfiable):
            return Response(
                content=b"",
                status_code=exc.status_code,
                headers=unsatisfiable_headers(exc.total_size),
                media_type=MediaType.TEXT,
            )
        content: dict[str, Any] = {"success": False, "message": exc.public_message}
        if exc.detail and not settings.is_production:
            content["error"] = exc.detail
        return Response(content=content, status_code=exc.status_code)

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.environment}

    @asgi(path="/upload/stream", copy_scope=True)
    async def stream_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        if request.method not in {"GET", "HEAD"}:
            response = Response(
                content={"success": False, "message": "Method not allowed"},
                status_code=405,
                headers={"Allow": "GET, HEAD"},
            )
        else:
            try:
                await proxy.stream(request, send, receive)
            except StreamAborted:
                # Headers and part of the body are out; leaving the response
                # incomplete makes the server drop the connection.
                return
            except VidstreamError as error:
                response = error_response(request, error)
            else:
                return
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    @get("/upload/info")
    async def file_info(url: str | None = None) -> dict[str, Any]:
        ref = proxy.resolve(url)
        stat = await proxy.stat(ref)
        return {
            "success": True,
            "data": {
                "url": ref.locator,
                "backend": ref.backend_kind.value,
                "bucket": ref.bucket,
                "key": ref.key,
                "size": stat.size,
                "sizeFormatted": format_size(stat.size),
                "contentType": stat.content_type,
            },
        }

    @post("/upload/video", status_code=200)
    async def upload_video(request: Request) -> dict[str, Any]:
        form = await request.form()
        upload = form.get("video")
        if not isinstance(upload, UploadFile):
            msg = "No video file received"
            raise MissingParameter(msg)
        backend = _parse_backend(form.get("backend"))
        incoming = await _read_upload(upload)
        ref = await proxy.uploads.upload(
            incoming.buffer,
            incoming.original_name,
            incoming.mime_type,
            _form_text(form, "folder"),
            backend,
        )
        return {
            "success": True,
            "message": "Video uploaded successfully",
            "data": _ref_payload(ref, incoming.original_name, len(incoming.buffer)),
        }

    @post("/upload/multiple", status_code=200)
    async def upload_multiple(request: Request) -> dict[str, Any]:
        form = await request.form()
        uploads = [
            value for value in form.getall("videos", []) if isinstance(value, UploadFile)
        ]
        if not uploads:
            msg = "No video files received"
            raise MissingParameter(msg)
        if len(uploads) > settings.max_upload_files:
            msg = f"Too many files, at most {settings.max_upload_files} per request"
            raise InvalidParameter(msg)
        backend = _parse_backend(form.get("backend"))
        files = [await _read_upload(upload) for upload in uploads]
        batch = await proxy.uploads.upload_many(
            files, _form_text(form, "folder"), backend
        )

        data: list[dict[str, Any]] = []
        for result in batch.results:
            if result.ref is None:
                data.append(
                    {
                        "success": False,
                        "originalName": result.original_name,
                        "error": result.error,
                    }
                )
            else:
                data.append(
                    {
                        "success": True,
                        **_ref_payload(result.ref, result.original_name, result.size),
                    }
                )
        return {
            "success": True,
            "message": f"{batch.success_count} of {len(files)} videos uploaded",
            "successCount": batch.success_count,
            "data": data,
        }

    @get("/upload/list")
    async def list_files(
        folder: str | None = None, backend: str | None = None
    ) -> dict[str, Any]:
        folder = folder or settings.default_folder
        files = await proxy.uploads.list(folder, _parse_backend(backend))
        return {
            "success": True,
            "data": {
                "folder": folder,
                "count": len(files),
                "files": [
                    {
                        "name": remote.name,
                        "key": remote.key,
                        "size": remote.size,
                        "sizeFormatted": format_size(remote.size),
                        "url": remote.url,
                    }
                    for remote in files
                ],
            },
        }

    async def _delete(identifier: str) -> dict[str, Any]:
        if not await proxy.uploads.delete(identifier):
            msg = f"File not found: {identifier}"
            raise ObjectNotFound(msg)
        return {"success": True, "message": "File deleted successfully"}

    @delete("/upload", status_code=200)
    async def delete_by_url(url: str | None = None) -> dict[str, Any]:
        if not url or not url.strip():
            msg = "The 'url' query parameter is required"
            raise MissingParameter(msg)
        return await _delete(url.strip())

    @delete("/upload/{identifier:path}", status_code=200)
    async def delete_file(identifier: str) -> dict[str, Any]:
        identifier = identifier.lstrip("/")
        # Servers collapse the "//" of a scheme inside a path.
        if _SCHEME_PREFIX.match(identifier):
            msg = "Delete locators through DELETE /upload?url=<locator>"
            raise InvalidParameter(msg)
        return await _delete(identifier)

    async def startup(app: Litestar) -> None:
        await proxy.startup()

    async def shutdown(app: Litestar) -> None:
        await proxy.shutdown()

    cors_config = CORSConfig(
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )

    return Litestar(
        route_handlers=[
            health,
            stream_handler,
            file_info,
            upload_video,
            upload_multiple,
            list_files,
            delete_by_url,
            delete_file,
            PrometheusController,
        ],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
        exception_handlers={VidstreamError: error_response},
        request_max_body_size=settings.max_upload_size * settings.max_upload_files
        + 1024 * 1024,
    )


app = create_app()
