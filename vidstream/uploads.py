from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import UnsupportedMediaType, UploadTooLarge, VidstreamError
from .locator import normalize_key
from .models import UploadBatch, UploadResult, UploadTarget, format_size

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .backends import BackendRegistry
    from .locator import LocatorResolver
    from .models import BackendKind, RemoteFile, RemoteObjectRef
    from .settings import AppSettings

LOG = logging.getLogger("vidstream.uploads")

GENERIC_BINARY_TYPE = "application/octet-stream"

ALLOWED_MIME_TYPES = frozenset(
    {
        "video/mp4",
        "video/webm",
        "video/ogg",
        "video/quicktime",
        "video/x-msvideo",
        "video/x-matroska",
        "video/mpeg",
        GENERIC_BINARY_TYPE,
    }
)


@dataclass(frozen=True)
class IncomingFile:
    buffer: bytes
    original_name: str
    mime_type: str


def _epoch_millis() -> int:
    return time.time_ns() // 1_000_000


def normalize_mime_type(mime_type: str | None) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def build_upload_target(
    original_name: str,
    size: int,
    mime_type: str,
    folder: str,
    *,
    clock: Callable[[], int] = _epoch_millis,
) -> UploadTarget:
    """Derive a collision-resistant destination name for an upload.

    ``clip.mp4`` uploaded at epoch millisecond 1700000000000 becomes
    ``clip_1700000000000.mp4``. Directory components of the client-supplied
    name are dropped.
    """
    name = os.path.basename(original_name.replace("\\", "/")) or "upload"
    base, ext = os.path.splitext(name)
    unique_name = f"{base}_{clock()}{ext}"
    return UploadTarget(
        folder=normalize_key(folder).rstrip("/"),
        unique_name=unique_name,
        size=size,
        mime_type=mime_type,
    )


class UploadPipeline:
    def __init__(
        self,
        registry: BackendRegistry,
        resolver: LocatorResolver,
        settings: AppSettings,
        *,
        clock: Callable[[], int] = _epoch_millis,
    ):
        self._registry = registry
        self._resolver = resolver
        self._settings = settings
        self._clock = clock

    def check_mime_type(self, mime_type: str | None) -> str:
        normalized = normalize_mime_type(mime_type)
        if normalized not in ALLOWED_MIME_TYPES:
            msg = f"File type not allowed: {mime_type or 'unknown'}. Only videos are accepted."
            raise UnsupportedMediaType(msg)
        return normalized

    async def upload(
        self,
        buffer: bytes,
        original_name: str,
        mime_type: str | None,
        folder: str | None = None,
        backend: BackendKind | None = None,
    ) -> RemoteObjectRef:
        normalized = self.check_mime_type(mime_type)
        if len(buffer) > self._settings.max_upload_size:
            msg = (
                "File exceeds the maximum allowed size "
                f"({format_size(self._settings.max_upload_size)})"
            )
            raise UploadTooLarge(msg)

        storage = self._registry.get(backend)
        target = build_upload_target(
            original_name,
            len(buffer),
            normalized,
            folder or self._settings.default_folder,
            clock=self._clock,
        )
        LOG.info(
            "uploading %s as %s (%s) to %s",
            original_name,
            target.key,
            format_size(target.size),
            storage.kind.value,
        )
        return await storage.write(target, buffer)

    async def upload_many(
        self,
        files: Iterable[IncomingFile],
        folder: str | None = None,
        backend: BackendKind | None = None,
    ) -> UploadBatch:
        """Upload each file independently; one failure never stops the rest."""
        batch = UploadBatch()
        for incoming in files:
            try:
                ref = await self.upload(
                    incoming.buffer,
                    incoming.original_name,
                    incoming.mime_type,
                    folder,
                    backend,
                )
            except VidstreamError as error:
                LOG.warning("upload of %s failed: %s", incoming.original_name, error)
                batch.results.append(
                    UploadResult(
                        original_name=incoming.original_name,
                        size=len(incoming.buffer),
                        error=str(error),
                    )
                )
                continue
            batch.results.append(
                UploadResult(
                    original_name=incoming.original_name,
                    ref=ref,
                    size=len(incoming.buffer),
                )
            )
        LOG.info(
            "%d of %d uploads succeeded", batch.success_count, len(batch.results)
        )
        return batch

    async def list(
        self, folder: str | None = None, backend: BackendKind | None = None
    ) -> list[RemoteFile]:
        return await self._registry.get(backend).list(
            folder or self._settings.default_folder
        )

    async def delete(self, identifier: str) -> bool:
        """Delete by locator, or by object key on the default backend."""
        ref = self._resolver.resolve(identifier)
        return await self._registry.get(ref.backend_kind).delete(ref)
